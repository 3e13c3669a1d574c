"""Loaders for session JSONL exports."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path

from pydantic import ValidationError

from session_classifier.schemas import Session

SESSION_JSONL_SCHEMA_VERSION = "1.0.0"


class SessionDatasetError(ValueError):
    """Raised when a session export fails schema or integrity checks."""


@dataclass(frozen=True)
class DatasetSummary:
    session_count: int
    unique_user_count: int
    message_count: int
    avg_message_count: float
    sessions_without_messages: int


@dataclass(frozen=True)
class ValidationErrorRecord:
    line_number: int
    code: str
    message: str


@dataclass(frozen=True)
class SessionValidationReport:
    """Line-level validation results for a session JSONL file."""

    schema_version: str
    input_path: str
    total_lines: int
    non_empty_lines: int
    valid_session_count: int
    invalid_line_count: int
    duplicate_session_id_count: int
    error_count: int
    dropped_error_count: int
    is_valid: bool
    summary: DatasetSummary
    errors: list[ValidationErrorRecord]

    def to_dict(self) -> dict:
        return asdict(self)


def summarize_sessions(sessions: list[Session]) -> DatasetSummary:
    message_counts = [len(session.messages) for session in sessions]
    return DatasetSummary(
        session_count=len(sessions),
        unique_user_count=len({session.user_id for session in sessions}),
        message_count=sum(message_counts),
        avg_message_count=(
            round(sum(message_counts) / len(message_counts), 2) if message_counts else 0.0
        ),
        sessions_without_messages=sum(1 for count in message_counts if count == 0),
    )


def _parse_line(line_number: int, stripped: str, file_path: Path) -> Session:
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise SessionDatasetError(
            f"Invalid JSON on line {line_number} of {file_path}: {exc.msg}"
        ) from exc

    if not isinstance(payload, dict):
        raise SessionDatasetError(
            f"Expected object on line {line_number} of {file_path}, "
            f"got {type(payload).__name__}."
        )

    try:
        return Session.model_validate(payload)
    except ValidationError as exc:
        raise SessionDatasetError(
            f"Session schema validation failed on line {line_number} of {file_path}: {exc}"
        ) from exc


def load_sessions_jsonl(path: str | Path) -> list[Session]:
    """Load sessions from a JSONL export, one `Session` object per line.

    Session ids must be unique; the first bad line raises `SessionDatasetError`.
    """

    file_path = Path(path)
    if not file_path.exists():
        raise SessionDatasetError(f"Session file does not exist: {file_path}")

    sessions: list[Session] = []
    seen_ids: set[str] = set()
    with file_path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            stripped = line.strip()
            if not stripped:
                continue
            session = _parse_line(line_number, stripped, file_path)
            if session.session_id in seen_ids:
                raise SessionDatasetError(
                    f"Duplicate session_id '{session.session_id}' "
                    f"found on line {line_number} of {file_path}."
                )
            seen_ids.add(session.session_id)
            sessions.append(session)

    if not sessions:
        raise SessionDatasetError(f"No sessions found in file: {file_path}")
    return sessions


def validate_sessions_jsonl(path: str | Path, *, max_errors: int = 100) -> SessionValidationReport:
    """Scan the whole file and report every problem instead of stopping at the first one."""

    if max_errors < 0:
        raise ValueError(f"max_errors must be >= 0, got {max_errors}.")

    file_path = Path(path)
    if not file_path.exists():
        raise SessionDatasetError(f"Session file does not exist: {file_path}")

    total_lines = 0
    non_empty_lines = 0
    duplicate_count = 0
    error_count = 0
    errors: list[ValidationErrorRecord] = []
    sessions: list[Session] = []
    seen_ids: set[str] = set()

    def record(line_number: int, code: str, message: str) -> None:
        nonlocal error_count
        error_count += 1
        if len(errors) < max_errors:
            errors.append(ValidationErrorRecord(line_number, code, message))

    with file_path.open(encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            total_lines += 1
            stripped = line.strip()
            if not stripped:
                continue
            non_empty_lines += 1

            try:
                payload = json.loads(stripped)
            except json.JSONDecodeError as exc:
                record(line_number, "invalid_json", exc.msg)
                continue
            if not isinstance(payload, dict):
                record(
                    line_number,
                    "non_object_line",
                    f"Expected JSON object, got {type(payload).__name__}.",
                )
                continue
            try:
                session = Session.model_validate(payload)
            except ValidationError as exc:
                record(line_number, "schema_validation_failed", str(exc))
                continue
            if session.session_id in seen_ids:
                duplicate_count += 1
                record(
                    line_number,
                    "duplicate_session_id",
                    f"Duplicate session_id '{session.session_id}' in dataset.",
                )
                continue
            seen_ids.add(session.session_id)
            sessions.append(session)

    if non_empty_lines == 0:
        record(0, "empty_dataset", f"No non-empty JSONL lines found in {file_path}.")

    invalid_line_count = non_empty_lines - len(sessions)
    return SessionValidationReport(
        schema_version=SESSION_JSONL_SCHEMA_VERSION,
        input_path=str(file_path),
        total_lines=total_lines,
        non_empty_lines=non_empty_lines,
        valid_session_count=len(sessions),
        invalid_line_count=invalid_line_count,
        duplicate_session_id_count=duplicate_count,
        error_count=error_count,
        dropped_error_count=max(0, error_count - len(errors)),
        is_valid=non_empty_lines > 0 and invalid_line_count == 0,
        summary=summarize_sessions(sessions),
        errors=errors,
    )
