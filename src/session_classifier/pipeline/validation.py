"""Response validation, retry merging and fallback synthesis for batch classification."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pydantic import ValidationError

from session_classifier.schemas import (
    FALLBACK_BATCH_NUMBER,
    AnalysisMetadata,
    BatchAnalysisResult,
    Session,
    SessionClassificationItem,
    SessionFacts,
    SessionWithFacts,
    ValidationResult,
)

logger = logging.getLogger(__name__)

ERROR_UNEXPECTED = "unexpected"
ERROR_DUPLICATE = "duplicate"
ERROR_MALFORMED = "malformed"
ERROR_CALL_FAILED = "call_failed"

RECOVERABLE_ERROR_KINDS = frozenset({ERROR_MALFORMED, ERROR_CALL_FAILED})

FALLBACK_INTENT = "Unknown"
FALLBACK_OUTCOME = "Contained"


@dataclass
class DecodedBatch:
    """Strict per-item decode of a raw LLM response."""

    items: list[SessionClassificationItem] = field(default_factory=list)
    malformed: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    reason: str


@dataclass(frozen=True)
class FormatCheck:
    is_valid: bool
    issues: list[str]


def _raw_session_id(raw: object) -> str | None:
    if isinstance(raw, dict):
        value = raw.get("session_id")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "entry"
    return f"Invalid {location}"


def decode_batch_items(raw_items: list) -> DecodedBatch:
    """Decode each raw response entry against the item schema, collecting failures."""

    decoded = DecodedBatch()
    for raw in raw_items:
        session_id = _raw_session_id(raw)
        if not isinstance(raw, dict):
            decoded.malformed.append(f"Non-object entry: {type(raw).__name__}")
            continue
        try:
            decoded.items.append(SessionClassificationItem.model_validate(raw))
        except ValidationError as exc:
            if session_id is None:
                decoded.malformed.append(f"Invalid session_id: {raw.get('session_id')!r}")
            else:
                decoded.malformed.append(f"{session_id}: {_first_error(exc)}")
    return decoded


def _duplicates(values: list[str]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for value in values:
        if value in seen and value not in duplicates:
            duplicates.append(value)
        seen.add(value)
    return duplicates


def validate_batch_response(
    input_sessions: list[Session],
    response: BatchAnalysisResult,
) -> ValidationResult:
    """Check an LLM batch response against the sessions that were sent.

    A session counts as processed only when at least one well-formed entry
    carries its id. Malformed entries are reported and leave their session
    missing, so retry logic re-dispatches them.
    """

    input_by_id = {session.session_id: session for session in input_sessions}
    decoded = decode_batch_items(response.sessions)

    raw_ids = [
        session_id
        for session_id in (_raw_session_id(raw) for raw in response.sessions)
        if session_id is not None
    ]

    accepted: dict[str, SessionClassificationItem] = {}
    for item in decoded.items:
        if item.session_id in input_by_id and item.session_id not in accepted:
            accepted[item.session_id] = item

    missing_sessions = [
        session for session in input_sessions if session.session_id not in accepted
    ]

    validation_errors: list[str] = []
    error_kinds: list[str] = []

    unexpected: list[str] = []
    for session_id in raw_ids:
        if session_id not in input_by_id and session_id not in unexpected:
            unexpected.append(session_id)
    if unexpected:
        validation_errors.append(f"Unexpected sessions in response: {', '.join(unexpected)}")
        error_kinds.append(ERROR_UNEXPECTED)

    duplicates = _duplicates(raw_ids)
    if duplicates:
        validation_errors.append(f"Duplicate sessions in response: {', '.join(duplicates)}")
        error_kinds.append(ERROR_DUPLICATE)

    if decoded.malformed:
        validation_errors.append(f"Malformed sessions: {', '.join(decoded.malformed)}")
        error_kinds.append(ERROR_MALFORMED)

    result = ValidationResult(
        all_sessions_processed=not missing_sessions and not validation_errors,
        processed_count=len(accepted),
        missing_count=len(missing_sessions),
        missing_sessions=missing_sessions,
        validation_errors=validation_errors,
        error_kinds=error_kinds,
        classifications=list(accepted.values()),
    )
    if not result.all_sessions_processed:
        logger.warning(
            "Validation issues: %d missing, errors=%s",
            result.missing_count,
            result.validation_errors,
        )
    return result


def validation_for_failed_call(
    sessions: list[Session],
    error: BaseException | str,
) -> ValidationResult:
    """Validation record for an LLM call that raised instead of answering."""

    return ValidationResult(
        all_sessions_processed=False,
        processed_count=0,
        missing_count=len(sessions),
        missing_sessions=list(sessions),
        validation_errors=[f"LLM call failed: {error}"],
        error_kinds=[ERROR_CALL_FAILED],
    )


def identify_missing_sessions(
    input_sessions: list[Session],
    processed_sessions: list[SessionWithFacts],
) -> list[Session]:
    processed_ids = {session.session_id for session in processed_sessions}
    missing = [session for session in input_sessions if session.session_id not in processed_ids]
    if missing:
        logger.warning(
            "Found %d missing sessions: %s",
            len(missing),
            [session.session_id for session in missing],
        )
    return missing


def merge_retry_results(
    original_results: list[SessionWithFacts],
    retry_results: list[SessionWithFacts],
) -> list[SessionWithFacts]:
    """Merge by session id; later results overwrite earlier ones."""

    merged: dict[str, SessionWithFacts] = {}
    for session in original_results:
        merged[session.session_id] = session
    for session in retry_results:
        merged[session.session_id] = session
    return list(merged.values())


def create_fallback_results(
    sessions: list[Session],
    error_message: str,
    model_id: str = "gpt-4o-mini",
) -> list[SessionWithFacts]:
    """Placeholder classifications for sessions that could not be classified."""

    return [
        SessionWithFacts.from_session(
            session,
            facts=SessionFacts(
                general_intent=FALLBACK_INTENT,
                session_outcome=FALLBACK_OUTCOME,
                transfer_reason="",
                drop_off_location="",
                notes=f"Validation failed: {error_message}",
            ),
            analysis_metadata=AnalysisMetadata(
                tokens_used=0,
                processing_time_ms=0,
                batch_number=FALLBACK_BATCH_NUMBER,
                model=model_id,
            ),
        )
        for session in sessions
    ]


def build_response_from_results(
    results: list[SessionWithFacts],
    *,
    model_id: str = "",
) -> BatchAnalysisResult:
    """Render classified sessions back into the raw LLM response shape."""

    return BatchAnalysisResult(
        sessions=[
            {
                "session_id": result.session_id,
                "user_id": result.user_id,
                "general_intent": result.facts.general_intent,
                "session_outcome": result.facts.session_outcome,
                "transfer_reason": result.facts.transfer_reason,
                "drop_off_location": result.facts.drop_off_location,
                "notes": result.facts.notes,
            }
            for result in results
        ],
        model=model_id,
    )


def should_retry(result: ValidationResult, retries_remaining: int) -> RetryDecision:
    """Retry only incomplete results with a recoverable cause while retries remain."""

    if result.all_sessions_processed:
        return RetryDecision(False, "All sessions processed successfully")
    if retries_remaining <= 0:
        return RetryDecision(False, "Retry limit reached")
    if result.missing_count > 0:
        return RetryDecision(True, f"{result.missing_count} sessions missing from response")
    recoverable = [kind for kind in result.error_kinds if kind in RECOVERABLE_ERROR_KINDS]
    if recoverable:
        return RetryDecision(True, f"Recoverable validation errors found: {len(recoverable)}")
    return RetryDecision(False, "No recoverable errors")


def validate_processed_sessions_format(sessions: list[SessionWithFacts]) -> FormatCheck:
    """Check final results for required facts, including transfer details."""

    issues: list[str] = []
    for session in sessions:
        if not session.session_id:
            issues.append("Session missing session_id")
            continue
        facts = session.facts
        if not facts.general_intent:
            issues.append(f"Session {session.session_id} missing general_intent")
        if facts.session_outcome == "Transfer":
            if not facts.transfer_reason:
                issues.append(f"Transfer session {session.session_id} missing transfer_reason")
            if not facts.drop_off_location:
                issues.append(f"Transfer session {session.session_id} missing drop_off_location")
        if not facts.notes:
            issues.append(f"Session {session.session_id} missing notes")

    if issues:
        logger.warning("Format validation found %d issues: %s", len(issues), issues[:5])
    return FormatCheck(is_valid=not issues, issues=issues)


def create_validation_report(
    input_sessions: list[Session],
    processed_sessions: list[SessionWithFacts],
    result: ValidationResult,
) -> dict:
    """Summarize one validation result for debugging and run artifacts."""

    transfers = sum(1 for s in processed_sessions if s.facts.session_outcome == "Transfer")
    contained = sum(1 for s in processed_sessions if s.facts.session_outcome == "Contained")
    success_rate = (
        (len(input_sessions) - result.missing_count) / len(input_sessions) * 100
        if input_sessions
        else 100.0
    )
    return {
        "summary": {
            "total_input": len(input_sessions),
            "total_processed": len(processed_sessions),
            "missing_count": result.missing_count,
            "error_count": len(result.validation_errors),
            "success_rate": round(success_rate, 2),
        },
        "details": {
            "missing_sessions": [session.session_id for session in result.missing_sessions],
            "validation_errors": list(result.validation_errors),
            "session_counts": {"transfers": transfers, "contained": contained},
        },
    }
