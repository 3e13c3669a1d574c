"""Tests for session JSONL loading and validation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from session_classifier.io import (
    SESSION_JSONL_SCHEMA_VERSION,
    SessionDatasetError,
    load_sessions_jsonl,
    validate_sessions_jsonl,
)


def _row(session_id: str, user_id: str = "user-1", messages: int = 2) -> dict:
    return {
        "session_id": session_id,
        "user_id": user_id,
        "start_time": "2025-01-10T13:00:00Z",
        "messages": [
            {"role": "user" if index % 2 else "bot", "text": f"message {index}"}
            for index in range(messages)
        ],
    }


def _write(path: Path, lines: list[str]) -> Path:
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


class TestLoadSessions:
    def test_loads_valid_file(self, tmp_path):
        path = _write(
            tmp_path / "sessions.jsonl",
            [json.dumps(_row("s-1")), "", json.dumps(_row("s-2", "user-2"))],
        )
        sessions = load_sessions_jsonl(path)
        assert [s.session_id for s in sessions] == ["s-1", "s-2"]
        assert sessions[0].messages[0].role == "bot"
        assert sessions[0].start_time.tzinfo is not None

    def test_missing_file(self, tmp_path):
        with pytest.raises(SessionDatasetError, match="does not exist"):
            load_sessions_jsonl(tmp_path / "missing.jsonl")

    def test_invalid_json(self, tmp_path):
        path = _write(tmp_path / "bad.jsonl", [json.dumps(_row("s-1")), "{not json"])
        with pytest.raises(SessionDatasetError, match="line 2"):
            load_sessions_jsonl(path)

    def test_non_object_line(self, tmp_path):
        path = _write(tmp_path / "list.jsonl", ["[1, 2]"])
        with pytest.raises(SessionDatasetError, match="Expected object"):
            load_sessions_jsonl(path)

    def test_schema_error(self, tmp_path):
        path = _write(tmp_path / "schema.jsonl", [json.dumps({"session_id": "s-1"})])
        with pytest.raises(SessionDatasetError, match="schema validation failed"):
            load_sessions_jsonl(path)

    def test_duplicate_ids(self, tmp_path):
        path = _write(tmp_path / "dupe.jsonl", [json.dumps(_row("s-1")), json.dumps(_row("s-1"))])
        with pytest.raises(SessionDatasetError, match="Duplicate session_id"):
            load_sessions_jsonl(path)

    def test_empty_file(self, tmp_path):
        path = _write(tmp_path / "empty.jsonl", [""])
        with pytest.raises(SessionDatasetError, match="No sessions"):
            load_sessions_jsonl(path)


class TestValidateSessions:
    def test_valid_report(self, tmp_path):
        path = _write(
            tmp_path / "sessions.jsonl",
            [json.dumps(_row("s-1")), json.dumps(_row("s-2", "user-2", messages=0))],
        )
        report = validate_sessions_jsonl(path)
        assert report.is_valid is True
        assert report.schema_version == SESSION_JSONL_SCHEMA_VERSION
        assert report.valid_session_count == 2
        assert report.summary.unique_user_count == 2
        assert report.summary.message_count == 2
        assert report.summary.sessions_without_messages == 1
        assert report.to_dict()["summary"]["avg_message_count"] == 1.0

    def test_collects_every_error(self, tmp_path):
        path = _write(
            tmp_path / "mixed.jsonl",
            [
                json.dumps(_row("s-1")),
                "{oops",
                "42",
                json.dumps({"user_id": "u"}),
                json.dumps(_row("s-1")),
            ],
        )
        report = validate_sessions_jsonl(path, max_errors=2)
        assert report.is_valid is False
        assert report.valid_session_count == 1
        assert report.invalid_line_count == 4
        assert report.duplicate_session_id_count == 1
        assert report.error_count == 4
        assert report.dropped_error_count == 2
        assert [error.code for error in report.errors] == ["invalid_json", "non_object_line"]

    def test_empty_dataset(self, tmp_path):
        path = _write(tmp_path / "empty.jsonl", [""])
        report = validate_sessions_jsonl(path)
        assert report.is_valid is False
        assert report.errors[0].code == "empty_dataset"

    def test_negative_max_errors(self, tmp_path):
        path = _write(tmp_path / "sessions.jsonl", [json.dumps(_row("s-1"))])
        with pytest.raises(ValueError):
            validate_sessions_jsonl(path, max_errors=-1)
