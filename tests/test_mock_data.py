"""Tests for synthetic session generation."""

import pytest

from session_classifier.io import load_sessions_jsonl
from session_classifier.mock_data import generate_mock_sessions, write_mock_sessions


def test_generate_mock_sessions_is_deterministic():
    first = generate_mock_sessions(count=16, seed=11)
    second = generate_mock_sessions(count=16, seed=11)
    assert first == second
    assert first[0]["session_id"] == "sess-00001"
    assert first[0]["metadata"]["source"] == "mock"
    assert first[0]["metadata"]["generator_seed"] == 11
    assert {row["metadata"]["expected_outcome"] for row in first} == {"Contained", "Transfer"}


def test_generated_sessions_start_three_minutes_apart():
    rows = generate_mock_sessions(count=3)
    starts = [row["start_time"] for row in rows]
    assert starts[0].startswith("2025-01-10T13:00")
    assert starts[1].startswith("2025-01-10T13:03")
    assert starts[2].startswith("2025-01-10T13:06")


def test_rejects_non_positive_count():
    with pytest.raises(ValueError):
        generate_mock_sessions(count=0)


def test_written_sessions_load_back(tmp_path):
    path = write_mock_sessions(tmp_path / "mock" / "sessions.jsonl", generate_mock_sessions(24))
    sessions = load_sessions_jsonl(path)
    assert len(sessions) == 24
    assert all(len(session.messages) >= 2 for session in sessions)
    assert all(session.messages[0].role == "bot" for session in sessions)
