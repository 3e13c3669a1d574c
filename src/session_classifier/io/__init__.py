"""I/O utilities for session exports and run artifacts."""

from session_classifier.io.load import (
    SESSION_JSONL_SCHEMA_VERSION,
    DatasetSummary,
    SessionDatasetError,
    SessionValidationReport,
    ValidationErrorRecord,
    load_sessions_jsonl,
    summarize_sessions,
    validate_sessions_jsonl,
)
from session_classifier.io.save import (
    RunLockError,
    ensure_directory,
    run_lock,
    save_json,
    save_jsonl,
)

__all__ = [
    "SESSION_JSONL_SCHEMA_VERSION",
    "DatasetSummary",
    "RunLockError",
    "SessionDatasetError",
    "SessionValidationReport",
    "ValidationErrorRecord",
    "ensure_directory",
    "load_sessions_jsonl",
    "run_lock",
    "save_json",
    "save_jsonl",
    "summarize_sessions",
    "validate_sessions_jsonl",
]
