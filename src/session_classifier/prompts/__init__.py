"""Prompt builders for the session classifier."""

from session_classifier.prompts.classification_prompts import (
    CLASSIFICATION_INSTRUCTIONS,
    SESSION_CLASSIFICATION_SYSTEM_PROMPT,
    build_session_batch_user_prompt,
)
from session_classifier.prompts.conflict_prompts import (
    CONFLICT_RESOLUTION_SYSTEM_PROMPT,
    build_conflict_resolution_user_prompt,
)

__all__ = [
    "CLASSIFICATION_INSTRUCTIONS",
    "CONFLICT_RESOLUTION_SYSTEM_PROMPT",
    "SESSION_CLASSIFICATION_SYSTEM_PROMPT",
    "build_conflict_resolution_user_prompt",
    "build_session_batch_user_prompt",
]
