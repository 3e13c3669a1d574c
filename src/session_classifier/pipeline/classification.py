"""LLM batch classification call."""

from __future__ import annotations

import logging
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict

from session_classifier.models.catalog import calculate_model_cost
from session_classifier.models.openai_client import LLMClientFactory
from session_classifier.prompts import (
    SESSION_CLASSIFICATION_SYSTEM_PROMPT,
    build_session_batch_user_prompt,
)
from session_classifier.schemas import BatchAnalysisResult, ExistingClassifications, Session

logger = logging.getLogger(__name__)


class BatchAnalysisError(ValueError):
    """Raised when a classification response cannot be decoded at all."""


class _SessionBatchItemPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_id: str
    user_id: str
    general_intent: str
    session_outcome: Literal["Transfer", "Contained"]
    transfer_reason: str
    drop_off_location: str
    notes: str


class _SessionBatchPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sessions: list[_SessionBatchItemPayload]


class SessionAnalyzer(Protocol):
    """Anything that can classify one batch of sessions in a single LLM call."""

    def analyze_batch(
        self,
        sessions: list[Session],
        existing_classifications: ExistingClassifications,
        api_key: str,
        model_id: str,
        additional_context: str | None = None,
    ) -> BatchAnalysisResult:
        """Return raw per-session items plus token counts for one call."""


class SessionBatchAnalyzer:
    """Classify session batches through an `LLMJsonClient`."""

    def __init__(self, client_factory: LLMClientFactory) -> None:
        self._client_factory = client_factory

    def analyze_batch(
        self,
        sessions: list[Session],
        existing_classifications: ExistingClassifications,
        api_key: str,
        model_id: str,
        additional_context: str | None = None,
    ) -> BatchAnalysisResult:
        if not sessions:
            return BatchAnalysisResult(model=model_id)

        client = self._client_factory(api_key, model_id)
        payload, usage = client.complete_json_with_usage(
            system_prompt=SESSION_CLASSIFICATION_SYSTEM_PROMPT,
            user_prompt=build_session_batch_user_prompt(
                sessions,
                existing_classifications,
                additional_context,
            ),
            schema_name="session_batch_payload",
            json_schema=_SessionBatchPayload.model_json_schema(),
            strict_schema=True,
        )

        items = payload.get("sessions")
        if not isinstance(items, list):
            raise BatchAnalysisError("Classification payload missing list field 'sessions'.")

        prompt_tokens = int(usage.get("prompt_tokens", 0) or 0)
        completion_tokens = int(usage.get("completion_tokens", 0) or 0)
        total_tokens = int(usage.get("total_tokens", 0) or 0) or prompt_tokens + completion_tokens
        logger.debug(
            "Classified batch of %d sessions with %s: %d items, %d tokens",
            len(sessions),
            model_id,
            len(items),
            total_tokens,
        )
        return BatchAnalysisResult(
            sessions=items,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            cost=calculate_model_cost(prompt_tokens, completion_tokens, model_id),
            model=model_id,
        )
