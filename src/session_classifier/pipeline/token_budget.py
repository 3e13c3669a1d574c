"""Token budget estimation and batch sizing for classification calls."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from math import ceil, floor

from session_classifier.models.catalog import get_model_by_id
from session_classifier.schemas import Session, TokenEstimation, TokenUsage

logger = logging.getLogger(__name__)

AVG_TOKENS_PER_SESSION = 1500
SAFETY_MARGIN = 1.2
RESERVED_TOKENS = 5500
MAX_SESSIONS_CAP = 50
UNKNOWN_MODEL_SESSIONS_PER_CALL = 5
UNKNOWN_MODEL_CONTEXT_WINDOW = 8192
EMPTY_SESSION_TOKENS = 100
SESSION_METADATA_TOKENS = 50
CHARS_PER_TOKEN = 4
PROMPT_TOKEN_SHARE = 0.8
COMPLETION_TOKEN_SHARE = 0.2


@dataclass(frozen=True)
class BatchConfig:
    """Model-specific batching recommendation."""

    max_sessions_per_call: int
    context_window: int
    recommended_stream_count: int


def estimate_session_tokens(session: Session) -> int:
    """Approximate prompt tokens contributed by one session transcript."""

    if not session.messages:
        return EMPTY_SESSION_TOKENS
    return ceil(session.content_length() / CHARS_PER_TOKEN) + SESSION_METADATA_TOKENS


def split_sessions_into_batches(
    sessions: list[Session],
    max_sessions_per_call: int,
) -> list[list[Session]]:
    """Split sessions into contiguous batches of at most `max_sessions_per_call`."""

    if max_sessions_per_call < 1:
        raise ValueError(f"max_sessions_per_call must be positive, got {max_sessions_per_call}.")
    return [
        sessions[index : index + max_sessions_per_call]
        for index in range(0, len(sessions), max_sessions_per_call)
    ]


class TokenBudgetEstimator:
    """Estimate token usage, cost and safe batch sizes per model."""

    def __init__(
        self,
        *,
        avg_tokens_per_session: int = AVG_TOKENS_PER_SESSION,
        safety_margin: float = SAFETY_MARGIN,
        reserved_tokens: int = RESERVED_TOKENS,
        max_sessions_cap: int = MAX_SESSIONS_CAP,
    ) -> None:
        self.avg_tokens_per_session = avg_tokens_per_session
        self.safety_margin = safety_margin
        self.reserved_tokens = reserved_tokens
        self.max_sessions_cap = max_sessions_cap

    def calculate_max_sessions_per_call(self, model_id: str) -> int:
        """Safe number of sessions per LLM call; always >= 1."""

        model = get_model_by_id(model_id)
        if model is None:
            logger.warning(
                "Unknown model id %r; using %d sessions per call",
                model_id,
                UNKNOWN_MODEL_SESSIONS_PER_CALL,
            )
            return UNKNOWN_MODEL_SESSIONS_PER_CALL

        available = model.context_window - self.reserved_tokens
        max_sessions = floor(available / (self.avg_tokens_per_session * self.safety_margin))
        return max(1, min(max_sessions, self.max_sessions_cap))

    def estimate_token_usage(self, sessions: list[Session], model_id: str) -> int:
        """Total prompt tokens for one call carrying all `sessions`, including reserved overhead."""

        session_tokens = sum(estimate_session_tokens(session) for session in sessions)
        total = session_tokens + self.reserved_tokens
        logger.debug(
            "Estimated %d tokens for %d sessions on %s (%d reserved)",
            total,
            len(sessions),
            model_id,
            self.reserved_tokens,
        )
        return total

    def calculate_cost_estimate(
        self,
        usage: TokenUsage | int,
        model_id: str | None = None,
    ) -> float:
        """Dollar cost from an exact usage record, or from a raw token total plus model id.

        A raw total is split 80/20 between prompt and completion tokens.
        Unknown models cost 0.0.
        """

        if isinstance(usage, TokenUsage):
            model = get_model_by_id(usage.model)
            if model is None:
                return 0.0
            prompt_tokens = usage.prompt_tokens
            completion_tokens = usage.completion_tokens
        else:
            if not model_id:
                return 0.0
            model = get_model_by_id(model_id)
            if model is None:
                return 0.0
            prompt_tokens = floor(usage * PROMPT_TOKEN_SHARE)
            completion_tokens = floor(usage * COMPLETION_TOKEN_SHARE)

        input_cost = (prompt_tokens / 1_000_000) * model.input_price_per_million
        output_cost = (completion_tokens / 1_000_000) * model.output_price_per_million
        return input_cost + output_cost

    def calculate_token_estimation(self, sessions: list[Session], model_id: str) -> TokenEstimation:
        estimated_tokens = self.estimate_token_usage(sessions, model_id)
        max_sessions = self.calculate_max_sessions_per_call(model_id)
        return TokenEstimation(
            estimated_tokens=estimated_tokens,
            recommended_batch_size=max(1, min(len(sessions), max_sessions)),
            requires_splitting=len(sessions) > max_sessions,
            cost_estimate=self.calculate_cost_estimate(estimated_tokens, model_id),
        )

    def can_process_in_single_call(self, sessions: list[Session], model_id: str) -> bool:
        return len(sessions) <= self.calculate_max_sessions_per_call(model_id)

    def get_optimal_batch_config(self, model_id: str) -> BatchConfig:
        """Recommend fewer streams for models with larger context windows."""

        model = get_model_by_id(model_id)
        recommended_stream_count = 8
        if model is not None and model.context_window >= 1_000_000:
            recommended_stream_count = 3
        elif model is not None and model.context_window >= 128_000:
            recommended_stream_count = 4

        return BatchConfig(
            max_sessions_per_call=self.calculate_max_sessions_per_call(model_id),
            context_window=(
                model.context_window if model is not None else UNKNOWN_MODEL_CONTEXT_WINDOW
            ),
            recommended_stream_count=recommended_stream_count,
        )
