"""Single-stream batch processing with validation, retry and fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from session_classifier.pipeline.classification import SessionAnalyzer
from session_classifier.pipeline.token_budget import (
    TokenBudgetEstimator,
    split_sessions_into_batches,
)
from session_classifier.pipeline.validation import (
    create_fallback_results,
    merge_retry_results,
    should_retry,
    validate_batch_response,
    validation_for_failed_call,
)
from session_classifier.schemas import (
    AnalysisMetadata,
    ExistingClassifications,
    Session,
    SessionWithFacts,
    StreamConfig,
    StreamResult,
    TokenUsage,
    ValidationResult,
)

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1.0

StreamProgressCallback = Callable[[int, int, int, int], None]
"""Called with (stream_id, sessions_processed, sessions_total, tokens_used_so_far)."""

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class _BatchOutcome:
    processed_sessions: list[SessionWithFacts] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    validation_results: list[ValidationResult] = field(default_factory=list)
    retry_attempts: int = 0


def retry_delay_seconds(attempt: int, base_delay: float = RETRY_BASE_DELAY_SECONDS) -> float:
    """Backoff before retry `attempt` (1-based); the first retry is immediate."""

    if attempt <= 1:
        return 0.0
    return base_delay * (2 ** (attempt - 1))


def extract_new_classifications(
    processed_sessions: list[SessionWithFacts],
    base: ExistingClassifications,
) -> ExistingClassifications:
    """Labels used by real (non-fallback) results that the base set does not have yet."""

    new = ExistingClassifications()
    for session in processed_sessions:
        if session.analysis_metadata.is_fallback:
            continue
        facts = session.facts
        if facts.general_intent and facts.general_intent not in base.general_intent:
            new.general_intent.add(facts.general_intent)
        if facts.transfer_reason and facts.transfer_reason not in base.transfer_reason:
            new.transfer_reason.add(facts.transfer_reason)
        if facts.drop_off_location and facts.drop_off_location not in base.drop_off_location:
            new.drop_off_location.add(facts.drop_off_location)
    return new


class StreamProcessor:
    """Drive one logical worker over its assigned sessions.

    Batches inside a stream run strictly in order. Each batch is validated,
    re-dispatched for still-missing sessions with exponential backoff, and
    topped up with fallback results when retries run out. `process_stream`
    never raises.
    """

    def __init__(
        self,
        analyzer: SessionAnalyzer,
        token_estimator: TokenBudgetEstimator | None = None,
        *,
        base_delay_seconds: float = RETRY_BASE_DELAY_SECONDS,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._analyzer = analyzer
        self._token_estimator = token_estimator or TokenBudgetEstimator()
        self._base_delay_seconds = base_delay_seconds
        self._sleep = sleep

    async def process_stream(
        self,
        stream_config: StreamConfig,
        progress_callback: StreamProgressCallback | None = None,
    ) -> StreamResult:
        started = time.perf_counter()
        stream_id = stream_config.stream_id
        sessions = stream_config.sessions
        total = len(sessions)

        if progress_callback is not None:
            progress_callback(stream_id, 0, total, 0)

        try:
            batches = self._plan_batches(stream_config)
            logger.info(
                "Stream %d: %d sessions in %d batch(es)",
                stream_id,
                total,
                len(batches),
            )

            processed: list[SessionWithFacts] = []
            token_usage = TokenUsage.empty(stream_config.model_id)
            validation_results: list[ValidationResult] = []
            retry_attempts = 0

            for batch_number, batch in enumerate(batches, start=1):
                outcome = await self._process_batch(stream_config, batch, batch_number)
                processed.extend(outcome.processed_sessions)
                token_usage = token_usage.add(outcome.token_usage)
                validation_results.extend(outcome.validation_results)
                retry_attempts += outcome.retry_attempts
                if progress_callback is not None:
                    progress_callback(stream_id, len(processed), total, token_usage.total_tokens)

            new_classifications = extract_new_classifications(
                processed,
                stream_config.base_classifications,
            )
        except Exception as exc:
            logger.exception("Stream %d failed; substituting fallback results", stream_id)
            return self._failed_stream_result(stream_config, exc, started)

        if progress_callback is not None:
            progress_callback(stream_id, total, total, token_usage.total_tokens)

        return StreamResult(
            stream_id=stream_id,
            processed_sessions=processed,
            new_classifications=new_classifications,
            token_usage=token_usage,
            validation_results=validation_results,
            retry_attempts=retry_attempts,
            processing_time_ms=_elapsed_ms(started),
        )

    def _plan_batches(self, stream_config: StreamConfig) -> list[list[Session]]:
        sessions = stream_config.sessions
        if not sessions:
            return []
        estimation = self._token_estimator.calculate_token_estimation(
            sessions,
            stream_config.model_id,
        )
        batch_size = estimation.recommended_batch_size
        if stream_config.max_sessions_per_call > 0:
            batch_size = min(batch_size, stream_config.max_sessions_per_call)
        if len(sessions) <= batch_size:
            return [sessions]
        return split_sessions_into_batches(sessions, batch_size)

    async def _dispatch(
        self,
        stream_config: StreamConfig,
        sessions: list[Session],
        batch_number: int,
    ) -> tuple[list[SessionWithFacts], TokenUsage, ValidationResult]:
        """Run one LLM call off the event loop and validate its answer."""

        started = time.perf_counter()
        try:
            response = await asyncio.to_thread(
                self._analyzer.analyze_batch,
                sessions,
                stream_config.base_classifications,
                stream_config.api_key,
                stream_config.model_id,
                stream_config.additional_context,
            )
        except Exception as exc:
            logger.warning(
                "Stream %d batch %d: LLM call failed for %d sessions: %s",
                stream_config.stream_id,
                batch_number,
                len(sessions),
                exc,
            )
            return (
                [],
                TokenUsage.empty(stream_config.model_id),
                validation_for_failed_call(sessions, exc),
            )

        validation = validate_batch_response(sessions, response)
        usage = response.token_usage()
        sessions_by_id = {session.session_id: session for session in sessions}
        per_session_tokens = usage.total_tokens // max(1, len(validation.classifications))
        elapsed_ms = _elapsed_ms(started)
        converted = [
            SessionWithFacts.from_session(
                sessions_by_id[item.session_id],
                facts=item.to_facts(),
                analysis_metadata=AnalysisMetadata(
                    tokens_used=per_session_tokens,
                    processing_time_ms=elapsed_ms,
                    batch_number=batch_number,
                    model=response.model or stream_config.model_id,
                ),
            )
            for item in validation.classifications
        ]
        return converted, usage, validation

    async def _process_batch(
        self,
        stream_config: StreamConfig,
        batch: list[Session],
        batch_number: int,
    ) -> _BatchOutcome:
        stream_id = stream_config.stream_id
        max_retries = stream_config.retry_attempts
        outcome = _BatchOutcome(token_usage=TokenUsage.empty(stream_config.model_id))

        processed, usage, validation = await self._dispatch(stream_config, batch, batch_number)
        outcome.processed_sessions = processed
        outcome.token_usage = outcome.token_usage.add(usage)
        outcome.validation_results.append(validation)

        while validation.missing_sessions:
            decision = should_retry(validation, max_retries - outcome.retry_attempts)
            if not decision.should_retry:
                break
            outcome.retry_attempts += 1
            delay = retry_delay_seconds(outcome.retry_attempts, self._base_delay_seconds)
            logger.info(
                "Stream %d batch %d: retry %d/%d for %d sessions (%s)",
                stream_id,
                batch_number,
                outcome.retry_attempts,
                max_retries,
                validation.missing_count,
                decision.reason,
            )
            if delay > 0:
                await self._sleep(delay)

            retried, usage, validation = await self._dispatch(
                stream_config,
                validation.missing_sessions,
                batch_number,
            )
            outcome.processed_sessions = merge_retry_results(outcome.processed_sessions, retried)
            outcome.token_usage = outcome.token_usage.add(usage)
            outcome.validation_results.append(validation)

        if validation.missing_sessions:
            logger.warning(
                "Stream %d batch %d: %d sessions still missing after %d retries; using fallbacks",
                stream_id,
                batch_number,
                validation.missing_count,
                outcome.retry_attempts,
            )
            fallbacks = create_fallback_results(
                validation.missing_sessions,
                f"Failed after {outcome.retry_attempts} retry attempts",
                stream_config.model_id,
            )
            outcome.processed_sessions = merge_retry_results(outcome.processed_sessions, fallbacks)

        return outcome

    def _failed_stream_result(
        self,
        stream_config: StreamConfig,
        error: BaseException,
        started: float,
    ) -> StreamResult:
        message = f"Stream processing failed: {error}"
        return StreamResult(
            stream_id=stream_config.stream_id,
            processed_sessions=create_fallback_results(
                stream_config.sessions,
                message,
                stream_config.model_id,
            ),
            new_classifications=ExistingClassifications(),
            token_usage=TokenUsage.empty(stream_config.model_id),
            validation_results=[validation_for_failed_call(stream_config.sessions, message)],
            retry_attempts=stream_config.retry_attempts,
            processing_time_ms=_elapsed_ms(started),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
