"""Multi-round parallel orchestration across stream workers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from math import ceil

from session_classifier.pipeline.conflict_resolution import ConflictResolver
from session_classifier.pipeline.stream_processing import StreamProcessor
from session_classifier.pipeline.token_budget import TokenBudgetEstimator
from session_classifier.schemas import (
    ExistingClassifications,
    ParallelConfig,
    ParallelProcessingResult,
    ProcessingStats,
    Session,
    SessionStream,
    SessionWithFacts,
    StreamConfig,
    StreamProgress,
    StreamResult,
    TokenUsage,
)

logger = logging.getLogger(__name__)

DEFAULT_STREAM_COUNT = 8
DEFAULT_SESSIONS_PER_STREAM = 4

ParallelProgressCallback = Callable[[str, int, int, list[StreamProgress]], None]
"""Called with (phase, stream_count, sessions_processed, per-stream progress)."""


def distribute_sessions_across_streams(
    sessions: list[Session],
    stream_count: int,
    sessions_per_stream: int,
) -> list[SessionStream]:
    """Assign up to `stream_count` contiguous chunks of `sessions_per_stream` to streams 1..N.

    Sessions beyond `stream_count * sessions_per_stream` are left for later rounds.
    Streams never receive empty assignments.
    """

    if stream_count < 1 or sessions_per_stream < 1:
        raise ValueError("stream_count and sessions_per_stream must both be positive.")

    streams: list[SessionStream] = []
    for index in range(stream_count):
        chunk = sessions[index * sessions_per_stream : (index + 1) * sessions_per_stream]
        if not chunk:
            break
        streams.append(SessionStream(stream_id=index + 1, sessions=chunk))
    return streams


def synchronize_classifications(
    stream_results: list[StreamResult],
    base: ExistingClassifications,
) -> tuple[ExistingClassifications, int]:
    """Union every stream's new labels into a copy of `base`.

    Returns the merged set and how many labels were genuinely new.
    """

    merged = base.clone()
    before = merged.total_count()
    for result in stream_results:
        merged.general_intent |= result.new_classifications.general_intent
        merged.transfer_reason |= result.new_classifications.transfer_reason
        merged.drop_off_location |= result.new_classifications.drop_off_location
    return merged, merged.total_count() - before


def get_optimal_configuration(
    session_count: int,
    model_id: str,
    token_estimator: TokenBudgetEstimator | None = None,
    *,
    stream_count: int = DEFAULT_STREAM_COUNT,
    sessions_per_stream: int = DEFAULT_SESSIONS_PER_STREAM,
) -> ParallelConfig:
    """Derive stream count and per-stream size without over-provisioning small jobs.

    `stream_count` and `sessions_per_stream` are the layout for large jobs; runs
    smaller than half a full round are spread over fewer streams.
    """

    batch_config = (token_estimator or TokenBudgetEstimator()).get_optimal_batch_config(model_id)

    if session_count < stream_count * sessions_per_stream // 2:
        stream_count = max(1, ceil(session_count / sessions_per_stream))
        sessions_per_stream = max(1, ceil(session_count / stream_count))

    if sessions_per_stream > batch_config.max_sessions_per_call:
        sessions_per_stream = batch_config.max_sessions_per_call
        stream_count = max(1, ceil(session_count / sessions_per_stream))

    return ParallelConfig(
        stream_count=stream_count,
        sessions_per_stream=sessions_per_stream,
        max_sessions_per_llm_call=batch_config.max_sessions_per_call,
    )


class ParallelOrchestrator:
    """Run stream workers in concurrent rounds and merge what they learn."""

    def __init__(
        self,
        stream_processor: StreamProcessor,
        token_estimator: TokenBudgetEstimator | None = None,
        conflict_resolver: ConflictResolver | None = None,
        *,
        conflict_resolution_min_labels: int = 3,
        default_stream_count: int = DEFAULT_STREAM_COUNT,
        default_sessions_per_stream: int = DEFAULT_SESSIONS_PER_STREAM,
    ) -> None:
        self._stream_processor = stream_processor
        self._token_estimator = token_estimator or TokenBudgetEstimator()
        self._conflict_resolver = conflict_resolver
        self._conflict_resolution_min_labels = conflict_resolution_min_labels
        self._default_stream_count = default_stream_count
        self._default_sessions_per_stream = default_sessions_per_stream

    def get_optimal_configuration(self, session_count: int, model_id: str) -> ParallelConfig:
        return get_optimal_configuration(
            session_count,
            model_id,
            self._token_estimator,
            stream_count=self._default_stream_count,
            sessions_per_stream=self._default_sessions_per_stream,
        )

    def _resolve_stream_count(
        self,
        session_count: int,
        parallel_config: ParallelConfig,
        model_id: str,
    ) -> int:
        if parallel_config.stream_count is not None:
            return parallel_config.stream_count
        recommended = self._token_estimator.get_optimal_batch_config(model_id)
        needed = ceil(session_count / parallel_config.sessions_per_stream)
        return max(1, min(recommended.recommended_stream_count, needed))

    async def _run_round(
        self,
        streams: list[SessionStream],
        classifications: ExistingClassifications,
        parallel_config: ParallelConfig,
        api_key: str,
        model_id: str,
        processed_before: int,
        progress_callback: ParallelProgressCallback | None,
    ) -> tuple[list[StreamResult], int]:
        progress = {
            stream.stream_id: StreamProgress(
                stream_id=stream.stream_id,
                sessions_assigned=len(stream.sessions),
                status="processing",
            )
            for stream in streams
        }

        def notify(phase: str) -> None:
            if progress_callback is None:
                return
            done = processed_before + sum(p.sessions_processed for p in progress.values())
            progress_callback(phase, len(streams), done, list(progress.values()))

        def on_stream_progress(stream_id: int, processed: int, total: int, tokens: int) -> None:
            entry = progress[stream_id]
            entry.sessions_processed = processed
            entry.tokens_used = tokens
            entry.status = "completed" if processed >= total else "processing"
            notify("processing")

        tasks = [
            asyncio.create_task(
                self._stream_processor.process_stream(
                    StreamConfig(
                        stream_id=stream.stream_id,
                        sessions=stream.sessions,
                        base_classifications=classifications.clone(),
                        model_id=model_id,
                        api_key=api_key,
                        max_sessions_per_call=parallel_config.max_sessions_per_llm_call,
                        retry_attempts=parallel_config.retry_attempts,
                    ),
                    on_stream_progress,
                )
            )
            for stream in streams
        ]
        notify("round_started")
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        results: list[StreamResult] = []
        failed = 0
        for stream, outcome in zip(streams, outcomes):
            if isinstance(outcome, Exception):
                failed += 1
                progress[stream.stream_id].status = "error"
                logger.error(
                    "Stream %d failed and is excluded from results: %s",
                    stream.stream_id,
                    outcome,
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
        notify("round_completed")
        return results, failed

    async def _resolve_between_rounds(
        self,
        resolver: ConflictResolver,
        processed: list[SessionWithFacts],
        classifications: ExistingClassifications,
        api_key: str,
        model_id: str,
    ) -> tuple[list[SessionWithFacts], ExistingClassifications, TokenUsage | None]:
        try:
            resolution = await resolver.resolve_conflicts(
                processed,
                api_key,
                model_id,
            )
        except Exception as exc:
            logger.warning("Inter-round conflict resolution failed; continuing: %s", exc)
            return processed, classifications, None

        updated = classifications.clone()
        canonical = resolution.resolutions.canonical_labels()
        updated.general_intent |= canonical.general_intent
        updated.transfer_reason |= canonical.transfer_reason
        updated.drop_off_location |= canonical.drop_off_location
        logger.info(
            "Inter-round conflict resolution: %d groups, %d labels remapped",
            resolution.stats.conflicts_found,
            resolution.stats.conflicts_resolved,
        )
        return resolution.resolved_sessions, updated, resolution.token_usage

    async def process_in_parallel(
        self,
        sessions: list[Session],
        base_classifications: ExistingClassifications,
        parallel_config: ParallelConfig | None = None,
        api_key: str = "",
        model_id: str = "gpt-4o-mini",
        progress_callback: ParallelProgressCallback | None = None,
    ) -> ParallelProcessingResult:
        """Classify `sessions` in rounds of concurrent streams.

        Labels discovered by a round are merged into the authoritative set
        before the next round starts (or once at the end, for
        `sync_frequency="at_end"`). A stream that raises is logged and left
        out; the run carries on with what the other streams produced.
        """

        parallel_config = parallel_config or ParallelConfig()
        classifications = base_classifications.clone()
        result = ParallelProcessingResult(
            final_classifications=classifications.clone(),
            total_token_usage=TokenUsage.empty(model_id),
        )
        if not sessions:
            return result

        stream_count = self._resolve_stream_count(len(sessions), parallel_config, model_id)
        sessions_per_stream = parallel_config.sessions_per_stream
        round_capacity = stream_count * sessions_per_stream
        sync_each_round = parallel_config.sync_frequency == "after_each_round"

        processed: list[SessionWithFacts] = []
        all_results: list[StreamResult] = []
        token_usage = TokenUsage.empty(model_id)
        stats = ProcessingStats()
        utilizations: list[float] = []
        pending_sync: list[StreamResult] = []

        logger.info(
            "Processing %d sessions with %d streams x %d sessions per round",
            len(sessions),
            stream_count,
            sessions_per_stream,
        )

        offset = 0
        while offset < len(sessions):
            remaining = sessions[offset:]
            streams = distribute_sessions_across_streams(
                remaining,
                stream_count,
                sessions_per_stream,
            )
            offset += min(round_capacity, len(remaining))
            stats.total_rounds += 1

            logger.info(
                "Round %d: %d streams, %d sessions",
                stats.total_rounds,
                len(streams),
                sum(len(stream.sessions) for stream in streams),
            )

            round_results, failed = await self._run_round(
                streams,
                classifications,
                parallel_config,
                api_key,
                model_id,
                len(processed),
                progress_callback,
            )
            stats.failed_streams += failed
            utilizations.append(
                sum(1 for r in round_results if r.processed_sessions) / len(streams)
            )

            for stream_result in round_results:
                processed.extend(stream_result.processed_sessions)
                token_usage = token_usage.add(stream_result.token_usage)
            all_results.extend(round_results)

            if sync_each_round:
                classifications, new_count = synchronize_classifications(
                    round_results,
                    classifications,
                )
                stats.sync_points += 1
                logger.info(
                    "Round %d merged %d new labels (%d total)",
                    stats.total_rounds,
                    new_count,
                    classifications.total_count(),
                )
                if (
                    self._conflict_resolver is not None
                    and new_count > 0
                    and classifications.total_count() >= self._conflict_resolution_min_labels
                ):
                    processed, classifications, resolver_usage = (
                        await self._resolve_between_rounds(
                            self._conflict_resolver,
                            processed,
                            classifications,
                            api_key,
                            model_id,
                        )
                    )
                    stats.conflict_resolution_runs += 1
                    if resolver_usage is not None:
                        token_usage = token_usage.add(resolver_usage)
            else:
                pending_sync.extend(round_results)

        if not sync_each_round:
            classifications, new_count = synchronize_classifications(
                pending_sync,
                classifications,
            )
            stats.sync_points += 1
            logger.info("Merged %d new labels at end of run", new_count)

        stats.average_stream_utilization = (
            round(sum(utilizations) / len(utilizations), 2) if utilizations else 0.0
        )

        if progress_callback is not None:
            progress_callback("completed", stream_count, len(processed), [])

        return ParallelProcessingResult(
            processed_sessions=processed,
            final_classifications=classifications,
            stream_results=all_results,
            total_token_usage=token_usage,
            processing_stats=stats,
        )
