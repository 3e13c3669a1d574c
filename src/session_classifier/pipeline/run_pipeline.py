"""End-to-end run service: sample, discover, classify in parallel, consolidate, summarize."""

from __future__ import annotations

import asyncio
import logging
import random
import secrets
import threading
import time
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from session_classifier.config import Settings
from session_classifier.io import ensure_directory, save_json, save_jsonl
from session_classifier.models.openai_client import LLMClientFactory, OpenAIClientFactory
from session_classifier.models.session_source import SessionSource
from session_classifier.pipeline.classification import SessionBatchAnalyzer
from session_classifier.pipeline.conflict_resolution import ConflictResolver
from session_classifier.pipeline.discovery import (
    DiscoveryStats,
    StrategicDiscovery,
    get_adaptive_discovery_config,
)
from session_classifier.pipeline.orchestrator import ParallelOrchestrator
from session_classifier.pipeline.sampling import SamplingConfig, SessionSampler
from session_classifier.pipeline.stream_processing import StreamProcessor
from session_classifier.pipeline.token_budget import TokenBudgetEstimator
from session_classifier.schemas import (
    ExistingClassifications,
    ProcessingStats,
    SessionWithFacts,
    TimeWindow,
    TokenUsage,
)

logger = logging.getLogger(__name__)

_NANOID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"
TOP_LABEL_LIMIT = 10

AnalysisProgressCallback = Callable[[str, str], None]
"""Called with (phase, message)."""


def generate_run_id(size: int = 12) -> str:
    """Generate a nanoid-style run identifier."""

    return "".join(secrets.choice(_NANOID_ALPHABET) for _ in range(size))


class LabelCount(BaseModel):
    label: str
    count: int
    percentage: float


class ClassificationStats(BaseModel):
    """Aggregate view of one run's classified sessions."""

    total_sessions: int = 0
    transfer_count: int = 0
    contained_count: int = 0
    transfer_rate: float = 0.0
    containment_rate: float = 0.0
    fallback_count: int = 0
    top_intents: list[LabelCount] = Field(default_factory=list)
    top_transfer_reasons: list[LabelCount] = Field(default_factory=list)
    top_drop_off_locations: list[LabelCount] = Field(default_factory=list)


class AnalysisRunConfig(BaseModel):
    """One analysis request for a single tenant (bot)."""

    start_date: str
    start_time: str
    session_count: int = Field(ge=1)
    model_id: str = "gpt-4o-mini"
    api_key: str = ""
    additional_context: str | None = None


class AnalysisRunResult(BaseModel):
    sessions: list[SessionWithFacts] = Field(default_factory=list)
    classifications: ExistingClassifications = Field(default_factory=ExistingClassifications)
    time_windows: list[TimeWindow] = Field(default_factory=list)
    total_found: int = 0
    sampled_count: int = 0
    discovery_stats: dict | None = None
    processing_stats: ProcessingStats = Field(default_factory=ProcessingStats)
    conflict_resolution: dict | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    stats: ClassificationStats = Field(default_factory=ClassificationStats)
    model_id: str = ""
    started_at_utc: datetime = Field(default_factory=lambda: datetime.now(UTC))
    elapsed_seconds: float = 0.0


def _top_labels(counter: Counter[str], denominator: int) -> list[LabelCount]:
    return [
        LabelCount(
            label=label,
            count=count,
            percentage=round(count / denominator * 100, 1) if denominator else 0.0,
        )
        for label, count in counter.most_common(TOP_LABEL_LIMIT)
    ]


def summarize_results(sessions: list[SessionWithFacts]) -> ClassificationStats:
    """Outcome rates and the most frequent labels.

    Transfer reasons and drop-off locations are counted over transferred
    sessions only, so their percentages are shares of transfers.
    """

    total = len(sessions)
    transfers = [s for s in sessions if s.facts.session_outcome == "Transfer"]
    contained = total - len(transfers)
    intents = Counter(s.facts.general_intent for s in sessions if s.facts.general_intent)
    reasons = Counter(s.facts.transfer_reason for s in transfers if s.facts.transfer_reason)
    locations = Counter(
        s.facts.drop_off_location for s in transfers if s.facts.drop_off_location
    )
    return ClassificationStats(
        total_sessions=total,
        transfer_count=len(transfers),
        contained_count=contained,
        transfer_rate=round(len(transfers) / total * 100, 1) if total else 0.0,
        containment_rate=round(contained / total * 100, 1) if total else 0.0,
        fallback_count=sum(1 for s in sessions if s.analysis_metadata.is_fallback),
        top_intents=_top_labels(intents, total),
        top_transfer_reasons=_top_labels(reasons, len(transfers)),
        top_drop_off_locations=_top_labels(locations, len(transfers)),
    )


def save_run_artifacts(run_root: str | Path, result: AnalysisRunResult) -> dict[str, Path]:
    """Write sessions, label sets, summary and manifest for one finished run."""

    root = ensure_directory(run_root)
    sessions_path = save_jsonl(root / "sessions.jsonl", result.sessions)
    classifications_path = save_json(
        root / "classifications.json",
        {
            "general_intent": sorted(result.classifications.general_intent),
            "transfer_reason": sorted(result.classifications.transfer_reason),
            "drop_off_location": sorted(result.classifications.drop_off_location),
        },
    )
    summary_path = save_json(
        root / "run_summary.json",
        result.model_dump(mode="json", exclude={"sessions", "classifications"}),
    )
    output_files = {
        "sessions_jsonl": sessions_path,
        "classifications_json": classifications_path,
        "run_summary_json": summary_path,
    }
    save_json(
        root / "run_manifest.json",
        {
            "run_id": root.name,
            "created_at_utc": datetime.now(UTC).isoformat(),
            "model_id": result.model_id,
            "session_count": len(result.sessions),
            "output_files": {key: path.as_posix() for key, path in output_files.items()},
        },
    )
    return output_files


class SessionClassificationService:
    """Classification pipeline for one tenant, built from injected collaborators."""

    def __init__(
        self,
        sampler: SessionSampler,
        orchestrator: ParallelOrchestrator,
        *,
        discovery: StrategicDiscovery | None = None,
        conflict_resolver: ConflictResolver | None = None,
        discovery_target_percentage: int = 15,
        discovery_batch_size: int = 5,
        retry_attempts: int = 3,
        sync_frequency: str = "after_each_round",
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self._sampler = sampler
        self._orchestrator = orchestrator
        self._discovery = discovery
        self._conflict_resolver = conflict_resolver
        self._discovery_target_percentage = discovery_target_percentage
        self._discovery_batch_size = discovery_batch_size
        self._retry_attempts = retry_attempts
        self._sync_frequency = sync_frequency
        self._on_close = on_close
        self.closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        source: SessionSource,
        *,
        client_factory: LLMClientFactory | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> SessionClassificationService:
        """Wire the default collaborators from settings."""

        client_factory = client_factory or OpenAIClientFactory(
            base_url=settings.resolved_openai_base_url() or None,
            temperature=settings.openai_temperature,
            max_retries=settings.client_max_retries,
            backoff_seconds=settings.client_backoff_seconds,
        )
        rng = random.Random(settings.random_seed)
        estimator = TokenBudgetEstimator()
        stream_processor = StreamProcessor(
            SessionBatchAnalyzer(client_factory),
            estimator,
            base_delay_seconds=settings.retry_base_delay_seconds,
        )
        conflict_resolver = (
            ConflictResolver(client_factory, default_model_id=settings.resolved_openai_model())
            if settings.conflict_resolution_enabled
            else None
        )
        return cls(
            SessionSampler(
                source,
                rng=rng,
                min_session_count=settings.min_session_count,
                min_messages=settings.min_messages_per_session,
                min_content_length=settings.min_content_length,
                fetch_limit=settings.session_fetch_limit,
                message_buffer_hours=settings.message_fetch_buffer_hours,
            ),
            ParallelOrchestrator(
                stream_processor,
                estimator,
                conflict_resolver,
                conflict_resolution_min_labels=settings.conflict_resolution_min_labels,
                default_stream_count=settings.parallel_stream_count,
                default_sessions_per_stream=settings.sessions_per_stream,
            ),
            discovery=(
                StrategicDiscovery(
                    stream_processor,
                    rng=rng,
                    retry_attempts=settings.retry_attempts,
                )
                if settings.discovery_enabled
                else None
            ),
            conflict_resolver=conflict_resolver,
            discovery_target_percentage=settings.discovery_target_percentage,
            discovery_batch_size=settings.discovery_batch_size,
            retry_attempts=settings.retry_attempts,
            sync_frequency=settings.sync_frequency,
            on_close=on_close,
        )

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close()

    async def run_analysis(
        self,
        config: AnalysisRunConfig,
        progress_callback: AnalysisProgressCallback | None = None,
    ) -> AnalysisRunResult:
        """Run the full pipeline. Only `InsufficientSessionsError` aborts a run."""

        started = time.perf_counter()
        started_at = datetime.now(UTC)

        def report(phase: str, message: str) -> None:
            logger.info("[%s] %s", phase, message)
            if progress_callback is not None:
                progress_callback(phase, message)

        report("sampling", f"Sampling {config.session_count} sessions")
        sampling = await asyncio.to_thread(
            self._sampler.sample_sessions,
            SamplingConfig(
                start_date=config.start_date,
                start_time=config.start_time,
                session_count=config.session_count,
            ),
        )
        sessions = sampling.sessions
        report(
            "sampling",
            f"Sampled {len(sessions)} sessions from a pool of {sampling.total_found}",
        )

        token_usage = TokenUsage.empty(config.model_id)
        base = ExistingClassifications()
        classified: list[SessionWithFacts] = []
        remaining = sessions
        discovery_stats: DiscoveryStats | None = None

        if self._discovery is not None and sessions:
            discovery_config = get_adaptive_discovery_config(
                len(sessions),
                self._discovery_target_percentage,
                self._discovery_batch_size,
            )
            report("discovery", "Running strategic discovery")
            discovery = await self._discovery.run_discovery(
                sessions,
                discovery_config,
                api_key=config.api_key,
                model_id=config.model_id,
                additional_context=config.additional_context,
            )
            base = discovery.base_classifications
            classified.extend(discovery.processed_sessions)
            remaining = discovery.remaining_sessions
            token_usage = token_usage.add(discovery.token_usage)
            discovery_stats = discovery.stats
            report(
                "discovery",
                f"Discovered {base.total_count()} labels from "
                f"{discovery.stats.total_processed} sessions",
            )

        parallel_config = self._orchestrator.get_optimal_configuration(
            len(remaining),
            config.model_id,
        ).model_copy(
            update={
                "retry_attempts": self._retry_attempts,
                "sync_frequency": self._sync_frequency,
            }
        )
        report("parallel", f"Classifying {len(remaining)} sessions in parallel")
        parallel = await self._orchestrator.process_in_parallel(
            remaining,
            base,
            parallel_config,
            api_key=config.api_key,
            model_id=config.model_id,
        )
        classified.extend(parallel.processed_sessions)
        token_usage = token_usage.add(parallel.total_token_usage)
        classifications = parallel.final_classifications.clone()

        conflict_summary: dict | None = None
        if self._conflict_resolver is not None and classified:
            report("conflict_resolution", "Consolidating similar labels")
            try:
                resolution = await self._conflict_resolver.resolve_conflicts(
                    classified,
                    config.api_key,
                    config.model_id,
                )
            except Exception as exc:
                logger.warning("Final conflict resolution failed; keeping raw labels: %s", exc)
            else:
                classified = resolution.resolved_sessions
                token_usage = token_usage.add(resolution.token_usage)
                canonical = resolution.resolutions.canonical_labels()
                classifications.general_intent |= canonical.general_intent
                classifications.transfer_reason |= canonical.transfer_reason
                classifications.drop_off_location |= canonical.drop_off_location
                conflict_summary = {
                    "conflicts_found": resolution.stats.conflicts_found,
                    "conflicts_resolved": resolution.stats.conflicts_resolved,
                    "canonical_mappings": resolution.stats.canonical_mappings,
                }

        stats = summarize_results(classified)
        report(
            "completed",
            f"Classified {stats.total_sessions} sessions "
            f"({stats.transfer_rate}% transfer, {stats.fallback_count} fallbacks)",
        )
        return AnalysisRunResult(
            sessions=classified,
            classifications=classifications,
            time_windows=sampling.time_windows,
            total_found=sampling.total_found,
            sampled_count=len(sessions),
            discovery_stats=(
                {
                    "total_processed": discovery_stats.total_processed,
                    "unique_intents": discovery_stats.unique_intents,
                    "unique_reasons": discovery_stats.unique_reasons,
                    "unique_locations": discovery_stats.unique_locations,
                    "discovery_rate": discovery_stats.discovery_rate,
                }
                if discovery_stats is not None
                else None
            ),
            processing_stats=parallel.processing_stats,
            conflict_resolution=conflict_summary,
            token_usage=token_usage,
            stats=stats,
            model_id=config.model_id,
            started_at_utc=started_at,
            elapsed_seconds=round(time.perf_counter() - started, 3),
        )

    def run_analysis_sync(
        self,
        config: AnalysisRunConfig,
        progress_callback: AnalysisProgressCallback | None = None,
    ) -> AnalysisRunResult:
        return asyncio.run(self.run_analysis(config, progress_callback))


class ServiceRegistry:
    """Per-tenant service instances with explicit lifetime; owned by the caller."""

    def __init__(self) -> None:
        self._services: dict[str, SessionClassificationService] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self,
        tenant_id: str,
        factory: Callable[[], SessionClassificationService],
    ) -> SessionClassificationService:
        with self._lock:
            service = self._services.get(tenant_id)
            if service is None or service.closed:
                service = factory()
                self._services[tenant_id] = service
            return service

    def get(self, tenant_id: str) -> SessionClassificationService | None:
        with self._lock:
            return self._services.get(tenant_id)

    def close(self, tenant_id: str) -> bool:
        with self._lock:
            service = self._services.pop(tenant_id, None)
        if service is None:
            return False
        service.close()
        return True

    def close_all(self) -> None:
        with self._lock:
            services = list(self._services.values())
            self._services.clear()
        for service in services:
            service.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._services)
