"""Strategic discovery: seed the label set from a small, diverse subset of sessions."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from math import ceil, floor

from session_classifier.pipeline.sampling import random_sample
from session_classifier.pipeline.stream_processing import StreamProcessor
from session_classifier.schemas import (
    ExistingClassifications,
    Session,
    SessionWithFacts,
    StreamConfig,
    TokenUsage,
)

logger = logging.getLogger(__name__)

SHORT_SESSION_CHARS = 500
MEDIUM_SESSION_CHARS = 2000
TARGET_DISCOVERIES = 15
DISCOVERY_STREAM_ID = 0

DiscoveryProgressCallback = Callable[[str, int, int, int], None]
"""Called with (current_step, sessions_processed, sessions_total, labels_discovered)."""


@dataclass(frozen=True)
class DiscoveryConfig:
    target_percentage: int = 15
    min_sessions: int = 50
    max_sessions: int = 150
    batch_size: int = 5


@dataclass(frozen=True)
class DiscoveryStats:
    total_processed: int
    unique_intents: int
    unique_reasons: int
    unique_locations: int
    discovery_rate: float


@dataclass
class DiscoveryResult:
    base_classifications: ExistingClassifications
    processed_sessions: list[SessionWithFacts]
    remaining_sessions: list[Session]
    stats: DiscoveryStats
    token_usage: TokenUsage


@dataclass(frozen=True)
class DiscoveryQuality:
    is_valid: bool
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def calculate_discovery_size(total_sessions: int, config: DiscoveryConfig) -> int:
    target = ceil(total_sessions * config.target_percentage / 100)
    size = min(max(target, config.min_sessions), config.max_sessions)
    return min(size, total_sessions)


def get_adaptive_discovery_config(
    total_sessions: int,
    target_percentage: int = 15,
    batch_size: int = 5,
) -> DiscoveryConfig:
    """Scale the discovery bounds with the run size so small runs are not all discovery."""

    min_sessions = max(5, floor(total_sessions * 0.10))
    max_sessions = max(min_sessions, min(150, floor(total_sessions * 0.15)))
    return DiscoveryConfig(
        target_percentage=target_percentage,
        min_sessions=min_sessions,
        max_sessions=max_sessions,
        batch_size=batch_size,
    )


def group_sessions_by_diversity(sessions: list[Session]) -> dict[str, list[Session]]:
    """Bucket sessions by transcript length and by start-time third; empty buckets are dropped."""

    groups: dict[str, list[Session]] = {
        "short": [],
        "medium": [],
        "long": [],
        "early": [],
        "middle": [],
        "late": [],
    }
    ordered = sorted(
        sessions,
        key=lambda s: s.start_time.timestamp() if s.start_time else 0.0,
    )
    third = len(ordered) // 3
    for index, session in enumerate(ordered):
        length = session.content_length()
        if length < SHORT_SESSION_CHARS:
            groups["short"].append(session)
        elif length < MEDIUM_SESSION_CHARS:
            groups["medium"].append(session)
        else:
            groups["long"].append(session)

        if index < third:
            groups["early"].append(session)
        elif index < third * 2:
            groups["middle"].append(session)
        else:
            groups["late"].append(session)

    return {name: members for name, members in groups.items() if members}


def select_diverse_sessions(
    sessions: list[Session],
    target_count: int,
    rng: random.Random | None = None,
) -> list[Session]:
    """Sample evenly across diversity groups, top up at random, then shuffle."""

    rng = rng or random.Random()
    if len(sessions) <= target_count:
        return list(sessions)

    groups = group_sessions_by_diversity(sessions)
    per_group = ceil(target_count / len(groups)) if groups else 0
    selected: dict[str, Session] = {}
    for members in groups.values():
        for session in random_sample(members, per_group, rng):
            selected.setdefault(session.session_id, session)
        if len(selected) >= target_count:
            break

    if len(selected) < target_count:
        leftovers = [s for s in sessions if s.session_id not in selected]
        for session in random_sample(leftovers, target_count - len(selected), rng):
            selected[session.session_id] = session

    chosen = list(selected.values())
    rng.shuffle(chosen)
    return chosen[:target_count]


def validate_discovery_quality(result: DiscoveryResult) -> DiscoveryQuality:
    issues: list[str] = []
    recommendations: list[str] = []
    if result.stats.unique_intents < 3:
        issues.append("Too few general intents discovered")
        recommendations.append("Consider increasing discovery session count")
    if result.stats.discovery_rate < 0.3:
        issues.append("Low discovery rate - may indicate insufficient session diversity")
        recommendations.append("Review session selection strategy or increase sample size")
    if result.stats.total_processed < 20:
        issues.append("Very few sessions processed in discovery phase")
        recommendations.append("Increase minimum discovery session count")
    return DiscoveryQuality(is_valid=not issues, issues=issues, recommendations=recommendations)


class StrategicDiscovery:
    """Classify a diverse subset sequentially so labels build up batch by batch."""

    def __init__(
        self,
        stream_processor: StreamProcessor,
        *,
        rng: random.Random | None = None,
        retry_attempts: int = 3,
    ) -> None:
        self._stream_processor = stream_processor
        self._rng = rng or random.Random()
        self._retry_attempts = retry_attempts

    async def run_discovery(
        self,
        sessions: list[Session],
        config: DiscoveryConfig | None = None,
        api_key: str = "",
        model_id: str = "gpt-4o-mini",
        additional_context: str | None = None,
        progress_callback: DiscoveryProgressCallback | None = None,
    ) -> DiscoveryResult:
        config = config or DiscoveryConfig()
        size = calculate_discovery_size(len(sessions), config)
        if progress_callback is not None:
            progress_callback("Selecting diverse sessions for discovery...", 0, size, 0)

        selected = select_diverse_sessions(sessions, size, self._rng)
        logger.info("Discovery: %d of %d sessions selected", len(selected), len(sessions))

        classifications = ExistingClassifications()
        processed: list[SessionWithFacts] = []
        token_usage = TokenUsage.empty(model_id)
        batch_size = max(1, config.batch_size)
        total_batches = ceil(len(selected) / batch_size)

        for batch_number, start in enumerate(range(0, len(selected), batch_size), start=1):
            batch = selected[start : start + batch_size]
            if progress_callback is not None:
                progress_callback(
                    f"Processing discovery batch {batch_number}/{total_batches} "
                    f"({len(batch)} sessions)",
                    len(processed),
                    len(selected),
                    classifications.total_count(),
                )
            try:
                result = await self._stream_processor.process_stream(
                    StreamConfig(
                        stream_id=DISCOVERY_STREAM_ID,
                        sessions=batch,
                        base_classifications=classifications.clone(),
                        model_id=model_id,
                        api_key=api_key,
                        max_sessions_per_call=batch_size,
                        retry_attempts=self._retry_attempts,
                        additional_context=additional_context,
                    )
                )
            except Exception as exc:
                logger.error("Discovery batch %d failed: %s", batch_number, exc)
                continue

            processed.extend(result.processed_sessions)
            token_usage = token_usage.add(result.token_usage)
            classifications.general_intent |= result.new_classifications.general_intent
            classifications.transfer_reason |= result.new_classifications.transfer_reason
            classifications.drop_off_location |= result.new_classifications.drop_off_location
            logger.debug(
                "Discovery batch %d: %d labels so far",
                batch_number,
                classifications.total_count(),
            )

        if progress_callback is not None:
            progress_callback(
                f"Discovery phase complete: {classifications.total_count()} total "
                "classifications discovered",
                len(selected),
                len(selected),
                classifications.total_count(),
            )

        selected_ids = {session.session_id for session in selected}
        remaining = [s for s in sessions if s.session_id not in selected_ids]
        return DiscoveryResult(
            base_classifications=classifications,
            processed_sessions=processed,
            remaining_sessions=remaining,
            stats=DiscoveryStats(
                total_processed=len(processed),
                unique_intents=len(classifications.general_intent),
                unique_reasons=len(classifications.transfer_reason),
                unique_locations=len(classifications.drop_off_location),
                discovery_rate=min(classifications.total_count() / TARGET_DISCOVERIES, 1.0),
            ),
            token_usage=token_usage,
        )
