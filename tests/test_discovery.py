"""Tests for strategic discovery."""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime, timedelta

from session_classifier.pipeline.discovery import (
    DiscoveryConfig,
    DiscoveryResult,
    DiscoveryStats,
    StrategicDiscovery,
    calculate_discovery_size,
    get_adaptive_discovery_config,
    group_sessions_by_diversity,
    select_diverse_sessions,
    validate_discovery_quality,
)
from session_classifier.pipeline.stream_processing import StreamProcessor
from session_classifier.schemas import (
    BatchAnalysisResult,
    ExistingClassifications,
    Message,
    Session,
    TokenUsage,
)

INTENTS = ["Claim Status", "Eligibility Check", "Provider Lookup"]


def _sessions(count: int, text: str = "Where is my claim?") -> list[Session]:
    start = datetime(2025, 1, 10, 13, 0, tzinfo=UTC)
    return [
        Session(
            session_id=f"s-{index:03d}",
            user_id=f"u-{index:03d}",
            start_time=start + timedelta(minutes=index),
            messages=[Message(role="user", text=text)],
        )
        for index in range(count)
    ]


class _RoundRobinAnalyzer:
    def __init__(self):
        self.seen_labels: list[set[str]] = []
        self.contexts: list[str | None] = []

    def analyze_batch(self, sessions, existing, api_key, model_id, additional_context=None):
        self.seen_labels.append(set(existing.general_intent))
        self.contexts.append(additional_context)
        items = []
        for session in sessions:
            index = int(session.session_id.split("-")[1])
            items.append(
                {
                    "session_id": session.session_id,
                    "user_id": session.user_id,
                    "general_intent": INTENTS[index % len(INTENTS)],
                    "session_outcome": "Contained",
                    "transfer_reason": "",
                    "drop_off_location": "",
                    "notes": "ok",
                }
            )
        return BatchAnalysisResult(sessions=items, total_tokens=25, model=model_id)


class _RaisingProcessor:
    def __init__(self):
        self.calls = 0

    async def process_stream(self, stream_config, progress_callback=None):
        self.calls += 1
        raise RuntimeError("processor crashed")


class TestSizing:
    def test_fixed_bounds(self):
        assert calculate_discovery_size(200, DiscoveryConfig()) == 50
        assert calculate_discovery_size(2000, DiscoveryConfig()) == 150
        assert calculate_discovery_size(30, DiscoveryConfig()) == 30

    def test_adaptive_config_scales_with_run_size(self):
        config = get_adaptive_discovery_config(200)
        assert (config.min_sessions, config.max_sessions) == (20, 30)
        assert calculate_discovery_size(200, config) == 30

        small = get_adaptive_discovery_config(20, batch_size=3)
        assert (small.min_sessions, small.max_sessions) == (5, 5)
        assert small.batch_size == 3
        assert calculate_discovery_size(20, small) == 5

        large = get_adaptive_discovery_config(5000)
        assert (large.min_sessions, large.max_sessions) == (500, 500)
        assert calculate_discovery_size(5000, large) == 500


class TestDiverseSelection:
    def test_groups_by_length_and_time(self):
        sessions = _sessions(6) + [
            Session(
                session_id="long",
                user_id="u",
                start_time=datetime(2025, 1, 11, tzinfo=UTC),
                messages=[Message(role="user", text="x" * 2500)],
            )
        ]
        groups = group_sessions_by_diversity(sessions)
        assert [s.session_id for s in groups["long"]] == ["long"]
        assert "medium" not in groups
        assert len(groups["early"]) == 2
        assert groups["late"][-1].session_id == "long"

    def test_selects_exact_unique_subset(self):
        sessions = _sessions(100)
        selected = select_diverse_sessions(sessions, 12, random.Random(4))
        ids = [s.session_id for s in selected]
        assert len(ids) == 12
        assert len(set(ids)) == 12
        assert set(ids) <= {s.session_id for s in sessions}

    def test_small_pool_returns_everything(self):
        sessions = _sessions(3)
        assert select_diverse_sessions(sessions, 10) == sessions


class TestRunDiscovery:
    def test_labels_accumulate_across_batches(self):
        analyzer = _RoundRobinAnalyzer()
        discovery = StrategicDiscovery(StreamProcessor(analyzer), rng=random.Random(9))
        sessions = _sessions(40)
        config = get_adaptive_discovery_config(len(sessions), batch_size=2)

        result = asyncio.run(
            discovery.run_discovery(
                sessions,
                config,
                api_key="key",
                additional_context="Health plan members",
            )
        )

        assert len(result.processed_sessions) == 6
        assert len(analyzer.seen_labels) == 3
        assert analyzer.seen_labels[0] == set()
        assert analyzer.seen_labels[1] <= analyzer.seen_labels[2]
        assert analyzer.contexts == ["Health plan members"] * 3
        assert result.token_usage.total_tokens == 75
        assert result.stats.total_processed == 6
        assert result.stats.unique_intents == len(result.base_classifications.general_intent)

        processed_ids = {s.session_id for s in result.processed_sessions}
        remaining_ids = {s.session_id for s in result.remaining_sessions}
        assert len(remaining_ids) == 34
        assert processed_ids.isdisjoint(remaining_ids)
        assert processed_ids | remaining_ids == {s.session_id for s in sessions}

    def test_failed_batches_are_skipped(self):
        processor = _RaisingProcessor()
        discovery = StrategicDiscovery(processor, rng=random.Random(1))

        result = asyncio.run(
            discovery.run_discovery(
                _sessions(10),
                DiscoveryConfig(min_sessions=4, max_sessions=4, batch_size=2),
            )
        )

        assert processor.calls == 2
        assert result.processed_sessions == []
        assert result.base_classifications.is_empty()
        assert len(result.remaining_sessions) == 6

    def test_progress_callback(self):
        updates: list[tuple] = []
        discovery = StrategicDiscovery(StreamProcessor(_RoundRobinAnalyzer()))

        asyncio.run(
            discovery.run_discovery(
                _sessions(10),
                DiscoveryConfig(min_sessions=4, max_sessions=4, batch_size=4),
                progress_callback=lambda *args: updates.append(args),
            )
        )

        assert updates[0] == ("Selecting diverse sessions for discovery...", 0, 4, 0)
        assert updates[1][0] == "Processing discovery batch 1/1 (4 sessions)"
        assert updates[-1][1:3] == (4, 4)
        assert 1 <= updates[-1][3] <= 3


def test_discovery_quality_checks():
    def _result(intents: int, total: int, processed: int) -> DiscoveryResult:
        return DiscoveryResult(
            base_classifications=ExistingClassifications(),
            processed_sessions=[],
            remaining_sessions=[],
            stats=DiscoveryStats(
                total_processed=processed,
                unique_intents=intents,
                unique_reasons=0,
                unique_locations=0,
                discovery_rate=min(total / 15, 1.0),
            ),
            token_usage=TokenUsage(),
        )

    assert validate_discovery_quality(_result(5, 10, 40)).is_valid is True
    quality = validate_discovery_quality(_result(1, 2, 5))
    assert quality.is_valid is False
    assert len(quality.issues) == 3
    assert len(quality.recommendations) == 3
