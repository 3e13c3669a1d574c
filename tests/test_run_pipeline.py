"""Tests for the end-to-end classification service."""

from __future__ import annotations

import json
import re

import pytest

from session_classifier.config import Settings
from session_classifier.mock_data import generate_mock_sessions
from session_classifier.models import InMemorySessionSource
from session_classifier.pipeline import (
    AnalysisRunConfig,
    AnalysisRunResult,
    InsufficientSessionsError,
    ServiceRegistry,
    SessionClassificationService,
    save_run_artifacts,
    summarize_results,
)
from session_classifier.pipeline.validation import create_fallback_results
from session_classifier.schemas import (
    AnalysisMetadata,
    ExistingClassifications,
    Session,
    SessionFacts,
    SessionWithFacts,
)

_SESSION_ID_LINE = re.compile(r"^session_id: (\S+)$", re.MULTILINE)


class _ScriptedClient:
    """Classify by session number parity and merge the two claim intents on request."""

    def __init__(self, fail_conflicts: bool = False):
        self.fail_conflicts = fail_conflicts
        self.schema_names: list[str] = []

    def complete_json_with_usage(self, *, system_prompt: str, user_prompt: str, **kwargs):
        schema_name = kwargs.get("schema_name") or ""
        self.schema_names.append(schema_name)
        usage = {"prompt_tokens": 80, "completion_tokens": 20, "total_tokens": 100}

        if schema_name == "conflict_resolution_payload":
            if self.fail_conflicts:
                raise RuntimeError("resolver unavailable")
            return (
                {
                    "general_intents": [
                        {"canonical": "Claim Status", "aliases": ["Claim Status Inquiry"]}
                    ],
                    "transfer_reasons": [],
                    "drop_off_locations": [],
                },
                usage,
            )

        items = []
        for session_id in _SESSION_ID_LINE.findall(user_prompt):
            number = int(session_id.split("-")[1])
            transfer = number % 2 == 0
            items.append(
                {
                    "session_id": session_id,
                    "user_id": "",
                    "general_intent": "Claim Status" if number % 3 else "Claim Status Inquiry",
                    "session_outcome": "Transfer" if transfer else "Contained",
                    "transfer_reason": "Live Agent Request" if transfer else "",
                    "drop_off_location": "Main Menu" if transfer else "",
                    "notes": "scripted",
                }
            )
        return {"sessions": items}, usage


def _settings(**overrides) -> Settings:
    values = {
        "openai_api_key": "test",
        "random_seed": 3,
        "retry_base_delay_seconds": 0.0,
        "min_session_count": 10,
        "discovery_enabled": True,
        "conflict_resolution_enabled": True,
    }
    values.update(overrides)
    return Settings(**values)


def _source(count: int = 60) -> InMemorySessionSource:
    return InMemorySessionSource(
        [Session.model_validate(row) for row in generate_mock_sessions(count=count, seed=7)]
    )


def _run_config(count: int = 40) -> AnalysisRunConfig:
    return AnalysisRunConfig(
        start_date="2025-01-10",
        start_time="08:00",
        session_count=count,
        model_id="gpt-4o-mini",
        api_key="test",
    )


def _classified(session_id: str, intent: str, outcome: str = "Contained", **facts):
    return SessionWithFacts.from_session(
        Session(session_id=session_id, user_id="u"),
        facts=SessionFacts(general_intent=intent, session_outcome=outcome, **facts),
        analysis_metadata=AnalysisMetadata(batch_number=1, model="gpt-4o-mini"),
    )


class TestSessionClassificationService:
    def test_full_run_classifies_every_sampled_session(self):
        client = _ScriptedClient()
        requested: list[tuple[str, str]] = []

        def factory(api_key: str, model_id: str):
            requested.append((api_key, model_id))
            return client

        source = _source()
        service = SessionClassificationService.from_settings(
            _settings(),
            source,
            client_factory=factory,
        )
        phases: list[str] = []

        result = service.run_analysis_sync(
            _run_config(40),
            lambda phase, message: phases.append(phase),
        )

        ids = [s.session_id for s in result.sessions]
        assert len(ids) == 40
        assert len(set(ids)) == 40
        assert len(source.message_requests) == 1
        assert set(source.message_requests[0]) == set(ids)
        assert result.sampled_count == 40
        assert result.total_found == 60
        assert result.discovery_stats is not None
        assert result.discovery_stats["total_processed"] == 6
        assert result.stats.total_sessions == 40
        assert result.stats.fallback_count == 0
        assert {s.facts.general_intent for s in result.sessions} == {"Claim Status"}
        assert "Claim Status" in result.classifications.general_intent
        assert result.conflict_resolution is not None
        assert result.token_usage.total_tokens > 0
        assert set(requested) == {("test", "gpt-4o-mini")}
        assert "conflict_resolution_payload" in client.schema_names
        assert phases[0] == "sampling"
        assert phases[-1] == "completed"

        transfers = sum(1 for s in result.sessions if s.facts.session_outcome == "Transfer")
        assert result.stats.transfer_count == transfers
        assert result.stats.transfer_rate == round(transfers / 40 * 100, 1)

    def test_without_discovery_or_resolver(self):
        service = SessionClassificationService.from_settings(
            _settings(discovery_enabled=False, conflict_resolution_enabled=False),
            _source(),
            client_factory=lambda key, model: _ScriptedClient(),
        )

        result = service.run_analysis_sync(_run_config(20))

        assert result.discovery_stats is None
        assert result.conflict_resolution is None
        assert len(result.sessions) == 20
        assert result.processing_stats.total_rounds >= 1
        assert result.classifications.general_intent == {"Claim Status", "Claim Status Inquiry"}

    def test_final_resolution_failure_keeps_raw_labels(self):
        service = SessionClassificationService.from_settings(
            _settings(discovery_enabled=False),
            _source(),
            client_factory=lambda key, model: _ScriptedClient(fail_conflicts=True),
        )

        result = service.run_analysis_sync(_run_config(20))

        assert len(result.sessions) == 20
        assert result.conflict_resolution is None
        assert {s.facts.general_intent for s in result.sessions} == {
            "Claim Status",
            "Claim Status Inquiry",
        }

    def test_insufficient_sessions_aborts_run(self):
        service = SessionClassificationService.from_settings(
            _settings(),
            _source(count=5),
            client_factory=lambda key, model: _ScriptedClient(),
        )
        with pytest.raises(InsufficientSessionsError):
            service.run_analysis_sync(_run_config(20))

    def test_close_is_idempotent(self):
        closed: list[bool] = []
        service = SessionClassificationService.from_settings(
            _settings(),
            _source(),
            client_factory=lambda key, model: _ScriptedClient(),
            on_close=lambda: closed.append(True),
        )
        service.close()
        service.close()
        assert service.closed is True
        assert closed == [True]


class TestServiceRegistry:
    def _factory(self, built: list):
        def factory():
            service = SessionClassificationService.from_settings(
                _settings(),
                _source(),
                client_factory=lambda key, model: _ScriptedClient(),
            )
            built.append(service)
            return service

        return factory

    def test_one_service_per_tenant(self):
        built: list = []
        registry = ServiceRegistry()
        first = registry.get_or_create("bot-a", self._factory(built))
        assert registry.get_or_create("bot-a", self._factory(built)) is first
        registry.get_or_create("bot-b", self._factory(built))
        assert len(registry) == 2
        assert len(built) == 2
        assert registry.get("bot-c") is None

    def test_closed_service_is_recreated(self):
        built: list = []
        registry = ServiceRegistry()
        first = registry.get_or_create("bot-a", self._factory(built))
        first.close()
        second = registry.get_or_create("bot-a", self._factory(built))
        assert second is not first

    def test_close_and_close_all(self):
        built: list = []
        registry = ServiceRegistry()
        registry.get_or_create("bot-a", self._factory(built))
        registry.get_or_create("bot-b", self._factory(built))

        assert registry.close("bot-a") is True
        assert registry.close("bot-a") is False
        assert built[0].closed is True

        registry.close_all()
        assert len(registry) == 0
        assert built[1].closed is True


def test_summarize_results():
    sessions = [
        _classified("s1", "Claim Status"),
        _classified("s2", "Claim Status"),
        _classified(
            "s3",
            "Billing",
            "Transfer",
            transfer_reason="Live Agent Request",
            drop_off_location="Main Menu",
        ),
        *create_fallback_results([Session(session_id="s4", user_id="u")], "boom"),
    ]

    stats = summarize_results(sessions)

    assert stats.total_sessions == 4
    assert stats.transfer_count == 1
    assert stats.contained_count == 3
    assert stats.transfer_rate == 25.0
    assert stats.containment_rate == 75.0
    assert stats.fallback_count == 1
    assert stats.top_intents[0].label == "Claim Status"
    assert stats.top_intents[0].percentage == 50.0
    assert stats.top_transfer_reasons[0].percentage == 100.0
    assert summarize_results([]).transfer_rate == 0.0


def test_save_run_artifacts(tmp_path):
    result = AnalysisRunResult(
        sessions=[_classified("s1", "Claim Status")],
        classifications=ExistingClassifications(general_intent={"Claim Status", "Billing"}),
        model_id="gpt-4o-mini",
    )

    run_root = tmp_path / "run-abc"
    output_files = save_run_artifacts(run_root, result)

    assert set(output_files) == {"sessions_jsonl", "classifications_json", "run_summary_json"}
    rows = output_files["sessions_jsonl"].read_text().splitlines()
    assert json.loads(rows[0])["facts"]["general_intent"] == "Claim Status"
    labels = json.loads(output_files["classifications_json"].read_text())
    assert labels["general_intent"] == ["Billing", "Claim Status"]
    summary = json.loads(output_files["run_summary_json"].read_text())
    assert "sessions" not in summary
    assert summary["model_id"] == "gpt-4o-mini"
    manifest = json.loads((run_root / "run_manifest.json").read_text())
    assert manifest["run_id"] == "run-abc"
    assert manifest["session_count"] == 1
