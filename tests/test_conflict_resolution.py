"""Tests for label conflict detection and resolution."""

from __future__ import annotations

import asyncio

import pytest

from session_classifier.pipeline import conflict_resolution
from session_classifier.pipeline.conflict_resolution import (
    ConflictResolutionError,
    ConflictResolutions,
    ConflictResolver,
    apply_resolutions,
    are_similar_labels,
    extract_classifications,
    find_similar_groups,
)
from session_classifier.schemas import (
    AnalysisMetadata,
    ExistingClassifications,
    Session,
    SessionFacts,
    SessionWithFacts,
)


class _FakeJsonClient:
    def __init__(self, payload: dict):
        self.payload = payload
        self.calls = 0

    def complete_json_with_usage(self, *, system_prompt: str, user_prompt: str, **kwargs):
        self.calls += 1
        return self.payload, {"prompt_tokens": 50, "completion_tokens": 10, "total_tokens": 60}


def _classified(
    session_id: str,
    intent: str,
    outcome: str = "Contained",
    reason: str = "",
    location: str = "",
) -> SessionWithFacts:
    return SessionWithFacts.from_session(
        Session(session_id=session_id, user_id="u"),
        facts=SessionFacts(
            general_intent=intent,
            session_outcome=outcome,
            transfer_reason=reason,
            drop_off_location=location,
        ),
        analysis_metadata=AnalysisMetadata(batch_number=1, model="gpt-4o-mini"),
    )


class TestSimilarity:
    def test_containment_and_case(self):
        assert are_similar_labels("Claim Status", "claim status inquiry") is True
        assert are_similar_labels("Billing", "BILLING") is True

    def test_related_stems(self):
        assert are_similar_labels("Live Agent Request", "Human Handoff") is True

    def test_word_overlap(self):
        assert are_similar_labels("Benefits Question", "Question About Coverage") is True

    def test_unrelated_labels(self):
        assert are_similar_labels("Eligibility Check", "Billing Dispute") is False
        assert are_similar_labels("", "Billing") is False

    def test_find_similar_groups(self):
        groups = find_similar_groups(
            ["Claim Status", "Claim Status Inquiry", "Billing Dispute", "Eligibility Check"]
        )
        assert groups == [["Claim Status", "Claim Status Inquiry"]]
        assert find_similar_groups(["Billing Dispute", "Eligibility Check"]) == []

    def test_find_similar_groups_merges_chains(self, monkeypatch):
        similar = {("a", "c"), ("b", "d"), ("c", "d")}
        monkeypatch.setattr(
            conflict_resolution,
            "are_similar_labels",
            lambda left, right: (left, right) in similar,
        )

        assert find_similar_groups(["d", "c", "b", "a", "e"]) == [["a", "b", "c", "d"]]


def test_extract_classifications_ignores_blank_labels():
    labels = extract_classifications(
        [
            _classified("s1", "Claim Status"),
            _classified("s2", "Billing", "Transfer", "Live Agent Request", "Main Menu"),
        ]
    )
    assert labels.general_intent == {"Claim Status", "Billing"}
    assert labels.transfer_reason == {"Live Agent Request"}
    assert labels.drop_off_location == {"Main Menu"}


def test_apply_resolutions_rewrites_without_mutating():
    original = [_classified("s1", "Claim Status Inquiry"), _classified("s2", "Billing")]
    resolved = apply_resolutions(
        original,
        ConflictResolutions(intent_mappings={"Claim Status Inquiry": "Claim Status"}),
    )
    assert [s.facts.general_intent for s in resolved] == ["Claim Status", "Billing"]
    assert original[0].facts.general_intent == "Claim Status Inquiry"


def test_canonical_labels():
    resolutions = ConflictResolutions(
        intent_mappings={"Claim Status Inquiry": "Claim Status", "Claim Status": "Claim Status"},
        reason_mappings={"Human Handoff": "Live Agent Request"},
    )
    canonical = resolutions.canonical_labels()
    assert canonical.general_intent == {"Claim Status"}
    assert canonical.transfer_reason == {"Live Agent Request"}
    assert resolutions.mapping_count() == 3


class TestConflictResolver:
    def test_no_conflicts_skips_llm(self):
        def factory(api_key: str, model_id: str):
            raise AssertionError("LLM should not be called")

        sessions = [_classified("s1", "Eligibility Check"), _classified("s2", "Billing Dispute")]
        result = asyncio.run(ConflictResolver(factory).resolve_conflicts(sessions, "key"))

        assert result.stats.conflicts_found == 0
        assert result.token_usage.total_tokens == 0
        assert [s.facts.general_intent for s in result.resolved_sessions] == [
            "Eligibility Check",
            "Billing Dispute",
        ]

    def test_resolves_similar_labels(self):
        client = _FakeJsonClient(
            {
                "general_intents": [
                    {"canonical": "Claim Status", "aliases": ["Claim Status Inquiry"]}
                ],
                "transfer_reasons": [],
                "drop_off_locations": [],
            }
        )
        resolver = ConflictResolver(lambda key, model: client, default_model_id="gpt-4o")
        sessions = [
            _classified("s1", "Claim Status"),
            _classified("s2", "Claim Status Inquiry"),
            _classified("s3", "Billing Dispute"),
        ]

        result = asyncio.run(resolver.resolve_conflicts(sessions, "key"))

        assert client.calls == 1
        assert [s.facts.general_intent for s in result.resolved_sessions] == [
            "Claim Status",
            "Claim Status",
            "Billing Dispute",
        ]
        assert result.stats.conflicts_found == 1
        assert result.stats.conflicts_resolved == 1
        assert result.stats.canonical_mappings == 2
        assert result.token_usage.total_tokens == 60
        assert result.token_usage.model == "gpt-4o"

    def test_invalid_payload_raises(self):
        client = _FakeJsonClient({"general_intents": "nope"})
        resolver = ConflictResolver(lambda key, model: client)
        sessions = [_classified("s1", "Claim Status"), _classified("s2", "Claim Status Inquiry")]

        with pytest.raises(ConflictResolutionError):
            asyncio.run(resolver.resolve_conflicts(sessions, "key"))

    def test_identify_potential_conflicts(self):
        resolver = ConflictResolver(lambda key, model: None)
        conflicts = resolver.identify_potential_conflicts(
            ExistingClassifications(
                general_intent={"Billing Dispute", "Eligibility Check"},
                transfer_reason={"Invalid Member ID", "Bad Member Number"},
            )
        )
        assert conflicts.intent_conflicts == []
        assert conflicts.reason_conflicts == [["Bad Member Number", "Invalid Member ID"]]
        assert conflicts.has_conflicts() is True
