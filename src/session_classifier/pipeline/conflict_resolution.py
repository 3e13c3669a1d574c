"""Consolidate near-duplicate classification labels produced by parallel streams."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from session_classifier.models.catalog import calculate_model_cost
from session_classifier.models.openai_client import LLMClientFactory
from session_classifier.prompts import (
    CONFLICT_RESOLUTION_SYSTEM_PROMPT,
    build_conflict_resolution_user_prompt,
)
from session_classifier.schemas import ExistingClassifications, SessionWithFacts, TokenUsage

logger = logging.getLogger(__name__)

SIMILARITY_RATIO_THRESHOLD = 0.85
WORD_OVERLAP_THRESHOLD = 0.5

# Stems that mark two labels as talking about the same thing.
RELATED_STEM_PAIRS: tuple[tuple[str, str], ...] = (
    ("claim", "claim"),
    ("agent", "human"),
    ("transfer", "connect"),
    ("invalid", "bad"),
    ("provider", "provider"),
    ("member", "member"),
    ("policy", "policy"),
    ("auth", "login"),
)


class ConflictResolutionError(ValueError):
    """Raised when the resolver LLM returns an invalid payload."""


class _CanonicalGroupPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    canonical: str = Field(min_length=1)
    aliases: list[str]


class _ConflictResolutionPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    general_intents: list[_CanonicalGroupPayload]
    transfer_reasons: list[_CanonicalGroupPayload]
    drop_off_locations: list[_CanonicalGroupPayload]


@dataclass
class ClassificationConflicts:
    """Candidate groups of similar labels, per category."""

    intent_conflicts: list[list[str]] = field(default_factory=list)
    reason_conflicts: list[list[str]] = field(default_factory=list)
    location_conflicts: list[list[str]] = field(default_factory=list)

    def has_conflicts(self) -> bool:
        return any(
            len(group) > 1
            for group in (
                *self.intent_conflicts,
                *self.reason_conflicts,
                *self.location_conflicts,
            )
        )

    def group_count(self) -> int:
        return len(self.intent_conflicts) + len(self.reason_conflicts) + len(
            self.location_conflicts
        )


@dataclass
class ConflictResolutions:
    """Alias -> canonical label maps, per category."""

    intent_mappings: dict[str, str] = field(default_factory=dict)
    reason_mappings: dict[str, str] = field(default_factory=dict)
    location_mappings: dict[str, str] = field(default_factory=dict)

    def mapping_count(self) -> int:
        return (
            len(self.intent_mappings) + len(self.reason_mappings) + len(self.location_mappings)
        )

    def canonical_labels(self) -> ExistingClassifications:
        return ExistingClassifications(
            general_intent=set(self.intent_mappings.values()),
            transfer_reason=set(self.reason_mappings.values()),
            drop_off_location=set(self.location_mappings.values()),
        )


@dataclass(frozen=True)
class ConflictResolutionStats:
    conflicts_found: int
    conflicts_resolved: int
    canonical_mappings: int


@dataclass
class ConflictResolutionResult:
    resolved_sessions: list[SessionWithFacts]
    stats: ConflictResolutionStats
    resolutions: ConflictResolutions
    token_usage: TokenUsage


def _normalize(label: str) -> str:
    return re.sub(r"[^a-z0-9\s]", "", label.lower()).strip()


def are_similar_labels(left: str, right: str) -> bool:
    """Cheap lexical pre-filter; the LLM makes the final call."""

    a = _normalize(left)
    b = _normalize(right)
    if not a or not b:
        return False
    if a == b or a in b or b in a:
        return True

    for first, second in RELATED_STEM_PAIRS:
        if (first in a and second in b) or (second in a and first in b):
            return True

    words_a = set(a.split())
    words_b = set(b.split())
    overlap = len(words_a & words_b)
    if overlap and overlap >= WORD_OVERLAP_THRESHOLD * min(len(words_a), len(words_b)):
        return True

    return SequenceMatcher(None, a, b).ratio() >= SIMILARITY_RATIO_THRESHOLD


def find_similar_groups(labels: list[str]) -> list[list[str]]:
    """Group labels connected by any chain of similar pairs."""

    ordered = sorted(set(labels))
    parent = {label: label for label in ordered}

    def root(label: str) -> str:
        while parent[label] != label:
            parent[label] = parent[parent[label]]
            label = parent[label]
        return label

    for index, left in enumerate(ordered):
        for right in ordered[index + 1 :]:
            if are_similar_labels(left, right):
                left_root, right_root = root(left), root(right)
                if left_root != right_root:
                    parent[max(left_root, right_root)] = min(left_root, right_root)

    members: dict[str, list[str]] = {}
    for label in ordered:
        members.setdefault(root(label), []).append(label)
    return [group for group in members.values() if len(group) > 1]


def _mappings_from_groups(groups: list[_CanonicalGroupPayload]) -> dict[str, str]:
    mappings: dict[str, str] = {}
    for group in groups:
        canonical = group.canonical.strip()
        mappings[canonical] = canonical
        for alias in group.aliases:
            alias = alias.strip()
            if alias:
                mappings[alias] = canonical
    return mappings


def extract_classifications(sessions: list[SessionWithFacts]) -> ExistingClassifications:
    """Collect the non-empty labels used across classified sessions."""

    labels = ExistingClassifications()
    for session in sessions:
        facts = session.facts
        if facts.general_intent:
            labels.general_intent.add(facts.general_intent)
        if facts.transfer_reason:
            labels.transfer_reason.add(facts.transfer_reason)
        if facts.drop_off_location:
            labels.drop_off_location.add(facts.drop_off_location)
    return labels


def apply_resolutions(
    sessions: list[SessionWithFacts],
    resolutions: ConflictResolutions,
) -> list[SessionWithFacts]:
    """Rewrite each session's labels to their canonical form."""

    resolved: list[SessionWithFacts] = []
    for session in sessions:
        facts = session.facts
        updated_facts = facts.model_copy(
            update={
                "general_intent": resolutions.intent_mappings.get(
                    facts.general_intent, facts.general_intent
                ),
                "transfer_reason": resolutions.reason_mappings.get(
                    facts.transfer_reason, facts.transfer_reason
                ),
                "drop_off_location": resolutions.location_mappings.get(
                    facts.drop_off_location, facts.drop_off_location
                ),
            }
        )
        resolved.append(session.model_copy(update={"facts": updated_facts}))
    return resolved


class ConflictResolver:
    """Detect similar labels locally and ask the LLM for canonical names."""

    def __init__(
        self,
        client_factory: LLMClientFactory,
        *,
        default_model_id: str = "gpt-4o-mini",
    ) -> None:
        self._client_factory = client_factory
        self._default_model_id = default_model_id

    def identify_potential_conflicts(
        self,
        classifications: ExistingClassifications,
    ) -> ClassificationConflicts:
        return ClassificationConflicts(
            intent_conflicts=find_similar_groups(list(classifications.general_intent)),
            reason_conflicts=find_similar_groups(list(classifications.transfer_reason)),
            location_conflicts=find_similar_groups(list(classifications.drop_off_location)),
        )

    def _request_resolutions(
        self,
        classifications: ExistingClassifications,
        api_key: str,
        model_id: str,
    ) -> tuple[ConflictResolutions, TokenUsage]:
        client = self._client_factory(api_key, model_id)
        payload, usage = client.complete_json_with_usage(
            system_prompt=CONFLICT_RESOLUTION_SYSTEM_PROMPT,
            user_prompt=build_conflict_resolution_user_prompt(classifications),
            schema_name="conflict_resolution_payload",
            json_schema=_ConflictResolutionPayload.model_json_schema(),
            strict_schema=True,
        )
        try:
            parsed = _ConflictResolutionPayload.model_validate(payload)
        except ValidationError as exc:
            raise ConflictResolutionError(f"Invalid conflict resolution payload: {exc}") from exc

        prompt_tokens = int(usage.get("prompt_tokens", 0) or 0)
        completion_tokens = int(usage.get("completion_tokens", 0) or 0)
        total_tokens = int(usage.get("total_tokens", 0) or 0) or prompt_tokens + completion_tokens
        token_usage = TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            cost=calculate_model_cost(prompt_tokens, completion_tokens, model_id),
            model=model_id,
        )
        resolutions = ConflictResolutions(
            intent_mappings=_mappings_from_groups(parsed.general_intents),
            reason_mappings=_mappings_from_groups(parsed.transfer_reasons),
            location_mappings=_mappings_from_groups(parsed.drop_off_locations),
        )
        return resolutions, token_usage

    async def resolve_conflicts(
        self,
        sessions: list[SessionWithFacts],
        api_key: str,
        model_id: str | None = None,
    ) -> ConflictResolutionResult:
        """Canonicalize labels across `sessions`.

        Skips the LLM entirely when the lexical pre-filter finds no candidate
        group. Raises `ConflictResolutionError` on an invalid LLM payload;
        callers decide whether that aborts anything.
        """

        model_id = model_id or self._default_model_id
        classifications = extract_classifications(sessions)
        conflicts = self.identify_potential_conflicts(classifications)

        if not conflicts.has_conflicts():
            logger.info("No potential label conflicts found; skipping resolution")
            return ConflictResolutionResult(
                resolved_sessions=list(sessions),
                stats=ConflictResolutionStats(0, 0, 0),
                resolutions=ConflictResolutions(),
                token_usage=TokenUsage.empty(model_id),
            )

        logger.info(
            "Resolving %d candidate label groups across %d sessions",
            conflicts.group_count(),
            len(sessions),
        )
        resolutions, token_usage = await asyncio.to_thread(
            self._request_resolutions,
            classifications,
            api_key,
            model_id,
        )
        resolved_sessions = apply_resolutions(sessions, resolutions)
        conflicts_resolved = sum(
            1
            for mappings in (
                resolutions.intent_mappings,
                resolutions.reason_mappings,
                resolutions.location_mappings,
            )
            for alias, canonical in mappings.items()
            if alias != canonical
        )
        return ConflictResolutionResult(
            resolved_sessions=resolved_sessions,
            stats=ConflictResolutionStats(
                conflicts_found=conflicts.group_count(),
                conflicts_resolved=conflicts_resolved,
                canonical_mappings=resolutions.mapping_count(),
            ),
            resolutions=resolutions,
            token_usage=token_usage,
        )
