"""Generate synthetic bot sessions for development and offline runs."""

from __future__ import annotations

import json
import random
from datetime import UTC, datetime, timedelta
from pathlib import Path


def _scenario(
    *,
    scenario: str,
    outcome: str,
    turns: list[tuple[str, str]],
) -> dict:
    return {"scenario": scenario, "outcome": outcome, "turns": turns}


_GREETING = "Welcome to member services. How can I help you today?"

_SCENARIOS: list[dict] = [
    _scenario(
        scenario="claim_status_contained",
        outcome="Contained",
        turns=[
            ("bot", _GREETING),
            ("user", "I want to check the status of claim {claim}"),
            ("bot", "Please enter your member ID."),
            ("user", "{member}"),
            ("bot", "Claim {claim} was processed on {date} and paid in full."),
            ("user", "Great, thanks"),
        ],
    ),
    _scenario(
        scenario="claim_status_transfer_invalid_member",
        outcome="Transfer",
        turns=[
            ("bot", _GREETING),
            ("user", "Where is my claim"),
            ("bot", "Please enter your member ID."),
            ("user", "12345"),
            ("bot", "I couldn't find that member ID. Please try again."),
            ("user", "99999"),
            ("bot", "I still couldn't verify that ID. Let me connect you with an agent."),
        ],
    ),
    _scenario(
        scenario="eligibility_contained",
        outcome="Contained",
        turns=[
            ("bot", _GREETING),
            ("user", "Is my coverage active for {date}?"),
            ("bot", "Please enter your member ID."),
            ("user", "{member}"),
            ("bot", "Your plan is active and covers in-network office visits."),
        ],
    ),
    _scenario(
        scenario="live_agent_request",
        outcome="Transfer",
        turns=[
            ("bot", _GREETING),
            ("user", "agent"),
            ("bot", "I can help with claims, eligibility and benefits. What do you need?"),
            ("user", "representative please"),
            ("bot", "Transferring you to a live agent now."),
        ],
    ),
    _scenario(
        scenario="provider_lookup_transfer_invalid_provider",
        outcome="Transfer",
        turns=[
            ("bot", _GREETING),
            ("user", "I'm a provider checking a claim"),
            ("bot", "Please enter your provider ID."),
            ("user", "AB-{claim}"),
            ("bot", "That provider ID is not valid. I'll transfer you to provider services."),
        ],
    ),
    _scenario(
        scenario="benefits_question_contained",
        outcome="Contained",
        turns=[
            ("bot", _GREETING),
            ("user", "What is my copay for a specialist visit?"),
            ("bot", "Please enter your member ID."),
            ("user", "{member}"),
            ("bot", "Your specialist copay is $40 after the deductible."),
            ("user", "ok thank you"),
        ],
    ),
    _scenario(
        scenario="billing_dispute_transfer",
        outcome="Transfer",
        turns=[
            ("bot", _GREETING),
            ("user", "I was billed twice for the same visit"),
            ("bot", "I'm sorry about that. Billing disputes are handled by our billing team."),
            ("bot", "Connecting you to a billing specialist."),
        ],
    ),
    _scenario(
        scenario="policy_number_drop_off",
        outcome="Contained",
        turns=[
            ("bot", _GREETING),
            ("user", "I need my policy details"),
            ("bot", "Please enter your policy number."),
        ],
    ),
]


def _fill(text: str, *, variant: int, rng: random.Random, start: datetime) -> str:
    return text.format(
        claim=f"CLM{100000 + variant * 37 % 900000}",
        member=f"M{rng.randint(10_000_000, 99_999_999)}",
        date=(start - timedelta(days=variant % 30 + 1)).strftime("%B %d"),
    )


def generate_mock_sessions(
    count: int = 200,
    seed: int = 7,
    start: datetime | None = None,
) -> list[dict]:
    """Deterministic session records (JSONL-ready dicts) spread over a few hours from `start`."""

    if count <= 0:
        raise ValueError(f"count must be positive, got {count}.")

    rng = random.Random(seed)
    start = start or datetime(2025, 1, 10, 13, 0, tzinfo=UTC)
    output: list[dict] = []

    for index in range(count):
        template = _SCENARIOS[index % len(_SCENARIOS)]
        variant = index + 1
        session_start = start + timedelta(minutes=index * 3, seconds=rng.randint(0, 59))
        messages: list[dict] = []
        for offset, (role, text) in enumerate(template["turns"]):
            messages.append(
                {
                    "role": role,
                    "text": _fill(text, variant=variant, rng=rng, start=start),
                    "timestamp": (session_start + timedelta(seconds=offset * 20)).isoformat(),
                }
            )
        session_end = session_start + timedelta(seconds=len(messages) * 20)
        output.append(
            {
                "session_id": f"sess-{variant:05d}",
                "user_id": f"user-{(index % 150) + 1:04d}",
                "start_time": session_start.isoformat(),
                "end_time": session_end.isoformat(),
                "metadata": {
                    "source": "mock",
                    "scenario": template["scenario"],
                    "expected_outcome": template["outcome"],
                    "generator_seed": seed,
                },
                "messages": messages,
            }
        )

    return output


def write_mock_sessions(path: str | Path, sessions: list[dict]) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        for record in sessions:
            handle.write(json.dumps(record, ensure_ascii=True) + "\n")
    return target
