"""Prompts for consolidating near-duplicate classification labels."""

from __future__ import annotations

from session_classifier.schemas import ExistingClassifications

CONFLICT_RESOLUTION_SYSTEM_PROMPT = """You are an expert at analyzing customer service \
classifications and identifying semantic duplicates. Your goal is to consolidate similar \
classifications to maintain consistency across the dataset.

Guidelines:
- Only group classifications that truly refer to the same concept.
- Choose canonical names that are specific, professional and clear.
- Be conservative: it is better to miss a conflict than to create a false positive.
- Consider context: "Authentication" and "Login" might be the same in some contexts.
- Preserve important distinctions: "Invalid ID" and "Missing ID" are different concepts.

Return strict JSON with exactly this shape:
{
  "general_intents": [{"canonical": "<label>", "aliases": ["<label>", ...]}],
  "transfer_reasons": [{"canonical": "<label>", "aliases": ["<label>", ...]}],
  "drop_off_locations": [{"canonical": "<label>", "aliases": ["<label>", ...]}]
}
"""


def _numbered(labels: list[str]) -> str:
    if not labels:
        return "None"
    return "\n".join(f'{index}. "{label}"' for index, label in enumerate(labels, start=1))


def build_conflict_resolution_user_prompt(classifications: ExistingClassifications) -> str:
    """Render the current label sets for semantic de-duplication."""

    intents = sorted(label for label in classifications.general_intent if label.strip())
    reasons = sorted(label for label in classifications.transfer_reason if label.strip())
    locations = sorted(label for label in classifications.drop_off_location if label.strip())

    return (
        "You are reviewing classifications from parallel analysis streams. Identify any "
        "semantic duplicates and choose the canonical version for each group.\n\n"
        "Instructions:\n"
        "1. Look for classifications that refer to the same concept but use different wording.\n"
        "2. For each group of duplicates, choose the most specific and clearest name as "
        "canonical.\n"
        "3. Only group classifications that truly mean the same thing.\n"
        "4. If no duplicates exist for a category, return an empty array for that category.\n\n"
        f"General Intents found ({len(intents)} total):\n{_numbered(intents)}\n\n"
        f"Transfer Reasons found ({len(reasons)} total):\n{_numbered(reasons)}\n\n"
        f"Drop-Off Locations found ({len(locations)} total):\n{_numbered(locations)}\n\n"
        "Examples of what to look for:\n"
        '- "Claim Status" and "Claim Inquiry" are the same concept\n'
        '- "Live Agent" and "Transfer to Human" are the same concept\n'
        '- "Invalid Provider ID" and "Bad Provider ID" are the same concept\n'
        '- "Policy Number Prompt" and "Policy Number Entry" are the same concept\n'
    )
