"""Prompts for batch session classification."""

from __future__ import annotations

from session_classifier.schemas import ExistingClassifications, Session

SESSION_CLASSIFICATION_SYSTEM_PROMPT = """You are an expert session analyst.
Analyze the bot session transcripts and classify each one consistently.

Return strict JSON with exactly this shape:
{
  "sessions": [
    {
      "session_id": "<copied exactly from input>",
      "user_id": "<copied exactly from input>",
      "general_intent": "<what the user is trying to accomplish>",
      "session_outcome": "Transfer" | "Contained",
      "transfer_reason": "<why the session was transferred, empty if Contained>",
      "drop_off_location": "<prompt where the user dropped off, empty if Contained>",
      "notes": "<one sentence summary of what happened>"
    }
  ]
}

Rules:
- Include exactly one item per input session_id.
- Do not omit any session_id and do not add extra session_ids.
- Keep `session_id` and `user_id` values unchanged.
"""

CLASSIFICATION_INSTRUCTIONS = """For each session, provide the following classifications:

1. General Intent: What the user is trying to accomplish (usually 1-2 words). Common examples:
"Claim Status", "Billing", "Eligibility", "Live Agent", "Provider Enrollment", "Portal Access",
"Authorization". If unknown, use "Unknown". If the user's intent was both Live Agent and another
intent, classify the intent as the other intent.

2. Session Outcome: Either "Transfer" (the session was transferred to a live agent) or "Contained"
(the bot handled the session). Classify a session as "Transfer" when there is a transfer message
toward the end (e.g. "Please hold while I connect you with a customer service representative").
Some "Contained" sessions end with the bot closing the conversation ("I am closing our current
conversation...").

3. Transfer Reason: Why the session was transferred (only when the outcome is "Transfer"). Look for
specific error messages or rejected inputs that caused the transfer. Example reasons: "Invalid
Provider ID", "Live Agent Request", "Invalid Member ID", "Invalid Claim Number", "No Provider ID",
"Inactive Provider ID", "Authentication Failed", "Technical Issue", "Policy Not Found". Leave blank
when not transferred.

4. Drop-Off Location: The prompt in the flow where the user started getting routed to an agent, not
counting error response prompts or live agent rebuttal prompts. Only set when the outcome is
"Transfer". Example locations: "Policy Number Prompt", "Help Offer Prompt", "Authentication",
"Claim Details", "Member Information", "Provider ID", "Date of Service". Leave blank when not
transferred.

5. Notes: One sentence summary of what happened in the session.

EXAMPLE 1:
---
Bot: How can I help you today?
User: Speak to a person
Bot: I can connect you to an agent, but before I do, can you tell me the reason for your call?
User: Live agent
Bot: Please hold while I transfer you.
---
Intent: Live Agent
Outcome: Transfer
Transfer Reason: Live Agent Request
Drop-Off Location: Help Offer Prompt

EXAMPLE 2:
---
Bot: How can I help you today?
User: Claim status
Bot: <After determining claim and giving info>. How else can I help you?
User: Live agent
Bot: Please hold while I transfer you.
---
Intent: Claim Status
Outcome: Transfer
Transfer Reason: Live Agent Request
Drop-Off Location: Help Offer Prompt

IMPORTANT:
- Use existing classifications when possible to maintain consistency
- If Session Outcome is "Contained", leave Transfer Reason and Drop-Off Location blank
- Be concise but descriptive in your classifications"""


def _format_existing_labels(classifications: ExistingClassifications) -> str:
    lines: list[str] = []
    if classifications.general_intent:
        lines.append(
            "Existing General Intent classifications: "
            + ", ".join(sorted(classifications.general_intent))
        )
    if classifications.transfer_reason:
        lines.append(
            "Existing Transfer Reason classifications: "
            + ", ".join(sorted(classifications.transfer_reason))
        )
    if classifications.drop_off_location:
        lines.append(
            "Existing Drop-Off Location classifications: "
            + ", ".join(sorted(classifications.drop_off_location))
        )
    return "\n".join(lines)


def build_session_batch_user_prompt(
    sessions: list[Session],
    existing_classifications: ExistingClassifications,
    additional_context: str | None = None,
) -> str:
    """Render a batch of session transcripts for classification."""

    sections: list[str] = []
    for index, session in enumerate(sessions, start=1):
        transcript = "\n".join(
            f"{message.role}: {message.text}" for message in session.messages
        )
        sections.append(
            f"--- Session {index} ---\n"
            f"session_id: {session.session_id}\n"
            f"user_id: {session.user_id}\n"
            "Transcript:\n"
            f"{transcript}"
        )

    parts = [
        "Analyze the following session transcripts and classify each session "
        "according to the specified criteria."
    ]
    if additional_context and additional_context.strip():
        parts.append(
            f"Additional context and instructions from the user: {additional_context.strip()}"
        )
    existing = _format_existing_labels(existing_classifications)
    if existing:
        parts.append(existing)
    parts.append(CLASSIFICATION_INSTRUCTIONS)
    parts.append("\n\n".join(sections))
    return "\n\n".join(parts)
