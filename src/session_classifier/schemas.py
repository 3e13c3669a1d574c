"""Core data schemas for the session classifier."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SessionOutcome = Literal["Transfer", "Contained"]
SyncFrequency = Literal["after_each_round", "at_end"]

FALLBACK_BATCH_NUMBER = -1


def _as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Message(BaseModel):
    """A single message in a bot session transcript."""

    role: Literal["user", "bot"]
    text: str
    timestamp: datetime | None = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class Session(BaseModel):
    """A bot session with identity, time bounds, metadata and (lazily attached) messages."""

    session_id: str
    user_id: str
    start_time: datetime | None = None
    end_time: datetime | None = None
    metadata: dict = Field(default_factory=dict)
    messages: list[Message] = Field(default_factory=list)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_times(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def content_length(self) -> int:
        """Total character count across all message texts."""

        return sum(len(message.text) for message in self.messages)


class TimeWindow(BaseModel):
    """Half-open search interval [start, end) used during session discovery."""

    start: datetime
    end: datetime
    duration_hours: int
    label: str


class ExistingClassifications(BaseModel):
    """Label sets discovered so far, passed to every LLM call for consistent terminology."""

    general_intent: set[str] = Field(default_factory=set)
    transfer_reason: set[str] = Field(default_factory=set)
    drop_off_location: set[str] = Field(default_factory=set)

    def clone(self) -> ExistingClassifications:
        """Return an independent copy."""

        return ExistingClassifications(
            general_intent=set(self.general_intent),
            transfer_reason=set(self.transfer_reason),
            drop_off_location=set(self.drop_off_location),
        )

    def total_count(self) -> int:
        return len(self.general_intent) + len(self.transfer_reason) + len(self.drop_off_location)

    def is_empty(self) -> bool:
        return self.total_count() == 0


class SessionFacts(BaseModel):
    """Classification facts for one session."""

    general_intent: str
    session_outcome: SessionOutcome
    transfer_reason: str = ""
    drop_off_location: str = ""
    notes: str = ""


class AnalysisMetadata(BaseModel):
    """Provenance of a classification result."""

    tokens_used: int = 0
    processing_time_ms: int = 0
    batch_number: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    model: str

    @property
    def is_fallback(self) -> bool:
        return self.batch_number == FALLBACK_BATCH_NUMBER


class SessionWithFacts(Session):
    """A session together with its classification facts and analysis metadata."""

    facts: SessionFacts
    analysis_metadata: AnalysisMetadata

    @classmethod
    def from_session(
        cls,
        session: Session,
        *,
        facts: SessionFacts,
        analysis_metadata: AnalysisMetadata,
    ) -> SessionWithFacts:
        return cls(
            session_id=session.session_id,
            user_id=session.user_id,
            start_time=session.start_time,
            end_time=session.end_time,
            metadata=dict(session.metadata),
            messages=list(session.messages),
            facts=facts,
            analysis_metadata=analysis_metadata,
        )


class TokenUsage(BaseModel):
    """Token and cost accounting for one or more LLM calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    model: str = ""

    @classmethod
    def empty(cls, model: str = "") -> TokenUsage:
        return cls(model=model)

    def add(self, other: TokenUsage) -> TokenUsage:
        """Return the sum of two usage records, keeping the newer model id."""

        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cost=self.cost + other.cost,
            model=other.model or self.model,
        )


class TokenEstimation(BaseModel):
    """Token budget estimate for a set of sessions against one model."""

    estimated_tokens: int
    recommended_batch_size: int
    requires_splitting: bool
    cost_estimate: float


class BatchAnalysisResult(BaseModel):
    """Raw output of one LLM classification call.

    `sessions` holds the undecoded per-session items exactly as the model
    returned them; decoding and checking happen in the response validator.
    """

    sessions: list[Any] = Field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    model: str = ""

    def token_usage(self) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.total_tokens,
            cost=self.cost,
            model=self.model,
        )


class SessionClassificationItem(BaseModel):
    """One decoded per-session entry of an LLM classification response."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    session_id: str = Field(min_length=1)
    user_id: str = ""
    general_intent: str = Field(min_length=1)
    session_outcome: SessionOutcome
    transfer_reason: str | None = ""
    drop_off_location: str | None = ""
    notes: str

    def to_facts(self) -> SessionFacts:
        return SessionFacts(
            general_intent=self.general_intent,
            session_outcome=self.session_outcome,
            transfer_reason=self.transfer_reason or "",
            drop_off_location=self.drop_off_location or "",
            notes=self.notes,
        )


class ValidationResult(BaseModel):
    """Outcome of checking one LLM batch response against the sessions sent.

    `status` is "ok" only when every input session came back exactly once
    with a well-formed entry; `classifications` always carries the entries
    that were accepted, so partial failures keep their good results.
    """

    all_sessions_processed: bool
    processed_count: int
    missing_count: int
    missing_sessions: list[Session] = Field(default_factory=list)
    validation_errors: list[str] = Field(default_factory=list)
    error_kinds: list[str] = Field(default_factory=list)
    classifications: list[SessionClassificationItem] = Field(default_factory=list)

    @property
    def status(self) -> Literal["ok", "partial_failure"]:
        return "ok" if self.all_sessions_processed else "partial_failure"


class StreamConfig(BaseModel):
    """Assignment for one logical stream worker."""

    stream_id: int
    sessions: list[Session]
    base_classifications: ExistingClassifications
    model_id: str
    api_key: str = ""
    max_sessions_per_call: int = 0
    retry_attempts: int = 3
    additional_context: str | None = None


class StreamResult(BaseModel):
    """Outcome of one stream worker."""

    stream_id: int
    processed_sessions: list[SessionWithFacts] = Field(default_factory=list)
    new_classifications: ExistingClassifications = Field(default_factory=ExistingClassifications)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    validation_results: list[ValidationResult] = Field(default_factory=list)
    retry_attempts: int = 0
    processing_time_ms: int = 0


class SessionStream(BaseModel):
    """A contiguous chunk of sessions mapped to a 1-based stream id."""

    stream_id: int
    sessions: list[Session]


class StreamProgress(BaseModel):
    """Live progress snapshot for one stream in a round."""

    stream_id: int
    sessions_assigned: int
    sessions_processed: int = 0
    status: Literal["idle", "processing", "completed", "error"] = "idle"
    tokens_used: int = 0


class ParallelConfig(BaseModel):
    """Run-level tuning for parallel processing.

    A `stream_count` of None lets the orchestrator derive it from the model
    recommendation and the number of sessions. A `max_sessions_per_llm_call`
    of 0 means "use the token budget estimator's limit".
    """

    stream_count: int | None = Field(default=None, ge=1)
    sessions_per_stream: int = Field(default=4, ge=1)
    max_sessions_per_llm_call: int = Field(default=0, ge=0)
    retry_attempts: int = Field(default=3, ge=0)
    sync_frequency: SyncFrequency = "after_each_round"


class ProcessingStats(BaseModel):
    total_rounds: int = 0
    average_stream_utilization: float = 0.0
    sync_points: int = 0
    failed_streams: int = 0
    conflict_resolution_runs: int = 0


class ParallelProcessingResult(BaseModel):
    """Terminal result of a parallel classification run."""

    processed_sessions: list[SessionWithFacts] = Field(default_factory=list)
    final_classifications: ExistingClassifications = Field(
        default_factory=ExistingClassifications
    )
    stream_results: list[StreamResult] = Field(default_factory=list)
    total_token_usage: TokenUsage = Field(default_factory=TokenUsage)
    processing_stats: ProcessingStats = Field(default_factory=ProcessingStats)
