"""Time-windowed session discovery and unbiased sampling."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from session_classifier.models.session_source import SessionSource
from session_classifier.schemas import Message, Session, TimeWindow

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_SESSION_COUNT = 10
MIN_MESSAGES_PER_SESSION = 2
MIN_CONTENT_LENGTH = 10
DEFAULT_FETCH_LIMIT = 10000
MESSAGE_BUFFER_HOURS = 1

# (duration_hours, label), searched in order until enough sessions are found.
TIME_WINDOW_LADDER: tuple[tuple[int, str], ...] = (
    (3, "Initial 3-hour window"),
    (6, "Extended to 6 hours"),
    (12, "Extended to 12 hours"),
    (144, "Extended to 6 days"),
)

USER_ROLES = frozenset({"user", "incoming", "customer"})

SamplingProgressCallback = Callable[[str, int, int, str], None]
"""Called with (current_step, sessions_found, window_index, window_label)."""


class InsufficientSessionsError(ValueError):
    """Raised when the discovered pool is smaller than the minimum session count."""

    def __init__(self, found: int, required: int) -> None:
        self.found = found
        self.required = required
        super().__init__(
            f"Insufficient sessions found. Found {found} sessions, but need at least "
            f"{required}. Try expanding your time range or choosing a different date."
        )


class SamplingConfig(BaseModel):
    """What to sample: a local (US Eastern) start date/time and a target count."""

    start_date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    start_time: str = Field(pattern=r"^\d{1,2}:\d{2}$")
    session_count: int = Field(ge=1)

    @field_validator("start_date")
    @classmethod
    def _check_date(cls, value: str) -> str:
        datetime.strptime(value, "%Y-%m-%d")
        return value


@dataclass
class SamplingResult:
    sessions: list[Session]
    time_windows: list[TimeWindow] = field(default_factory=list)
    total_found: int = 0


def eastern_utc_offset_hours(date: datetime) -> int:
    """Approximate US Eastern offset: EDT (4h) for April through October, else EST (5h)."""

    return 4 if 4 <= date.month <= 10 else 5


def parse_start_instant(start_date: str, start_time: str) -> datetime:
    """Convert a US Eastern civil date/time to a UTC instant."""

    local = datetime.strptime(f"{start_date} {start_time}", "%Y-%m-%d %H:%M")
    return (local + timedelta(hours=eastern_utc_offset_hours(local))).replace(tzinfo=UTC)


def generate_time_windows(start_date: str, start_time: str) -> list[TimeWindow]:
    """Expanding windows, all anchored at the requested start instant."""

    start = parse_start_instant(start_date, start_time)
    return [
        TimeWindow(
            start=start,
            end=start + timedelta(hours=hours),
            duration_hours=hours,
            label=label,
        )
        for hours, label in TIME_WINDOW_LADDER
    ]


def random_sample(items: Sequence[T], count: int, rng: random.Random | None = None) -> list[T]:
    """Fisher-Yates shuffle-and-slice; returns everything when `count` covers the pool."""

    if len(items) <= count:
        return list(items)
    rng = rng or random.Random()
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled[:count]


def _parse_timestamp(value: object) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def session_from_metadata(row: dict) -> Session | None:
    """Build a message-less Session from a metadata record, or None if it is unusable."""

    session_id = str(row.get("session_id") or row.get("sessionId") or "").strip()
    user_id = str(row.get("user_id") or row.get("userId") or "").strip()
    start_time = _parse_timestamp(row.get("start_time") or row.get("startTime"))
    if not session_id or not user_id or start_time is None:
        return None
    metadata = row.get("metadata")
    try:
        return Session(
            session_id=session_id,
            user_id=user_id,
            start_time=start_time,
            end_time=_parse_timestamp(row.get("end_time") or row.get("endTime")),
            metadata=metadata if isinstance(metadata, dict) else {},
        )
    except ValidationError:
        return None


def message_from_record(record: dict) -> Message | None:
    text = record.get("text")
    if text is None:
        text = record.get("message")
    if not isinstance(text, str):
        return None
    raw_role = str(record.get("role") or record.get("type") or "").strip().lower()
    return Message(
        role="user" if raw_role in USER_ROLES else "bot",
        text=text,
        timestamp=_parse_timestamp(record.get("timestamp") or record.get("createdOn")),
    )


def has_valid_content(
    session: Session,
    *,
    min_messages: int = MIN_MESSAGES_PER_SESSION,
    min_content_length: int = MIN_CONTENT_LENGTH,
) -> bool:
    if len(session.messages) < min_messages:
        return False
    content = "".join(message.text.strip() for message in session.messages)
    return len(content) >= min_content_length


class SessionSampler:
    """Find candidate sessions in widening time windows and draw a fair sample.

    Only metadata is fetched while searching; message bodies are requested
    once, for the sampled sessions alone, and the content filter is applied
    after that. Sessions dropped by that filter are not replaced.
    """

    def __init__(
        self,
        source: SessionSource,
        *,
        rng: random.Random | None = None,
        min_session_count: int = MIN_SESSION_COUNT,
        min_messages: int = MIN_MESSAGES_PER_SESSION,
        min_content_length: int = MIN_CONTENT_LENGTH,
        fetch_limit: int = DEFAULT_FETCH_LIMIT,
        message_buffer_hours: int = MESSAGE_BUFFER_HOURS,
    ) -> None:
        self._source = source
        self._rng = rng or random.Random()
        self.min_session_count = min_session_count
        self.min_messages = min_messages
        self.min_content_length = min_content_length
        self.fetch_limit = fetch_limit
        self.message_buffer_hours = message_buffer_hours

    def _sessions_in_window(self, window: TimeWindow) -> list[Session]:
        logger.info(
            "Fetching sessions for %s from %s to %s",
            window.label,
            window.start.isoformat(),
            window.end.isoformat(),
        )
        try:
            rows = self._source.get_sessions_metadata(window.start, window.end, self.fetch_limit)
        except Exception as exc:
            logger.error("Error fetching sessions for window %s: %s", window.label, exc)
            return []
        sessions = [session for session in map(session_from_metadata, rows) if session]
        logger.info("Found %d valid sessions in window %s", len(sessions), window.label)
        return sessions

    def _attach_messages(self, sessions: list[Session]) -> tuple[list[Session], bool]:
        """Fetch messages for `sessions` only. Returns (sessions, fetched_ok)."""

        if not sessions:
            return sessions, True

        buffer = timedelta(hours=self.message_buffer_hours)
        starts = [session.start_time for session in sessions if session.start_time]
        ends = [session.end_time or session.start_time for session in sessions]
        range_start = min(starts) - buffer
        range_end = max(end for end in ends if end is not None) + buffer

        session_ids = [session.session_id for session in sessions]
        logger.info(
            "Fetching messages for %d sampled sessions from %s to %s",
            len(session_ids),
            range_start.isoformat(),
            range_end.isoformat(),
        )
        try:
            records = self._source.get_messages(session_ids, range_start, range_end)
        except Exception as exc:
            logger.error("Error fetching messages for sampled sessions: %s", exc)
            return sessions, False

        by_session: dict[str, list[Message]] = {}
        for record in records:
            session_id = record.get("session_id") or record.get("sessionId")
            message = message_from_record(record)
            if session_id and message is not None:
                by_session.setdefault(session_id, []).append(message)

        attached: list[Session] = []
        for session in sessions:
            messages = by_session.get(session.session_id, [])
            messages.sort(key=lambda m: m.timestamp or datetime.min.replace(tzinfo=UTC))
            attached.append(session.model_copy(update={"messages": messages}))
        logger.info("Retrieved %d messages for sampled sessions", len(records))
        return attached, True

    def sample_sessions(
        self,
        config: SamplingConfig,
        progress_callback: SamplingProgressCallback | None = None,
    ) -> SamplingResult:
        """Discover, deduplicate and sample sessions for `config`.

        Raises `InsufficientSessionsError` when the pool across all windows is
        below `min_session_count`.
        """

        pool: dict[str, Session] = {}
        used_windows: list[TimeWindow] = []

        for index, window in enumerate(
            generate_time_windows(config.start_date, config.start_time)
        ):
            if progress_callback is not None:
                progress_callback(f"Searching in {window.label}...", len(pool), index, window.label)

            for session in self._sessions_in_window(window):
                pool[session.session_id] = session
            used_windows.append(window)

            if progress_callback is not None:
                progress_callback(
                    f"Found {len(pool)} sessions in {window.label}",
                    len(pool),
                    index,
                    window.label,
                )
            if len(pool) >= config.session_count:
                break

        candidates = list(pool.values())
        if len(candidates) < self.min_session_count:
            raise InsufficientSessionsError(len(candidates), self.min_session_count)

        sampled = random_sample(candidates, config.session_count, self._rng)
        with_messages, fetched = self._attach_messages(sampled)
        if fetched:
            final = [
                session
                for session in with_messages
                if has_valid_content(
                    session,
                    min_messages=self.min_messages,
                    min_content_length=self.min_content_length,
                )
            ]
        else:
            final = with_messages

        if len(final) < len(sampled):
            logger.warning(
                "Dropped %d sampled sessions without enough content (%d remain)",
                len(sampled) - len(final),
                len(final),
            )
        return SamplingResult(
            sessions=final,
            time_windows=used_windows,
            total_found=len(candidates),
        )
