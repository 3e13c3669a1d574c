"""Session metadata and message sources."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

from session_classifier.schemas import Session


class SessionSourceError(RuntimeError):
    """Raised when the session source returns an unusable response."""


class SessionSource(Protocol):
    """Protocol for the vendor platform that stores bot sessions."""

    def get_sessions_metadata(self, start: datetime, end: datetime, limit: int) -> list[dict]:
        """Return session metadata (no message bodies) for sessions starting in [start, end)."""

    def get_messages(
        self,
        session_ids: list[str],
        start: datetime,
        end: datetime,
    ) -> list[dict]:
        """Return message records for the given sessions within [start, end]."""


class HttpSessionSource:
    """Thin client around a session-history REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 60.0,
        max_retries: int = 4,
        backoff_seconds: float = 1.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._http = httpx.Client(
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""

        self._http.close()

    def _is_retryable_http_error(self, exc: BaseException) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            return status == 429 or status >= 500
        return isinstance(exc, (httpx.TimeoutException, httpx.RequestError))

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        response: httpx.Response | None = None
        wait_strategy = wait_exponential(
            multiplier=self._backoff_seconds,
            min=self._backoff_seconds,
            max=max(self._backoff_seconds, self._backoff_seconds * 8),
        ) + wait_random(0.0, 0.25)
        retryer = Retrying(
            retry=retry_if_exception(self._is_retryable_http_error),
            wait=wait_strategy,
            stop=stop_after_attempt(max(1, self._max_retries)),
            reraise=True,
        )
        for attempt in retryer:
            with attempt:
                response = self._http.request(method, f"{self._base_url}{path}", **kwargs)
                response.raise_for_status()

        if response is None:
            raise SessionSourceError(f"Session API response missing after retries: {path}")

        payload = response.json()
        if not isinstance(payload, dict):
            raise SessionSourceError(
                f"Unexpected session API response type: {type(payload).__name__}"
            )
        return payload

    def get_sessions_metadata(self, start: datetime, end: datetime, limit: int) -> list[dict]:
        payload = self._request(
            "GET",
            "/sessions",
            params={"start": start.isoformat(), "end": end.isoformat(), "limit": limit},
        )
        sessions = payload.get("sessions")
        if not isinstance(sessions, list):
            raise SessionSourceError("Sessions response missing list field 'sessions'.")
        return [item for item in sessions if isinstance(item, dict)]

    def get_messages(
        self,
        session_ids: list[str],
        start: datetime,
        end: datetime,
    ) -> list[dict]:
        if not session_ids:
            return []
        payload = self._request(
            "POST",
            "/messages",
            json={
                "session_ids": session_ids,
                "start": start.isoformat(),
                "end": end.isoformat(),
            },
        )
        messages = payload.get("messages")
        if not isinstance(messages, list):
            raise SessionSourceError("Messages response missing list field 'messages'.")
        return [item for item in messages if isinstance(item, dict)]


class InMemorySessionSource:
    """Serve metadata and messages from already-loaded sessions (e.g. a JSONL export)."""

    def __init__(self, sessions: list[Session]) -> None:
        self._sessions = list(sessions)
        self.message_requests: list[list[str]] = []

    def get_sessions_metadata(self, start: datetime, end: datetime, limit: int) -> list[dict]:
        rows: list[dict] = []
        for session in self._sessions:
            if session.start_time is None or not (start <= session.start_time < end):
                continue
            rows.append(
                {
                    "session_id": session.session_id,
                    "user_id": session.user_id,
                    "start_time": session.start_time.isoformat(),
                    "end_time": session.end_time.isoformat() if session.end_time else None,
                    "metadata": dict(session.metadata),
                    "message_count": len(session.messages),
                }
            )
            if len(rows) >= limit:
                break
        return rows

    def get_messages(
        self,
        session_ids: list[str],
        start: datetime,
        end: datetime,
    ) -> list[dict]:
        self.message_requests.append(list(session_ids))
        wanted = set(session_ids)
        records: list[dict] = []
        for session in self._sessions:
            if session.session_id not in wanted:
                continue
            for message in session.messages:
                if message.timestamp is not None and not (start <= message.timestamp <= end):
                    continue
                records.append(
                    {
                        "session_id": session.session_id,
                        "timestamp": message.timestamp.isoformat() if message.timestamp else None,
                        "role": message.role,
                        "text": message.text,
                    }
                )
        return records
