"""OpenAI client wrapper used by the classifier."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Sequence
from typing import Protocol

from openai import APIError, APITimeoutError, BadRequestError, OpenAI, RateLimitError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

from session_classifier.models.catalog import get_model_by_id


class LLMJsonClient(Protocol):
    """Protocol for clients that return structured JSON plus per-call token usage."""

    def complete_json_with_usage(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        schema_name: str | None = None,
        json_schema: dict | None = None,
        strict_schema: bool = True,
    ) -> tuple[dict, dict]:
        """Return `(payload, usage)` where usage has prompt/completion/total token counts."""


LLMClientFactory = Callable[[str, str], LLMJsonClient]
"""Builds a client for `(api_key, model_id)`."""


class OpenAIJsonClient:
    """JSON-focused wrapper around OpenAI chat completions."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.0,
        max_retries: int = 4,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._client = OpenAI(api_key=api_key, base_url=base_url or None)
        self._model = model
        self._temperature = temperature
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._metrics_lock = threading.Lock()
        self._request_count = 0
        self._retry_count = 0
        self._schema_fallback_count = 0
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._total_tokens = 0

    def _supports_schema_fallback(self, exc: BadRequestError) -> bool:
        """Return True when the error suggests schema response format is unsupported."""

        message = str(exc).lower()
        fallback_tokens: Sequence[str] = (
            "json_schema",
            "response_format",
            "unsupported",
            "not supported",
            "invalid schema",
        )
        return any(token in message for token in fallback_tokens)

    def _is_retryable_openai_error(self, exc: BaseException) -> bool:
        if isinstance(exc, (RateLimitError, APITimeoutError)):
            return True
        if isinstance(exc, BadRequestError):
            return False
        return isinstance(exc, APIError)

    def _create_completion_with_retry(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_format: dict,
    ):
        """Create chat completion with retry/backoff for transient errors."""

        response = None
        attempt_count = 0
        wait_strategy = wait_exponential(
            multiplier=self._backoff_seconds,
            min=self._backoff_seconds,
            max=max(self._backoff_seconds, self._backoff_seconds * 8),
        ) + wait_random(0.0, 0.25)
        retryer = Retrying(
            retry=retry_if_exception(self._is_retryable_openai_error),
            wait=wait_strategy,
            stop=stop_after_attempt(max(1, self._max_retries)),
            reraise=True,
        )

        for attempt in retryer:
            with attempt:
                attempt_count += 1
                response = self._client.chat.completions.create(
                    model=self._model,
                    temperature=self._temperature,
                    response_format=response_format,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                )

        if response is None:
            raise ValueError("OpenAI response missing after retries.")

        with self._metrics_lock:
            self._request_count += 1
            self._retry_count += max(0, attempt_count - 1)
        return response

    def _record_usage(self, response) -> dict:
        usage = getattr(response, "usage", None)
        counts = {
            "prompt_tokens": int(getattr(usage, "prompt_tokens", 0) or 0),
            "completion_tokens": int(getattr(usage, "completion_tokens", 0) or 0),
            "total_tokens": int(getattr(usage, "total_tokens", 0) or 0),
        }
        with self._metrics_lock:
            self._prompt_tokens += counts["prompt_tokens"]
            self._completion_tokens += counts["completion_tokens"]
            self._total_tokens += counts["total_tokens"]
        return counts

    def complete_json_with_usage(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        schema_name: str | None = None,
        json_schema: dict | None = None,
        strict_schema: bool = True,
    ) -> tuple[dict, dict]:
        """Call the OpenAI API and parse a JSON object plus token usage from the response."""

        if json_schema is not None:
            schema_response_format = {
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name or "structured_output",
                    "schema": json_schema,
                    "strict": bool(strict_schema),
                },
            }
            try:
                response = self._create_completion_with_retry(
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    response_format=schema_response_format,
                )
            except BadRequestError as exc:
                if not self._supports_schema_fallback(exc):
                    raise
                with self._metrics_lock:
                    self._schema_fallback_count += 1
                response = self._create_completion_with_retry(
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    response_format={"type": "json_object"},
                )
        else:
            response = self._create_completion_with_retry(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                response_format={"type": "json_object"},
            )

        usage = self._record_usage(response)
        content = response.choices[0].message.content
        if content is None:
            raise ValueError("Model returned empty content for JSON response.")

        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Model response was not valid JSON: {content}") from exc

        if not isinstance(payload, dict):
            raise ValueError(f"Expected JSON object, got {type(payload).__name__}.")

        return payload, usage

    def complete_json(self, **kwargs) -> dict:
        """Same as `complete_json_with_usage` without the usage counts."""

        payload, _ = self.complete_json_with_usage(**kwargs)
        return payload

    def metrics_snapshot(self) -> dict:
        """Return cumulative request/usage metrics for this client instance."""

        with self._metrics_lock:
            return {
                "request_count": self._request_count,
                "retry_count": self._retry_count,
                "schema_fallback_count": self._schema_fallback_count,
                "prompt_tokens": self._prompt_tokens,
                "completion_tokens": self._completion_tokens,
                "total_tokens": self._total_tokens,
                "model": self._model,
            }


class OpenAIClientFactory:
    """Builds one `OpenAIJsonClient` per `(api_key, model_id)` for the lifetime of this factory."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        temperature: float = 0.0,
        max_retries: int = 4,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._base_url = base_url
        self._temperature = temperature
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._lock = threading.Lock()
        self._clients: dict[tuple[str, str], OpenAIJsonClient] = {}

    def __call__(self, api_key: str, model_id: str) -> OpenAIJsonClient:
        key = (api_key, model_id)
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                model = get_model_by_id(model_id)
                client = OpenAIJsonClient(
                    api_key=api_key,
                    model=model.api_model if model is not None else model_id,
                    base_url=self._base_url,
                    temperature=self._temperature,
                    max_retries=self._max_retries,
                    backoff_seconds=self._backoff_seconds,
                )
                self._clients[key] = client
            return client

    def metrics_snapshot(self) -> list[dict]:
        with self._lock:
            clients = list(self._clients.values())
        return [client.metrics_snapshot() for client in clients]
