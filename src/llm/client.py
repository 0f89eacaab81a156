"""Chat-completions client for the repair loop.

Single request/response exchange against an OpenAI-compatible deployment
endpoint (httpx). Adds credential-header selection, bounded retry with
exponential backoff, and usage reporting into the budget ledger.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Optional

import httpx

from src.core.config import LLMConfig
from src.core.exceptions import (
    AuthenticationError,
    EmptyChoicesError,
    ModelNotFoundError,
    RetryExhaustedError,
)
from src.llm.budget import BudgetLedger

logger = logging.getLogger("repairloop.llm")


class LLMMessage:
    """A single message in a conversation."""

    def __init__(self, role: str, content: str):
        self.role = role
        self.content = content

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


class LLMResponse:
    """Parsed response from the LLM."""

    def __init__(
        self,
        content: str,
        model: str,
        tokens_used: int = 0,
        raw: Optional[dict] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ):
        self.content = content
        self.model = model
        self.tokens_used = tokens_used
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.raw = raw or {}


class ChatCompletionClient:
    """HTTP client for deployment-addressed chat completions.

    Deployment ids come from config or the environment; this client never
    hardcodes them.
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        ledger: Optional[BudgetLedger] = None,
        api_key: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or LLMConfig()
        self.ledger = ledger
        self.api_key = api_key or os.getenv(self.config.api_key_env, "")
        self.endpoint = self.config.endpoint.rstrip("/")
        self._sleep = sleep
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    def complete(
        self,
        messages: list[LLMMessage],
        deployment: str,
        role: str = "",
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Send one chat completion request.

        Args:
            messages: Conversation messages.
            deployment: Deployment id serving the request.
            role: Agent role, used only for usage attribution.
            temperature: Sampling temperature (default from config).
            max_tokens: Max response tokens (default from config).

        Returns:
            LLMResponse with content, model, and token usage.

        Raises:
            EmptyChoicesError: Response had no choices. Not retried.
            RetryExhaustedError: Transient failures on every attempt.
        """
        if not self.api_key:
            raise AuthenticationError(f"{self.config.api_key_env} not set")

        payload: dict[str, Any] = {
            "model": deployment,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature if temperature is not None else self.config.default_temperature,
            "max_tokens": max_tokens or self.config.default_max_tokens,
        }
        headers = {"Content-Type": "application/json", **auth_headers(self.api_key)}

        response = self._request_with_retry(
            self._url_for(deployment),
            payload,
            headers,
            max_attempts=self.config.max_attempts,
            backoff_base_seconds=self.config.backoff_seconds,
        )
        if self.ledger is not None:
            self.ledger.add_usage(
                response.input_tokens, response.output_tokens, role=role, deployment=deployment,
            )
        return response

    def _url_for(self, deployment: str) -> str:
        return f"{self.endpoint}{self.config.chat_path.format(deployment=deployment)}"

    def _request_with_retry(
        self,
        url: str,
        payload: dict,
        headers: dict,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
    ) -> LLMResponse:
        """Execute request with exponential backoff on retryable errors."""
        last_error: Optional[object] = None
        last_status: Optional[int] = None
        params = {"api-version": self.config.api_version} if self.config.api_version else None

        for attempt in range(max_attempts):
            last_status = None
            try:
                resp = self.client.post(url, json=payload, headers=headers, params=params)
                last_status = resp.status_code if resp.is_error else None

                if resp.status_code == 401:
                    raise AuthenticationError("Invalid API key")
                if resp.status_code == 403:
                    raise AuthenticationError(f"Access denied for deployment {payload.get('model')}")
                if resp.status_code == 404:
                    raise ModelNotFoundError(f"Deployment not found: {payload.get('model')}")
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}"
                    self._wait(attempt, max_attempts, backoff_base_seconds, last_error)
                    continue

                resp.raise_for_status()
                return _parse_completion(resp.json(), payload)

            except (AuthenticationError, ModelNotFoundError, EmptyChoicesError):
                raise
            except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
                last_error = e
                self._wait(attempt, max_attempts, backoff_base_seconds, e)

        raise RetryExhaustedError(max_attempts, last_error, status_code=last_status)

    def _wait(self, attempt: int, max_attempts: int, base: float, reason: object) -> None:
        if attempt >= max_attempts - 1:
            return
        delay = _backoff_delay(attempt, base)
        logger.warning("LLM call failed (%s). Waiting %.1fs before retry %d", reason, delay, attempt + 2)
        self._sleep(delay)

    def without_ledger(self) -> "ChatCompletionClient":
        """Same endpoint, credentials and connection pool; usage goes unrecorded."""
        twin = ChatCompletionClient(self.config, ledger=None, api_key=self.api_key, sleep=self._sleep)
        twin._client = self.client
        return twin

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


def auth_headers(secret: str) -> dict[str, str]:
    """Pick the credential header from the secret's shape.

    A signed token (three non-empty dot-separated segments) is sent as a
    bearer token; anything else is an opaque key.
    """
    segments = secret.split(".")
    if len(segments) == 3 and all(segments):
        return {"Authorization": f"Bearer {secret}"}
    return {"api-key": secret}


def _parse_completion(data: dict, payload: dict) -> LLMResponse:
    choices = data.get("choices") if isinstance(data, dict) else None
    if not choices:
        raise EmptyChoicesError(f"LLM response had no choices for {payload.get('model')}")

    content = choices[0]["message"].get("content") or ""
    model = data.get("model", payload.get("model", "unknown"))
    usage = data.get("usage") or {}
    input_tokens = usage.get("prompt_tokens", 0)
    output_tokens = usage.get("completion_tokens", 0)
    tokens = usage.get("total_tokens", input_tokens + output_tokens)

    logger.debug("LLM response: model=%s tokens=%d", model, tokens)
    return LLMResponse(
        content=content, model=model, tokens_used=tokens, raw=data,
        input_tokens=input_tokens, output_tokens=output_tokens,
    )


def _backoff_delay(attempt: int, base_seconds: float = 2.0) -> float:
    """Exponential backoff: 2s, 4s, 8s, ..."""
    return min(base_seconds * (2 ** attempt), 60)
