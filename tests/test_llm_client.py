"""Tests for src/llm/client.py — request shape, credentials and usage accounting."""

from __future__ import annotations

import json

import httpx
import pytest

from src.core.config import LLMConfig
from src.core.exceptions import AuthenticationError
from src.llm.budget import BudgetLedger
from src.llm.client import ChatCompletionClient, LLMMessage, LLMResponse, auth_headers


def _ok(content: str = "NO_CHANGES") -> dict:
    return {
        "choices": [{"message": {"content": content}}],
        "model": "dep-1",
        "usage": {"prompt_tokens": 12, "completion_tokens": 8, "total_tokens": 20},
    }


class TestAuthHeaders:
    def test_signed_token_is_bearer(self):
        assert auth_headers("aaa.bbb.ccc") == {"Authorization": "Bearer aaa.bbb.ccc"}

    @pytest.mark.parametrize("secret", ["plainkey", "a.b", "a..c", "a.b.c.d", ".b.c"])
    def test_other_secrets_are_api_key(self, secret):
        assert auth_headers(secret) == {"api-key": secret}


class TestComplete:
    def _client(self, handler, ledger=None, api_key="opaque"):
        config = LLMConfig(endpoint="https://llm.test/", api_version="2024-06-01")
        client = ChatCompletionClient(config=config, ledger=ledger, api_key=api_key)
        client._client = httpx.Client(transport=httpx.MockTransport(handler))
        return client

    def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_ok())

        client = self._client(handler)
        resp = client.complete(
            [LLMMessage("system", "sys"), LLMMessage("user", "hi")],
            deployment="dep-1",
            temperature=0.0,
        )
        assert isinstance(resp, LLMResponse)
        assert seen["url"] == (
            "https://llm.test/openai/deployments/dep-1/chat/completions?api-version=2024-06-01"
        )
        assert seen["headers"]["api-key"] == "opaque"
        assert seen["body"]["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]
        assert seen["body"]["temperature"] == 0.0
        client.close()

    def test_usage_recorded_in_ledger(self):
        ledger = BudgetLedger(max_iteration_tokens=1000, max_total_tokens=1000, max_cost_gbp=10)
        client = self._client(lambda request: httpx.Response(200, json=_ok()), ledger=ledger)
        resp = client.complete([LLMMessage("user", "x")], deployment="dep-1", role="builder")
        assert resp.input_tokens == 12
        assert resp.output_tokens == 8
        assert ledger.total_tokens == 20
        client.close()

    def test_null_content_becomes_empty_string(self):
        body = {"choices": [{"message": {"content": None}}]}
        client = self._client(lambda request: httpx.Response(200, json=body))
        assert client.complete([LLMMessage("user", "x")], deployment="d").content == ""
        client.close()

    def test_missing_key_raises(self, monkeypatch):
        monkeypatch.delenv("REPAIR_LLM_API_KEY", raising=False)
        client = ChatCompletionClient(config=LLMConfig(endpoint="https://llm.test"))
        with pytest.raises(AuthenticationError):
            client.complete([LLMMessage("user", "x")], deployment="d")

    def test_key_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("REPAIR_LLM_API_KEY", "from-env")
        client = ChatCompletionClient(config=LLMConfig())
        assert client.api_key == "from-env"
