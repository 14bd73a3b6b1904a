from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from openrouter_key_proxy.gateway.errors import (
    NoKeysConfiguredError,
    QuotaExhaustedError,
    UpstreamConnectionError,
)
from openrouter_key_proxy.models import KeyStats, UpstreamKey
from openrouter_key_proxy.proxy import (
    OpenRouterClient,
    ProxyService,
    build_models_response,
    is_quota_failure,
)
from openrouter_key_proxy.runtime.health import KeyHealthTracker
from openrouter_key_proxy.runtime.rotation import KeyRotator
from openrouter_key_proxy.storage.credentials import CredentialStore
from openrouter_key_proxy.storage.kv import InMemoryKeyValueStore


async def _unused_probe(_: str) -> bool:
    return True


def _build_service(*names: str) -> tuple[ProxyService, CredentialStore]:
    store = CredentialStore(InMemoryKeyValueStore())
    asyncio.run(
        store.save_upstream_keys(
            [UpstreamKey(name=name, value=f"sk-{name}") for name in names]
        )
    )
    tracker = KeyHealthTracker(probe=_unused_probe, interval_seconds=0)
    return ProxyService(KeyRotator(store, tracker), store), store


def _build_client(handler: Any) -> OpenRouterClient:
    return OpenRouterClient(
        "https://openrouter.test/api/v1/",
        "deepseek/deepseek-chat-v3-0324:free",
        http_referer="https://proxy.test",
        app_title="Key Proxy Tests",
        timeout_seconds=30,
        connect_timeout_seconds=5,
        probe_timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.parametrize(
    ("status_code", "error", "expected"),
    [
        (429, None, True),
        (500, None, False),
        (200, {"message": "quota"}, False),
        (402, {"message": "Insufficient credits on this key"}, True),
        (429, {"message": "Rate limit exceeded: free-models-per-day"}, True),
        (400, {"type": "insufficient_quota", "message": "nope"}, True),
        (403, {"code": "RATE_LIMIT"}, True),
        (400, {"message": "messages must not be empty"}, False),
        (429, {"message": "upstream provider overloaded"}, False),
    ],
)
def test_is_quota_failure(status_code: int, error: Any, expected: bool) -> None:
    assert is_quota_failure(status_code, error) is expected


def test_build_models_response_remaps_upstream_entries() -> None:
    payload = {
        "data": [
            {"id": "openai/gpt-4o", "created": 1700000000, "name": "GPT-4o"},
            {"id": "local-model", "owned_by": "acme"},
            {"id": "plain"},
            {"name": "missing id"},
            "not-a-dict",
        ]
    }

    result = build_models_response(payload, now=lambda: 1234.9)

    assert result == {
        "object": "list",
        "data": [
            {
                "id": "openai/gpt-4o",
                "object": "model",
                "created": 1700000000,
                "owned_by": "openai",
            },
            {"id": "local-model", "object": "model", "created": 1234, "owned_by": "acme"},
            {"id": "plain", "object": "model", "created": 1234, "owned_by": "openrouter"},
        ],
    }


def test_build_models_response_tolerates_missing_data() -> None:
    assert build_models_response({"error": "x"}) == {"object": "list", "data": []}
    assert build_models_response(["unexpected"]) == {"object": "list", "data": []}


def test_chat_completions_sends_attribution_headers_and_default_model() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = dict(request.headers)
        captured["body"] = json.loads(request.content.decode("utf-8"))
        return httpx.Response(200, json={"id": "chatcmpl-1"})

    client = _build_client(handler)
    payload = {"messages": [{"role": "user", "content": "hi"}]}
    response = asyncio.run(client.chat_completions(payload, "sk-or-v1-abc"))
    asyncio.run(client.close())

    assert response.status_code == 200
    assert captured["url"] == "https://openrouter.test/api/v1/chat/completions"
    assert captured["headers"]["authorization"] == "Bearer sk-or-v1-abc"
    assert captured["headers"]["http-referer"] == "https://proxy.test"
    assert captured["headers"]["x-title"] == "Key Proxy Tests"
    assert captured["body"]["model"] == "deepseek/deepseek-chat-v3-0324:free"
    assert "model" not in payload


def test_chat_completions_keeps_client_model() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content.decode("utf-8"))["model"])
        return httpx.Response(200, json={})

    client = _build_client(handler)
    asyncio.run(client.chat_completions({"model": "openai/gpt-4o", "messages": []}, "sk"))
    asyncio.run(client.close())
    assert seen == ["openai/gpt-4o"]


def test_probe_key_reports_upstream_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/models"
        if request.headers["authorization"] == "Bearer sk-good":
            return httpx.Response(200, json={"data": []})
        return httpx.Response(401, json={"error": {"message": "No auth credentials found"}})

    client = _build_client(handler)
    assert asyncio.run(client.probe_key("sk-good")) is True
    assert asyncio.run(client.probe_key("sk-bad")) is False
    asyncio.run(client.close())


def test_forward_success_records_usage() -> None:
    service, store = _build_service("k1")

    async def call(api_key: str) -> httpx.Response:
        assert api_key == "sk-k1"
        return httpx.Response(200, json={"ok": True})

    response = asyncio.run(service.forward(call, request_id="req-1"))

    assert response.status_code == 200
    assert asyncio.run(store.load_stats()) == {"k1": KeyStats(usage=1, errors=0)}


def test_forward_relays_non_quota_errors_without_rotation() -> None:
    service, store = _build_service("k1", "k2")
    used: list[str] = []

    async def call(api_key: str) -> httpx.Response:
        used.append(api_key)
        return httpx.Response(400, json={"error": {"message": "bad request"}})

    response = asyncio.run(service.forward(call, request_id="req-1"))

    assert response.status_code == 400
    assert used == ["sk-k1"]
    keys = asyncio.run(store.load_upstream_keys())
    assert all(key.is_healthy is None for key in keys)


def test_forward_rotates_once_on_quota_failure() -> None:
    service, store = _build_service("k1", "k2")
    used: list[str] = []

    async def call(api_key: str) -> httpx.Response:
        used.append(api_key)
        if api_key == "sk-k1":
            return httpx.Response(429, json={"error": {"message": "Rate limit exceeded"}})
        return httpx.Response(200, json={"ok": True})

    response = asyncio.run(service.forward(call, request_id="req-1"))

    assert response.status_code == 200
    assert used == ["sk-k1", "sk-k2"]
    keys = asyncio.run(store.load_upstream_keys())
    assert {key.name: key.is_healthy for key in keys} == {"k1": None, "k2": None}
    assert asyncio.run(store.load_stats()) == {
        "k1": KeyStats(usage=0, errors=1),
        "k2": KeyStats(usage=1, errors=0),
    }


def test_forward_returns_second_failure_verbatim() -> None:
    service, store = _build_service("k1", "k2", "k3")
    used: list[str] = []

    async def call(api_key: str) -> httpx.Response:
        used.append(api_key)
        return httpx.Response(429, json={"error": {"message": "quota exceeded"}})

    response = asyncio.run(service.forward(call, request_id="req-1"))

    assert response.status_code == 429
    assert response.json() == {"error": {"message": "quota exceeded"}}
    assert used == ["sk-k1", "sk-k2"]
    keys = asyncio.run(store.load_upstream_keys())
    assert {key.name: key.is_healthy for key in keys} == {
        "k1": None,
        "k2": None,
        "k3": None,
    }


def test_forward_raises_quota_exhausted_without_alternative_key() -> None:
    service, store = _build_service("k1")

    async def call(_: str) -> httpx.Response:
        return httpx.Response(429, text="Too Many Requests")

    with pytest.raises(QuotaExhaustedError):
        asyncio.run(service.forward(call, request_id="req-1"))

    keys = asyncio.run(store.load_upstream_keys())
    assert keys[0].is_healthy is None
    assert asyncio.run(store.load_stats()) == {"k1": KeyStats(usage=0, errors=1)}


def test_forward_without_keys_raises_before_calling_upstream() -> None:
    service, _ = _build_service()

    async def call(_: str) -> httpx.Response:
        raise AssertionError("upstream must not be called")

    with pytest.raises(NoKeysConfiguredError):
        asyncio.run(service.forward(call, request_id="req-1"))


def test_forward_wraps_transport_errors() -> None:
    service, _ = _build_service("k1")

    async def call(_: str) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    with pytest.raises(UpstreamConnectionError) as exc_info:
        asyncio.run(service.forward(call, request_id="req-1"))
    assert "ConnectError" in exc_info.value.message
    assert exc_info.value.status_code == 502
