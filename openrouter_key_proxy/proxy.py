from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from fastapi.responses import Response

from openrouter_key_proxy.gateway.errors import (
    NoHealthyKeyError,
    NoKeysConfiguredError,
    QuotaExhaustedError,
    UpstreamConnectionError,
)
from openrouter_key_proxy.runtime.rotation import KeyRotator, Selection
from openrouter_key_proxy.storage.credentials import CredentialStore

logger = logging.getLogger("uvicorn.error")

QUOTA_ERROR_MARKERS = (
    "insufficient_quota",
    "quota",
    "rate limit",
    "rate_limit",
    "rate-limit",
    "too many requests",
    "credits",
)

UpstreamCall = Callable[[str], Awaitable[httpx.Response]]


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_type = exc.__class__.__name__.strip() or "RequestError"
    return {
        "error": str(exc).strip() or repr(exc),
        "error_type": error_type,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def _error_envelope(upstream: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = json.loads(upstream.content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    if isinstance(error, str):
        return {"message": error}
    return None


def is_quota_failure(status_code: int, error: dict[str, Any] | None) -> bool:
    if 200 <= status_code < 300:
        return False
    if error is None:
        return status_code == 429
    haystack = " ".join(
        str(error.get(field) or "") for field in ("type", "message", "code")
    ).lower()
    return any(marker in haystack for marker in QUOTA_ERROR_MARKERS)


def build_models_response(
    payload: Any,
    *,
    now: Callable[[], float] = time.time,
) -> dict[str, Any]:
    raw_models = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(raw_models, list):
        raw_models = []

    created_default = int(now())
    data: list[dict[str, Any]] = []
    for model in raw_models:
        if not isinstance(model, dict):
            continue
        model_id = model.get("id")
        if not isinstance(model_id, str) or not model_id.strip():
            continue
        model_id = model_id.strip()
        created = model.get("created")
        owned_by = model.get("owned_by")
        if not isinstance(owned_by, str) or not owned_by.strip():
            prefix, separator, _ = model_id.partition("/")
            owned_by = prefix if separator and prefix else "openrouter"
        data.append(
            {
                "id": model_id,
                "object": "model",
                "created": created if isinstance(created, int) else created_default,
                "owned_by": owned_by,
            }
        )
    return {"object": "list", "data": data}


def relay_response(upstream: httpx.Response) -> Response:
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type=upstream.headers.get("content-type", "application/json"),
    )


class OpenRouterClient:
    def __init__(
        self,
        base_url: str,
        default_model: str,
        *,
        http_referer: str,
        app_title: str,
        timeout_seconds: float,
        connect_timeout_seconds: float,
        probe_timeout_seconds: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.http_referer = http_referer
        self.app_title = app_title
        connect_timeout = max(0.1, float(connect_timeout_seconds))
        read_timeout = max(0.1, float(timeout_seconds))
        self.probe_timeout = httpx.Timeout(
            max(0.1, float(probe_timeout_seconds)),
            connect=connect_timeout,
        )
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=connect_timeout,
                read=read_timeout,
                write=read_timeout,
                pool=connect_timeout,
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    def build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.http_referer,
            "X-Title": self.app_title,
        }

    def prepare_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        prepared = dict(payload)
        if not prepared.get("model"):
            prepared["model"] = self.default_model
        return prepared

    async def chat_completions(
        self,
        payload: dict[str, Any],
        api_key: str,
    ) -> httpx.Response:
        return await self.client.post(
            f"{self.base_url}/chat/completions",
            json=self.prepare_payload(payload),
            headers=self.build_headers(api_key),
        )

    async def list_models(self, api_key: str) -> httpx.Response:
        return await self.client.get(
            f"{self.base_url}/models",
            headers=self.build_headers(api_key),
        )

    async def probe_key(self, api_key: str) -> bool:
        response = await self.client.get(
            f"{self.base_url}/models",
            headers=self.build_headers(api_key),
            timeout=self.probe_timeout,
        )
        return response.is_success


class ProxyService:
    """Sends a request with a rotated key and retries once on quota failure."""

    def __init__(self, rotator: KeyRotator, store: CredentialStore) -> None:
        self.rotator = rotator
        self.store = store

    async def forward(self, call: UpstreamCall, *, request_id: str) -> httpx.Response:
        selection = await self.rotator.next_key()
        upstream = await self._attempt(call, selection, request_id=request_id, attempt=1)
        if upstream.is_success:
            await self.store.record_key_result(selection.key.name, failed=False)
            return upstream

        if not is_quota_failure(upstream.status_code, _error_envelope(upstream)):
            logger.info(
                "proxy_upstream_error request_id=%s key=%s status=%d",
                request_id,
                selection.key.name,
                upstream.status_code,
            )
            return upstream

        await self._record_quota_failure(selection, upstream, request_id=request_id)
        try:
            retry_selection = await self.rotator.next_key(exclude={selection.key.name})
        except (NoKeysConfiguredError, NoHealthyKeyError) as exc:
            logger.warning(
                "quota_rotation_exhausted request_id=%s key=%s",
                request_id,
                selection.key.name,
            )
            raise QuotaExhaustedError() from exc

        logger.info(
            "key_rotation request_id=%s from=%s to=%s",
            request_id,
            selection.key.name,
            retry_selection.key.name,
        )
        retry = await self._attempt(call, retry_selection, request_id=request_id, attempt=2)
        if retry.is_success:
            await self.store.record_key_result(retry_selection.key.name, failed=False)
        elif is_quota_failure(retry.status_code, _error_envelope(retry)):
            await self._record_quota_failure(retry_selection, retry, request_id=request_id)
        return retry

    async def _attempt(
        self,
        call: UpstreamCall,
        selection: Selection,
        *,
        request_id: str,
        attempt: int,
    ) -> httpx.Response:
        started = time.perf_counter()
        try:
            upstream = await call(selection.key.value)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "proxy_request_error request_id=%s key=%s attempt=%d error_type=%s error=%s",
                request_id,
                selection.key.name,
                attempt,
                details["error_type"],
                details["error"],
            )
            raise UpstreamConnectionError(
                f"Could not reach upstream ({details['error_type']}): {details['error']}"
            ) from exc
        logger.info(
            "proxy_upstream_response request_id=%s key=%s attempt=%d status=%d elapsed_ms=%.2f",
            request_id,
            selection.key.name,
            attempt,
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        return upstream

    async def _record_quota_failure(
        self,
        selection: Selection,
        upstream: httpx.Response,
        *,
        request_id: str,
    ) -> None:
        logger.warning(
            "proxy_quota_failure request_id=%s key=%s status=%d",
            request_id,
            selection.key.name,
            upstream.status_code,
        )
        await self.store.record_key_result(selection.key.name, failed=True)
