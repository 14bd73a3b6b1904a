from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from openrouter_key_proxy import admin
from openrouter_key_proxy.gateway.auth import (
    AdminGuard,
    AdminSessionManager,
    ClientTokenAuthenticator,
)
from openrouter_key_proxy.gateway.errors import (
    InvalidRequestError,
    ProxyError,
    admin_error_response,
    openai_error_response,
    render_proxy_error,
)
from openrouter_key_proxy.gateway.passwords import MIN_PASSWORD_LENGTH, hash_password
from openrouter_key_proxy.models import UpstreamKey
from openrouter_key_proxy.proxy import (
    OpenRouterClient,
    ProxyService,
    build_models_response,
    relay_response,
)
from openrouter_key_proxy.runtime.health import KeyHealthTracker
from openrouter_key_proxy.runtime.rotation import KeyRotator
from openrouter_key_proxy.settings import Settings, get_settings
from openrouter_key_proxy.storage.credentials import CredentialStore
from openrouter_key_proxy.storage.kv import RedisKeyValueStore, build_key_value_store

app = FastAPI(
    title="OpenRouter Key Proxy",
    description="OpenAI-compatible proxy that rotates a pool of OpenRouter API keys.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: ClientTokenAuthenticator | None = getattr(
        app.state, "client_authenticator", None
    )
    if authenticator is not None:
        try:
            auth_error = await authenticator.authenticate_request(request)
        except Exception:
            logger.exception("client_auth_failed path=%s", request.url.path)
            return openai_error_response(500, "Internal server error.", "internal_error")
        if auth_error is not None:
            return auth_error

    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins_list,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)
app.include_router(admin.router)


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or uuid4().hex[:12]


def _is_admin_path(request: Request) -> bool:
    return request.url.path.startswith("/admin")


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidRequestError("Request body must be valid JSON.") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object.")
    return payload


async def _apply_presets(settings: Settings, store: CredentialStore) -> None:
    async with store.mutation_lock:
        preset_password = settings.preset_admin_password
        if preset_password and not await store.load_admin_hash():
            if len(preset_password) < MIN_PASSWORD_LENGTH:
                logger.warning(
                    "preset_admin_password_ignored reason=too_short min_length=%d",
                    MIN_PASSWORD_LENGTH,
                )
            else:
                await store.save_admin_hash(hash_password(preset_password))
                logger.info("preset_admin_password_applied")

        preset_keys = settings.preset_api_keys_list
        if preset_keys and not await store.load_upstream_keys():
            await store.save_upstream_keys(
                [
                    UpstreamKey(name=f"preset-{index}", value=value)
                    for index, value in enumerate(preset_keys, start=1)
                ]
            )
            logger.info("preset_api_keys_applied count=%d", len(preset_keys))


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    kv = build_key_value_store(
        settings.store_backend,
        path=settings.store_path,
        redis_url=settings.redis_url,
        redis_key_prefix=settings.redis_key_prefix,
        logger=logger,
    )
    store = CredentialStore(kv)
    await _apply_presets(settings, store)

    client = OpenRouterClient(
        settings.openrouter_base_url,
        settings.default_model,
        http_referer=settings.http_referer,
        app_title=settings.app_title,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        probe_timeout_seconds=settings.health_probe_timeout_seconds,
    )
    tracker = KeyHealthTracker(
        probe=client.probe_key,
        interval_seconds=settings.health_check_interval_seconds,
    )
    rotator = KeyRotator(store, tracker)
    sessions = AdminSessionManager(
        settings.admin_session_secret,
        settings.admin_session_ttl_seconds,
    )

    app.state.settings = settings
    app.state.kv_store = kv
    app.state.credential_store = store
    app.state.openrouter_client = client
    app.state.health_tracker = tracker
    app.state.rotator = rotator
    app.state.proxy_service = ProxyService(rotator, store)
    app.state.admin_sessions = sessions
    app.state.admin_guard = AdminGuard(store, sessions)
    app.state.client_authenticator = ClientTokenAuthenticator(store)

    snapshot = await store.load_all()
    logger.info(
        (
            "startup complete store_backend=%s upstream_keys=%d client_tokens=%d "
            "admin_password_set=%s health_check_interval_seconds=%s"
        ),
        type(kv).__name__,
        len(snapshot.upstream_keys),
        len(snapshot.client_tokens),
        snapshot.is_password_set,
        settings.health_check_interval_seconds,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    client: OpenRouterClient | None = getattr(app.state, "openrouter_client", None)
    if client is not None:
        await client.close()
    kv = getattr(app.state, "kv_store", None)
    if isinstance(kv, RedisKeyValueStore):
        await kv.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models(request: Request) -> Response:
    client: OpenRouterClient = app.state.openrouter_client
    proxy: ProxyService = app.state.proxy_service
    upstream = await proxy.forward(client.list_models, request_id=_request_id(request))
    if not upstream.is_success:
        return relay_response(upstream)
    try:
        payload = upstream.json()
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("models_invalid_upstream_payload status=%d", upstream.status_code)
        return openai_error_response(
            502,
            "Upstream returned an invalid model list.",
            "upstream_invalid_response",
        )
    return JSONResponse(content=build_models_response(payload))


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    payload = await _read_json_object(request)
    if payload.get("stream") is True:
        raise InvalidRequestError("Streaming responses are not supported.")

    client: OpenRouterClient = app.state.openrouter_client
    proxy: ProxyService = app.state.proxy_service

    async def call(api_key: str) -> httpx.Response:
        return await client.chat_completions(payload, api_key)

    upstream = await proxy.forward(call, request_id=_request_id(request))
    return relay_response(upstream)


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return render_proxy_error(exc, admin=_is_admin_path(request))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if _is_admin_path(request):
        return admin_error_response(400, "Invalid request body.")
    return openai_error_response(400, "Invalid request body.", "invalid_request_error")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    if _is_admin_path(request):
        return admin_error_response(500, "Internal server error.")
    return openai_error_response(500, "Internal server error.", "internal_error")


def run() -> None:
    import uvicorn

    uvicorn.run("openrouter_key_proxy.main:app", host="0.0.0.0", port=8000, reload=False)
