from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from openrouter_key_proxy.gateway.auth import AdminContext, AdminGuard, AdminSessionManager
from openrouter_key_proxy.gateway.errors import (
    AdminNotConfiguredError,
    AuthError,
    InvalidRequestError,
    NotFoundError,
)
from openrouter_key_proxy.gateway.passwords import (
    MIN_PASSWORD_LENGTH,
    hash_password,
    needs_rehash,
    verify_password,
)
from openrouter_key_proxy.gateway.tokens import ClientTokenRegistry
from openrouter_key_proxy.models import (
    AddKeyRequest,
    ChangePasswordRequest,
    CreateTokenRequest,
    KeyStats,
    PasswordRequest,
    UpdateTokenRequest,
    UpstreamKey,
)
from openrouter_key_proxy.runtime.health import KeyHealthTracker
from openrouter_key_proxy.storage.credentials import CredentialStore

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/admin")


def _store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


def _tracker(request: Request) -> KeyHealthTracker:
    return request.app.state.health_tracker


def _sessions(request: Request) -> AdminSessionManager:
    return request.app.state.admin_sessions


async def require_admin(request: Request) -> AdminContext:
    guard: AdminGuard = request.app.state.admin_guard
    return await guard.authenticate(request)


def _validate_new_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidRequestError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
        )


def _key_view(key: UpstreamKey, stats: KeyStats | None) -> dict[str, Any]:
    stats = stats or KeyStats()
    return {
        "name": key.name,
        "maskedValue": key.masked_value,
        "isHealthy": key.is_healthy,
        "usage": stats.usage,
        "errors": stats.errors,
    }


async def _keys_payload(store: CredentialStore) -> list[dict[str, Any]]:
    keys = await store.load_upstream_keys()
    stats = await store.load_stats()
    return [_key_view(key, stats.get(key.name)) for key in keys]


@router.get("/auth/status")
async def auth_status(request: Request) -> dict[str, bool]:
    admin_hash = await _store(request).load_admin_hash()
    return {"isPasswordSet": bool(admin_hash)}


@router.post("/auth/setup")
async def auth_setup(request: Request, body: PasswordRequest) -> dict[str, Any]:
    store = _store(request)
    async with store.mutation_lock:
        if await store.load_admin_hash():
            raise InvalidRequestError("Admin password is already set.")
        _validate_new_password(body.password)
        await store.save_admin_hash(hash_password(body.password))
    logger.info("admin_password_setup complete")
    return {"success": True, "message": "Admin password set."}


@router.post("/auth/login")
async def auth_login(request: Request, body: PasswordRequest) -> dict[str, Any]:
    store = _store(request)
    stored_hash = await store.load_admin_hash()
    if not stored_hash:
        raise AdminNotConfiguredError()
    if not verify_password(body.password, stored_hash):
        logger.info("admin_login_rejected")
        raise AuthError("Incorrect password.")

    if needs_rehash(stored_hash):
        async with store.mutation_lock:
            if await store.load_admin_hash() == stored_hash:
                stored_hash = hash_password(body.password)
                await store.save_admin_hash(stored_hash)
                logger.info("admin_password_hash_upgraded")

    sessions = _sessions(request)
    return {
        "success": True,
        "message": "Login successful.",
        "token": sessions.issue(stored_hash),
        "expiresIn": sessions.ttl_seconds,
    }


@router.post("/auth/change-password")
async def auth_change_password(
    request: Request,
    body: ChangePasswordRequest,
    _: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    store = _store(request)
    async with store.mutation_lock:
        stored_hash = await store.load_admin_hash()
        if not verify_password(body.current_password, stored_hash):
            raise InvalidRequestError("Current password is incorrect.")
        _validate_new_password(body.new_password)
        if body.new_password == body.current_password:
            raise InvalidRequestError("New password must differ from the current password.")
        await store.save_admin_hash(hash_password(body.new_password))
    logger.info("admin_password_changed")
    return {"success": True, "message": "Password changed."}


@router.get("/keys")
async def list_keys(
    request: Request,
    _: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    return {"success": True, "keys": await _keys_payload(_store(request))}


@router.post("/keys")
async def add_key(
    request: Request,
    body: AddKeyRequest,
    _: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    name = body.name.strip()
    value = body.value.strip()
    if not name or not value:
        raise InvalidRequestError("Key name and value must not be empty.")

    store = _store(request)
    if any(key.name == name for key in await store.load_upstream_keys()):
        raise InvalidRequestError(f"Key name '{name}' already exists.")

    is_healthy: bool | None = None
    if request.app.state.settings.health_check_on_add:
        is_healthy = await _tracker(request).probe_key(name, value)

    async with store.mutation_lock:
        keys = await store.load_upstream_keys()
        if any(key.name == name for key in keys):
            raise InvalidRequestError(f"Key name '{name}' already exists.")
        keys.append(UpstreamKey(name=name, value=value, is_healthy=is_healthy))
        await store.save_upstream_keys(keys)
    logger.info("admin_key_added key=%s healthy=%s total=%d", name, is_healthy, len(keys))
    return {
        "success": True,
        "message": "API key added.",
        "key": {"name": name, "isHealthy": is_healthy},
    }


@router.post("/keys/check")
async def check_keys(
    request: Request,
    _: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    store = _store(request)
    await _tracker(request).sweep(store)
    return {"success": True, "keys": await _keys_payload(store)}


@router.delete("/keys/{name}")
async def delete_key(
    name: str,
    request: Request,
    _: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    store = _store(request)
    async with store.mutation_lock:
        keys = await store.load_upstream_keys()
        remaining = [key for key in keys if key.name != name]
        if len(remaining) == len(keys):
            raise NotFoundError(f"Key '{name}' not found.")
        await store.save_upstream_keys(remaining)
    logger.info("admin_key_deleted key=%s total=%d", name, len(remaining))
    return {"success": True, "message": "API key deleted."}


@router.get("/tokens")
async def list_tokens(
    request: Request,
    _: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    tokens = await _store(request).load_client_tokens()
    return {"success": True, "tokens": [token.to_store() for token in tokens]}


@router.post("/tokens")
async def create_token(
    request: Request,
    body: CreateTokenRequest,
    _: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    store = _store(request)
    async with store.mutation_lock:
        registry = ClientTokenRegistry(await store.load_client_tokens())
        entry = registry.create(body.name, body.token)
        await store.save_client_tokens(registry.tokens)
    logger.info(
        "admin_token_created token=%s custom=%s",
        entry.name,
        bool((body.token or "").strip()),
    )
    return {"success": True, "message": "Token created.", "token": entry.to_store()}


@router.patch("/tokens/{name}")
async def update_token(
    name: str,
    request: Request,
    body: UpdateTokenRequest,
    _: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    store = _store(request)
    async with store.mutation_lock:
        registry = ClientTokenRegistry(await store.load_client_tokens())
        registry.set_enabled(name, body.enabled)
        await store.save_client_tokens(registry.tokens)
    logger.info("admin_token_updated token=%s enabled=%s", name, body.enabled)
    return {"success": True, "message": "Token updated."}


@router.delete("/tokens/{name}")
async def delete_token(
    name: str,
    request: Request,
    _: AdminContext = Depends(require_admin),
) -> dict[str, Any]:
    store = _store(request)
    async with store.mutation_lock:
        registry = ClientTokenRegistry(await store.load_client_tokens())
        registry.delete(name)
        await store.save_client_tokens(registry.tokens)
    logger.info("admin_token_deleted token=%s", name)
    return {"success": True, "message": "Token deleted."}
