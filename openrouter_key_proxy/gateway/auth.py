from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass

import jwt
from fastapi import Request
from fastapi.responses import JSONResponse
from jwt import InvalidTokenError

from openrouter_key_proxy.gateway.errors import (
    AdminNotConfiguredError,
    AuthError,
    render_proxy_error,
)
from openrouter_key_proxy.gateway.passwords import verify_password
from openrouter_key_proxy.gateway.tokens import ClientTokenRegistry
from openrouter_key_proxy.storage.credentials import CredentialStore

_SESSION_ALGORITHM = "HS256"
_SESSION_SUBJECT = "admin"


@dataclass(slots=True)
class AdminContext:
    method: str
    password: str | None = None


def extract_bearer(auth_header: str | None) -> str | None:
    scheme, _, token = (auth_header or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class ClientTokenAuthenticator:
    def __init__(self, store: CredentialStore):
        self.store = store

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        bearer_token = extract_bearer(request.headers.get("authorization"))
        if bearer_token is None:
            return _unauthorized("Missing Bearer token.")

        registry = ClientTokenRegistry(await self.store.load_client_tokens())
        if not registry.verify(bearer_token):
            # Disabled and unknown tokens get the same answer.
            return _unauthorized("Invalid API key.")
        return None


class AdminSessionManager:
    """Short-lived signed admin sessions bound to the current password hash."""

    def __init__(self, secret: str | None, ttl_seconds: int) -> None:
        self._secret = secret or secrets.token_urlsafe(48)
        self.ttl_seconds = max(60, int(ttl_seconds))

    def issue(self, password_hash: str) -> str:
        now = int(time.time())
        return jwt.encode(
            {
                "sub": _SESSION_SUBJECT,
                "iat": now,
                "exp": now + self.ttl_seconds,
                "pwh": _hash_fingerprint(password_hash),
            },
            self._secret,
            algorithm=_SESSION_ALGORITHM,
        )

    def verify(self, token: str, password_hash: str) -> bool:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[_SESSION_ALGORITHM],
                options={"require": ["exp", "sub"]},
            )
        except InvalidTokenError:
            return False
        if claims.get("sub") != _SESSION_SUBJECT:
            return False
        fingerprint = claims.get("pwh")
        if not isinstance(fingerprint, str):
            return False
        return hmac.compare_digest(fingerprint, _hash_fingerprint(password_hash))


class AdminGuard:
    def __init__(self, store: CredentialStore, sessions: AdminSessionManager):
        self.store = store
        self.sessions = sessions

    async def authenticate(self, request: Request) -> AdminContext:
        stored_hash = await self.store.load_admin_hash()
        if not stored_hash:
            raise AdminNotConfiguredError()

        bearer_token = extract_bearer(request.headers.get("authorization"))
        if bearer_token is None:
            raise AuthError("Missing admin credentials.")

        context: AdminContext | None = None
        if _looks_like_jwt(bearer_token) and self.sessions.verify(bearer_token, stored_hash):
            context = AdminContext(method="session")
        elif verify_password(bearer_token, stored_hash):
            context = AdminContext(method="password", password=bearer_token)

        if context is None:
            raise AuthError("Invalid admin credentials.")
        request.state.admin = context
        return context


def _looks_like_jwt(value: str) -> bool:
    return value.count(".") == 2


def _hash_fingerprint(password_hash: str) -> str:
    return hashlib.sha256(password_hash.encode("utf-8")).hexdigest()[:32]


def _unauthorized(message: str) -> JSONResponse:
    return render_proxy_error(AuthError(message), admin=False)
