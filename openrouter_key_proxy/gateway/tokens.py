from __future__ import annotations

import secrets
import string

from openrouter_key_proxy.gateway.errors import (
    DuplicateTokenError,
    InvalidRequestError,
    TokenNotFoundError,
)
from openrouter_key_proxy.models import ClientToken

TOKEN_PREFIX = "sk-"
TOKEN_RANDOM_LENGTH = 32
_TOKEN_ALPHABET = string.ascii_letters + string.digits


def generate_token() -> str:
    suffix = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(TOKEN_RANDOM_LENGTH))
    return TOKEN_PREFIX + suffix


class ClientTokenRegistry:
    """Client-facing tokens, kept separate from the upstream keys.

    The registry works on a list loaded from the store; callers persist
    ``tokens`` after a successful mutation.
    """

    def __init__(self, tokens: list[ClientToken] | None = None) -> None:
        self.tokens: list[ClientToken] = list(tokens or [])

    def __len__(self) -> int:
        return len(self.tokens)

    def get(self, name: str) -> ClientToken | None:
        for entry in self.tokens:
            if entry.name == name:
                return entry
        return None

    def create(self, name: str, custom_token: str | None = None) -> ClientToken:
        name = name.strip()
        if not name:
            raise InvalidRequestError("Token name must not be empty.")
        if self.get(name) is not None:
            raise DuplicateTokenError(f"Token name '{name}' already exists.")

        value = (custom_token or "").strip()
        if value:
            if any(entry.token == value for entry in self.tokens):
                raise DuplicateTokenError("Token value already exists, use a different token.")
        else:
            value = self._unique_generated_token()

        entry = ClientToken(name=name, token=value, enabled=True)
        self.tokens.append(entry)
        return entry

    def set_enabled(self, name: str, enabled: bool) -> ClientToken:
        entry = self.get(name)
        if entry is None:
            raise TokenNotFoundError(f"Token '{name}' not found.")
        entry.enabled = enabled
        return entry

    def delete(self, name: str) -> None:
        entry = self.get(name)
        if entry is None:
            raise TokenNotFoundError(f"Token '{name}' not found.")
        self.tokens.remove(entry)

    def verify(self, token: str | None) -> bool:
        if not token:
            return False
        return any(entry.token == token and entry.enabled is True for entry in self.tokens)

    def _unique_generated_token(self) -> str:
        existing = {entry.token for entry in self.tokens}
        while True:
            candidate = generate_token()
            if candidate not in existing:
                return candidate
