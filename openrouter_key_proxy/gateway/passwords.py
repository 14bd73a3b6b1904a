from __future__ import annotations

import hashlib
import hmac
import os
import re

MIN_PASSWORD_LENGTH = 8

_SCHEME = "scrypt"
_SCRYPT_N = 16384
_SCRYPT_R = 8
_SCRYPT_P = 1
_SALT_BYTES = 16
_KEY_BYTES = 32

# Unsalted SHA-256 hex digests written by earlier deployments.
_LEGACY_SHA256 = re.compile(r"^[0-9a-f]{64}$")


def hash_password(password: str) -> str:
    salt = os.urandom(_SALT_BYTES)
    key = _scrypt(password, salt, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    return f"{_SCHEME}${_SCRYPT_N}${_SCRYPT_R}${_SCRYPT_P}${salt.hex()}${key.hex()}"


def verify_password(password: str | None, stored_hash: str | None) -> bool:
    if not password or not stored_hash:
        return False

    if _LEGACY_SHA256.match(stored_hash):
        digest = hashlib.sha256(password.encode("utf-8")).hexdigest()
        return hmac.compare_digest(digest, stored_hash)

    try:
        scheme, n, r, p, salt_hex, key_hex = stored_hash.split("$")
        if scheme != _SCHEME:
            return False
        expected = bytes.fromhex(key_hex)
        candidate = _scrypt(
            password,
            bytes.fromhex(salt_hex),
            n=int(n),
            r=int(r),
            p=int(p),
            dklen=len(expected),
        )
    except ValueError:
        return False
    return hmac.compare_digest(candidate, expected)


def needs_rehash(stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    return not stored_hash.startswith(f"{_SCHEME}${_SCRYPT_N}${_SCRYPT_R}${_SCRYPT_P}$")


def _scrypt(
    password: str,
    salt: bytes,
    *,
    n: int,
    r: int,
    p: int,
    dklen: int = _KEY_BYTES,
) -> bytes:
    return hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt,
        n=n,
        r=r,
        p=p,
        maxmem=128 * n * r * p + 1024 * 1024,
        dklen=dklen,
    )
