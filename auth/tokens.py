"""
auth/tokens.py -- Access-token codec, refresh-token generation, password hashing.

Security design decisions:
  Access tokens: compact HS256 JWTs encoded with python-jose. The header is
       {"typ":"JWT","alg":"HS256"}; the payload is the caller's claims plus
       iat/exp in unix seconds. Verification is done step by step rather than
       through jwt.decode() so each failure maps to its own error class
       (MalformedToken, BadSignature, InvalidPayload, Expired) -- the route
       layer turns all of them into 401, but logs and tests can tell them apart.
       The signature check compares the encoded signature segments with
       hmac.compare_digest, so timing does not leak how many bytes matched,
       and a bit flip in the unused trailing base64 bits is still rejected.

  Refresh tokens: secrets.token_hex(32) gives 256 bits of entropy. The value
       is opaque -- not signed, not structured. SessionStore persists it.

  Passwords: bcrypt directly (no passlib wrapper) with a configurable cost
       factor. dummy_hash() provides a hash of the same cost so login can run
       bcrypt even when the email is unknown, equalizing response time [C1].

  SECRET_KEY and the clock are injected into TokenCodec by the caller; this
  module never reads settings itself.

Layer rule: no imports from api/ or storage/.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Any

import bcrypt
from jose import jwt
from jose.utils import base64url_decode, base64url_encode
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from auth.errors import BadSignature, Expired, InvalidPayload, MalformedToken

logger = logging.getLogger("coco.auth")

ALGORITHM = "HS256"


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


class AccessClaims(BaseModel):
    """Shape every decoded payload must have.

    strict=True rejects "exp": "123" and booleans; extra="allow" keeps the
    caller-supplied claims (uid, ...) so verify() can hand them back.
    """

    model_config = ConfigDict(strict=True, extra="allow")

    iat: int
    exp: int


# ---------------------------------------------------------------------------
# Access-token codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Stateless signer/verifier for short-lived access tokens.

    Usage:
        codec = TokenCodec(settings.secret_key)
        token = codec.issue({"uid": 42}, ttl=900)
        claims = codec.verify(token)     # {"uid": 42, "iat": ..., "exp": ...}
    """

    def __init__(self, secret: str, clock: Callable[[], float] = time.time) -> None:
        if not secret:
            raise ValueError("TokenCodec requires a non-empty secret")
        self._secret = secret
        self._key = secret.encode("utf-8")
        self._clock = clock

    def issue(self, claims: Mapping[str, Any], ttl: int) -> str:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        now = int(self._clock())
        payload = dict(claims)
        payload["iat"] = now
        payload["exp"] = now + ttl
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise MalformedToken()
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken()
        header_seg, payload_seg, signature_seg = parts

        expected = self._sign(f"{header_seg}.{payload_seg}")
        if not hmac.compare_digest(expected, signature_seg.encode("utf-8")):
            raise BadSignature()

        header = _decode_segment(header_seg)
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            raise MalformedToken()

        raw = _decode_segment(payload_seg)
        if not isinstance(raw, dict):
            raise InvalidPayload()
        try:
            claims = AccessClaims.model_validate(raw)
        except PydanticValidationError as exc:
            raise InvalidPayload() from exc

        if claims.exp < self._clock():
            raise Expired()
        return claims.model_dump()

    def _sign(self, signing_input: str) -> bytes:
        digest = hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        return base64url_encode(digest)


def _decode_segment(segment: str) -> Any:
    """base64url (unpadded) -> JSON value. Raises InvalidPayload on any failure."""
    try:
        return json.loads(base64url_decode(segment.encode("ascii")))
    except ValueError as exc:
        # binascii.Error, UnicodeError and JSONDecodeError are all ValueErrors.
        raise InvalidPayload() from exc


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return 256 random bits as 64 hex characters."""
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    the field at 255 characters; the first 72 bytes still carry far more
    entropy than any realistic password.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the row; treat as a mismatch.
        logger.warning("Stored password hash could not be parsed")
        return False


@lru_cache(maxsize=4)
def dummy_hash(rounds: int) -> str:
    """Hash of a throwaway password at the given cost, computed once per cost.

    Verifying against it costs the same as verifying a real password, so a
    login for an unknown email takes as long as one with a wrong password [C1].
    """
    return hash_password("coco_timing_dummy", rounds=rounds)
