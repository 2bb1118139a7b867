"""
OAuth state and CSRF handling.

The `state` query parameter is a Fernet token over a small JSON document;
the CSRF token inside it must also match a server-side copy that is
consumed on first use.
"""

from __future__ import annotations

import json
import secrets

import structlog
from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from spark.cache.base import Cache
from spark.kernel.errors import CsrfMismatch, StateMismatch

logger = structlog.get_logger()


class OAuthState(BaseModel):
    group_id: str
    user_id: str
    csrf_token: str
    code_verifier: str


class StateCipher:
    """Encrypts and decrypts OAuth state blobs."""

    def __init__(self, key: str | bytes | None = None):
        if key:
            self._fernet = Fernet(key if isinstance(key, bytes) else key.encode("ascii"))
        else:
            # Ephemeral key: state only survives for this process.
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, state: OAuthState) -> str:
        return self._fernet.encrypt(state.model_dump_json().encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> OAuthState:
        try:
            raw = self._fernet.decrypt(token.encode("ascii"))
            return OAuthState.model_validate(json.loads(raw))
        except (InvalidToken, UnicodeEncodeError, ValueError, PydanticValidationError) as exc:
            logger.warning("OAuth state could not be decrypted", error=type(exc).__name__)
            raise StateMismatch() from exc


def csrf_key(session_id: str, group_id: str) -> str:
    return f"oauth_csrf:{session_id}:{group_id}"


class CsrfStore:
    """Server-side CSRF tokens keyed by (session, group)."""

    def __init__(self, cache: Cache, *, ttl_seconds: int = 600):
        self._cache = cache
        self._ttl = ttl_seconds

    async def issue(self, session_id: str, group_id: str) -> str:
        token = secrets.token_urlsafe(32)
        await self._cache.set(csrf_key(session_id, group_id), token, ttl_seconds=self._ttl)
        return token

    async def consume(self, session_id: str, group_id: str, token: str) -> None:
        """Verify and invalidate in one step; a second call always fails."""
        stored = await self._cache.pull(csrf_key(session_id, group_id))
        if not stored or not secrets.compare_digest(str(stored), token):
            logger.warning("OAuth CSRF token rejected", group_id=group_id)
            raise CsrfMismatch()
