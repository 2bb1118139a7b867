from __future__ import annotations

import base64
import hashlib

import pytest
from cryptography.fernet import Fernet

from spark.cache.base import InMemoryCache
from spark.credentials.pkce import code_challenge, generate_code_verifier
from spark.credentials.state import CsrfStore, OAuthState, StateCipher
from spark.kernel.errors import CsrfMismatch, StateMismatch
from tests.support.clock import FakeClock

pytestmark = pytest.mark.unit


class TestPkce:
    def test_verifier_is_43_url_safe_characters(self):
        verifier = generate_code_verifier()
        assert len(verifier) == 43
        assert "=" not in verifier
        assert set(verifier) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")

    def test_challenge_is_unpadded_s256(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        # RFC 7636 appendix B
        assert code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
        assert code_challenge(verifier) == expected

    def test_verifiers_are_unique(self):
        assert generate_code_verifier() != generate_code_verifier()


class TestStateCipher:
    def _state(self) -> OAuthState:
        return OAuthState(group_id="g1", user_id="u1", csrf_token="csrf", code_verifier="v" * 43)

    def test_round_trips_with_configured_key(self):
        key = Fernet.generate_key().decode()
        token = StateCipher(key).encrypt(self._state())

        assert StateCipher(key).decrypt(token) == self._state()

    def test_token_from_another_key_is_a_state_mismatch(self):
        token = StateCipher(Fernet.generate_key()).encrypt(self._state())

        with pytest.raises(StateMismatch):
            StateCipher(Fernet.generate_key()).decrypt(token)

    def test_garbage_is_a_state_mismatch(self):
        with pytest.raises(StateMismatch):
            StateCipher().decrypt("not-a-token")


class TestCsrfStore:
    @pytest.mark.asyncio
    async def test_token_is_single_use(self):
        store = CsrfStore(InMemoryCache(FakeClock.fixed()))
        token = await store.issue("session", "g1")

        await store.consume("session", "g1", token)
        with pytest.raises(CsrfMismatch):
            await store.consume("session", "g1", token)

    @pytest.mark.asyncio
    async def test_wrong_token_or_session_is_rejected(self):
        store = CsrfStore(InMemoryCache(FakeClock.fixed()))
        token = await store.issue("session", "g1")

        with pytest.raises(CsrfMismatch):
            await store.consume("other-session", "g1", token)
        with pytest.raises(CsrfMismatch):
            await store.consume("session", "g1", "forged")

    @pytest.mark.asyncio
    async def test_token_expires(self):
        clock = FakeClock.fixed()
        store = CsrfStore(InMemoryCache(clock), ttl_seconds=60)
        token = await store.issue("session", "g1")

        clock.advance(seconds=61)
        with pytest.raises(CsrfMismatch):
            await store.consume("session", "g1", token)
