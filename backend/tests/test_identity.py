"""Tests for ID token verification against a published JWKS."""

import json
import time
from unittest.mock import AsyncMock, patch

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from sessiongate.services.identity import (
    IdentityAuthorityUnavailable,
    IdentityTokenRejected,
    JWKSIdentityAuthority,
)

pytestmark = pytest.mark.asyncio

JWKS_URL = "https://identity.test/jwks.json"
ISSUER = "https://identity.test/sessiongate"
AUDIENCE = "sessiongate-test"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def other_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _jwks(*keys: tuple[str, rsa.RSAPrivateKey]) -> dict:
    entries = []
    for kid, private_key in keys:
        entry = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
        entry.update({"kid": kid, "alg": "RS256", "use": "sig"})
        entries.append(entry)
    return {"keys": entries}


def _id_token(private_key, kid: str = "key-1", **overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "aud": AUDIENCE,
        "sub": "alice-uid",
        "email": "alice@example.com",
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, private_key, algorithm="RS256", headers={"kid": kid})


class JWKSEndpoint:
    """Mock transport serving a JWKS document and counting fetches."""

    def __init__(self, document: dict | None = None, status_code: int = 200):
        self.document = document or {"keys": []}
        self.status_code = status_code
        self.fetches = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.fetches += 1
        return httpx.Response(self.status_code, json=self.document)


def _authority(handler) -> JWKSIdentityAuthority:
    authority = JWKSIdentityAuthority(JWKS_URL, issuer=ISSUER, audience=AUDIENCE, leeway_seconds=0)
    authority._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return authority


class TestVerifyIdToken:
    async def test_valid_token(self, signing_key):
        endpoint = JWKSEndpoint(_jwks(("key-1", signing_key)))
        authority = _authority(endpoint)

        claims = await authority.verify_id_token(_id_token(signing_key))

        assert claims.subject == "alice-uid"
        assert claims.email == "alice@example.com"
        assert claims.issuer == ISSUER

    async def test_keys_are_cached(self, signing_key):
        endpoint = JWKSEndpoint(_jwks(("key-1", signing_key)))
        authority = _authority(endpoint)

        await authority.verify_id_token(_id_token(signing_key))
        await authority.verify_id_token(_id_token(signing_key, sub="bob-uid"))

        assert endpoint.fetches == 1

    async def test_expired_token(self, signing_key):
        authority = _authority(JWKSEndpoint(_jwks(("key-1", signing_key))))
        past = int(time.time()) - 7200

        with pytest.raises(IdentityTokenRejected, match="expired"):
            await authority.verify_id_token(_id_token(signing_key, iat=past, exp=past + 3600))

    async def test_wrong_audience(self, signing_key):
        authority = _authority(JWKSEndpoint(_jwks(("key-1", signing_key))))

        with pytest.raises(IdentityTokenRejected):
            await authority.verify_id_token(_id_token(signing_key, aud="another-project"))

    async def test_wrong_issuer(self, signing_key):
        authority = _authority(JWKSEndpoint(_jwks(("key-1", signing_key))))

        with pytest.raises(IdentityTokenRejected):
            await authority.verify_id_token(_id_token(signing_key, iss="https://evil.test"))

    async def test_signed_by_unpublished_key(self, signing_key, other_key):
        authority = _authority(JWKSEndpoint(_jwks(("key-1", signing_key))))

        with pytest.raises(IdentityTokenRejected):
            await authority.verify_id_token(_id_token(other_key, kid="key-1"))

    async def test_unknown_key_id(self, signing_key):
        authority = _authority(JWKSEndpoint(_jwks(("key-1", signing_key))))

        with pytest.raises(IdentityTokenRejected, match="unknown key"):
            await authority.verify_id_token(_id_token(signing_key, kid="key-9"))

    async def test_rotated_key_triggers_refetch(self, signing_key, other_key):
        endpoint = JWKSEndpoint(_jwks(("key-1", signing_key)))
        authority = _authority(endpoint)
        await authority.verify_id_token(_id_token(signing_key))

        endpoint.document = _jwks(("key-1", signing_key), ("key-2", other_key))
        authority._fetched_at = time.monotonic() - 120
        claims = await authority.verify_id_token(_id_token(other_key, kid="key-2"))

        assert claims.subject == "alice-uid"
        assert endpoint.fetches == 2

    async def test_symmetric_algorithm_rejected(self, signing_key):
        authority = _authority(JWKSEndpoint(_jwks(("key-1", signing_key))))
        token = jwt.encode(
            {"sub": "alice-uid", "iat": int(time.time()), "exp": int(time.time()) + 60},
            "shared-secret-" + "x" * 32,
            algorithm="HS256",
            headers={"kid": "key-1"},
        )

        with pytest.raises(IdentityTokenRejected, match="algorithm"):
            await authority.verify_id_token(token)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    async def test_malformed_token(self, signing_key, token):
        authority = _authority(JWKSEndpoint(_jwks(("key-1", signing_key))))

        with pytest.raises(IdentityTokenRejected):
            await authority.verify_id_token(token)

    async def test_missing_subject(self, signing_key):
        authority = _authority(JWKSEndpoint(_jwks(("key-1", signing_key))))
        now = int(time.time())
        token = jwt.encode(
            {"iss": ISSUER, "aud": AUDIENCE, "iat": now, "exp": now + 60},
            signing_key,
            algorithm="RS256",
            headers={"kid": "key-1"},
        )

        with pytest.raises(IdentityTokenRejected):
            await authority.verify_id_token(token)


class TestAuthorityUnavailable:
    async def test_server_error(self, signing_key):
        authority = _authority(JWKSEndpoint(status_code=500))

        with pytest.raises(IdentityAuthorityUnavailable):
            await authority.verify_id_token(_id_token(signing_key))

    async def test_no_usable_keys(self, signing_key):
        authority = _authority(JWKSEndpoint({"keys": [{"kty": "RSA"}]}))

        with pytest.raises(IdentityAuthorityUnavailable):
            await authority.verify_id_token(_id_token(signing_key))

    async def test_transport_error_retried_then_unavailable(self, signing_key):
        attempts = []

        def unreachable(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        authority = _authority(unreachable)
        with patch("sessiongate.core.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(IdentityAuthorityUnavailable):
                await authority.verify_id_token(_id_token(signing_key))

        assert len(attempts) == 3

    async def test_open_circuit_fails_fast(self, signing_key):
        attempts = []

        def unreachable(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        authority = _authority(unreachable)
        with patch("sessiongate.core.retry.asyncio.sleep", new=AsyncMock()):
            for _ in range(3):
                with pytest.raises(IdentityAuthorityUnavailable):
                    await authority.verify_id_token(_id_token(signing_key))

        # 5 failures open the circuit; later calls never reach the network
        assert len(attempts) == 5
