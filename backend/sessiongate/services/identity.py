"""External identity authority: verifies provider-issued ID tokens.

The provider (e.g. Firebase/Google Identity Platform) signs ID tokens with
rotating RSA keys published as a JWKS document. Verification delegates the
signature and claim checks to PyJWT; this module only fetches and caches the
published keys and maps failures onto two outcomes: the token was rejected, or
the authority could not be reached.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import jwt
from jwt.exceptions import PyJWKError, PyJWTError

from sessiongate.core import settings
from sessiongate.core.retry import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
    RetryConfig,
    retry_async,
)

logger = logging.getLogger(__name__)

JWKS_RETRY_CONFIG = RetryConfig(max_retries=2, base_delay=0.25, max_delay=2.0)

JWKS_CIRCUIT_CONFIG = CircuitBreakerConfig(failure_threshold=5, timeout=30.0)

# Unknown key ids trigger a refetch at most this often (keys rotate rarely)
MIN_REFRESH_INTERVAL_SECONDS = 60.0


class IdentityError(Exception):
    """Base identity authority error."""

    pass


class IdentityTokenRejected(IdentityError):
    """The identity token is malformed, expired or not signed by the authority."""

    pass


class IdentityAuthorityUnavailable(IdentityError):
    """The authority's signing keys could not be obtained."""

    pass


@dataclass(frozen=True)
class IdentityClaims:
    """Verified identity asserted by the authority."""

    subject: str
    email: str | None = None
    name: str | None = None
    issuer: str | None = None


class IdentityAuthority(Protocol):
    """Anything that can turn an identity token into verified claims."""

    async def verify_id_token(self, id_token: str) -> IdentityClaims: ...


class JWKSIdentityAuthority:
    """Verifies RS256 ID tokens against a provider's published JWKS."""

    _instance: JWKSIdentityAuthority | None = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        jwks_url: str,
        issuer: str | None = None,
        audience: str | None = None,
        cache_seconds: int = 3600,
        leeway_seconds: int = 30,
        timeout: float = 10.0,
        algorithms: tuple[str, ...] = ("RS256",),
    ):
        self.jwks_url = jwks_url
        self.issuer = issuer
        self.audience = audience
        self.cache_seconds = cache_seconds
        self.leeway_seconds = leeway_seconds
        self.timeout = timeout
        self.algorithms = algorithms
        self._keys: dict[str, jwt.PyJWK] = {}
        self._fetched_at: float | None = None
        self._refresh_lock = asyncio.Lock()
        self._client: httpx.AsyncClient | None = None
        self._circuit_breaker = CircuitBreaker.get_or_create("identity_jwks", JWKS_CIRCUIT_CONFIG)

    @classmethod
    def get_instance(cls) -> JWKSIdentityAuthority:
        """Get or create the process-wide authority configured from settings."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls(
                        jwks_url=settings.identity_jwks_url,
                        issuer=settings.identity_issuer,
                        audience=settings.identity_audience,
                        cache_seconds=settings.identity_jwks_cache_seconds,
                        leeway_seconds=settings.identity_leeway_seconds,
                        timeout=settings.http_timeout,
                    )
        return cls._instance

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _fetch_jwks(self) -> dict[str, jwt.PyJWK]:
        async def do_fetch() -> Any:
            response = await self._get_client().get(self.jwks_url)
            response.raise_for_status()
            return response.json()

        try:
            data = await retry_async(
                do_fetch,
                config=JWKS_RETRY_CONFIG,
                circuit_breaker=self._circuit_breaker,
            )
        except (httpx.HTTPError, CircuitBreakerOpen, ValueError) as e:
            logger.warning(f"Failed to fetch identity JWKS from {self.jwks_url}: {e}")
            raise IdentityAuthorityUnavailable("Identity authority keys unavailable") from e

        keys: dict[str, jwt.PyJWK] = {}
        entries = data.get("keys", []) if isinstance(data, dict) else []
        for entry in entries:
            kid = entry.get("kid") if isinstance(entry, dict) else None
            if not kid:
                continue
            try:
                keys[kid] = jwt.PyJWK(entry)
            except PyJWKError as e:
                logger.warning(f"Skipping unusable JWKS key {kid}: {e}")
        if not keys:
            raise IdentityAuthorityUnavailable("Identity authority published no usable keys")
        return keys

    def _is_stale(self, now: float) -> bool:
        return self._fetched_at is None or now - self._fetched_at >= self.cache_seconds

    async def _signing_key(self, kid: str) -> jwt.PyJWK:
        now = time.monotonic()
        if kid in self._keys and not self._is_stale(now):
            return self._keys[kid]

        async with self._refresh_lock:
            now = time.monotonic()
            recently_fetched = (
                self._fetched_at is not None
                and now - self._fetched_at < MIN_REFRESH_INTERVAL_SECONDS
            )
            if self._is_stale(now) or (kid not in self._keys and not recently_fetched):
                self._keys = await self._fetch_jwks()
                self._fetched_at = time.monotonic()
                logger.debug(f"Loaded {len(self._keys)} identity signing keys")

        key = self._keys.get(kid)
        if key is None:
            raise IdentityTokenRejected("Identity token signed with an unknown key")
        return key

    async def verify_id_token(self, id_token: str) -> IdentityClaims:
        """Verify signature, expiry, issuer and audience of an ID token."""
        if not id_token or not id_token.strip():
            raise IdentityTokenRejected("Identity token is empty")

        try:
            header = jwt.get_unverified_header(id_token)
        except PyJWTError as e:
            raise IdentityTokenRejected("Malformed identity token") from e

        if header.get("alg") not in self.algorithms:
            raise IdentityTokenRejected(
                f"Unsupported identity token algorithm: {header.get('alg')}"
            )
        kid = header.get("kid")
        if not kid:
            raise IdentityTokenRejected("Identity token has no key id")

        key = await self._signing_key(kid)

        options: dict[str, Any] = {"require": ["exp", "iat", "sub"]}
        if self.audience is None:
            options["verify_aud"] = False
        try:
            payload = jwt.decode(
                id_token,
                key.key,
                algorithms=list(self.algorithms),
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options=options,
            )
        except jwt.ExpiredSignatureError as e:
            raise IdentityTokenRejected("Identity token has expired") from e
        except PyJWTError as e:
            raise IdentityTokenRejected(f"Invalid identity token: {e}") from e

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise IdentityTokenRejected("Identity token has no subject")

        return IdentityClaims(
            subject=subject,
            email=payload.get("email"),
            name=payload.get("name"),
            issuer=payload.get("iss"),
        )


def get_identity_authority() -> IdentityAuthority:
    """FastAPI dependency returning the configured identity authority."""
    return JWKSIdentityAuthority.get_instance()
