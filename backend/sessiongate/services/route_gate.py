"""Route gate: decides per navigation request whether to allow or redirect.

Policy:
- Excluded prefixes (API, health, static assets) are never gated.
- Public paths with a credential present are bounced to the landing page.
- Protected paths without a credential go to login with a resume target.
- Protected paths with a credential are verified against the session store
  under an explicit timeout. Anything but a positive answer sends the request
  to login and clears the stale cookie.
"""

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlencode

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from sessiongate.core import settings
from sessiongate.services.session_store import SessionInvalid, SessionStore, SubjectClaims

logger = logging.getLogger(__name__)


class GateAction(str, enum.Enum):
    ALLOW = "allow"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class GateDecision:
    """Outcome of a gate check."""

    action: GateAction
    location: str | None = None
    reason: str = ""
    clear_cookie: bool = False
    claims: SubjectClaims | None = None

    @property
    def allowed(self) -> bool:
        return self.action == GateAction.ALLOW


class SessionVerifier(Protocol):
    """Checks a session credential; raises SessionInvalid when it is not live."""

    async def verify(self, credential: str) -> SubjectClaims: ...


class LocalSessionVerifier:
    """Verifies in process against the session store."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def verify(self, credential: str) -> SubjectClaims:
        async with self.session_factory() as db:
            return await SessionStore(db).verify(credential)


class HttpSessionVerifier:
    """Verifies by calling the verification endpoint with the cookie attached."""

    def __init__(
        self,
        verify_url: str,
        cookie_name: str = "session",
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.verify_url = verify_url
        self.cookie_name = cookie_name
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def verify(self, credential: str) -> SubjectClaims:
        response = await self._get_client().get(
            self.verify_url,
            headers={"Cookie": f"{self.cookie_name}={credential}"},
        )
        if response.status_code == 401:
            raise SessionInvalid("Session rejected by verification endpoint")
        response.raise_for_status()

        data = response.json()
        if not data.get("valid") or not data.get("uid"):
            raise SessionInvalid("Verification endpoint did not confirm the session")
        return SubjectClaims(uid=data["uid"], email=data.get("email"))


class RouteGate:
    """Navigation policy over a session verifier."""

    def __init__(
        self,
        verifier: SessionVerifier,
        public_paths: list[str] | None = None,
        landing_path: str = "/",
        login_path: str = "/login",
        resume_param: str = "redirect",
        excluded_prefixes: list[str] | None = None,
        verify_timeout: float = 5.0,
    ):
        if verify_timeout <= 0:
            raise ValueError("verify_timeout must be positive")
        self.verifier = verifier
        self.public_paths = list(public_paths) if public_paths is not None else [login_path]
        self.landing_path = landing_path
        self.login_path = login_path
        self.resume_param = resume_param
        self.excluded_prefixes = list(excluded_prefixes or [])
        self.verify_timeout = verify_timeout

    @classmethod
    def from_settings(cls, verifier: SessionVerifier) -> "RouteGate":
        return cls(
            verifier,
            public_paths=settings.route_gate_public_paths,
            landing_path=settings.route_gate_landing_path,
            login_path=settings.route_gate_login_path,
            resume_param=settings.route_gate_resume_param,
            excluded_prefixes=settings.route_gate_excluded_prefixes,
            verify_timeout=settings.route_gate_verify_timeout,
        )

    @staticmethod
    def _matches(path: str, prefix: str) -> bool:
        # Exact or segment-boundary match ("/api" covers "/api/x", not "/apix")
        if prefix == "/":
            return path == "/"
        prefix = prefix.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")

    def is_excluded(self, path: str) -> bool:
        return any(self._matches(path, p) for p in self.excluded_prefixes)

    def is_public(self, path: str) -> bool:
        return any(self._matches(path, p) for p in self.public_paths)

    def login_redirect(self, path: str, query: str = "") -> str:
        """Login URL carrying the originally requested location."""
        target = f"{path}?{query}" if query else path
        return f"{self.login_path}?{urlencode({self.resume_param: target})}"

    def _to_login(self, path: str, query: str, reason: str, clear_cookie: bool) -> GateDecision:
        return GateDecision(
            action=GateAction.REDIRECT,
            location=self.login_redirect(path, query),
            reason=reason,
            clear_cookie=clear_cookie,
        )

    async def decide(self, path: str, credential: str | None, query: str = "") -> GateDecision:
        """Decide what to do with a navigation request."""
        if self.is_excluded(path):
            return GateDecision(action=GateAction.ALLOW, reason="excluded")

        if self.is_public(path):
            if credential:
                # Presence only; a stale cookie is cleared when the landing page is gated
                return GateDecision(
                    action=GateAction.REDIRECT,
                    location=self.landing_path,
                    reason="authenticated on public path",
                )
            return GateDecision(action=GateAction.ALLOW, reason="public")

        if not credential:
            return self._to_login(path, query, "no credential", clear_cookie=False)

        try:
            claims = await asyncio.wait_for(
                self.verifier.verify(credential), timeout=self.verify_timeout
            )
        except SessionInvalid as e:
            logger.info(
                f"Route gate rejected session for {path}: {e}",
                extra={"path": path, "reason": "invalid session"},
            )
            return self._to_login(path, query, "invalid session", clear_cookie=True)
        except TimeoutError:
            logger.warning(
                f"Route gate verification timed out after {self.verify_timeout}s for {path}",
                extra={"path": path, "reason": "verification timeout"},
            )
            return self._to_login(path, query, "verification timeout", clear_cookie=True)
        except httpx.TransportError as e:
            logger.warning(
                f"Route gate verification unreachable for {path}: {e}",
                extra={"path": path, "reason": "verification unreachable"},
            )
            return self._to_login(path, query, "verification unreachable", clear_cookie=True)
        except Exception as e:
            logger.error(
                f"Route gate verification failed for {path}: {e}",
                exc_info=True,
                extra={"path": path, "reason": "verification error"},
            )
            return self._to_login(path, query, "verification error", clear_cookie=True)

        return GateDecision(action=GateAction.ALLOW, reason="verified", claims=claims)
