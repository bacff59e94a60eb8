"""Client for the session API with inactivity auto-logout.

Ties the session endpoints to the inactivity timer: signing in starts the
timer, activity re-arms it, and when it expires the client signs itself out
(revoking server-side and dropping the local cookie).
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx

from sessiongate.client.activity import ActivityKind, ActivityMonitor
from sessiongate.client.scheduler import AsyncioScheduler, Scheduler
from sessiongate.client.timer import TimerConfig, TimerCoordinator, TimerState
from sessiongate.services.session_store import (
    CredentialInvalid,
    IdentityUnavailable,
    SessionInvalid,
    SubjectClaims,
)

logger = logging.getLogger(__name__)


class SessionClient:
    """Signs in, verifies and signs out against a SessionGate server."""

    def __init__(
        self,
        base_url: str,
        scheduler: Scheduler | None = None,
        timer_config: TimerConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        cookie_name: str = "session",
        on_change: Callable[[TimerState], Any] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cookie_name = cookie_name
        self.scheduler = scheduler or AsyncioScheduler()
        self.coordinator = TimerCoordinator(
            self.scheduler,
            on_expire=self._on_idle_timeout,
            config=timer_config,
            on_change=on_change,
        )
        self.monitor = ActivityMonitor(self.coordinator)
        self.uid: str | None = None
        self.sign_out_task: asyncio.Task | None = None
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Stop the timer and close the HTTP client if this client created it."""
        self.coordinator.on_session_end()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def authenticated(self) -> bool:
        return self.uid is not None

    @property
    def timer_state(self) -> TimerState:
        return self.coordinator.state

    async def sign_in(self, id_token: str) -> str:
        """Exchange an identity token for a session and start the idle timer.

        Raises:
            CredentialInvalid: token missing, rejected or too many attempts
            IdentityUnavailable: the server could not reach the identity provider
        """
        response = await self._get_client().post("/api/auth/session", json={"idToken": id_token})
        if response.status_code in (400, 401, 429):
            raise CredentialInvalid(_detail(response))
        if response.status_code == 503:
            raise IdentityUnavailable(_detail(response))
        response.raise_for_status()

        self.uid = response.json()["uid"]
        self.coordinator.on_session_start(self.uid)
        logger.info(f"Signed in as {self.uid}")
        return self.uid

    async def verify(self) -> SubjectClaims:
        """Ask the server whether the held session is still live."""
        response = await self._get_client().get("/api/auth/verify")
        if response.status_code == 401:
            raise SessionInvalid(_detail(response))
        response.raise_for_status()
        data = response.json()
        return SubjectClaims(uid=data["uid"], email=data.get("email"))

    async def sign_out(self) -> None:
        """Revoke server-side (best effort), drop the cookie and stop the timer."""
        client = self._get_client()
        try:
            response = await client.post("/api/logout")
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Logout request failed, clearing session locally: {e}")
        finally:
            client.cookies.delete(self.cookie_name)
            uid, self.uid = self.uid, None
            self.coordinator.on_session_end()
        logger.info(f"Signed out {uid}")

    def record_activity(self, kind: ActivityKind | str) -> bool:
        return self.monitor.record(kind)

    def dismiss_warning(self) -> None:
        self.coordinator.dismiss()

    def _on_idle_timeout(self) -> None:
        logger.info(f"Session for {self.uid} idle too long, signing out")
        self.sign_out_task = asyncio.get_running_loop().create_task(self.sign_out())
        self.sign_out_task.add_done_callback(_sign_out_done)


def _sign_out_done(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Automatic sign-out failed: {exc}")


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text
