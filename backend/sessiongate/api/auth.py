"""Session API endpoints: issue, verify and revoke session credentials."""

import logging
import time
from collections import defaultdict

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from sessiongate.core import get_db, settings
from sessiongate.schemas.auth import (
    LogoutResponse,
    SessionCreateRequest,
    SessionCreateResponse,
    VerifyResponse,
)
from sessiongate.services.cookies import clear_session_cookie_kwargs, session_cookie_kwargs
from sessiongate.services.identity import IdentityAuthority, get_identity_authority
from sessiongate.services.session_store import (
    CredentialInvalid,
    IdentityUnavailable,
    RevokeFailure,
    SessionInvalid,
    SessionStore,
    decode_credential,
)

logger = logging.getLogger(__name__)

# Failed issuance attempts per client IP (monotonic timestamps)
_issue_attempts: dict[str, list[float]] = defaultdict(list)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _check_issue_rate_limit(client_ip: str) -> None:
    """Reject a client that exceeded the failed issuance attempt limit."""
    now = time.monotonic()
    window = settings.issue_rate_limit_window_seconds
    recent = [t for t in _issue_attempts.get(client_ip, []) if now - t < window]
    if not recent:
        _issue_attempts.pop(client_ip, None)
        return
    _issue_attempts[client_ip] = recent
    if len(recent) >= settings.issue_rate_limit_attempts:
        logger.warning(
            f"Session issuance rate limit exceeded for {client_ip}",
            extra={"client_ip": client_ip, "reason": "rate limited"},
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many sign-in attempts. Please try again later.",
        )


def _record_failed_attempt(client_ip: str) -> None:
    _issue_attempts[client_ip].append(time.monotonic())


router = APIRouter(prefix="/api", tags=["auth"])


@router.post("/auth/session", response_model=SessionCreateResponse)
async def create_session(
    http_request: Request,
    response: Response,
    payload: SessionCreateRequest | None = None,
    db: AsyncSession = Depends(get_db),
    identity: IdentityAuthority = Depends(get_identity_authority),
) -> SessionCreateResponse:
    """Exchange an identity-provider ID token for a session cookie.

    Returns 400 when the token is missing or not a string, 401 when it is rejected and 503
    when the identity provider cannot be reached. Failed attempts are rate
    limited per client IP.
    """
    client_ip = _client_ip(http_request)
    _check_issue_rate_limit(client_ip)

    id_token = payload.id_token if payload else None
    if not isinstance(id_token, str) or not id_token.strip():
        _record_failed_attempt(client_ip)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="idToken is required",
        )

    store = SessionStore(db, identity=identity)
    try:
        issued = await store.issue(id_token)
    except CredentialInvalid as e:
        _record_failed_attempt(client_ip)
        logger.info(
            f"Rejected identity token from {client_ip}: {e}",
            extra={"client_ip": client_ip, "reason": "rejected"},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid identity token",
        ) from e
    except IdentityUnavailable as e:
        logger.warning(f"Identity authority unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity provider unavailable. Please try again later.",
        ) from e

    response.set_cookie(**session_cookie_kwargs(issued.credential, issued.max_age))
    return SessionCreateResponse(uid=issued.claims.uid)


@router.get("/auth/verify", response_model=VerifyResponse)
async def verify_session(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> VerifyResponse:
    """Confirm the session cookie is live. 401 otherwise."""
    credential = request.cookies.get(settings.session_cookie_name)
    try:
        claims = await SessionStore(db).verify(credential)
    except SessionInvalid as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
        ) from e
    return VerifyResponse(uid=claims.uid, email=claims.email)


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> LogoutResponse:
    """Revoke the caller's sessions and clear the cookie.

    Revocation is best effort: if it fails the cookie is still cleared and the
    credential stays valid server-side until its TTL runs out.
    """
    credential = request.cookies.get(settings.session_cookie_name)
    if credential:
        try:
            payload = decode_credential(credential)
            await SessionStore(db).revoke(payload["sub"])
        except SessionInvalid as e:
            logger.info(f"Logout with unusable credential: {e}")
        except RevokeFailure as e:
            logger.error(f"Session revocation failed during logout: {e}")

    response.set_cookie(**clear_session_cookie_kwargs())
    return LogoutResponse()
