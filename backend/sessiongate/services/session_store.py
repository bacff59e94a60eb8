"""Session store: issues, verifies and revokes session credentials.

A session credential is a JWT signed with the server secret. Its signature and
TTL are necessary but not sufficient: every verification also reads the backing
``sessions`` row, so a revocation committed by ``revoke()`` takes effect on the
very next ``verify()`` regardless of the credential's remaining lifetime.
"""

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from jwt.exceptions import PyJWTError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sessiongate.core import settings
from sessiongate.models.session import SessionRecord
from sessiongate.services.identity import (
    IdentityAuthority,
    IdentityAuthorityUnavailable,
    IdentityTokenRejected,
)

logger = logging.getLogger(__name__)

SESSION_TOKEN_TYPE = "session"


class SessionError(Exception):
    """Base session error."""

    pass


class CredentialInvalid(SessionError):
    """Identity token missing, malformed or rejected at issuance."""

    pass


class IdentityUnavailable(SessionError):
    """Identity authority unreachable at issuance."""

    pass


class SessionInvalid(SessionError):
    """Session credential absent, malformed, expired or revoked."""

    pass


class RevokeFailure(SessionError):
    """Revocation could not be persisted."""

    pass


@dataclass(frozen=True)
class SubjectClaims:
    """Claims of a verified session."""

    uid: str
    email: str | None = None
    session_id: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class IssuedSession:
    """A freshly minted credential plus what it asserts."""

    credential: str
    claims: SubjectClaims
    max_age: int


def _utcnow() -> datetime:
    return datetime.now(UTC)


def encode_credential(
    session_id: str,
    subject_id: str,
    email: str | None,
    issued_at: datetime,
    expires_at: datetime,
) -> str:
    """Sign a session credential."""
    payload: dict[str, Any] = {
        "sub": subject_id,
        "jti": session_id,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": SESSION_TOKEN_TYPE,
    }
    if email:
        payload["email"] = email
    return jwt.encode(
        payload,
        settings.effective_session_secret_key,
        algorithm=settings.session_algorithm,
    )


def decode_credential(credential: str) -> dict[str, Any]:
    """Check signature, TTL and shape of a session credential."""
    try:
        payload = jwt.decode(
            credential,
            settings.effective_session_secret_key,
            algorithms=[settings.session_algorithm],
            options={"require": ["exp", "iat", "sub", "jti"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise SessionInvalid("Session has expired") from e
    except PyJWTError as e:
        raise SessionInvalid(f"Malformed session credential: {e}") from e

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise SessionInvalid("Not a session credential")
    return payload


class SessionStore:
    """Server-side authority on session validity.

    One instance per request/unit of work; it holds no state of its own beyond
    the database session, so concurrent requests (including several tabs of the
    same subject) never contend on anything but the database.
    """

    def __init__(
        self,
        db: AsyncSession,
        identity: IdentityAuthority | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.identity = identity
        self.clock = clock

    async def issue(self, identity_token: str | None) -> IssuedSession:
        """Exchange a verified identity token for a session credential.

        Raises:
            CredentialInvalid: token missing, malformed or rejected
            IdentityUnavailable: the identity authority could not be reached
        """
        if not identity_token or not identity_token.strip():
            raise CredentialInvalid("Identity token is required")
        if self.identity is None:
            raise RuntimeError("SessionStore.issue requires an identity authority")

        try:
            identity = await self.identity.verify_id_token(identity_token)
        except IdentityTokenRejected as e:
            raise CredentialInvalid(str(e)) from e
        except IdentityAuthorityUnavailable as e:
            raise IdentityUnavailable(str(e)) from e

        issued_at = self.clock()
        expires_at = issued_at + timedelta(seconds=settings.session_ttl_seconds)
        session_id = secrets.token_hex(16)

        self.db.add(
            SessionRecord(
                id=session_id,
                subject_id=identity.subject,
                email=identity.email,
                issued_at=issued_at,
                expires_at=expires_at,
            )
        )
        await self.db.commit()

        credential = encode_credential(
            session_id, identity.subject, identity.email, issued_at, expires_at
        )
        logger.info(
            f"Issued session {session_id[:8]} for subject {identity.subject}",
            extra={"subject": identity.subject},
        )
        return IssuedSession(
            credential=credential,
            claims=SubjectClaims(
                uid=identity.subject,
                email=identity.email,
                session_id=session_id,
                issued_at=issued_at,
                expires_at=expires_at,
            ),
            max_age=settings.session_ttl_seconds,
        )

    async def verify(self, credential: str | None) -> SubjectClaims:
        """Verify a credential and that its session is still live.

        Raises:
            SessionInvalid: absent, malformed, expired or revoked
        """
        if not credential:
            raise SessionInvalid("No session credential")

        payload = decode_credential(credential)

        # Revocation is read from the database on every call
        result = await self.db.execute(
            select(SessionRecord.id).where(
                SessionRecord.id == payload["jti"],
                SessionRecord.subject_id == payload["sub"],
                SessionRecord.revoked_at.is_(None),
                SessionRecord.expires_at > self.clock(),
            )
        )
        if result.scalar_one_or_none() is None:
            raise SessionInvalid("Session has been revoked or no longer exists")

        return SubjectClaims(
            uid=payload["sub"],
            email=payload.get("email"),
            session_id=payload["jti"],
            issued_at=datetime.fromtimestamp(payload["iat"], UTC),
            expires_at=datetime.fromtimestamp(payload["exp"], UTC),
        )

    async def revoke(self, subject_id: str) -> int:
        """Invalidate every outstanding credential of one subject.

        Returns the number of sessions revoked.

        Raises:
            RevokeFailure: the revocation could not be committed
        """
        if not subject_id:
            raise ValueError("subject_id is required")

        try:
            result = await self.db.execute(
                update(SessionRecord)
                .where(
                    SessionRecord.subject_id == subject_id,
                    SessionRecord.revoked_at.is_(None),
                )
                .values(revoked_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise RevokeFailure(f"Could not revoke sessions for subject {subject_id}") from e

        revoked = result.rowcount or 0
        logger.info(
            f"Revoked {revoked} session(s) for subject {subject_id}",
            extra={"subject": subject_id},
        )
        return revoked


async def cleanup_expired_sessions(db: AsyncSession, now: datetime | None = None) -> int:
    """Delete sessions past their expiry. Returns count removed."""
    result = await db.execute(
        delete(SessionRecord)
        .where(SessionRecord.expires_at < (now or _utcnow()))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
