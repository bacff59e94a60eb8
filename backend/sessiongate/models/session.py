"""Server-side session records backing issued credentials."""

from datetime import datetime

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from sessiongate.core.database import Base


class SessionRecord(Base):
    """One authenticated identity's authorization to act.

    A row is written for every credential the SessionStore issues, keyed by the
    credential's ``jti``. Revoking a subject stamps ``revoked_at`` on all of its
    live rows; a credential is only valid while its row exists, is unrevoked and
    has not passed ``expires_at``. Rows are deleted by the cleanup loop after
    they expire.
    """

    __tablename__ = "sessions"
    __table_args__ = (Index("ix_sessions_subject_live", "subject_id", "revoked_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<SessionRecord {self.id} subject={self.subject_id}>"
