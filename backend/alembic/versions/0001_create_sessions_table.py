"""Create sessions table backing issued session credentials.

One row per issued credential (keyed by its jti). Revocation stamps
revoked_at on every live row of a subject.

Revision ID: 0001
Revises:
Create Date: 2026-10-16

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("subject_id", sa.String(128), nullable=False, index=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sessions_subject_live", "sessions", ["subject_id", "revoked_at"])


def downgrade() -> None:
    op.drop_index("ix_sessions_subject_live", table_name="sessions")
    op.drop_table("sessions")
