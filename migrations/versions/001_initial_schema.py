"""Initial PostgreSQL schema: users, reports, confirmations, sessions

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("role", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True, unique=True),
        sa.Column("password_hash", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("banned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.CheckConstraint("role IN ('owner', 'moderator', 'user')", name="ck_users_role"),
    )

    # Author link survives user removal (SET NULL)
    op.create_table(
        "reports",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("city", sa.Text(), nullable=False),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("location", sa.Text(), nullable=False),
        sa.Column("bus_number", sa.Text(), nullable=True),
        sa.Column("direction", sa.Text(), nullable=True),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column(
            "user_id", sa.Text(),
            sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.CheckConstraint("type IN ('policja', 'kontrola')", name="ck_reports_type"),
    )

    op.create_table(
        "confirmations",
        sa.Column(
            "user_id", sa.Text(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "report_id", sa.Text(),
            sa.ForeignKey("reports.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("confirmed_at", sa.Float(), nullable=False),
    )

    op.create_table(
        "sessions",
        sa.Column("token", sa.Text(), primary_key=True),
        sa.Column(
            "user_id", sa.Text(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("created_at", sa.Float(), nullable=False),
        sa.Column("expires_at", sa.Float(), nullable=False),
    )

    # Listing, duplicate guard and sweep hot paths
    op.create_index(
        "idx_reports_city_time", "reports", [sa.text("city"), sa.text("created_at DESC")],
    )
    op.create_index("idx_reports_dup", "reports", ["city", "type", "created_at"])
    op.create_index("idx_reports_created", "reports", ["created_at"])
    op.create_index("idx_reports_user", "reports", ["user_id"])
    op.create_index("idx_confirmations_report", "confirmations", ["report_id"])
    op.create_index("idx_sessions_user", "sessions", ["user_id"])


def downgrade() -> None:
    op.drop_index("idx_sessions_user")
    op.drop_index("idx_confirmations_report")
    op.drop_index("idx_reports_user")
    op.drop_index("idx_reports_created")
    op.drop_index("idx_reports_dup")
    op.drop_index("idx_reports_city_time")
    op.drop_table("sessions")
    op.drop_table("confirmations")
    op.drop_table("reports")
    op.drop_table("users")
