"""Initial patrol ledger and role tracking schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-03-02 10:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

role_warning_type = postgresql.ENUM(
    "WARNING",
    "STAFF_PING",
    name="role_warning_type",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "ADMIN",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    role_warning_type.create(bind, checkfirst=True)
    audit_actor_type.create(bind, checkfirst=True)

    op.create_table(
        "guild_settings",
        sa.Column("guild_id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("tracked_category_id", sa.String(length=32), nullable=True),
        sa.Column("patrol_log_channel_id", sa.String(length=32), nullable=True),
        sa.Column("leave_role_id", sa.String(length=32), nullable=True),
        sa.Column("leave_notification_channel_id", sa.String(length=32), nullable=True),
        sa.Column("role_tracking_staff_channel_id", sa.String(length=32), nullable=True),
        sa.Column(
            "staff_role_ids",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "role_tracking_config",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("role_tracking_initialized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )

    op.create_table(
        "active_patrol_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("guild_id", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=False),
        sa.Column("channel_id", sa.String(length=32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("guild_id", "user_id", name="uq_active_patrol_sessions_guild_user"),
    )
    op.create_index(
        "ix_active_patrol_sessions_guild_id",
        "active_patrol_sessions",
        ["guild_id"],
        unique=False,
    )

    op.create_table(
        "patrol_time_totals",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("guild_id", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=False),
        sa.Column("total_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_channel_id", sa.String(length=32), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("guild_id", "user_id", name="uq_patrol_time_totals_guild_user"),
    )
    op.create_index("ix_patrol_time_totals_guild_id", "patrol_time_totals", ["guild_id"], unique=False)

    op.create_table(
        "patrol_monthly_totals",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("guild_id", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("total_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.UniqueConstraint(
            "guild_id",
            "user_id",
            "year",
            "month",
            name="uq_patrol_monthly_totals_guild_user_month",
        ),
    )
    op.create_index("ix_patrol_monthly_totals_guild_id", "patrol_monthly_totals", ["guild_id"], unique=False)

    op.create_table(
        "role_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("guild_id", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=False),
        sa.Column("role_id", sa.String(length=32), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_by", sa.String(length=32), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("guild_id", "user_id", "role_id", name="uq_role_assignments_guild_user_role"),
    )
    op.create_index("ix_role_assignments_guild_id", "role_assignments", ["guild_id"], unique=False)

    op.create_table(
        "role_tracking_warnings",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("guild_id", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=False),
        sa.Column("role_id", sa.String(length=32), nullable=False),
        sa.Column("warning_type", role_warning_type, nullable=False),
        sa.Column("warning_index", sa.Integer(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("role_assigned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "assignment_id",
            sa.Integer(),
            sa.ForeignKey("role_assignments.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.UniqueConstraint(
            "guild_id",
            "user_id",
            "role_id",
            "warning_index",
            "role_assigned_at",
            name="uq_role_tracking_warnings_step",
        ),
    )
    op.create_index("ix_role_tracking_warnings_guild_id", "role_tracking_warnings", ["guild_id"], unique=False)
    op.create_index(
        "ix_role_tracking_warnings_assignment_id",
        "role_tracking_warnings",
        ["assignment_id"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("guild_id", sa.String(length=32), nullable=True),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_guild_id", "audit_logs", ["guild_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_guild_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_role_tracking_warnings_assignment_id", table_name="role_tracking_warnings")
    op.drop_index("ix_role_tracking_warnings_guild_id", table_name="role_tracking_warnings")
    op.drop_table("role_tracking_warnings")
    op.drop_index("ix_role_assignments_guild_id", table_name="role_assignments")
    op.drop_table("role_assignments")
    op.drop_index("ix_patrol_monthly_totals_guild_id", table_name="patrol_monthly_totals")
    op.drop_table("patrol_monthly_totals")
    op.drop_index("ix_patrol_time_totals_guild_id", table_name="patrol_time_totals")
    op.drop_table("patrol_time_totals")
    op.drop_index("ix_active_patrol_sessions_guild_id", table_name="active_patrol_sessions")
    op.drop_table("active_patrol_sessions")
    op.drop_table("guild_settings")

    bind = op.get_bind()
    audit_actor_type.drop(bind, checkfirst=True)
    role_warning_type.drop(bind, checkfirst=True)
