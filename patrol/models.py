from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from patrol.db import Base

JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class WarningType(str, enum.Enum):
    WARNING = "warning"
    STAFF_PING = "staff_ping"


class ConditionType(str, enum.Enum):
    TIME = "TIME"
    PATROL = "PATROL"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


STAFF_PING_WARNING_INDEX = -1


class GuildTrackingSettings(Base):
    __tablename__ = "guild_settings"

    guild_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tracked_category_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    patrol_log_channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    leave_role_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    leave_notification_channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    role_tracking_staff_channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    staff_role_ids: Mapped[list[str]] = mapped_column(JsonDocument, nullable=False, default=list)
    role_tracking_config: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)
    role_tracking_initialized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class ActivePatrolSession(Base):
    __tablename__ = "active_patrol_sessions"
    __table_args__ = (
        UniqueConstraint("guild_id", "user_id", name="uq_active_patrol_sessions_guild_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PatrolTimeTotal(Base):
    __tablename__ = "patrol_time_totals"
    __table_args__ = (
        UniqueConstraint("guild_id", "user_id", name="uq_patrol_time_totals_guild_user"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    total_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class PatrolMonthlyTotal(Base):
    __tablename__ = "patrol_monthly_totals"
    __table_args__ = (
        UniqueConstraint(
            "guild_id",
            "user_id",
            "year",
            "month",
            name="uq_patrol_monthly_totals_guild_user_month",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    total_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class RoleAssignment(Base):
    __tablename__ = "role_assignments"
    __table_args__ = (
        UniqueConstraint("guild_id", "user_id", "role_id", name="uq_role_assignments_guild_user_role"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    assigned_by: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    warnings: Mapped[list[RoleWarning]] = relationship(
        back_populates="assignment",
        cascade="all, delete-orphan",
    )


class RoleWarning(Base):
    __tablename__ = "role_tracking_warnings"
    __table_args__ = (
        UniqueConstraint(
            "guild_id",
            "user_id",
            "role_id",
            "warning_index",
            "role_assigned_at",
            name="uq_role_tracking_warnings_step",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)
    warning_type: Mapped[WarningType] = mapped_column(
        Enum(WarningType, name="role_warning_type"),
        nullable=False,
    )
    warning_index: Mapped[int] = mapped_column(Integer, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    role_assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    assignment_id: Mapped[int | None] = mapped_column(
        ForeignKey("role_assignments.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )

    assignment: Mapped[RoleAssignment | None] = relationship(back_populates="warnings")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    guild_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    details: Mapped[dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)
