from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from patrol.models import GuildTrackingSettings
from patrol.schemas import RoleTrackingConfig
from patrol.services.ledger import normalize_utc

logger = logging.getLogger("patrol.guild_settings")

_UPDATABLE_FIELDS = (
    "tracked_category_id",
    "patrol_log_channel_id",
    "leave_role_id",
    "leave_notification_channel_id",
    "role_tracking_staff_channel_id",
    "staff_role_ids",
)


@dataclass(frozen=True, slots=True)
class GuildSnapshot:
    guild_id: str
    tracked_category_id: str | None = None
    patrol_log_channel_id: str | None = None
    leave_role_id: str | None = None
    leave_notification_channel_id: str | None = None
    role_tracking_staff_channel_id: str | None = None
    staff_role_ids: tuple[str, ...] = ()
    role_tracking_initialized_at: datetime | None = None
    role_configs: dict[str, RoleTrackingConfig] = field(default_factory=dict)


def get_settings_row(db: Session, guild_id: str) -> GuildTrackingSettings | None:
    return db.get(GuildTrackingSettings, guild_id)


def get_or_create_settings_row(db: Session, guild_id: str) -> GuildTrackingSettings:
    row = db.get(GuildTrackingSettings, guild_id)
    if row is None:
        row = GuildTrackingSettings(guild_id=guild_id, staff_role_ids=[], role_tracking_config={})
        db.add(row)
        db.flush()
    return row


def load_role_configs(raw: dict[str, Any] | None, *, guild_id: str) -> dict[str, RoleTrackingConfig]:
    configs: dict[str, RoleTrackingConfig] = {}
    for role_id, payload in (raw or {}).items():
        try:
            configs[str(role_id)] = RoleTrackingConfig.model_validate(payload)
        except ValidationError:
            logger.warning(
                "role_tracking_config_unreadable",
                extra={"guild_id": guild_id, "role_id": role_id},
            )
    return configs


def load_guild_snapshot(db: Session, guild_id: str) -> GuildSnapshot:
    row = get_settings_row(db, guild_id)
    if row is None:
        return GuildSnapshot(guild_id=guild_id)
    return GuildSnapshot(
        guild_id=guild_id,
        tracked_category_id=row.tracked_category_id,
        patrol_log_channel_id=row.patrol_log_channel_id,
        leave_role_id=row.leave_role_id,
        leave_notification_channel_id=row.leave_notification_channel_id,
        role_tracking_staff_channel_id=row.role_tracking_staff_channel_id,
        staff_role_ids=tuple(str(item) for item in (row.staff_role_ids or [])),
        role_tracking_initialized_at=(
            normalize_utc(row.role_tracking_initialized_at) if row.role_tracking_initialized_at else None
        ),
        role_configs=load_role_configs(row.role_tracking_config, guild_id=guild_id),
    )


def update_guild_settings(db: Session, guild_id: str, changes: dict[str, Any]) -> GuildTrackingSettings:
    row = get_or_create_settings_row(db, guild_id)
    for key, value in changes.items():
        if key not in _UPDATABLE_FIELDS:
            continue
        if key == "staff_role_ids":
            value = [str(item) for item in (value or [])]
        setattr(row, key, value)
    db.flush()
    return row


def list_tracking_guild_ids(db: Session) -> list[str]:
    rows = db.scalars(
        select(GuildTrackingSettings.guild_id)
        .where(GuildTrackingSettings.tracked_category_id.is_not(None))
        .order_by(GuildTrackingSettings.guild_id.asc())
    ).all()
    return [str(item) for item in rows]


def list_role_tracking_guild_ids(db: Session) -> list[str]:
    rows = db.execute(
        select(GuildTrackingSettings.guild_id, GuildTrackingSettings.role_tracking_config).order_by(
            GuildTrackingSettings.guild_id.asc()
        )
    ).all()
    return [str(guild_id) for guild_id, config in rows if config]
