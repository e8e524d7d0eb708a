from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.orm import Session

from patrol.errors import ConfigurationError
from patrol.models import ConditionType, RoleAssignment, RoleWarning
from patrol.schemas import RoleTrackingConfig, WarningConfig
from patrol.services.durations import MS_PER_DAY, MS_PER_MONTH, MS_PER_WEEK, is_valid_duration, parse_duration_ms
from patrol.services.guild_settings import get_or_create_settings_row, load_role_configs

logger = logging.getLogger("patrol.role_config")

VALID_CONDITIONS = tuple(item.value for item in ConditionType)
WEEKLY_DEFAULT_LIMIT_MS = 35 * MS_PER_DAY


def validate_role_tracking_config(config: RoleTrackingConfig) -> list[str]:
    errors: list[str] = []

    for condition in config.conditions:
        if condition not in VALID_CONDITIONS:
            errors.append(f'Invalid condition: "{condition}". Must be one of: {", ".join(VALID_CONDITIONS)}')
    if ConditionType.PATROL.value in config.conditions and config.patrol_time_threshold_hours is None:
        errors.append("patrol_time_threshold_hours must be set when using PATROL condition")

    deadline_ms = parse_duration_ms(config.deadline_duration)
    if deadline_ms is None:
        errors.append(f'Invalid deadline_duration: "{config.deadline_duration}"')

    if config.staff_ping_offset is not None:
        staff_ping_ms = parse_duration_ms(config.staff_ping_offset)
        if staff_ping_ms is None:
            errors.append(f'Invalid staff_ping_offset: "{config.staff_ping_offset}"')
        elif deadline_ms is not None and staff_ping_ms > deadline_ms:
            errors.append(
                f'staff_ping_offset "{config.staff_ping_offset}" exceeds deadline_duration "{config.deadline_duration}"'
            )

    if config.patrol_time_threshold_hours is not None and config.patrol_time_threshold_hours < 0:
        errors.append("patrol_time_threshold_hours must be a positive number")

    previous_offset_ms: int | None = None
    for position, warning in enumerate(config.warnings):
        if warning.index != position:
            errors.append(f"Warning index {warning.index} at array position {position} does not match")

        offset_ms = parse_duration_ms(warning.offset)
        if offset_ms is None:
            errors.append(f'Invalid warning offset at index {position}: "{warning.offset}"')
            continue
        if deadline_ms is not None and offset_ms > deadline_ms:
            errors.append(
                f'Warning offset "{warning.offset}" at index {position} exceeds deadline_duration '
                f'"{config.deadline_duration}"'
            )
        if previous_offset_ms is not None and offset_ms <= previous_offset_ms:
            errors.append(f"Warning offsets must be strictly ascending (index {position})")
        previous_offset_ms = offset_ms

    return errors


def ensure_valid_config(config: RoleTrackingConfig) -> RoleTrackingConfig:
    errors = validate_role_tracking_config(config)
    if errors:
        raise ConfigurationError(errors)
    return config


def parse_role_tracking_config(payload: dict[str, Any]) -> RoleTrackingConfig:
    try:
        config = RoleTrackingConfig.model_validate(payload)
    except ValidationError as exc:
        reasons = [
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        ]
        raise ConfigurationError(reasons) from exc
    return ensure_valid_config(config)


def _ordinal(value: int) -> str:
    if value % 100 in (11, 12, 13):
        return f"{value}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(value % 10, "th")
    return f"{value}{suffix}"


def _plural(value: int, unit: str) -> str:
    return f"{value} {unit}" if value == 1 else f"{value} {unit}s"


def build_default_role_config(role_name: str, deadline_duration: str) -> RoleTrackingConfig:
    deadline_ms = parse_duration_ms(deadline_duration)
    if deadline_ms is None:
        raise ConfigurationError([f'Invalid deadline_duration: "{deadline_duration}"'])

    warnings: list[WarningConfig] = []
    if deadline_ms <= WEEKLY_DEFAULT_LIMIT_MS:
        weeks = deadline_ms // MS_PER_WEEK
        for week in range(1, weeks):
            remaining = weeks - week
            warnings.append(
                WarningConfig(
                    index=week - 1,
                    offset=_plural(week, "week"),
                    message=(
                        f"Hello! This is your Week {week} reminder for the {{roleName}} role. "
                        f"You have {_plural(remaining, 'week')} remaining. Make sure you're getting your "
                        "patrol time in! If you need extended time, please request a leave of absence."
                    ),
                )
            )
        staff_ping_offset = f"{weeks} weeks" if weeks > 0 else deadline_duration
    else:
        months = deadline_ms // MS_PER_MONTH
        for month in range(2, months + 1):
            remaining = months - month + 1
            warnings.append(
                WarningConfig(
                    index=month - 2,
                    offset=f"{month} months",
                    message=(
                        f"Hello! This is your {_ordinal(month)} month reminder for the {{roleName}} role. "
                        f"You have {_plural(remaining, 'month')} remaining. Keep up with your patrol time! "
                        "If you need extended time off, please request a leave of absence."
                    ),
                )
            )
        staff_ping_offset = f"{months} months"

    return RoleTrackingConfig(
        enabled=True,
        role_name=role_name,
        deadline_duration=deadline_duration,
        conditions=[],
        patrol_time_threshold_hours=None,
        warnings=warnings,
        staff_ping_offset=staff_ping_offset,
    )


def get_role_configs(db: Session, guild_id: str) -> dict[str, RoleTrackingConfig]:
    row = get_or_create_settings_row(db, guild_id)
    return load_role_configs(row.role_tracking_config, guild_id=guild_id)


def get_role_config(db: Session, guild_id: str, role_id: str) -> RoleTrackingConfig | None:
    return get_role_configs(db, guild_id).get(role_id)


def _require_role_config(db: Session, guild_id: str, role_id: str) -> RoleTrackingConfig:
    config = get_role_config(db, guild_id, role_id)
    if config is None:
        raise LookupError(f"Role {role_id} is not tracked in guild {guild_id}")
    return config


def save_role_config(
    db: Session,
    guild_id: str,
    role_id: str,
    config: RoleTrackingConfig,
    *,
    now_utc: datetime | None = None,
) -> RoleTrackingConfig:
    ensure_valid_config(config)
    row = get_or_create_settings_row(db, guild_id)
    stored = dict(row.role_tracking_config or {})
    stored[role_id] = config.model_dump(mode="json")
    row.role_tracking_config = stored
    if row.role_tracking_initialized_at is None:
        row.role_tracking_initialized_at = now_utc or datetime.now(timezone.utc)
    db.flush()
    logger.info(
        "role_tracking_config_saved",
        extra={"guild_id": guild_id, "role_id": role_id, "enabled": config.enabled},
    )
    return config


def add_role_config(
    db: Session,
    guild_id: str,
    role_id: str,
    *,
    role_name: str,
    deadline_duration: str,
    conditions: list[str] | None = None,
    patrol_time_threshold_hours: float | None = None,
    now_utc: datetime | None = None,
) -> RoleTrackingConfig:
    config = build_default_role_config(role_name, deadline_duration)
    existing = get_role_config(db, guild_id, role_id)
    updates: dict[str, Any] = {
        "conditions": list(conditions or []),
        "patrol_time_threshold_hours": patrol_time_threshold_hours,
    }
    if existing is not None:
        updates["staff_channel_id"] = existing.staff_channel_id
        updates["staff_ping_channel_id"] = existing.staff_ping_channel_id
        updates["staff_ping_role_ids"] = existing.staff_ping_role_ids
    config = RoleTrackingConfig.model_validate({**config.model_dump(), **updates})
    return save_role_config(db, guild_id, role_id, config, now_utc=now_utc)


def remove_role_config(db: Session, guild_id: str, role_id: str) -> bool:
    row = get_or_create_settings_row(db, guild_id)
    stored = dict(row.role_tracking_config or {})
    if role_id not in stored:
        return False
    del stored[role_id]
    row.role_tracking_config = stored
    db.execute(
        delete(RoleWarning).where(
            RoleWarning.guild_id == guild_id,
            RoleWarning.role_id == role_id,
        )
    )
    db.execute(
        delete(RoleAssignment).where(
            RoleAssignment.guild_id == guild_id,
            RoleAssignment.role_id == role_id,
        )
    )
    db.flush()
    logger.info("role_tracking_config_removed", extra={"guild_id": guild_id, "role_id": role_id})
    return True


def update_role_config(db: Session, guild_id: str, role_id: str, changes: dict[str, Any]) -> RoleTrackingConfig:
    config = _require_role_config(db, guild_id, role_id)
    updated = RoleTrackingConfig.model_validate({**config.model_dump(), **changes})
    return save_role_config(db, guild_id, role_id, updated)


def toggle_role_config(db: Session, guild_id: str, role_id: str, enabled: bool) -> RoleTrackingConfig:
    return update_role_config(db, guild_id, role_id, {"enabled": enabled})


def configure_warning(
    db: Session,
    guild_id: str,
    role_id: str,
    *,
    offset: str,
    message: str,
    index: int | None = None,
    custom_message: dict[str, Any] | None = None,
) -> RoleTrackingConfig:
    config = _require_role_config(db, guild_id, role_id)
    offset_ms = parse_duration_ms(offset)
    if offset_ms is None:
        raise ConfigurationError([f'Invalid warning offset: "{offset}"'])
    deadline_ms = parse_duration_ms(config.deadline_duration)
    if deadline_ms is not None and offset_ms > deadline_ms:
        raise ConfigurationError(
            [f'Warning offset "{offset}" exceeds deadline_duration "{config.deadline_duration}"']
        )

    warnings = list(config.warnings)
    if index is None:
        index = max((item.index for item in warnings), default=-1) + 1
    new_warning = WarningConfig(index=index, offset=offset, message=message, custom_message=custom_message)
    replaced = False
    for position, item in enumerate(warnings):
        if item.index == index:
            warnings[position] = new_warning
            replaced = True
            break
    if not replaced:
        warnings.append(new_warning)
    warnings.sort(key=lambda item: item.index)

    updated = config.model_copy(update={"warnings": warnings})
    return save_role_config(db, guild_id, role_id, updated)


def remove_warning(db: Session, guild_id: str, role_id: str, index: int) -> RoleTrackingConfig:
    config = _require_role_config(db, guild_id, role_id)
    remaining = [item for item in config.warnings if item.index != index]
    if len(remaining) == len(config.warnings):
        raise LookupError(f"Warning {index} not configured for role {role_id}")
    reindexed = [item.model_copy(update={"index": position}) for position, item in enumerate(remaining)]
    updated = config.model_copy(update={"warnings": reindexed})
    return save_role_config(db, guild_id, role_id, updated)


def configure_staff_ping(
    db: Session,
    guild_id: str,
    role_id: str,
    *,
    offset: str | None = None,
    message: str | dict[str, Any] | None = None,
    channel_id: str | None = None,
    role_ids: list[str] | None = None,
) -> RoleTrackingConfig:
    changes: dict[str, Any] = {}
    if offset is not None:
        if not is_valid_duration(offset):
            raise ConfigurationError([f'Invalid staff_ping_offset: "{offset}"'])
        changes["staff_ping_offset"] = offset
    if message is not None:
        if isinstance(message, dict):
            changes["custom_staff_ping_message"] = message
        else:
            changes["staff_ping_message"] = message
            changes["custom_staff_ping_message"] = None
    if channel_id is not None:
        changes["staff_ping_channel_id"] = channel_id or None
    if role_ids is not None:
        changes["staff_ping_role_ids"] = [str(item) for item in role_ids] or None
    return update_role_config(db, guild_id, role_id, changes)

