import asyncio
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from patrol.audit import log_audit
from patrol.db import get_db
from patrol.errors import ApiError
from patrol.models import AuditActorType
from patrol.runtime import PatrolRuntime
from patrol.schemas import (
    AssignmentClockResetRead,
    AssignmentClockResetRequest,
    CleanupRead,
    GuildSettingsRead,
    GuildSettingsUpdate,
    LeaderboardEntryRead,
    LedgerPeriodRead,
    PauseResultRead,
    RoleConfigConditionsRequest,
    RoleConfigCreateRequest,
    RoleConfigStaffChannelRequest,
    RoleConfigThresholdRequest,
    RoleConfigToggleRequest,
    RoleSyncRead,
    RoleTrackingConfig,
    StaffPingConfigureRequest,
    SweepReportRead,
    TotalsAdjustRead,
    TotalsAdjustRequest,
    TotalsResetRead,
    TotalsResetRequest,
    TrackedSessionRead,
    UserTotalRead,
    WarningConfigureRequest,
    WarningHistoryRead,
)
from patrol.security import require_admin
from patrol.services import role_config
from patrol.services.guild_settings import get_or_create_settings_row, update_guild_settings

router = APIRouter(
    prefix="/api/admin/guilds/{guild_id}",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


def get_runtime(request: Request) -> PatrolRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise ApiError(status_code=503, code="RUNTIME_UNAVAILABLE", message="Patrol runtime is not running.")
    return runtime


def _audit(
    request: Request,
    db: Session,
    *,
    action: str,
    guild_id: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    success: bool = True,
    details: dict[str, Any] | None = None,
) -> None:
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(getattr(request.state, "actor_id", "admin")),
        action=action,
        success=success,
        guild_id=guild_id,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )


async def _audit_async(request: Request, db: Session, **kwargs: Any) -> None:
    await asyncio.to_thread(_audit, request, db, **kwargs)


# Guild settings


@router.get("/settings", response_model=GuildSettingsRead)
def read_guild_settings(guild_id: str, db: Session = Depends(get_db)) -> GuildSettingsRead:
    row = get_or_create_settings_row(db, guild_id)
    db.commit()
    return GuildSettingsRead.model_validate(row)


@router.patch("/settings", response_model=GuildSettingsRead)
def patch_guild_settings(
    guild_id: str,
    payload: GuildSettingsUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> GuildSettingsRead:
    changes = payload.model_dump(exclude_unset=True)
    row = update_guild_settings(db, guild_id, changes)
    db.commit()
    _audit(
        request,
        db,
        action="GUILD_SETTINGS_UPDATED",
        guild_id=guild_id,
        entity_type="guild_settings",
        entity_id=guild_id,
        details={"fields": sorted(changes)},
    )
    return GuildSettingsRead.model_validate(row)


# Pause control


@router.post("/pause", response_model=PauseResultRead)
async def pause_guild(
    guild_id: str,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> PauseResultRead:
    ok = await runtime.pauses.pause_guild(guild_id)
    await _audit_async(request, db, action="GUILD_PAUSED", guild_id=guild_id, success=ok)
    return PauseResultRead(ok=ok)


@router.delete("/pause", response_model=PauseResultRead)
async def unpause_guild(
    guild_id: str,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> PauseResultRead:
    ok = await runtime.pauses.unpause_guild(guild_id)
    await _audit_async(request, db, action="GUILD_UNPAUSED", guild_id=guild_id, success=ok)
    return PauseResultRead(ok=ok)


@router.post("/pause/users/{user_id}", response_model=PauseResultRead)
async def pause_user(
    guild_id: str,
    user_id: str,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> PauseResultRead:
    ok = await runtime.pauses.pause_user(guild_id, user_id)
    await _audit_async(
        request,
        db,
        action="USER_PAUSED",
        guild_id=guild_id,
        entity_type="user",
        entity_id=user_id,
        success=ok,
    )
    return PauseResultRead(ok=ok)


@router.delete("/pause/users/{user_id}", response_model=PauseResultRead)
async def unpause_user(
    guild_id: str,
    user_id: str,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> PauseResultRead:
    ok = await runtime.pauses.unpause_user(guild_id, user_id)
    await _audit_async(
        request,
        db,
        action="USER_UNPAUSED",
        guild_id=guild_id,
        entity_type="user",
        entity_id=user_id,
        success=ok,
    )
    return PauseResultRead(ok=ok)


# Ledger


@router.post("/totals/reset", response_model=TotalsResetRead)
async def reset_totals(
    guild_id: str,
    payload: TotalsResetRequest,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> TotalsResetRead:
    if payload.month is not None and payload.year is None:
        raise ApiError(status_code=422, code="MONTH_REQUIRES_YEAR", message="month requires year.")
    rows, rebased = await runtime.tracker.reset(
        guild_id,
        payload.user_id,
        year=payload.year,
        month=payload.month,
    )
    await _audit_async(
        request,
        db,
        action="TOTALS_RESET",
        guild_id=guild_id,
        entity_type="user" if payload.user_id else "guild",
        entity_id=payload.user_id or guild_id,
        details={"year": payload.year, "month": payload.month, "rows_reset": rows, "sessions_rebased": rebased},
    )
    return TotalsResetRead(rows_reset=rows, sessions_rebased=rebased)


@router.post("/totals/adjust", response_model=TotalsAdjustRead)
async def adjust_totals(
    guild_id: str,
    payload: TotalsAdjustRequest,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> TotalsAdjustRead:
    if payload.month is not None and payload.year is None:
        raise ApiError(status_code=422, code="MONTH_REQUIRES_YEAR", message="month requires year.")
    total_ms, month_total_ms, year, month = await runtime.tracker.adjust(
        guild_id,
        payload.user_id,
        payload.delta_ms,
        year=payload.year,
        month=payload.month,
    )
    await _audit_async(
        request,
        db,
        action="TOTALS_ADJUSTED",
        guild_id=guild_id,
        entity_type="user",
        entity_id=payload.user_id,
        details={"delta_ms": payload.delta_ms, "year": year, "month": month},
    )
    return TotalsAdjustRead(
        user_id=payload.user_id,
        total_ms=total_ms,
        month_total_ms=month_total_ms,
        year=year,
        month=month,
    )


@router.get("/totals/users/{user_id}", response_model=UserTotalRead)
async def read_user_total(
    guild_id: str,
    user_id: str,
    year: int | None = Query(default=None, ge=2000, le=9999),
    month: int | None = Query(default=None, ge=1, le=12),
    runtime: PatrolRuntime = Depends(get_runtime),
) -> UserTotalRead:
    if month is not None and year is None:
        raise ApiError(status_code=422, code="MONTH_REQUIRES_YEAR", message="month requires year.")
    if year is not None and month is not None:
        total_ms = await runtime.tracker.get_user_total_for_month(guild_id, user_id, year, month)
    elif year is not None:
        total_ms = await runtime.tracker.get_user_total_for_year(guild_id, user_id, year)
    else:
        total_ms = await runtime.tracker.get_user_total(guild_id, user_id)
    return UserTotalRead(user_id=user_id, total_ms=total_ms, year=year, month=month)


@router.get("/totals/top", response_model=list[LeaderboardEntryRead])
async def read_top(
    guild_id: str,
    limit: int = Query(default=10, ge=1),
    year: int | None = Query(default=None, ge=2000, le=9999),
    month: int | None = Query(default=None, ge=1, le=12),
    channel_id: str | None = Query(default=None),
    runtime: PatrolRuntime = Depends(get_runtime),
) -> list[LeaderboardEntryRead]:
    if month is not None and year is None:
        raise ApiError(status_code=422, code="MONTH_REQUIRES_YEAR", message="month requires year.")
    if channel_id:
        entries = await runtime.tracker.get_top_for_channel(guild_id, channel_id, limit)
    elif year is not None and month is not None:
        entries = await runtime.tracker.get_top_by_month(guild_id, year, month, limit)
    elif year is not None:
        entries = await runtime.tracker.get_top_by_year(guild_id, year, limit)
    else:
        entries = await runtime.tracker.get_top(guild_id, limit)
    return [LeaderboardEntryRead(user_id=item.user_id, total_ms=item.total_ms) for item in entries]


@router.get("/totals/years", response_model=list[LedgerPeriodRead])
async def read_available_years(
    guild_id: str,
    runtime: PatrolRuntime = Depends(get_runtime),
) -> list[LedgerPeriodRead]:
    periods = await runtime.tracker.get_available_years(guild_id)
    return [LedgerPeriodRead.model_validate(item, from_attributes=True) for item in periods]


@router.get("/totals/months", response_model=list[LedgerPeriodRead])
async def read_available_months(
    guild_id: str,
    year: int | None = Query(default=None, ge=2000, le=9999),
    runtime: PatrolRuntime = Depends(get_runtime),
) -> list[LedgerPeriodRead]:
    periods = await runtime.tracker.get_available_months(guild_id, year)
    return [LedgerPeriodRead.model_validate(item, from_attributes=True) for item in periods]


@router.get("/sessions", response_model=list[TrackedSessionRead])
def read_tracked_sessions(
    guild_id: str,
    runtime: PatrolRuntime = Depends(get_runtime),
) -> list[TrackedSessionRead]:
    return [
        TrackedSessionRead(
            user_id=item.user_id,
            channel_id=item.channel_id,
            started_at=item.started_at,
            elapsed_ms=item.elapsed_ms,
        )
        for item in runtime.tracker.get_current_tracked_list(guild_id)
    ]


# Role tracking configuration


@router.get("/role-configs", response_model=dict[str, RoleTrackingConfig])
def list_role_configs(guild_id: str, db: Session = Depends(get_db)) -> dict[str, RoleTrackingConfig]:
    configs = role_config.get_role_configs(db, guild_id)
    db.commit()
    return configs


@router.put("/role-configs/{role_id}", response_model=RoleTrackingConfig)
def put_role_config(
    guild_id: str,
    role_id: str,
    payload: RoleConfigCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> RoleTrackingConfig:
    config = role_config.add_role_config(
        db,
        guild_id,
        role_id,
        role_name=payload.role_name.strip(),
        deadline_duration=payload.deadline_duration.strip(),
        conditions=payload.conditions,
        patrol_time_threshold_hours=payload.patrol_time_threshold_hours,
    )
    db.commit()
    _audit(
        request,
        db,
        action="ROLE_CONFIG_SAVED",
        guild_id=guild_id,
        entity_type="role",
        entity_id=role_id,
        details={"deadline_duration": config.deadline_duration, "conditions": list(config.conditions)},
    )
    return config


@router.delete("/role-configs/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_role_config(
    guild_id: str,
    role_id: str,
    request: Request,
    db: Session = Depends(get_db),
) -> None:
    if not role_config.remove_role_config(db, guild_id, role_id):
        raise ApiError(status_code=404, code="NOT_FOUND", message=f"Role {role_id} is not tracked.")
    db.commit()
    _audit(request, db, action="ROLE_CONFIG_REMOVED", guild_id=guild_id, entity_type="role", entity_id=role_id)


def _update_role_config(
    request: Request,
    db: Session,
    *,
    guild_id: str,
    role_id: str,
    action: str,
    changes: dict[str, Any],
) -> RoleTrackingConfig:
    config = role_config.update_role_config(db, guild_id, role_id, changes)
    db.commit()
    _audit(
        request,
        db,
        action=action,
        guild_id=guild_id,
        entity_type="role",
        entity_id=role_id,
        details=changes,
    )
    return config


@router.patch("/role-configs/{role_id}/enabled", response_model=RoleTrackingConfig)
def toggle_role_config(
    guild_id: str,
    role_id: str,
    payload: RoleConfigToggleRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> RoleTrackingConfig:
    config = role_config.toggle_role_config(db, guild_id, role_id, payload.enabled)
    db.commit()
    _audit(
        request,
        db,
        action="ROLE_CONFIG_TOGGLED",
        guild_id=guild_id,
        entity_type="role",
        entity_id=role_id,
        details={"enabled": payload.enabled},
    )
    return config


@router.patch("/role-configs/{role_id}/threshold", response_model=RoleTrackingConfig)
def set_role_threshold(
    guild_id: str,
    role_id: str,
    payload: RoleConfigThresholdRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> RoleTrackingConfig:
    return _update_role_config(
        request,
        db,
        guild_id=guild_id,
        role_id=role_id,
        action="ROLE_CONFIG_THRESHOLD_SET",
        changes={"patrol_time_threshold_hours": payload.patrol_time_threshold_hours},
    )


@router.patch("/role-configs/{role_id}/conditions", response_model=RoleTrackingConfig)
def set_role_conditions(
    guild_id: str,
    role_id: str,
    payload: RoleConfigConditionsRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> RoleTrackingConfig:
    return _update_role_config(
        request,
        db,
        guild_id=guild_id,
        role_id=role_id,
        action="ROLE_CONFIG_CONDITIONS_SET",
        changes={"conditions": payload.conditions},
    )


@router.patch("/role-configs/{role_id}/staff-channel", response_model=RoleTrackingConfig)
def set_role_staff_channel(
    guild_id: str,
    role_id: str,
    payload: RoleConfigStaffChannelRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> RoleTrackingConfig:
    return _update_role_config(
        request,
        db,
        guild_id=guild_id,
        role_id=role_id,
        action="ROLE_CONFIG_STAFF_CHANNEL_SET",
        changes={"staff_channel_id": payload.staff_channel_id or None},
    )


@router.put("/role-configs/{role_id}/warnings", response_model=RoleTrackingConfig)
def put_role_warning(
    guild_id: str,
    role_id: str,
    payload: WarningConfigureRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> RoleTrackingConfig:
    config = role_config.configure_warning(
        db,
        guild_id,
        role_id,
        offset=payload.offset.strip(),
        message=payload.message,
        index=payload.index,
        custom_message=payload.custom_message,
    )
    db.commit()
    _audit(
        request,
        db,
        action="ROLE_WARNING_CONFIGURED",
        guild_id=guild_id,
        entity_type="role",
        entity_id=role_id,
        details={"offset": payload.offset, "index": payload.index},
    )
    return config


@router.delete("/role-configs/{role_id}/warnings/{index}", response_model=RoleTrackingConfig)
def delete_role_warning(
    guild_id: str,
    role_id: str,
    index: int,
    request: Request,
    db: Session = Depends(get_db),
) -> RoleTrackingConfig:
    config = role_config.remove_warning(db, guild_id, role_id, index)
    db.commit()
    _audit(
        request,
        db,
        action="ROLE_WARNING_REMOVED",
        guild_id=guild_id,
        entity_type="role",
        entity_id=role_id,
        details={"index": index},
    )
    return config


@router.put("/role-configs/{role_id}/staff-ping", response_model=RoleTrackingConfig)
def put_staff_ping(
    guild_id: str,
    role_id: str,
    payload: StaffPingConfigureRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> RoleTrackingConfig:
    config = role_config.configure_staff_ping(
        db,
        guild_id,
        role_id,
        offset=payload.offset,
        message=payload.message,
        channel_id=payload.channel_id,
        role_ids=payload.role_ids,
    )
    db.commit()
    _audit(
        request,
        db,
        action="ROLE_STAFF_PING_CONFIGURED",
        guild_id=guild_id,
        entity_type="role",
        entity_id=role_id,
        details=payload.model_dump(exclude_unset=True, exclude={"message"}),
    )
    return config


# Role tracking operations


@router.post("/role-tracking/sweep", response_model=SweepReportRead)
async def trigger_sweep(
    guild_id: str,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> SweepReportRead:
    report = await runtime.escalation.check_guild(guild_id)
    await _audit_async(
        request,
        db,
        action="ROLE_TRACKING_SWEEP_TRIGGERED",
        guild_id=guild_id,
        details={"warnings_sent": report.warnings_sent, "escalations_sent": report.escalations_sent},
    )
    return SweepReportRead(
        guild_id=report.guild_id,
        holders_checked=report.holders_checked,
        warnings_sent=report.warnings_sent,
        warnings_failed=report.warnings_failed,
        escalations_sent=report.escalations_sent,
        grace_resets=report.grace_resets,
        skipped_on_leave=report.skipped_on_leave,
        errors=report.errors,
    )


@router.post("/role-tracking/cleanup", response_model=CleanupRead)
async def cleanup_role_tracking(
    guild_id: str,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> CleanupRead:
    removed = await runtime.escalation.cleanup_missing_members(guild_id)
    await _audit_async(
        request,
        db,
        action="ROLE_TRACKING_CLEANUP",
        guild_id=guild_id,
        details={"users_removed": removed},
    )
    return CleanupRead(users_removed=removed)


@router.post("/role-configs/{role_id}/sync", response_model=RoleSyncRead)
async def sync_role_members(
    guild_id: str,
    role_id: str,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> RoleSyncRead:
    report = await runtime.escalation.sync_role_members(guild_id, role_id)
    await _audit_async(
        request,
        db,
        action="ROLE_MEMBERS_SYNCED",
        guild_id=guild_id,
        entity_type="role",
        entity_id=role_id,
        details={"added": report.added, "existing": report.existing, "failed": report.failed},
    )
    return RoleSyncRead(added=report.added, existing=report.existing, failed=report.failed)


@router.post("/users/{user_id}/assignment-clock/reset", response_model=AssignmentClockResetRead)
async def reset_assignment_clock(
    guild_id: str,
    user_id: str,
    payload: AssignmentClockResetRequest,
    request: Request,
    runtime: PatrolRuntime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> AssignmentClockResetRead:
    reset, cleared = await runtime.escalation.reset_assignment_clock(guild_id, user_id, payload.role_id)
    await _audit_async(
        request,
        db,
        action="ASSIGNMENT_CLOCK_RESET",
        guild_id=guild_id,
        entity_type="user",
        entity_id=user_id,
        details={"role_id": payload.role_id, "assignments_reset": reset, "warnings_cleared": cleared},
    )
    return AssignmentClockResetRead(assignments_reset=reset, warnings_cleared=cleared)


@router.get("/users/{user_id}/warnings", response_model=list[WarningHistoryRead])
async def read_warning_history(
    guild_id: str,
    user_id: str,
    role_id: str | None = Query(default=None),
    runtime: PatrolRuntime = Depends(get_runtime),
) -> list[WarningHistoryRead]:
    rows = await runtime.escalation.get_warning_history(guild_id, user_id, role_id)
    return [
        WarningHistoryRead(
            id=row.id,
            role_id=row.role_id,
            warning_type=row.warning_type.value,
            warning_index=row.warning_index,
            sent_at=row.sent_at,
            role_assigned_at=row.role_assigned_at,
            assignment_id=row.assignment_id,
        )
        for row in rows
    ]
