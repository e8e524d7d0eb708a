from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from patrol.db import run_in_session
from patrol.gateway import MemberInfo, Messenger, PlatformGateway, deliver_direct, deliver_to_channel
from patrol.models import ConditionType, RoleAssignment, RoleWarning, STAFF_PING_WARNING_INDEX, WarningType
from patrol.schemas import RoleTrackingConfig, WarningConfig
from patrol.services import ledger
from patrol.services.durations import MS_PER_HOUR, format_duration_ms, parse_duration_ms
from patrol.services.guild_settings import GuildSnapshot, list_role_tracking_guild_ids, load_guild_snapshot
from patrol.services.keyed_locks import KeyedLocks
from patrol.services.ledger import elapsed_ms, month_start, next_month_start, normalize_utc
from patrol.services.pauses import PauseController
from patrol.services.sessions import SessionTracker
from patrol.services.templates import (
    as_message,
    build_staff_ping_variables,
    build_warning_variables,
    render_payload,
    render_text,
)
from patrol.settings import get_settings

logger = logging.getLogger("patrol.role_tracking")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class AssignmentClock:
    assignment_id: int | None
    assigned_at: datetime


@dataclass(frozen=True, slots=True)
class ConditionResult:
    exempt: bool
    all_passed: bool
    failed_conditions: tuple[str, ...] = ()
    patrol_threshold_met: bool = False


@dataclass(slots=True)
class SweepReport:
    guild_id: str
    holders_checked: int = 0
    warnings_sent: int = 0
    warnings_failed: int = 0
    escalations_sent: int = 0
    grace_resets: int = 0
    skipped_on_leave: int = 0
    errors: int = 0


@dataclass(slots=True)
class RoleSyncReport:
    added: int = 0
    existing: int = 0
    failed: int = 0
    failed_user_ids: list[str] = field(default_factory=list)


def evaluate(
    config: RoleTrackingConfig,
    *,
    assigned_at: datetime,
    patrol_ms: int,
    now_utc: datetime | None = None,
) -> ConditionResult:
    if not config.conditions:
        return ConditionResult(exempt=True, all_passed=True)

    failed: list[str] = []
    patrol_met = False
    if config.has_condition(ConditionType.PATROL.value):
        threshold = config.patrol_time_threshold_hours
        patrol_met = bool(threshold) and patrol_ms / MS_PER_HOUR >= threshold
        if not patrol_met:
            failed.append(ConditionType.PATROL.value)
    if config.has_condition(ConditionType.TIME.value):
        deadline_ms = parse_duration_ms(config.deadline_duration)
        if deadline_ms is not None and elapsed_ms(assigned_at, normalize_utc(now_utc)) >= deadline_ms:
            failed.append(ConditionType.TIME.value)

    return ConditionResult(
        exempt=False,
        all_passed=not failed,
        failed_conditions=tuple(failed),
        patrol_threshold_met=patrol_met,
    )


def months_between(start_utc: datetime, end_utc: datetime) -> list[tuple[int, int]]:
    cursor = month_start(normalize_utc(start_utc))
    end = normalize_utc(end_utc)
    months: list[tuple[int, int]] = []
    while cursor <= end:
        months.append((cursor.year, cursor.month))
        cursor = next_month_start(cursor)
    return months


# Persistence helpers, run through run_in_session.


def get_assignment(db: Session, *, guild_id: str, user_id: str, role_id: str) -> RoleAssignment | None:
    return db.scalar(
        select(RoleAssignment).where(
            RoleAssignment.guild_id == guild_id,
            RoleAssignment.user_id == user_id,
            RoleAssignment.role_id == role_id,
        )
    )


def resolve_assignment_clock(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    role_id: str,
    fallback_at: datetime,
) -> AssignmentClock:
    assignment = get_assignment(db, guild_id=guild_id, user_id=user_id, role_id=role_id)
    if assignment is None:
        return AssignmentClock(assignment_id=None, assigned_at=normalize_utc(fallback_at))
    return AssignmentClock(assignment_id=assignment.id, assigned_at=normalize_utc(assignment.assigned_at))


def upsert_assignment(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    role_id: str,
    assigned_at: datetime,
    assigned_by: str | None = None,
) -> int:
    assignment = get_assignment(db, guild_id=guild_id, user_id=user_id, role_id=role_id)
    if assignment is None:
        assignment = RoleAssignment(
            guild_id=guild_id,
            user_id=user_id,
            role_id=role_id,
            assigned_at=assigned_at,
            assigned_by=assigned_by,
        )
        db.add(assignment)
        db.flush()
        return assignment.id

    assignment.assigned_at = assigned_at
    if assigned_by is not None:
        assignment.assigned_by = assigned_by
    db.execute(delete(RoleWarning).where(RoleWarning.assignment_id == assignment.id))
    db.flush()
    return assignment.id


def delete_assignment(db: Session, *, guild_id: str, user_id: str, role_id: str) -> int:
    cleared = db.execute(
        delete(RoleWarning).where(
            RoleWarning.guild_id == guild_id,
            RoleWarning.user_id == user_id,
            RoleWarning.role_id == role_id,
        )
    ).rowcount
    assignment = get_assignment(db, guild_id=guild_id, user_id=user_id, role_id=role_id)
    if assignment is not None:
        db.delete(assignment)
    db.flush()
    return int(cleared or 0)


def reset_user_clocks(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    now_utc: datetime,
    role_id: str | None = None,
) -> tuple[int, int]:
    warning_filter = [RoleWarning.guild_id == guild_id, RoleWarning.user_id == user_id]
    assignment_filter = [RoleAssignment.guild_id == guild_id, RoleAssignment.user_id == user_id]
    if role_id is not None:
        warning_filter.append(RoleWarning.role_id == role_id)
        assignment_filter.append(RoleAssignment.role_id == role_id)

    cleared = db.execute(delete(RoleWarning).where(*warning_filter)).rowcount
    reset = db.execute(
        update(RoleAssignment).where(*assignment_filter).values(assigned_at=now_utc, updated_at=now_utc)
    ).rowcount
    db.flush()
    return int(reset or 0), int(cleared or 0)


def _warning_scope(*, guild_id: str, user_id: str, role_id: str, clock: AssignmentClock) -> list[Any]:
    scope: list[Any] = [
        RoleWarning.guild_id == guild_id,
        RoleWarning.user_id == user_id,
        RoleWarning.role_id == role_id,
    ]
    if clock.assignment_id is None:
        scope.append(RoleWarning.role_assigned_at == clock.assigned_at)
    else:
        scope.append(
            or_(
                RoleWarning.assignment_id == clock.assignment_id,
                and_(
                    RoleWarning.assignment_id.is_(None),
                    RoleWarning.role_assigned_at == clock.assigned_at,
                ),
            )
        )
    return scope


def list_sent_indexes(db: Session, *, guild_id: str, user_id: str, role_id: str, clock: AssignmentClock) -> set[int]:
    rows = db.scalars(
        select(RoleWarning.warning_index).where(
            *_warning_scope(guild_id=guild_id, user_id=user_id, role_id=role_id, clock=clock)
        )
    ).all()
    return {int(item) for item in rows}


def apply_grace_reset(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    role_id: str,
    clock: AssignmentClock,
    now_utc: datetime,
) -> int:
    cleared = db.execute(
        delete(RoleWarning).where(*_warning_scope(guild_id=guild_id, user_id=user_id, role_id=role_id, clock=clock))
    ).rowcount
    if clock.assignment_id is not None:
        db.execute(
            update(RoleAssignment)
            .where(RoleAssignment.id == clock.assignment_id)
            .values(assigned_at=now_utc, updated_at=now_utc)
        )
    db.flush()
    return int(cleared or 0)


def record_warning(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    role_id: str,
    warning_type: WarningType,
    warning_index: int,
    clock: AssignmentClock,
    sent_at: datetime,
) -> None:
    db.add(
        RoleWarning(
            guild_id=guild_id,
            user_id=user_id,
            role_id=role_id,
            warning_type=warning_type,
            warning_index=warning_index,
            sent_at=sent_at,
            role_assigned_at=clock.assigned_at,
            assignment_id=clock.assignment_id,
        )
    )
    db.flush()


def list_tracked_user_ids(db: Session, *, guild_id: str) -> list[str]:
    assignment_users = db.scalars(
        select(RoleAssignment.user_id).where(RoleAssignment.guild_id == guild_id).distinct()
    ).all()
    warning_users = db.scalars(select(RoleWarning.user_id).where(RoleWarning.guild_id == guild_id).distinct()).all()
    return sorted({str(item) for item in [*assignment_users, *warning_users]})


def purge_member_rows(db: Session, *, guild_id: str, user_id: str) -> None:
    db.execute(delete(RoleWarning).where(RoleWarning.guild_id == guild_id, RoleWarning.user_id == user_id))
    db.execute(delete(RoleAssignment).where(RoleAssignment.guild_id == guild_id, RoleAssignment.user_id == user_id))
    db.flush()


def list_warning_history(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    role_id: str | None = None,
) -> list[RoleWarning]:
    stmt = select(RoleWarning).where(RoleWarning.guild_id == guild_id, RoleWarning.user_id == user_id)
    if role_id is not None:
        stmt = stmt.where(RoleWarning.role_id == role_id)
    return list(db.scalars(stmt.order_by(RoleWarning.sent_at.asc(), RoleWarning.id.asc())).all())


class EscalationEngine:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        gateway: PlatformGateway,
        messenger: Messenger,
        pauses: PauseController,
        tracker: SessionTracker,
        locks: KeyedLocks,
        should_ping: bool | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._messenger = messenger
        self._pauses = pauses
        self._tracker = tracker
        self._locks = locks
        self._should_ping = get_settings().role_tracking_should_ping if should_ping is None else should_ping

    async def _db(self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(run_in_session, self._session_factory, fn, *args, **kwargs)

    # Assignment lifecycle

    async def track_assignment(
        self,
        guild_id: str,
        user_id: str,
        role_id: str,
        *,
        at: datetime | None = None,
        assigned_by: str | None = None,
    ) -> int:
        assignment_id = await self._db(
            upsert_assignment,
            guild_id=guild_id,
            user_id=user_id,
            role_id=role_id,
            assigned_at=normalize_utc(at),
            assigned_by=assigned_by,
        )
        logger.info(
            "role_assignment_tracked",
            extra={"guild_id": guild_id, "user_id": user_id, "role_id": role_id, "assignment_id": assignment_id},
        )
        return assignment_id

    async def track_removal(self, guild_id: str, user_id: str, role_id: str) -> None:
        cleared = await self._db(delete_assignment, guild_id=guild_id, user_id=user_id, role_id=role_id)
        logger.info(
            "role_assignment_removed",
            extra={"guild_id": guild_id, "user_id": user_id, "role_id": role_id, "warnings_cleared": cleared},
        )

    async def handle_leave_ended(self, guild_id: str, user_id: str, *, now_utc: datetime | None = None) -> None:
        reset, cleared = await self._db(
            reset_user_clocks,
            guild_id=guild_id,
            user_id=user_id,
            now_utc=normalize_utc(now_utc),
        )
        logger.info(
            "role_tracking_leave_ended",
            extra={"guild_id": guild_id, "user_id": user_id, "assignments_reset": reset, "warnings_cleared": cleared},
        )

    async def reset_assignment_clock(
        self,
        guild_id: str,
        user_id: str,
        role_id: str | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> tuple[int, int]:
        async with self._locks.hold(guild_id, user_id):
            reset, cleared = await self._db(
                reset_user_clocks,
                guild_id=guild_id,
                user_id=user_id,
                now_utc=normalize_utc(now_utc),
                role_id=role_id,
            )
        logger.info(
            "role_assignment_clock_reset",
            extra={
                "guild_id": guild_id,
                "user_id": user_id,
                "role_id": role_id,
                "assignments_reset": reset,
                "warnings_cleared": cleared,
            },
        )
        return reset, cleared

    async def handle_member_roles_changed(
        self,
        guild_id: str,
        user_id: str,
        *,
        added: Iterable[str],
        removed: Iterable[str],
        current_role_ids: Iterable[str],
        now_utc: datetime | None = None,
    ) -> None:
        added_ids = {str(item) for item in added}
        removed_ids = {str(item) for item in removed}
        if not added_ids and not removed_ids:
            return
        snapshot = await self._db(load_guild_snapshot, guild_id)
        if not snapshot.role_configs:
            return

        current_ids = {str(item) for item in current_role_ids}
        leave_role_id = snapshot.leave_role_id
        holds_leave = bool(leave_role_id) and leave_role_id in current_ids

        async with self._locks.hold(guild_id, user_id):
            if leave_role_id and leave_role_id in removed_ids:
                await self.handle_leave_ended(guild_id, user_id, now_utc=now_utc)

            for role_id, config in snapshot.role_configs.items():
                if not config.enabled:
                    continue
                if role_id in added_ids:
                    if holds_leave:
                        logger.info(
                            "role_assignment_skipped_on_leave",
                            extra={"guild_id": guild_id, "user_id": user_id, "role_id": role_id},
                        )
                        continue
                    await self.track_assignment(guild_id, user_id, role_id, at=now_utc)
                elif role_id in removed_ids:
                    await self.track_removal(guild_id, user_id, role_id)

    async def forget_member(self, guild_id: str, user_id: str) -> None:
        async with self._locks.hold(guild_id, user_id):
            await self._db(purge_member_rows, guild_id=guild_id, user_id=user_id)
        logger.info("role_tracking_member_forgotten", extra={"guild_id": guild_id, "user_id": user_id})

    # Conditions

    async def get_patrol_time_in_period(
        self,
        guild_id: str,
        user_id: str,
        start_utc: datetime,
        end_utc: datetime | None = None,
    ) -> int:
        """Patrol time over the calendar months overlapping [start, end], live month included."""
        end = normalize_utc(end_utc)
        months = months_between(start_utc, end)
        if not months:
            return 0
        current = (end.year, end.month)
        closed = [item for item in months if item != current]
        total = await self._db(ledger.sum_user_months, guild_id=guild_id, user_id=user_id, months=closed)
        if current in months:
            total += await self._tracker.get_user_total_for_month(
                guild_id,
                user_id,
                current[0],
                current[1],
                now_utc=end,
            )
        return total

    # Sweep

    async def run_daily_sweep(self, *, now_utc: datetime | None = None) -> list[SweepReport]:
        guild_ids = await self._db(list_role_tracking_guild_ids)
        reports: list[SweepReport] = []
        for guild_id in guild_ids:
            try:
                reports.append(await self.check_guild(guild_id, now_utc=now_utc))
            except Exception:
                logger.exception("role_tracking_guild_sweep_failed", extra={"guild_id": guild_id})
        pruned = self._locks.prune()
        logger.info("role_tracking_daily_sweep_complete", extra={"guilds": len(reports), "locks_pruned": pruned})
        return reports

    async def check_guild(self, guild_id: str, *, now_utc: datetime | None = None) -> SweepReport:
        report = SweepReport(guild_id=guild_id)
        snapshot = await self._db(load_guild_snapshot, guild_id)
        if not snapshot.role_configs:
            return report

        await self.cleanup_missing_members(guild_id)

        for role_id, config in snapshot.role_configs.items():
            if not config.enabled:
                continue
            try:
                holders = await self._gateway.list_role_holders(guild_id, role_id)
            except Exception:
                logger.exception("role_holders_lookup_failed", extra={"guild_id": guild_id, "role_id": role_id})
                report.errors += 1
                continue

            for member in holders:
                if member.is_bot:
                    continue
                try:
                    async with self._locks.hold(guild_id, member.user_id):
                        await self._check_holder(snapshot, role_id, config, member, report, now_utc=now_utc)
                except Exception:
                    logger.exception(
                        "role_tracking_holder_failed",
                        extra={"guild_id": guild_id, "role_id": role_id, "user_id": member.user_id},
                    )
                    report.errors += 1

        logger.info(
            "role_tracking_guild_checked",
            extra={
                "guild_id": guild_id,
                "holders_checked": report.holders_checked,
                "warnings_sent": report.warnings_sent,
                "warnings_failed": report.warnings_failed,
                "escalations_sent": report.escalations_sent,
                "grace_resets": report.grace_resets,
                "skipped_on_leave": report.skipped_on_leave,
                "errors": report.errors,
            },
        )
        return report

    async def _check_holder(
        self,
        snapshot: GuildSnapshot,
        role_id: str,
        config: RoleTrackingConfig,
        member: MemberInfo,
        report: SweepReport,
        *,
        now_utc: datetime | None = None,
    ) -> None:
        guild_id = snapshot.guild_id
        user_id = member.user_id
        now = normalize_utc(now_utc)
        report.holders_checked += 1

        on_leave_role = bool(snapshot.leave_role_id) and snapshot.leave_role_id in member.role_ids
        if on_leave_role or await self._pauses.is_suspended_or_on_leave(guild_id, user_id):
            report.skipped_on_leave += 1
            return
        if not config.conditions:
            return

        deadline_ms = parse_duration_ms(config.deadline_duration)
        if deadline_ms is None:
            logger.warning(
                "role_tracking_deadline_invalid",
                extra={"guild_id": guild_id, "role_id": role_id, "deadline": config.deadline_duration},
            )
            return

        clock = await self._db(
            resolve_assignment_clock,
            guild_id=guild_id,
            user_id=user_id,
            role_id=role_id,
            fallback_at=snapshot.role_tracking_initialized_at or now,
        )
        since_ms = max(0, elapsed_ms(clock.assigned_at, now))
        patrol_ms = await self.get_patrol_time_in_period(guild_id, user_id, clock.assigned_at, now)
        result = evaluate(config, assigned_at=clock.assigned_at, patrol_ms=patrol_ms, now_utc=now)

        if result.patrol_threshold_met:
            cleared = await self._db(
                apply_grace_reset,
                guild_id=guild_id,
                user_id=user_id,
                role_id=role_id,
                clock=clock,
                now_utc=now,
            )
            report.grace_resets += 1
            logger.info(
                "role_tracking_grace_met",
                extra={
                    "guild_id": guild_id,
                    "user_id": user_id,
                    "role_id": role_id,
                    "patrol_ms": patrol_ms,
                    "warnings_cleared": cleared,
                },
            )
            return

        sent = await self._db(list_sent_indexes, guild_id=guild_id, user_id=user_id, role_id=role_id, clock=clock)

        for warning, offset_ms in _due_warnings(config.warnings, since_ms):
            if warning.index in sent:
                continue
            delivered = await self._send_warning(
                snapshot,
                role_id,
                config,
                member,
                warning,
                clock=clock,
                deadline_ms=deadline_ms,
                since_ms=since_ms,
                patrol_ms=patrol_ms,
                now=now,
            )
            if delivered:
                sent.add(warning.index)
                report.warnings_sent += 1
            else:
                report.warnings_failed += 1

        if config.staff_ping_offset is None:
            return
        staff_ping_ms = parse_duration_ms(config.staff_ping_offset)
        if staff_ping_ms is None or since_ms < staff_ping_ms or STAFF_PING_WARNING_INDEX in sent:
            return
        await self._send_escalation(
            snapshot,
            role_id,
            config,
            member,
            clock=clock,
            deadline_ms=deadline_ms,
            since_ms=since_ms,
            patrol_ms=patrol_ms,
            now=now,
        )
        report.escalations_sent += 1

    async def _record(
        self,
        *,
        guild_id: str,
        user_id: str,
        role_id: str,
        warning_type: WarningType,
        warning_index: int,
        clock: AssignmentClock,
        sent_at: datetime,
    ) -> None:
        try:
            await self._db(
                record_warning,
                guild_id=guild_id,
                user_id=user_id,
                role_id=role_id,
                warning_type=warning_type,
                warning_index=warning_index,
                clock=clock,
                sent_at=sent_at,
            )
        except IntegrityError:
            logger.warning(
                "role_warning_already_recorded",
                extra={"guild_id": guild_id, "user_id": user_id, "role_id": role_id, "warning_index": warning_index},
            )

    async def _send_warning(
        self,
        snapshot: GuildSnapshot,
        role_id: str,
        config: RoleTrackingConfig,
        member: MemberInfo,
        warning: WarningConfig,
        *,
        clock: AssignmentClock,
        deadline_ms: int,
        since_ms: int,
        patrol_ms: int,
        now: datetime,
    ) -> bool:
        guild_id = snapshot.guild_id
        remaining_ms = deadline_ms - since_ms
        variables = build_warning_variables(
            config=config,
            deadline_at=clock.assigned_at + timedelta(milliseconds=deadline_ms),
            time_remaining_ms=remaining_ms,
            patrol_ms=patrol_ms,
        )
        if warning.custom_message:
            payload = as_message(render_payload(warning.custom_message, variables))
        else:
            payload = as_message(render_text(warning.message, variables))

        result = await deliver_direct(self._messenger, member.user_id, payload)
        log_extra = {
            "guild_id": guild_id,
            "user_id": member.user_id,
            "role_id": role_id,
            "warning_index": warning.index,
        }
        if result.success:
            await self._record(
                guild_id=guild_id,
                user_id=member.user_id,
                role_id=role_id,
                warning_type=WarningType.WARNING,
                warning_index=warning.index,
                clock=clock,
                sent_at=now,
            )
            logger.info("role_warning_sent", extra=log_extra)
        else:
            logger.warning("role_warning_delivery_failed", extra={**log_extra, "error": result.error})

        status = "Sent" if result.success else f"Failed: {result.error}"
        fields = [
            {"name": "User", "value": f"<@{member.user_id}>", "inline": True},
            {"name": "Role", "value": config.role_name, "inline": True},
            {"name": "Warning", "value": f"#{warning.index + 1} ({warning.offset})", "inline": True},
        ]
        if config.has_condition(ConditionType.PATROL.value):
            fields.append({"name": "Patrol Time", "value": f"{patrol_ms / MS_PER_HOUR:.1f} hours", "inline": True})
        fields.append({"name": "Time Remaining", "value": format_duration_ms(remaining_ms), "inline": True})
        fields.append({"name": "DM Status", "value": status, "inline": True})
        audit_payload = {
            "embeds": [
                {
                    "title": "Role Tracking Warning Sent" if result.success else "Role Tracking Warning Failed",
                    "description": (
                        f"Warning #{warning.index + 1} for <@{member.user_id}> on role **{config.role_name}**: {status}"
                    ),
                    "fields": fields,
                    "timestamp": now.isoformat(),
                }
            ]
        }
        await self._post_staff_audit(snapshot, config, audit_payload)
        return result.success

    async def _post_staff_audit(
        self,
        snapshot: GuildSnapshot,
        config: RoleTrackingConfig,
        payload: dict[str, Any],
    ) -> None:
        channel_id = config.staff_channel_id or snapshot.role_tracking_staff_channel_id
        if not channel_id:
            logger.warning("role_tracking_staff_channel_missing", extra={"guild_id": snapshot.guild_id})
            return
        result = await deliver_to_channel(self._messenger, channel_id, payload)
        if not result.success:
            logger.warning(
                "role_tracking_staff_audit_failed",
                extra={"guild_id": snapshot.guild_id, "channel_id": channel_id, "error": result.error},
            )

    async def _send_escalation(
        self,
        snapshot: GuildSnapshot,
        role_id: str,
        config: RoleTrackingConfig,
        member: MemberInfo,
        *,
        clock: AssignmentClock,
        deadline_ms: int,
        since_ms: int,
        patrol_ms: int,
        now: datetime,
    ) -> None:
        guild_id = snapshot.guild_id
        variables = build_staff_ping_variables(
            config=config,
            role_id=role_id,
            user_id=member.user_id,
            user_name=member.display_name,
            assigned_at=clock.assigned_at,
            deadline_ms=deadline_ms,
            elapsed_ms=since_ms,
            patrol_ms=patrol_ms,
            now_utc=now,
        )
        template = config.custom_staff_ping_message or config.staff_ping_message
        payload = as_message(render_payload(template, variables))

        channel_id = config.staff_ping_channel_id or config.staff_channel_id or snapshot.role_tracking_staff_channel_id
        mention_role_ids: tuple[str, ...] = ()
        mention_here = False
        if self._should_ping:
            mention_role_ids = tuple(config.staff_ping_role_ids or snapshot.staff_role_ids)
            mention_here = not mention_role_ids

        if channel_id:
            result = await deliver_to_channel(
                self._messenger,
                channel_id,
                payload,
                mention_role_ids=mention_role_ids,
                mention_here=mention_here,
            )
        else:
            result = None
            logger.warning("role_tracking_staff_channel_missing", extra={"guild_id": guild_id})

        await self._record(
            guild_id=guild_id,
            user_id=member.user_id,
            role_id=role_id,
            warning_type=WarningType.STAFF_PING,
            warning_index=STAFF_PING_WARNING_INDEX,
            clock=clock,
            sent_at=now,
        )

        log_extra = {"guild_id": guild_id, "user_id": member.user_id, "role_id": role_id, "channel_id": channel_id}
        if result is not None and result.success:
            logger.info("role_escalation_sent", extra=log_extra)
            return

        error = result.error if result is not None else "no staff channel configured"
        logger.warning("role_escalation_delivery_failed", extra={**log_extra, "error": error})
        if not channel_id:
            return
        fields = [
            {"name": "User", "value": f"<@{member.user_id}>", "inline": True},
            {"name": "Role", "value": config.role_name, "inline": True},
        ]
        if config.has_condition(ConditionType.PATROL.value):
            fields.append({"name": "Patrol Time", "value": f"{patrol_ms / MS_PER_HOUR:.1f} hours", "inline": True})
        fields.append({"name": "Message Status", "value": f"Failed: {error}", "inline": True})
        fallback = {
            "embeds": [
                {
                    "title": "Role Tracking Deadline Reached",
                    "description": (
                        f"Staff ping: <@{member.user_id}> has reached the deadline for role **{config.role_name}**"
                    ),
                    "fields": fields,
                    "timestamp": now.isoformat(),
                }
            ]
        }
        retry = await deliver_to_channel(
            self._messenger,
            channel_id,
            fallback,
            mention_role_ids=mention_role_ids,
            mention_here=mention_here,
        )
        if not retry.success:
            logger.warning("role_escalation_fallback_failed", extra={**log_extra, "error": retry.error})

    # Maintenance

    async def cleanup_missing_members(self, guild_id: str) -> int:
        user_ids = await self._db(list_tracked_user_ids, guild_id=guild_id)
        removed = 0
        for user_id in user_ids:
            try:
                if await self._gateway.is_member(guild_id, user_id):
                    continue
            except Exception:
                logger.exception("role_tracking_member_lookup_failed", extra={"guild_id": guild_id, "user_id": user_id})
                continue
            await self._db(purge_member_rows, guild_id=guild_id, user_id=user_id)
            removed += 1
        if removed:
            logger.info("role_tracking_missing_members_cleaned", extra={"guild_id": guild_id, "users_removed": removed})
        return removed

    async def sync_role_members(
        self,
        guild_id: str,
        role_id: str,
        *,
        now_utc: datetime | None = None,
    ) -> RoleSyncReport:
        report = RoleSyncReport()
        holders = await self._gateway.list_role_holders(guild_id, role_id)
        assigned_at = normalize_utc(now_utc)
        for member in holders:
            if member.is_bot:
                continue
            try:
                existing = await self._db(get_assignment, guild_id=guild_id, user_id=member.user_id, role_id=role_id)
                if existing is not None:
                    report.existing += 1
                    continue
                await self.track_assignment(guild_id, member.user_id, role_id, at=assigned_at)
                report.added += 1
            except Exception:
                logger.exception(
                    "role_member_sync_failed",
                    extra={"guild_id": guild_id, "role_id": role_id, "user_id": member.user_id},
                )
                report.failed += 1
                report.failed_user_ids.append(member.user_id)
        logger.info(
            "role_members_synced",
            extra={
                "guild_id": guild_id,
                "role_id": role_id,
                "added": report.added,
                "existing": report.existing,
                "failed": report.failed,
            },
        )
        return report

    async def get_warning_history(
        self,
        guild_id: str,
        user_id: str,
        role_id: str | None = None,
    ) -> list[RoleWarning]:
        return await self._db(list_warning_history, guild_id=guild_id, user_id=user_id, role_id=role_id)


def _due_warnings(warnings: list[WarningConfig], since_ms: int) -> list[tuple[WarningConfig, int]]:
    due: list[tuple[WarningConfig, int]] = []
    for warning in warnings:
        offset_ms = parse_duration_ms(warning.offset)
        if offset_ms is None or since_ms < offset_ms:
            continue
        due.append((warning, offset_ms))
    due.sort(key=lambda item: item[1])
    return due
