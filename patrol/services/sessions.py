from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from patrol.db import run_in_session
from patrol.errors import PersistenceError
from patrol.gateway import (
    LeaveStatus,
    Messenger,
    PlatformGateway,
    PromotionCheckCallback,
    SessionCompletedCallback,
    SessionCompletion,
    deliver_direct,
    deliver_to_channel,
)
from patrol.services import active_sessions, ledger
from patrol.services.active_sessions import SessionTable, TrackedSession
from patrol.services.durations import format_clock_ms
from patrol.services.guild_settings import GuildSnapshot, list_tracking_guild_ids, load_guild_snapshot
from patrol.services.keyed_locks import KeyedLocks
from patrol.services.ledger import LedgerPeriodSummary, MonthSegment, elapsed_ms, normalize_utc
from patrol.services.pauses import ENTRY_ON_LEAVE, PauseController
from patrol.settings import get_min_session_ms, get_top_limit_cap

logger = logging.getLogger("patrol.sessions")

T = TypeVar("T")

OUTCOME_CREDITED = "CREDITED"
OUTCOME_TOO_SHORT = "TOO_SHORT"
OUTCOME_SUSPENDED = "SUSPENDED"
OUTCOME_NOT_TRACKED = "NOT_TRACKED"


@dataclass(frozen=True, slots=True)
class FinalizeOutcome:
    status: str
    duration_ms: int = 0
    segments: tuple[MonthSegment, ...] = ()

    @property
    def credited(self) -> bool:
        return self.status == OUTCOME_CREDITED


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    user_id: str
    total_ms: int


@dataclass(frozen=True, slots=True)
class TrackedSessionView:
    user_id: str
    channel_id: str
    started_at: datetime
    elapsed_ms: int


@dataclass(slots=True)
class ReconcileReport:
    guild_id: str
    loaded: int = 0
    started: int = 0
    moved: int = 0
    finalized: int = 0
    dropped: int = 0
    errors: list[str] = field(default_factory=list)


class SessionTracker:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        gateway: PlatformGateway,
        messenger: Messenger,
        pauses: PauseController,
        sessions: SessionTable,
        locks: KeyedLocks,
        on_session_completed: SessionCompletedCallback | None = None,
        on_promotion_check: PromotionCheckCallback | None = None,
        min_session_ms: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._messenger = messenger
        self._pauses = pauses
        self._sessions = sessions
        self._locks = locks
        self._on_session_completed = on_session_completed
        self._on_promotion_check = on_promotion_check
        self._min_session_ms = get_min_session_ms() if min_session_ms is None else max(0, min_session_ms)

    async def _db(self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(run_in_session, self._session_factory, fn, *args, **kwargs)

    async def _snapshot(self, guild_id: str) -> GuildSnapshot:
        return await self._db(load_guild_snapshot, guild_id)

    def get_session(self, guild_id: str, user_id: str) -> TrackedSession | None:
        return self._sessions.get(guild_id, user_id)

    # Lifecycle

    async def start_session(
        self,
        guild_id: str,
        user_id: str,
        channel_id: str,
        *,
        now_utc: datetime | None = None,
    ) -> bool:
        async with self._locks.hold(guild_id, user_id):
            return await self._start_locked(guild_id, user_id, channel_id, now_utc=now_utc)

    async def move_session(self, guild_id: str, user_id: str, channel_id: str) -> bool:
        async with self._locks.hold(guild_id, user_id):
            return await self._move_locked(guild_id, user_id, channel_id)

    async def finalize_session(
        self,
        guild_id: str,
        user_id: str,
        exit_channel_id: str | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> FinalizeOutcome:
        async with self._locks.hold(guild_id, user_id):
            return await self._finalize_locked(guild_id, user_id, exit_channel_id, now_utc=now_utc)

    async def _start_locked(
        self,
        guild_id: str,
        user_id: str,
        channel_id: str,
        *,
        now_utc: datetime | None = None,
    ) -> bool:
        if self._sessions.has(guild_id, user_id):
            return False

        session = TrackedSession(
            guild_id=guild_id,
            user_id=user_id,
            channel_id=channel_id,
            started_at=normalize_utc(now_utc),
        )
        self._sessions.put(session)
        try:
            await self._db(
                active_sessions.upsert_record,
                guild_id=guild_id,
                user_id=user_id,
                channel_id=channel_id,
                started_at=session.started_at,
            )
        except Exception:
            logger.exception(
                "patrol_session_record_write_failed",
                extra={"guild_id": guild_id, "user_id": user_id, "channel_id": channel_id},
            )
        logger.info(
            "patrol_session_started",
            extra={"guild_id": guild_id, "user_id": user_id, "channel_id": channel_id},
        )
        return True

    async def _move_locked(self, guild_id: str, user_id: str, channel_id: str) -> bool:
        session = self._sessions.get(guild_id, user_id)
        if session is None:
            return False
        previous_channel_id = session.channel_id
        session.channel_id = channel_id
        try:
            await self._db(active_sessions.move_record, guild_id=guild_id, user_id=user_id, channel_id=channel_id)
        except Exception:
            logger.exception(
                "patrol_session_record_write_failed",
                extra={"guild_id": guild_id, "user_id": user_id, "channel_id": channel_id},
            )
        logger.info(
            "patrol_session_moved",
            extra={
                "guild_id": guild_id,
                "user_id": user_id,
                "from_channel_id": previous_channel_id,
                "to_channel_id": channel_id,
            },
        )
        return True

    async def _finalize_locked(
        self,
        guild_id: str,
        user_id: str,
        exit_channel_id: str | None,
        *,
        now_utc: datetime | None = None,
    ) -> FinalizeOutcome:
        session = self._sessions.pop(guild_id, user_id)
        if session is None:
            return FinalizeOutcome(status=OUTCOME_NOT_TRACKED)

        ended_at = normalize_utc(now_utc)
        duration_ms = max(0, elapsed_ms(session.started_at, ended_at))
        channel_id = exit_channel_id or session.channel_id
        log_extra = {
            "guild_id": guild_id,
            "user_id": user_id,
            "channel_id": channel_id,
            "duration_ms": duration_ms,
        }

        if duration_ms < self._min_session_ms:
            await self._discard_record(guild_id, user_id)
            logger.info("patrol_session_discarded_short", extra=log_extra)
            return FinalizeOutcome(status=OUTCOME_TOO_SHORT, duration_ms=duration_ms)

        if await self._pauses.is_suspended_or_on_leave(guild_id, user_id):
            await self._discard_record(guild_id, user_id)
            logger.info("patrol_session_discarded_suspended", extra=log_extra)
            return FinalizeOutcome(status=OUTCOME_SUSPENDED, duration_ms=duration_ms)

        try:
            segments = await self._db(
                _credit_and_close,
                guild_id=guild_id,
                user_id=user_id,
                channel_id=channel_id,
                started_at=session.started_at,
                ended_at=ended_at,
            )
        except Exception as exc:
            logger.exception("patrol_ledger_write_failed", extra=log_extra)
            raise PersistenceError(f"Failed to credit patrol time for {guild_id}/{user_id}") from exc

        logger.info(
            "patrol_session_completed",
            extra={**log_extra, "duration": format_clock_ms(duration_ms), "months": len(segments)},
        )
        await self._run_completion_callbacks(
            SessionCompletion(
                guild_id=guild_id,
                user_id=user_id,
                channel_id=channel_id,
                started_at=session.started_at,
                ended_at=ended_at,
                duration_ms=duration_ms,
            )
        )
        return FinalizeOutcome(status=OUTCOME_CREDITED, duration_ms=duration_ms, segments=tuple(segments))

    async def _discard_record(self, guild_id: str, user_id: str) -> None:
        try:
            await self._db(active_sessions.delete_record, guild_id=guild_id, user_id=user_id)
        except Exception:
            logger.exception(
                "patrol_session_record_delete_failed",
                extra={"guild_id": guild_id, "user_id": user_id},
            )

    async def _run_completion_callbacks(self, completion: SessionCompletion) -> None:
        if self._on_session_completed is not None:
            try:
                await self._on_session_completed(completion)
            except Exception:
                logger.exception(
                    "patrol_completion_callback_failed",
                    extra={"guild_id": completion.guild_id, "user_id": completion.user_id},
                )
        if self._on_promotion_check is not None:
            try:
                await self._on_promotion_check(completion.guild_id, completion.user_id)
            except Exception:
                logger.exception(
                    "patrol_promotion_check_failed",
                    extra={"guild_id": completion.guild_id, "user_id": completion.user_id},
                )

    # Platform events

    async def _is_tracked_channel(self, snapshot: GuildSnapshot, channel_id: str | None) -> bool:
        if not channel_id or not snapshot.tracked_category_id:
            return False
        parent_id = await self._gateway.get_channel_parent_id(snapshot.guild_id, channel_id)
        return parent_id == snapshot.tracked_category_id

    async def handle_zone_update(
        self,
        guild_id: str,
        user_id: str,
        before_channel_id: str | None,
        after_channel_id: str | None,
        *,
        is_bot: bool = False,
        now_utc: datetime | None = None,
    ) -> str:
        """Classify a presence change and apply it; returns the action taken."""
        if is_bot:
            return "ignored"
        snapshot = await self._snapshot(guild_id)
        if not snapshot.tracked_category_id:
            return "ignored"

        was_tracked = await self._is_tracked_channel(snapshot, before_channel_id)
        is_tracked = await self._is_tracked_channel(snapshot, after_channel_id)

        async with self._locks.hold(guild_id, user_id):
            if was_tracked and is_tracked:
                if before_channel_id == after_channel_id:
                    return "ignored"
                if await self._move_locked(guild_id, user_id, str(after_channel_id)):
                    return "moved"
                return await self._enter_locked(snapshot, user_id, str(after_channel_id), now_utc=now_utc)
            if was_tracked:
                outcome = await self._finalize_locked(guild_id, user_id, before_channel_id, now_utc=now_utc)
                return "finalized" if outcome.status != OUTCOME_NOT_TRACKED else "ignored"
            if is_tracked:
                return await self._enter_locked(snapshot, user_id, str(after_channel_id), now_utc=now_utc)
        return "ignored"

    async def _enter_locked(
        self,
        snapshot: GuildSnapshot,
        user_id: str,
        channel_id: str,
        *,
        now_utc: datetime | None = None,
    ) -> str:
        decision = await self._pauses.check_entry(snapshot.guild_id, user_id)
        if decision.status == ENTRY_ON_LEAVE:
            await self._notify_entry_on_leave(snapshot, user_id, channel_id, decision.leave)
            return "blocked_on_leave"
        if not decision.allowed:
            return "blocked_paused"
        started = await self._start_locked(snapshot.guild_id, user_id, channel_id, now_utc=now_utc)
        return "started" if started else "ignored"

    async def _notify_entry_on_leave(
        self,
        snapshot: GuildSnapshot,
        user_id: str,
        channel_id: str,
        leave: LeaveStatus | None,
    ) -> None:
        logger.info(
            "patrol_entry_blocked_on_leave",
            extra={"guild_id": snapshot.guild_id, "user_id": user_id, "channel_id": channel_id},
        )
        if leave is not None and leave.notifications_paused:
            return

        until_text = ""
        if leave is not None and leave.assigned_until is not None:
            until_text = f" until <t:{int(normalize_utc(leave.assigned_until).timestamp())}:D>"

        if snapshot.leave_notification_channel_id:
            staff_payload = {
                "content": (
                    f"<@{user_id}> joined <#{channel_id}> while on leave of absence{until_text}. "
                    "Patrol time is not being tracked."
                )
            }
            result = await deliver_to_channel(
                self._messenger,
                snapshot.leave_notification_channel_id,
                staff_payload,
                mention_role_ids=snapshot.staff_role_ids,
            )
            if not result.success:
                logger.warning(
                    "patrol_leave_staff_alert_failed",
                    extra={"guild_id": snapshot.guild_id, "user_id": user_id, "error": result.error},
                )

        user_payload = {
            "content": (
                f"You are currently on leave of absence{until_text}, so your patrol time is not being "
                "tracked. Contact staff if your leave should be ended."
            )
        }
        result = await deliver_direct(self._messenger, user_id, user_payload)
        if not result.success:
            logger.warning(
                "patrol_leave_user_notice_failed",
                extra={"guild_id": snapshot.guild_id, "user_id": user_id, "error": result.error},
            )

    # Startup reconciliation

    async def reconcile_guild(self, guild_id: str, *, now_utc: datetime | None = None) -> ReconcileReport:
        report = ReconcileReport(guild_id=guild_id)
        snapshot = await self._snapshot(guild_id)
        if not snapshot.tracked_category_id:
            return report

        records = await self._db(active_sessions.list_records, guild_id=guild_id)
        for record in records:
            if not self._sessions.has(guild_id, record.user_id):
                self._sessions.put(record)
                report.loaded += 1

        occupants = await self._gateway.list_tracked_occupants(guild_id, snapshot.tracked_category_id)
        observed = {item.user_id: item.channel_id for item in occupants if not item.is_bot}

        for user_id, channel_id in observed.items():
            async with self._locks.hold(guild_id, user_id):
                session = self._sessions.get(guild_id, user_id)
                if session is None:
                    if await self._start_locked(guild_id, user_id, channel_id, now_utc=now_utc):
                        report.started += 1
                elif session.channel_id != channel_id:
                    await self._move_locked(guild_id, user_id, channel_id)
                    report.moved += 1

        for session in self._sessions.for_guild(guild_id):
            if session.user_id in observed:
                continue
            async with self._locks.hold(guild_id, session.user_id):
                try:
                    member = await self._gateway.resolve_member(guild_id, session.user_id)
                    if member is None:
                        self._sessions.pop(guild_id, session.user_id)
                        await self._discard_record(guild_id, session.user_id)
                        report.dropped += 1
                        continue
                    await self._finalize_locked(guild_id, session.user_id, session.channel_id, now_utc=now_utc)
                    report.finalized += 1
                except Exception as exc:
                    logger.exception(
                        "patrol_reconcile_session_failed",
                        extra={"guild_id": guild_id, "user_id": session.user_id},
                    )
                    report.errors.append(f"{session.user_id}:{exc.__class__.__name__}")

        logger.info(
            "patrol_reconcile_complete",
            extra={
                "guild_id": guild_id,
                "loaded": report.loaded,
                "started": report.started,
                "moved": report.moved,
                "finalized": report.finalized,
                "dropped": report.dropped,
                "errors": len(report.errors),
            },
        )
        return report

    async def reconcile_all(self, *, now_utc: datetime | None = None) -> list[ReconcileReport]:
        guild_ids = await self._db(list_tracking_guild_ids)
        reports: list[ReconcileReport] = []
        for guild_id in guild_ids:
            try:
                reports.append(await self.reconcile_guild(guild_id, now_utc=now_utc))
            except Exception:
                logger.exception("patrol_reconcile_guild_failed", extra={"guild_id": guild_id})
        return reports

    # Queries

    def _live_segments(self, session: TrackedSession, now_utc: datetime) -> list[MonthSegment]:
        if self._pauses.is_paused(session.guild_id, session.user_id):
            return []
        return ledger.split_by_month(session.started_at, now_utc)

    def live_delta_ms(self, guild_id: str, user_id: str, *, now_utc: datetime | None = None) -> int:
        session = self._sessions.get(guild_id, user_id)
        if session is None or self._pauses.is_paused(guild_id, user_id):
            return 0
        return max(0, elapsed_ms(session.started_at, normalize_utc(now_utc)))

    def live_delta_in_window(
        self,
        guild_id: str,
        user_id: str,
        *,
        window_start: datetime,
        now_utc: datetime | None = None,
    ) -> int:
        session = self._sessions.get(guild_id, user_id)
        if session is None or self._pauses.is_paused(guild_id, user_id):
            return 0
        start = max(normalize_utc(session.started_at), normalize_utc(window_start))
        return max(0, elapsed_ms(start, normalize_utc(now_utc)))

    def _live_for_period(
        self,
        session: TrackedSession,
        now_utc: datetime,
        *,
        year: int,
        month: int | None = None,
    ) -> int:
        return sum(
            segment.duration_ms
            for segment in self._live_segments(session, now_utc)
            if segment.year == year and (month is None or segment.month == month)
        )

    def _rank(self, totals: dict[str, int], limit: int | None) -> list[LeaderboardEntry]:
        entries = [LeaderboardEntry(user_id=user_id, total_ms=total) for user_id, total in sorted(totals.items())]
        entries.sort(key=lambda item: item.total_ms, reverse=True)
        cap = get_top_limit_cap()
        effective_limit = cap if limit is None else max(0, min(int(limit), cap))
        return entries[:effective_limit]

    async def get_user_total(self, guild_id: str, user_id: str, *, now_utc: datetime | None = None) -> int:
        persisted = await self._db(ledger.get_user_total, guild_id=guild_id, user_id=user_id)
        return persisted + self.live_delta_ms(guild_id, user_id, now_utc=now_utc)

    async def get_user_total_for_month(
        self,
        guild_id: str,
        user_id: str,
        year: int,
        month: int,
        *,
        now_utc: datetime | None = None,
    ) -> int:
        persisted = await self._db(
            ledger.get_user_month_total,
            guild_id=guild_id,
            user_id=user_id,
            year=year,
            month=month,
        )
        session = self._sessions.get(guild_id, user_id)
        if session is None:
            return persisted
        return persisted + self._live_for_period(session, normalize_utc(now_utc), year=year, month=month)

    async def get_user_total_for_year(
        self,
        guild_id: str,
        user_id: str,
        year: int,
        *,
        now_utc: datetime | None = None,
    ) -> int:
        persisted = await self._db(ledger.get_user_year_total, guild_id=guild_id, user_id=user_id, year=year)
        session = self._sessions.get(guild_id, user_id)
        if session is None:
            return persisted
        return persisted + self._live_for_period(session, normalize_utc(now_utc), year=year)

    async def get_top(
        self,
        guild_id: str,
        limit: int | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> list[LeaderboardEntry]:
        reference = normalize_utc(now_utc)
        totals = await self._db(ledger.list_totals, guild_id=guild_id)
        for session in self._sessions.for_guild(guild_id):
            live = self.live_delta_ms(guild_id, session.user_id, now_utc=reference)
            if live:
                totals[session.user_id] = totals.get(session.user_id, 0) + live
        return self._rank(totals, limit)

    async def get_top_by_month(
        self,
        guild_id: str,
        year: int,
        month: int,
        limit: int | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> list[LeaderboardEntry]:
        reference = normalize_utc(now_utc)
        totals = await self._db(ledger.list_month_totals, guild_id=guild_id, year=year, month=month)
        for session in self._sessions.for_guild(guild_id):
            live = self._live_for_period(session, reference, year=year, month=month)
            if live:
                totals[session.user_id] = totals.get(session.user_id, 0) + live
        return self._rank(totals, limit)

    async def get_top_by_year(
        self,
        guild_id: str,
        year: int,
        limit: int | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> list[LeaderboardEntry]:
        reference = normalize_utc(now_utc)
        totals = await self._db(ledger.list_year_totals, guild_id=guild_id, year=year)
        for session in self._sessions.for_guild(guild_id):
            live = self._live_for_period(session, reference, year=year)
            if live:
                totals[session.user_id] = totals.get(session.user_id, 0) + live
        return self._rank(totals, limit)

    async def get_top_for_channel(
        self,
        guild_id: str,
        channel_id: str,
        limit: int | None = None,
        *,
        now_utc: datetime | None = None,
    ) -> list[LeaderboardEntry]:
        reference = normalize_utc(now_utc)
        present = [item for item in self._sessions.for_guild(guild_id) if item.channel_id == channel_id]
        if not present:
            return []
        persisted = await self._db(ledger.list_totals, guild_id=guild_id)
        totals = {
            item.user_id: persisted.get(item.user_id, 0)
            + self.live_delta_ms(guild_id, item.user_id, now_utc=reference)
            for item in present
        }
        return self._rank(totals, limit)

    def get_current_tracked_list(
        self,
        guild_id: str,
        *,
        now_utc: datetime | None = None,
    ) -> list[TrackedSessionView]:
        reference = normalize_utc(now_utc)
        views = [
            TrackedSessionView(
                user_id=item.user_id,
                channel_id=item.channel_id,
                started_at=item.started_at,
                elapsed_ms=self.live_delta_ms(guild_id, item.user_id, now_utc=reference),
            )
            for item in self._sessions.for_guild(guild_id)
        ]
        views.sort(key=lambda item: item.elapsed_ms, reverse=True)
        return views

    async def get_available_years(self, guild_id: str) -> list[LedgerPeriodSummary]:
        return await self._db(ledger.list_available_years, guild_id=guild_id)

    async def get_available_months(self, guild_id: str, year: int | None = None) -> list[LedgerPeriodSummary]:
        return await self._db(ledger.list_available_months, guild_id=guild_id, year=year)

    # Administration

    async def reset(
        self,
        guild_id: str,
        user_id: str | None = None,
        *,
        year: int | None = None,
        month: int | None = None,
        now_utc: datetime | None = None,
    ) -> tuple[int, int]:
        """Zero totals and rebase open sessions; returns (rows_reset, sessions_rebased).

        Holds the lock of every affected user so an in-flight finalize lands
        before the totals are zeroed.
        """
        if user_id is not None:
            affected = {user_id}
        else:
            affected = {session.user_id for session in self._sessions.for_guild(guild_id)}
            affected.update(self._locks.known_user_ids(guild_id))
        async with self._locks.hold_many(guild_id, affected):
            rows, rebased = await self._reset_locked(
                guild_id,
                user_id,
                year=year,
                month=month,
                reference=normalize_utc(now_utc),
            )
        logger.info(
            "patrol_totals_reset",
            extra={
                "guild_id": guild_id,
                "user_id": user_id,
                "year": year,
                "month": month,
                "rows_reset": rows,
                "sessions_rebased": rebased,
            },
        )
        return rows, rebased

    async def _reset_locked(
        self,
        guild_id: str,
        user_id: str | None,
        *,
        year: int | None,
        month: int | None,
        reference: datetime,
    ) -> tuple[int, int]:
        rows = await self._db(ledger.reset_totals, guild_id=guild_id, user_id=user_id, year=year, month=month)

        covers_now = year is None or (year == reference.year and (month is None or month == reference.month))
        if not covers_now:
            return rows, 0

        rebased: list[str] = []
        for session in self._sessions.for_guild(guild_id):
            if user_id is not None and session.user_id != user_id:
                continue
            session.started_at = reference
            rebased.append(session.user_id)
        if rebased:
            await self._db(
                active_sessions.rebase_records,
                guild_id=guild_id,
                user_ids=rebased,
                started_at=reference,
            )
        return rows, len(rebased)

    async def adjust(
        self,
        guild_id: str,
        user_id: str,
        delta_ms: int,
        *,
        year: int | None = None,
        month: int | None = None,
        now_utc: datetime | None = None,
    ) -> tuple[int, int, int, int]:
        """Apply a signed correction; returns (total_ms, month_total_ms, year, month)."""
        reference = normalize_utc(now_utc)
        target_year = year if year is not None else reference.year
        target_month = month if month is not None else reference.month
        async with self._locks.hold(guild_id, user_id):
            total_ms, month_total_ms = await self._db(
                ledger.adjust_totals,
                guild_id=guild_id,
                user_id=user_id,
                delta_ms=delta_ms,
                year=target_year,
                month=target_month,
            )
        logger.info(
            "patrol_totals_adjusted",
            extra={
                "guild_id": guild_id,
                "user_id": user_id,
                "delta_ms": delta_ms,
                "year": target_year,
                "month": target_month,
            },
        )
        return total_ms, month_total_ms, target_year, target_month


def _credit_and_close(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    channel_id: str | None,
    started_at: datetime,
    ended_at: datetime,
) -> list[MonthSegment]:
    active_sessions.delete_record(db, guild_id=guild_id, user_id=user_id)
    return ledger.credit_duration(
        db,
        guild_id=guild_id,
        user_id=user_id,
        started_at=started_at,
        ended_at=ended_at,
        last_channel_id=channel_id,
    )
