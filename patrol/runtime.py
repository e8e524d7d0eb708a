from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy.orm import sessionmaker

from patrol.gateway import (
    LeaveLookup,
    Messenger,
    PlatformGateway,
    PromotionCheckCallback,
    SessionCompletedCallback,
)
from patrol.services.active_sessions import SessionTable
from patrol.services.keyed_locks import KeyedLocks
from patrol.services.pauses import PauseController
from patrol.services.role_tracking import EscalationEngine, SweepReport
from patrol.services.sessions import ReconcileReport, SessionTracker

logger = logging.getLogger("patrol.runtime")


class PatrolRuntime:
    """Owns one set of services per process; hosts pass platform events in here."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        gateway: PlatformGateway,
        messenger: Messenger,
        leave_lookup: LeaveLookup | None = None,
        on_session_completed: SessionCompletedCallback | None = None,
        on_promotion_check: PromotionCheckCallback | None = None,
        min_session_ms: int | None = None,
        should_ping: bool | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.sessions = SessionTable()
        self.locks = KeyedLocks()
        self.pauses = PauseController(
            session_factory=session_factory,
            sessions=self.sessions,
            leave_lookup=leave_lookup,
            locks=self.locks,
        )
        self.tracker = SessionTracker(
            session_factory=session_factory,
            gateway=gateway,
            messenger=messenger,
            pauses=self.pauses,
            sessions=self.sessions,
            locks=self.locks,
            on_session_completed=on_session_completed,
            on_promotion_check=on_promotion_check,
            min_session_ms=min_session_ms,
        )
        self.escalation = EscalationEngine(
            session_factory=session_factory,
            gateway=gateway,
            messenger=messenger,
            pauses=self.pauses,
            tracker=self.tracker,
            locks=self.locks,
            should_ping=should_ping,
        )
        self.started = False

    async def start(self, *, now_utc: datetime | None = None) -> list[ReconcileReport]:
        if self.started:
            return []
        reports = await self.tracker.reconcile_all(now_utc=now_utc)
        self.started = True
        logger.info(
            "patrol_runtime_started",
            extra={"guilds": len(reports), "open_sessions": len(self.sessions)},
        )
        return reports

    async def on_zone_update(
        self,
        guild_id: str,
        user_id: str,
        before_channel_id: str | None,
        after_channel_id: str | None,
        *,
        is_bot: bool = False,
        now_utc: datetime | None = None,
    ) -> str:
        return await self.tracker.handle_zone_update(
            guild_id,
            user_id,
            before_channel_id,
            after_channel_id,
            is_bot=is_bot,
            now_utc=now_utc,
        )

    async def on_member_roles_changed(
        self,
        guild_id: str,
        user_id: str,
        *,
        added: Iterable[str],
        removed: Iterable[str],
        current_role_ids: Iterable[str],
        now_utc: datetime | None = None,
    ) -> None:
        await self.escalation.handle_member_roles_changed(
            guild_id,
            user_id,
            added=added,
            removed=removed,
            current_role_ids=current_role_ids,
            now_utc=now_utc,
        )

    async def on_member_removed(self, guild_id: str, user_id: str, *, now_utc: datetime | None = None) -> None:
        await self.tracker.finalize_session(guild_id, user_id, now_utc=now_utc)
        await self.escalation.forget_member(guild_id, user_id)

    async def run_daily_sweep(self, *, now_utc: datetime | None = None) -> list[SweepReport]:
        return await self.escalation.run_daily_sweep(now_utc=now_utc)
