from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import sessionmaker

from patrol.db import run_in_session
from patrol.errors import DependencyLookupError
from patrol.gateway import LeaveLookup, LeaveStatus, NoLeaveLookup
from patrol.services.active_sessions import SessionTable, rebase_records
from patrol.services.keyed_locks import KeyedLocks
from patrol.services.ledger import normalize_utc

logger = logging.getLogger("patrol.pauses")

ENTRY_ALLOWED = "ALLOWED"
ENTRY_PAUSED = "PAUSED"
ENTRY_ON_LEAVE = "ON_LEAVE"


@dataclass(frozen=True, slots=True)
class EntryDecision:
    status: str
    leave: LeaveStatus | None = None

    @property
    def allowed(self) -> bool:
        return self.status == ENTRY_ALLOWED


class PauseController:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        sessions: SessionTable,
        leave_lookup: LeaveLookup | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sessions = sessions
        self._leave_lookup = leave_lookup or NoLeaveLookup()
        self._locks = locks or KeyedLocks()
        self._paused_users: set[tuple[str, str]] = set()
        self._paused_guilds: set[str] = set()

    def _guild_user_ids(self, guild_id: str) -> set[str]:
        # Users with an in-flight operation have a lock key even after their session left the table.
        user_ids = {session.user_id for session in self._sessions.for_guild(guild_id)}
        user_ids.update(self._locks.known_user_ids(guild_id))
        return user_ids

    async def pause_user(self, guild_id: str, user_id: str) -> bool:
        async with self._locks.hold(guild_id, user_id):
            if self._sessions.has(guild_id, user_id):
                return False
            self._paused_users.add((guild_id, user_id))
        logger.info("patrol_user_paused", extra={"guild_id": guild_id, "user_id": user_id})
        return True

    async def pause_guild(self, guild_id: str) -> bool:
        async with self._locks.hold_many(guild_id, self._guild_user_ids(guild_id)):
            if self._sessions.has_any_for_guild(guild_id):
                return False
            self._paused_guilds.add(guild_id)
        logger.info("patrol_guild_paused", extra={"guild_id": guild_id})
        return True

    async def unpause_user(self, guild_id: str, user_id: str, *, now_utc: datetime | None = None) -> bool:
        key = (guild_id, user_id)
        async with self._locks.hold(guild_id, user_id):
            if key not in self._paused_users:
                return False
            self._paused_users.discard(key)
            await self._rebase_locked(guild_id, [user_id], now_utc=now_utc)
        logger.info("patrol_user_unpaused", extra={"guild_id": guild_id, "user_id": user_id})
        return True

    async def unpause_guild(self, guild_id: str, *, now_utc: datetime | None = None) -> bool:
        async with self._locks.hold_many(guild_id, self._guild_user_ids(guild_id)):
            if guild_id not in self._paused_guilds:
                return False
            self._paused_guilds.discard(guild_id)
            await self._rebase_locked(guild_id, None, now_utc=now_utc)
        logger.info("patrol_guild_unpaused", extra={"guild_id": guild_id})
        return True

    def is_user_paused(self, guild_id: str, user_id: str) -> bool:
        return (guild_id, user_id) in self._paused_users

    def is_guild_paused(self, guild_id: str) -> bool:
        return guild_id in self._paused_guilds

    def is_paused(self, guild_id: str, user_id: str) -> bool:
        return self.is_guild_paused(guild_id) or self.is_user_paused(guild_id, user_id)

    async def get_active_leave(self, guild_id: str, user_id: str) -> LeaveStatus | None:
        """Leave lookup that treats lookup failures as "not on leave"."""
        try:
            return await self._leave_lookup.get_active_leave(guild_id, user_id)
        except DependencyLookupError as exc:
            logger.warning(
                "leave_lookup_failed",
                extra={"guild_id": guild_id, "user_id": user_id, "reason": str(exc)},
            )
            return None
        except Exception:
            logger.exception(
                "leave_lookup_failed",
                extra={"guild_id": guild_id, "user_id": user_id},
            )
            return None

    async def is_suspended_or_on_leave(self, guild_id: str, user_id: str) -> bool:
        if self.is_paused(guild_id, user_id):
            return True
        return await self.get_active_leave(guild_id, user_id) is not None

    async def check_entry(self, guild_id: str, user_id: str) -> EntryDecision:
        if self.is_paused(guild_id, user_id):
            return EntryDecision(status=ENTRY_PAUSED)
        leave = await self.get_active_leave(guild_id, user_id)
        if leave is not None:
            return EntryDecision(status=ENTRY_ON_LEAVE, leave=leave)
        return EntryDecision(status=ENTRY_ALLOWED)

    async def _rebase_locked(self, guild_id: str, user_ids: list[str] | None, *, now_utc: datetime | None) -> None:
        reference = normalize_utc(now_utc)
        rebased: list[str] = []
        for session in self._sessions.for_guild(guild_id):
            if user_ids is not None and session.user_id not in user_ids:
                continue
            session.started_at = reference
            rebased.append(session.user_id)
        if not rebased:
            return
        await asyncio.to_thread(
            run_in_session,
            self._session_factory,
            rebase_records,
            guild_id=guild_id,
            user_ids=rebased,
            started_at=reference,
        )
