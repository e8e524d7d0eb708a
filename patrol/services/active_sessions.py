from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from patrol.models import ActivePatrolSession
from patrol.services.ledger import normalize_utc


@dataclass(slots=True)
class TrackedSession:
    guild_id: str
    user_id: str
    channel_id: str
    started_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.guild_id, self.user_id)


class SessionTable:
    """In-memory open sessions keyed by (guild_id, user_id)."""

    def __init__(self) -> None:
        self._sessions: dict[tuple[str, str], TrackedSession] = {}

    def get(self, guild_id: str, user_id: str) -> TrackedSession | None:
        return self._sessions.get((guild_id, user_id))

    def has(self, guild_id: str, user_id: str) -> bool:
        return (guild_id, user_id) in self._sessions

    def put(self, session: TrackedSession) -> None:
        self._sessions[session.key] = session

    def pop(self, guild_id: str, user_id: str) -> TrackedSession | None:
        return self._sessions.pop((guild_id, user_id), None)

    def for_guild(self, guild_id: str) -> list[TrackedSession]:
        return [item for key, item in self._sessions.items() if key[0] == guild_id]

    def has_any_for_guild(self, guild_id: str) -> bool:
        return any(key[0] == guild_id for key in self._sessions)

    def __iter__(self) -> Iterator[TrackedSession]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)


def _get_record(db: Session, *, guild_id: str, user_id: str) -> ActivePatrolSession | None:
    return db.scalar(
        select(ActivePatrolSession).where(
            ActivePatrolSession.guild_id == guild_id,
            ActivePatrolSession.user_id == user_id,
        )
    )


def upsert_record(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    channel_id: str,
    started_at: datetime,
) -> ActivePatrolSession:
    record = _get_record(db, guild_id=guild_id, user_id=user_id)
    if record is None:
        record = ActivePatrolSession(guild_id=guild_id, user_id=user_id)
        db.add(record)
    record.channel_id = channel_id
    record.started_at = normalize_utc(started_at)
    db.flush()
    return record


def move_record(db: Session, *, guild_id: str, user_id: str, channel_id: str) -> bool:
    record = _get_record(db, guild_id=guild_id, user_id=user_id)
    if record is None:
        return False
    record.channel_id = channel_id
    db.flush()
    return True


def delete_record(db: Session, *, guild_id: str, user_id: str) -> None:
    db.execute(
        delete(ActivePatrolSession).where(
            ActivePatrolSession.guild_id == guild_id,
            ActivePatrolSession.user_id == user_id,
        )
    )


def rebase_records(
    db: Session,
    *,
    guild_id: str,
    user_ids: list[str] | None,
    started_at: datetime,
) -> int:
    stmt = select(ActivePatrolSession).where(ActivePatrolSession.guild_id == guild_id)
    if user_ids is not None:
        if not user_ids:
            return 0
        stmt = stmt.where(ActivePatrolSession.user_id.in_(user_ids))
    records = list(db.scalars(stmt).all())
    for record in records:
        record.started_at = normalize_utc(started_at)
    db.flush()
    return len(records)


def list_records(db: Session, *, guild_id: str) -> list[TrackedSession]:
    records = db.scalars(
        select(ActivePatrolSession)
        .where(ActivePatrolSession.guild_id == guild_id)
        .order_by(ActivePatrolSession.id.asc())
    ).all()
    return [
        TrackedSession(
            guild_id=record.guild_id,
            user_id=record.user_id,
            channel_id=record.channel_id,
            started_at=normalize_utc(record.started_at),
        )
        for record in records
    ]
