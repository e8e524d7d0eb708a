from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from patrol.models import PatrolMonthlyTotal, PatrolTimeTotal
from patrol.services.durations import MS_PER_HOUR


@dataclass(frozen=True, slots=True)
class MonthSegment:
    year: int
    month: int
    duration_ms: int


@dataclass(frozen=True, slots=True)
class LedgerPeriodSummary:
    year: int
    month: int | None
    user_count: int
    total_hours: int


def normalize_utc(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def elapsed_ms(started_at: datetime, ended_at: datetime) -> int:
    delta = normalize_utc(ended_at) - normalize_utc(started_at)
    return delta // timedelta(milliseconds=1)


def month_start(ts_utc: datetime) -> datetime:
    value = normalize_utc(ts_utc)
    return datetime(value.year, value.month, 1, tzinfo=timezone.utc)


def next_month_start(ts_utc: datetime) -> datetime:
    value = normalize_utc(ts_utc)
    if value.month == 12:
        return datetime(value.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(value.year, value.month + 1, 1, tzinfo=timezone.utc)


def split_by_month(started_at: datetime, ended_at: datetime) -> list[MonthSegment]:
    """Split [started_at, ended_at) across UTC calendar months.

    The last segment absorbs sub-millisecond rounding so the segments always
    sum to elapsed_ms(started_at, ended_at).
    """
    start = normalize_utc(started_at)
    end = normalize_utc(ended_at)
    total_ms = elapsed_ms(start, end)
    if total_ms <= 0:
        return []

    segments: list[MonthSegment] = []
    credited_ms = 0
    cursor = start
    while True:
        boundary = next_month_start(cursor)
        if boundary >= end:
            segments.append(MonthSegment(cursor.year, cursor.month, total_ms - credited_ms))
            return segments
        part_ms = elapsed_ms(cursor, boundary)
        segments.append(MonthSegment(cursor.year, cursor.month, part_ms))
        credited_ms += part_ms
        cursor = boundary


def _get_total_row(db: Session, *, guild_id: str, user_id: str) -> PatrolTimeTotal | None:
    return db.scalar(
        select(PatrolTimeTotal).where(
            PatrolTimeTotal.guild_id == guild_id,
            PatrolTimeTotal.user_id == user_id,
        )
    )


def _get_month_row(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    year: int,
    month: int,
) -> PatrolMonthlyTotal | None:
    return db.scalar(
        select(PatrolMonthlyTotal).where(
            PatrolMonthlyTotal.guild_id == guild_id,
            PatrolMonthlyTotal.user_id == user_id,
            PatrolMonthlyTotal.year == year,
            PatrolMonthlyTotal.month == month,
        )
    )


def credit_duration(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    started_at: datetime,
    ended_at: datetime,
    last_channel_id: str | None = None,
) -> list[MonthSegment]:
    """Add a finished interval to the all-time total and its monthly buckets.

    The caller owns the transaction.
    """
    segments = split_by_month(started_at, ended_at)
    delta_ms = sum(segment.duration_ms for segment in segments)
    if delta_ms <= 0:
        return []

    total_row = _get_total_row(db, guild_id=guild_id, user_id=user_id)
    if total_row is None:
        total_row = PatrolTimeTotal(guild_id=guild_id, user_id=user_id, total_ms=0)
        db.add(total_row)
    total_row.total_ms = int(total_row.total_ms or 0) + delta_ms
    if last_channel_id is not None:
        total_row.last_channel_id = last_channel_id

    for segment in segments:
        month_row = _get_month_row(
            db,
            guild_id=guild_id,
            user_id=user_id,
            year=segment.year,
            month=segment.month,
        )
        if month_row is None:
            month_row = PatrolMonthlyTotal(
                guild_id=guild_id,
                user_id=user_id,
                year=segment.year,
                month=segment.month,
                total_ms=0,
            )
            db.add(month_row)
        month_row.total_ms = int(month_row.total_ms or 0) + segment.duration_ms
    db.flush()
    return segments


def get_user_total(db: Session, *, guild_id: str, user_id: str) -> int:
    value = db.scalar(
        select(PatrolTimeTotal.total_ms).where(
            PatrolTimeTotal.guild_id == guild_id,
            PatrolTimeTotal.user_id == user_id,
        )
    )
    return int(value or 0)


def get_user_month_total(db: Session, *, guild_id: str, user_id: str, year: int, month: int) -> int:
    value = db.scalar(
        select(PatrolMonthlyTotal.total_ms).where(
            PatrolMonthlyTotal.guild_id == guild_id,
            PatrolMonthlyTotal.user_id == user_id,
            PatrolMonthlyTotal.year == year,
            PatrolMonthlyTotal.month == month,
        )
    )
    return int(value or 0)


def get_user_year_total(db: Session, *, guild_id: str, user_id: str, year: int) -> int:
    value = db.scalar(
        select(func.coalesce(func.sum(PatrolMonthlyTotal.total_ms), 0)).where(
            PatrolMonthlyTotal.guild_id == guild_id,
            PatrolMonthlyTotal.user_id == user_id,
            PatrolMonthlyTotal.year == year,
        )
    )
    return int(value or 0)


def sum_user_months(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    months: Iterable[tuple[int, int]],
) -> int:
    wanted = set(months)
    if not wanted:
        return 0
    years = {year for year, _ in wanted}
    rows = db.execute(
        select(PatrolMonthlyTotal.year, PatrolMonthlyTotal.month, PatrolMonthlyTotal.total_ms).where(
            PatrolMonthlyTotal.guild_id == guild_id,
            PatrolMonthlyTotal.user_id == user_id,
            PatrolMonthlyTotal.year.in_(sorted(years)),
        )
    ).all()
    return sum(int(total_ms or 0) for year, month, total_ms in rows if (year, month) in wanted)


def list_totals(db: Session, *, guild_id: str) -> dict[str, int]:
    rows = db.execute(
        select(PatrolTimeTotal.user_id, PatrolTimeTotal.total_ms).where(PatrolTimeTotal.guild_id == guild_id)
    ).all()
    return {str(user_id): int(total_ms or 0) for user_id, total_ms in rows}


def list_month_totals(db: Session, *, guild_id: str, year: int, month: int) -> dict[str, int]:
    rows = db.execute(
        select(PatrolMonthlyTotal.user_id, PatrolMonthlyTotal.total_ms).where(
            PatrolMonthlyTotal.guild_id == guild_id,
            PatrolMonthlyTotal.year == year,
            PatrolMonthlyTotal.month == month,
        )
    ).all()
    return {str(user_id): int(total_ms or 0) for user_id, total_ms in rows}


def list_year_totals(db: Session, *, guild_id: str, year: int) -> dict[str, int]:
    rows = db.execute(
        select(PatrolMonthlyTotal.user_id, func.sum(PatrolMonthlyTotal.total_ms))
        .where(
            PatrolMonthlyTotal.guild_id == guild_id,
            PatrolMonthlyTotal.year == year,
        )
        .group_by(PatrolMonthlyTotal.user_id)
    ).all()
    return {str(user_id): int(total_ms or 0) for user_id, total_ms in rows}


def list_available_years(db: Session, *, guild_id: str) -> list[LedgerPeriodSummary]:
    rows = db.execute(
        select(
            PatrolMonthlyTotal.year,
            func.count(func.distinct(PatrolMonthlyTotal.user_id)),
            func.sum(PatrolMonthlyTotal.total_ms),
        )
        .where(PatrolMonthlyTotal.guild_id == guild_id)
        .group_by(PatrolMonthlyTotal.year)
        .order_by(PatrolMonthlyTotal.year.desc())
    ).all()
    return [
        LedgerPeriodSummary(
            year=int(year),
            month=None,
            user_count=int(user_count or 0),
            total_hours=int(total_ms or 0) // MS_PER_HOUR,
        )
        for year, user_count, total_ms in rows
    ]


def list_available_months(db: Session, *, guild_id: str, year: int | None = None) -> list[LedgerPeriodSummary]:
    stmt = (
        select(
            PatrolMonthlyTotal.year,
            PatrolMonthlyTotal.month,
            func.count(func.distinct(PatrolMonthlyTotal.user_id)),
            func.sum(PatrolMonthlyTotal.total_ms),
        )
        .where(PatrolMonthlyTotal.guild_id == guild_id)
        .group_by(PatrolMonthlyTotal.year, PatrolMonthlyTotal.month)
        .order_by(PatrolMonthlyTotal.year.desc(), PatrolMonthlyTotal.month.desc())
    )
    if year is not None:
        stmt = stmt.where(PatrolMonthlyTotal.year == year)
    rows = db.execute(stmt).all()
    return [
        LedgerPeriodSummary(
            year=int(row_year),
            month=int(row_month),
            user_count=int(user_count or 0),
            total_hours=int(total_ms or 0) // MS_PER_HOUR,
        )
        for row_year, row_month, user_count, total_ms in rows
    ]


def reset_totals(
    db: Session,
    *,
    guild_id: str,
    user_id: str | None = None,
    year: int | None = None,
    month: int | None = None,
) -> int:
    """Zero totals and return the number of rows touched.

    Without a period the all-time totals are zeroed and the monthly history
    is kept. With a year (and optionally a month) only the matching monthly
    buckets are zeroed.
    """
    if month is not None and year is None:
        raise ValueError("month requires year")

    if year is None:
        stmt = select(PatrolTimeTotal).where(PatrolTimeTotal.guild_id == guild_id)
        if user_id is not None:
            stmt = stmt.where(PatrolTimeTotal.user_id == user_id)
        rows: list[PatrolTimeTotal | PatrolMonthlyTotal] = list(db.scalars(stmt).all())
    else:
        month_stmt = select(PatrolMonthlyTotal).where(
            PatrolMonthlyTotal.guild_id == guild_id,
            PatrolMonthlyTotal.year == year,
        )
        if month is not None:
            month_stmt = month_stmt.where(PatrolMonthlyTotal.month == month)
        if user_id is not None:
            month_stmt = month_stmt.where(PatrolMonthlyTotal.user_id == user_id)
        rows = list(db.scalars(month_stmt).all())

    for row in rows:
        row.total_ms = 0
    db.flush()
    return len(rows)


def adjust_totals(
    db: Session,
    *,
    guild_id: str,
    user_id: str,
    delta_ms: int,
    year: int,
    month: int,
) -> tuple[int, int]:
    """Apply a signed correction to the all-time total and one month bucket.

    Both values are clamped at zero. Returns (all_time_ms, month_ms).
    """
    total_row = _get_total_row(db, guild_id=guild_id, user_id=user_id)
    if total_row is None:
        total_row = PatrolTimeTotal(guild_id=guild_id, user_id=user_id, total_ms=0)
        db.add(total_row)
    total_row.total_ms = max(0, int(total_row.total_ms or 0) + int(delta_ms))

    month_row = _get_month_row(db, guild_id=guild_id, user_id=user_id, year=year, month=month)
    if month_row is None:
        month_row = PatrolMonthlyTotal(guild_id=guild_id, user_id=user_id, year=year, month=month, total_ms=0)
        db.add(month_row)
    month_row.total_ms = max(0, int(month_row.total_ms or 0) + int(delta_ms))
    db.flush()
    return int(total_row.total_ms), int(month_row.total_ms)

