from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from patrol.db import Base, run_in_session
from patrol.services import ledger
from patrol.services.ledger import MonthSegment, elapsed_ms, normalize_utc, split_by_month

GUILD_ID = "guild-1"


def _session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine, sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class MonthSplitTests(unittest.TestCase):
    def test_split_across_month_boundary(self) -> None:
        start = datetime(2026, 1, 31, 23, 0, tzinfo=timezone.utc)
        end = datetime(2026, 2, 1, 1, 30, tzinfo=timezone.utc)

        segments = split_by_month(start, end)

        self.assertEqual(
            segments,
            [
                MonthSegment(2026, 1, 3_600_000),
                MonthSegment(2026, 2, 5_400_000),
            ],
        )

    def test_split_across_year_boundary_sums_to_elapsed(self) -> None:
        start = datetime(2025, 11, 30, 20, 0, tzinfo=timezone.utc)
        end = datetime(2026, 1, 1, 4, 0, 0, 250_000, tzinfo=timezone.utc)

        segments = split_by_month(start, end)

        self.assertEqual([(item.year, item.month) for item in segments], [(2025, 11), (2025, 12), (2026, 1)])
        self.assertEqual(sum(item.duration_ms for item in segments), elapsed_ms(start, end))

    def test_empty_or_reversed_interval(self) -> None:
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        self.assertEqual(split_by_month(now, now), [])
        self.assertEqual(split_by_month(now, now - timedelta(hours=1)), [])

    def test_naive_timestamps_are_utc(self) -> None:
        value = normalize_utc(datetime(2026, 3, 1, 12, 0))
        self.assertEqual(value.tzinfo, timezone.utc)
        self.assertEqual(value.hour, 12)


class LedgerPersistenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, self.factory = _session_factory()

    def tearDown(self) -> None:
        self.engine.dispose()

    def _credit(self, user_id: str, start: datetime, end: datetime) -> list[MonthSegment]:
        return run_in_session(
            self.factory,
            ledger.credit_duration,
            guild_id=GUILD_ID,
            user_id=user_id,
            started_at=start,
            ended_at=end,
            last_channel_id="vc-1",
        )

    def test_credit_updates_all_time_and_month_buckets(self) -> None:
        self._credit(
            "u1",
            datetime(2026, 1, 31, 23, 0, tzinfo=timezone.utc),
            datetime(2026, 2, 1, 1, 30, tzinfo=timezone.utc),
        )
        self._credit(
            "u1",
            datetime(2026, 2, 3, 10, 0, tzinfo=timezone.utc),
            datetime(2026, 2, 3, 11, 0, tzinfo=timezone.utc),
        )

        with self.factory() as db:
            self.assertEqual(ledger.get_user_total(db, guild_id=GUILD_ID, user_id="u1"), 12_600_000)
            self.assertEqual(
                ledger.get_user_month_total(db, guild_id=GUILD_ID, user_id="u1", year=2026, month=1),
                3_600_000,
            )
            self.assertEqual(
                ledger.get_user_month_total(db, guild_id=GUILD_ID, user_id="u1", year=2026, month=2),
                9_000_000,
            )
            self.assertEqual(ledger.get_user_year_total(db, guild_id=GUILD_ID, user_id="u1", year=2026), 12_600_000)
            self.assertEqual(
                ledger.sum_user_months(db, guild_id=GUILD_ID, user_id="u1", months=[(2026, 2), (2026, 5)]),
                9_000_000,
            )

    def test_period_summaries(self) -> None:
        self._credit(
            "u1",
            datetime(2026, 1, 10, 8, 0, tzinfo=timezone.utc),
            datetime(2026, 1, 10, 10, 0, tzinfo=timezone.utc),
        )
        self._credit(
            "u2",
            datetime(2026, 2, 10, 8, 0, tzinfo=timezone.utc),
            datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc),
        )

        with self.factory() as db:
            years = ledger.list_available_years(db, guild_id=GUILD_ID)
            months = ledger.list_available_months(db, guild_id=GUILD_ID, year=2026)

        self.assertEqual(len(years), 1)
        self.assertEqual(years[0].year, 2026)
        self.assertEqual(years[0].user_count, 2)
        self.assertEqual(years[0].total_hours, 3)
        self.assertEqual([(item.year, item.month) for item in months], [(2026, 2), (2026, 1)])

    def test_reset_all_time_keeps_monthly_history(self) -> None:
        self._credit(
            "u1",
            datetime(2026, 1, 10, 8, 0, tzinfo=timezone.utc),
            datetime(2026, 1, 10, 10, 0, tzinfo=timezone.utc),
        )

        rows = run_in_session(self.factory, ledger.reset_totals, guild_id=GUILD_ID)

        self.assertEqual(rows, 1)
        with self.factory() as db:
            self.assertEqual(ledger.get_user_total(db, guild_id=GUILD_ID, user_id="u1"), 0)
            self.assertEqual(
                ledger.get_user_month_total(db, guild_id=GUILD_ID, user_id="u1", year=2026, month=1),
                7_200_000,
            )

    def test_reset_single_month(self) -> None:
        self._credit(
            "u1",
            datetime(2026, 1, 31, 23, 0, tzinfo=timezone.utc),
            datetime(2026, 2, 1, 1, 30, tzinfo=timezone.utc),
        )

        rows = run_in_session(self.factory, ledger.reset_totals, guild_id=GUILD_ID, year=2026, month=2)

        self.assertEqual(rows, 1)
        with self.factory() as db:
            self.assertEqual(
                ledger.get_user_month_total(db, guild_id=GUILD_ID, user_id="u1", year=2026, month=1),
                3_600_000,
            )
            self.assertEqual(
                ledger.get_user_month_total(db, guild_id=GUILD_ID, user_id="u1", year=2026, month=2),
                0,
            )

    def test_reset_month_without_year_rejected(self) -> None:
        with self.assertRaises(ValueError):
            run_in_session(self.factory, ledger.reset_totals, guild_id=GUILD_ID, month=3)

    def test_adjust_clamps_at_zero(self) -> None:
        self._credit(
            "u1",
            datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
        )

        total, month_total = run_in_session(
            self.factory,
            ledger.adjust_totals,
            guild_id=GUILD_ID,
            user_id="u1",
            delta_ms=-10_000_000,
            year=2026,
            month=3,
        )
        self.assertEqual((total, month_total), (0, 0))

        total, month_total = run_in_session(
            self.factory,
            ledger.adjust_totals,
            guild_id=GUILD_ID,
            user_id="u2",
            delta_ms=1_800_000,
            year=2026,
            month=4,
        )
        self.assertEqual((total, month_total), (1_800_000, 1_800_000))


if __name__ == "__main__":
    unittest.main()
