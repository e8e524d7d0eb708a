from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from patrol.db import Base, run_in_session
from patrol.errors import TransientDeliveryError
from patrol.gateway import DeliveryResult, MemberInfo, Occupant
from patrol.models import STAFF_PING_WARNING_INDEX, WarningType
from patrol.runtime import PatrolRuntime
from patrol.schemas import RoleTrackingConfig
from patrol.services import ledger, role_config, role_tracking
from patrol.services.durations import MS_PER_HOUR
from patrol.services.guild_settings import update_guild_settings
from patrol.services.ledger import normalize_utc
from patrol.services.role_tracking import evaluate, get_assignment, months_between

GUILD_ID = "guild-1"
ROLE_ID = "role-recruit"
LEAVE_ROLE_ID = "role-leave"
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class _FakeGateway:
    def __init__(self) -> None:
        self.members: dict[str, MemberInfo] = {}

    async def get_channel_parent_id(self, guild_id: str, channel_id: str) -> str | None:
        return None

    async def list_tracked_occupants(self, guild_id: str, category_id: str) -> list[Occupant]:
        return []

    async def resolve_member(self, guild_id: str, user_id: str) -> MemberInfo | None:
        return self.members.get(user_id)

    async def is_member(self, guild_id: str, user_id: str) -> bool:
        return user_id in self.members

    async def list_role_holders(self, guild_id: str, role_id: str) -> list[MemberInfo]:
        return [member for member in self.members.values() if role_id in member.role_ids]


class _FakeMessenger:
    def __init__(self) -> None:
        self.direct: list[tuple[str, dict]] = []
        self.channel: list[tuple[str, dict, tuple[str, ...], bool]] = []
        self.fail_direct = False
        self.fail_channel = False

    async def send_direct(self, user_id: str, payload: dict) -> DeliveryResult:
        self.direct.append((user_id, payload))
        if self.fail_direct:
            return DeliveryResult.failed("Cannot send messages to this user")
        return DeliveryResult.ok()

    async def send_to_channel(self, channel_id, payload, *, mention_role_ids=(), mention_here=False):  # type: ignore[no-untyped-def]
        self.channel.append((channel_id, payload, tuple(mention_role_ids), mention_here))
        if self.fail_channel:
            raise TransientDeliveryError(channel_id, "Missing Permissions")
        return DeliveryResult.ok()


class ConditionEvaluationTests(unittest.TestCase):
    def test_no_conditions_is_exempt(self) -> None:
        config = RoleTrackingConfig(role_name="Recruit", deadline_duration="2 weeks")

        result = evaluate(config, assigned_at=T0, patrol_ms=0, now_utc=T0 + timedelta(days=30))

        self.assertTrue(result.exempt)
        self.assertTrue(result.all_passed)

    def test_patrol_threshold(self) -> None:
        config = RoleTrackingConfig(
            role_name="Recruit",
            deadline_duration="2 weeks",
            conditions=["PATROL"],
            patrol_time_threshold_hours=5,
        )

        short = evaluate(config, assigned_at=T0, patrol_ms=4 * MS_PER_HOUR, now_utc=T0 + timedelta(days=3))
        met = evaluate(config, assigned_at=T0, patrol_ms=5 * MS_PER_HOUR, now_utc=T0 + timedelta(days=3))

        self.assertEqual(short.failed_conditions, ("PATROL",))
        self.assertFalse(short.patrol_threshold_met)
        self.assertTrue(met.all_passed)
        self.assertTrue(met.patrol_threshold_met)

    def test_time_condition_fails_after_deadline(self) -> None:
        config = RoleTrackingConfig(role_name="Recruit", deadline_duration="2 weeks", conditions=["TIME"])

        before = evaluate(config, assigned_at=T0, patrol_ms=0, now_utc=T0 + timedelta(days=13))
        after = evaluate(config, assigned_at=T0, patrol_ms=0, now_utc=T0 + timedelta(days=14))

        self.assertTrue(before.all_passed)
        self.assertEqual(after.failed_conditions, ("TIME",))

    def test_months_between_is_inclusive(self) -> None:
        months = months_between(datetime(2025, 12, 15, tzinfo=timezone.utc), datetime(2026, 2, 1, tzinfo=timezone.utc))
        self.assertEqual(months, [(2025, 12), (2026, 1), (2026, 2)])


class EscalationEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        run_in_session(
            self.factory,
            update_guild_settings,
            GUILD_ID,
            {
                "leave_role_id": LEAVE_ROLE_ID,
                "role_tracking_staff_channel_id": "staff-log",
                "staff_role_ids": ["staff"],
            },
        )
        run_in_session(
            self.factory,
            role_config.add_role_config,
            GUILD_ID,
            ROLE_ID,
            role_name="Recruit",
            deadline_duration="2 weeks",
            conditions=["PATROL"],
            patrol_time_threshold_hours=5,
            now_utc=T0,
        )
        self.gateway = _FakeGateway()
        self.gateway.members["u1"] = MemberInfo(user_id="u1", display_name="Alice", role_ids=frozenset({ROLE_ID}))
        self.messenger = _FakeMessenger()
        self.runtime = PatrolRuntime(
            session_factory=self.factory,
            gateway=self.gateway,
            messenger=self.messenger,
            min_session_ms=3000,
            should_ping=True,
        )
        self.escalation = self.runtime.escalation
        await self.escalation.track_assignment(GUILD_ID, "u1", ROLE_ID, at=T0)

    async def asyncTearDown(self) -> None:
        self.engine.dispose()

    async def _history(self, user_id: str = "u1") -> list[tuple[WarningType, int]]:
        rows = await self.escalation.get_warning_history(GUILD_ID, user_id, ROLE_ID)
        return [(row.warning_type, row.warning_index) for row in rows]

    def _assigned_at(self, user_id: str = "u1") -> datetime | None:
        with self.factory() as db:
            assignment = get_assignment(db, guild_id=GUILD_ID, user_id=user_id, role_id=ROLE_ID)
            return normalize_utc(assignment.assigned_at) if assignment is not None else None

    async def test_first_warning_after_offset_without_escalation(self) -> None:
        report = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=8))

        self.assertEqual(report.holders_checked, 1)
        self.assertEqual(report.warnings_sent, 1)
        self.assertEqual(report.escalations_sent, 0)
        self.assertEqual(len(self.messenger.direct), 1)
        user_id, payload = self.messenger.direct[0]
        self.assertEqual(user_id, "u1")
        self.assertIn("Recruit role", payload["content"])
        self.assertEqual(await self._history(), [(WarningType.WARNING, 0)])
        staff_channels = [item[0] for item in self.messenger.channel]
        self.assertEqual(staff_channels, ["staff-log"])

    async def test_nothing_due_before_first_offset(self) -> None:
        report = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=6))

        self.assertEqual(report.warnings_sent, 0)
        self.assertEqual(self.messenger.direct, [])
        self.assertEqual(await self._history(), [])

    async def test_repeated_sweeps_do_not_duplicate(self) -> None:
        await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=8))
        second = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=9))

        self.assertEqual(second.warnings_sent, 0)
        self.assertEqual(len(self.messenger.direct), 1)
        self.assertEqual(await self._history(), [(WarningType.WARNING, 0)])

    async def test_escalation_recorded_when_delivery_fails(self) -> None:
        self.messenger.fail_channel = True

        report = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=15))

        self.assertEqual(report.warnings_sent, 1)
        self.assertEqual(report.escalations_sent, 1)
        self.assertEqual(
            await self._history(),
            [(WarningType.WARNING, 0), (WarningType.STAFF_PING, STAFF_PING_WARNING_INDEX)],
        )
        escalation_calls = [item for item in self.messenger.channel if item[2] == ("staff",)]
        self.assertEqual(len(escalation_calls), 2)
        self.assertEqual(escalation_calls[0][1]["content"].split(" ")[0], "<@u1>")

        again = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=16))
        self.assertEqual(again.escalations_sent, 0)
        self.assertEqual(len(await self._history()), 2)

    async def test_sweep_continues_past_failing_holder(self) -> None:
        self.gateway.members["u2"] = MemberInfo(user_id="u2", display_name="Bob", role_ids=frozenset({ROLE_ID}))
        await self.escalation.track_assignment(GUILD_ID, "u2", ROLE_ID, at=T0)
        real_resolve = role_tracking.resolve_assignment_clock

        def _resolve(db, **kwargs):  # type: ignore[no-untyped-def]
            if kwargs["user_id"] == "u1":
                raise RuntimeError("database unavailable")
            return real_resolve(db, **kwargs)

        with patch("patrol.services.role_tracking.resolve_assignment_clock", side_effect=_resolve):
            report = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=8))

        self.assertEqual(report.errors, 1)
        self.assertEqual(report.holders_checked, 2)
        self.assertEqual(report.warnings_sent, 1)
        self.assertEqual([item[0] for item in self.messenger.direct], ["u2"])
        self.assertEqual(await self._history("u1"), [])
        self.assertEqual(await self._history("u2"), [(WarningType.WARNING, 0)])

    async def test_escalation_mentions_here_without_staff_roles(self) -> None:
        run_in_session(self.factory, update_guild_settings, GUILD_ID, {"staff_role_ids": []})

        await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=15))

        escalation = self.messenger.channel[-1]
        self.assertEqual(escalation[0], "staff-log")
        self.assertEqual(escalation[2], ())
        self.assertTrue(escalation[3])

    async def test_failed_dm_is_not_recorded(self) -> None:
        self.messenger.fail_direct = True

        report = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=8))

        self.assertEqual(report.warnings_failed, 1)
        self.assertEqual(await self._history(), [])
        self.assertIn("Failed", self.messenger.channel[0][1]["embeds"][0]["description"])

        self.messenger.fail_direct = False
        retry = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=9))
        self.assertEqual(retry.warnings_sent, 1)
        self.assertEqual(await self._history(), [(WarningType.WARNING, 0)])

    async def test_meeting_patrol_threshold_clears_warnings(self) -> None:
        await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=8))
        run_in_session(
            self.factory,
            ledger.credit_duration,
            guild_id=GUILD_ID,
            user_id="u1",
            started_at=T0 + timedelta(days=8, hours=1),
            ended_at=T0 + timedelta(days=8, hours=7),
        )
        grace_at = T0 + timedelta(days=9)

        report = await self.escalation.check_guild(GUILD_ID, now_utc=grace_at)

        self.assertEqual(report.grace_resets, 1)
        self.assertEqual(report.warnings_sent, 0)
        self.assertEqual(await self._history(), [])
        self.assertEqual(self._assigned_at(), grace_at)

    async def test_live_session_counts_toward_threshold(self) -> None:
        now = T0 + timedelta(days=8)
        await self.runtime.tracker.start_session(GUILD_ID, "u1", "vc-1", now_utc=now - timedelta(hours=6))

        patrol_ms = await self.escalation.get_patrol_time_in_period(GUILD_ID, "u1", T0, now)

        self.assertEqual(patrol_ms, 6 * MS_PER_HOUR)

    async def test_holder_on_leave_role_is_skipped(self) -> None:
        self.gateway.members["u1"] = MemberInfo(
            user_id="u1",
            display_name="Alice",
            role_ids=frozenset({ROLE_ID, LEAVE_ROLE_ID}),
        )

        report = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=15))

        self.assertEqual(report.skipped_on_leave, 1)
        self.assertEqual(self.messenger.direct, [])
        self.assertEqual(await self._history(), [])

    async def test_disabled_config_is_not_swept(self) -> None:
        run_in_session(self.factory, role_config.toggle_role_config, GUILD_ID, ROLE_ID, False)

        report = await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=15))

        self.assertEqual(report.holders_checked, 0)
        self.assertEqual(self.messenger.direct, [])

    async def test_departed_members_are_cleaned_up(self) -> None:
        await self.escalation.track_assignment(GUILD_ID, "gone", ROLE_ID, at=T0)

        removed = await self.escalation.cleanup_missing_members(GUILD_ID)

        self.assertEqual(removed, 1)
        self.assertIsNone(self._assigned_at("gone"))
        self.assertIsNotNone(self._assigned_at("u1"))

    async def test_role_added_and_removed(self) -> None:
        added_at = T0 + timedelta(days=1)

        await self.runtime.on_member_roles_changed(
            GUILD_ID,
            "u2",
            added=[ROLE_ID],
            removed=[],
            current_role_ids=[ROLE_ID],
            now_utc=added_at,
        )
        self.assertEqual(self._assigned_at("u2"), added_at)

        await self.runtime.on_member_roles_changed(
            GUILD_ID,
            "u2",
            added=[],
            removed=[ROLE_ID],
            current_role_ids=[],
            now_utc=added_at + timedelta(days=1),
        )
        self.assertIsNone(self._assigned_at("u2"))

    async def test_role_added_while_on_leave_is_not_tracked(self) -> None:
        await self.runtime.on_member_roles_changed(
            GUILD_ID,
            "u3",
            added=[ROLE_ID],
            removed=[],
            current_role_ids=[ROLE_ID, LEAVE_ROLE_ID],
            now_utc=T0,
        )

        self.assertIsNone(self._assigned_at("u3"))

    async def test_leave_role_removed_restarts_clock(self) -> None:
        await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=8))
        returned_at = T0 + timedelta(days=10)

        await self.runtime.on_member_roles_changed(
            GUILD_ID,
            "u1",
            added=[],
            removed=[LEAVE_ROLE_ID],
            current_role_ids=[ROLE_ID],
            now_utc=returned_at,
        )

        self.assertEqual(await self._history(), [])
        self.assertEqual(self._assigned_at(), returned_at)

    async def test_reassignment_refreshes_clock_and_history(self) -> None:
        await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=8))
        refreshed_at = T0 + timedelta(days=9)

        await self.escalation.track_assignment(GUILD_ID, "u1", ROLE_ID, at=refreshed_at)

        self.assertEqual(self._assigned_at(), refreshed_at)
        self.assertEqual(await self._history(), [])

    async def test_reset_assignment_clock(self) -> None:
        await self.escalation.check_guild(GUILD_ID, now_utc=T0 + timedelta(days=8))
        reset_at = T0 + timedelta(days=11)

        reset, cleared = await self.escalation.reset_assignment_clock(GUILD_ID, "u1", now_utc=reset_at)

        self.assertEqual((reset, cleared), (1, 1))
        self.assertEqual(self._assigned_at(), reset_at)

    async def test_sync_role_members(self) -> None:
        self.gateway.members["u4"] = MemberInfo(user_id="u4", display_name="Dana", role_ids=frozenset({ROLE_ID}))
        self.gateway.members["bot"] = MemberInfo(
            user_id="bot",
            display_name="Bot",
            role_ids=frozenset({ROLE_ID}),
            is_bot=True,
        )

        report = await self.escalation.sync_role_members(GUILD_ID, ROLE_ID, now_utc=T0 + timedelta(days=2))

        self.assertEqual((report.added, report.existing, report.failed), (1, 1, 0))
        self.assertEqual(self._assigned_at("u4"), T0 + timedelta(days=2))

    async def test_member_removed_forgets_rows_and_credits_session(self) -> None:
        await self.runtime.tracker.start_session(GUILD_ID, "u1", "vc-1", now_utc=T0)

        await self.runtime.on_member_removed(GUILD_ID, "u1", now_utc=T0 + timedelta(hours=1))

        self.assertIsNone(self._assigned_at())
        with self.factory() as db:
            self.assertEqual(ledger.get_user_total(db, guild_id=GUILD_ID, user_id="u1"), MS_PER_HOUR)

    async def test_daily_sweep_covers_configured_guilds(self) -> None:
        reports = await self.runtime.run_daily_sweep(now_utc=T0 + timedelta(days=8))

        self.assertEqual([item.guild_id for item in reports], [GUILD_ID])
        self.assertEqual(reports[0].warnings_sent, 1)


if __name__ == "__main__":
    unittest.main()
