import unittest
from datetime import datetime, timedelta, timezone

from patrol.schemas import RoleTrackingConfig
from patrol.services.durations import MS_PER_DAY, MS_PER_HOUR, MS_PER_WEEK
from patrol.services.templates import (
    as_message,
    build_staff_ping_variables,
    build_warning_variables,
    render_payload,
    render_text,
)


class TemplateRenderingTests(unittest.TestCase):
    def test_unknown_placeholders_are_kept(self) -> None:
        rendered = render_text("Hi {userMention}, {unknown} stays", {"userMention": "<@1>"})
        self.assertEqual(rendered, "Hi <@1>, {unknown} stays")

    def test_payload_rendering_walks_nested_values(self) -> None:
        template = {
            "content": "{roleName} deadline",
            "embeds": [{"title": "{roleName}", "fields": [{"name": "Hours", "value": "{hours}"}], "color": 15158332}],
        }

        rendered = render_payload(template, {"roleName": "Recruit", "hours": 4})

        self.assertEqual(rendered["content"], "Recruit deadline")
        self.assertEqual(rendered["embeds"][0]["title"], "Recruit")
        self.assertEqual(rendered["embeds"][0]["fields"][0]["value"], "4")
        self.assertEqual(rendered["embeds"][0]["color"], 15158332)

    def test_as_message_wraps_plain_text(self) -> None:
        self.assertEqual(as_message("hello"), {"content": "hello"})
        self.assertEqual(as_message({"embeds": []}), {"embeds": []})


class TemplateVariableTests(unittest.TestCase):
    def setUp(self) -> None:
        self.assigned_at = datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_warning_variables(self) -> None:
        config = RoleTrackingConfig(role_name="Recruit", deadline_duration="2 weeks")
        deadline_at = self.assigned_at + timedelta(weeks=2)

        variables = build_warning_variables(
            config=config,
            deadline_at=deadline_at,
            time_remaining_ms=6 * MS_PER_DAY,
            patrol_ms=90 * 60 * 1000,
        )

        unix = int(deadline_at.timestamp())
        self.assertEqual(variables["roleName"], "Recruit")
        self.assertEqual(variables["timeRemaining"], "6 days")
        self.assertEqual(variables["deadlineTimestamp"], f"<t:{unix}:R>")
        self.assertEqual(variables["patrolTimeHours"], "1.5")

    def test_staff_ping_variables_with_threshold(self) -> None:
        config = RoleTrackingConfig(
            role_name="Recruit",
            deadline_duration="2 weeks",
            conditions=["PATROL"],
            patrol_time_threshold_hours=10,
        )

        variables = build_staff_ping_variables(
            config=config,
            role_id="role-1",
            user_id="u1",
            user_name="Alice",
            assigned_at=self.assigned_at,
            deadline_ms=2 * MS_PER_WEEK,
            elapsed_ms=2 * MS_PER_WEEK + MS_PER_DAY,
            patrol_ms=12 * MS_PER_HOUR,
            now_utc=self.assigned_at + timedelta(days=15),
        )

        self.assertEqual(variables["userMention"], "<@u1>")
        self.assertEqual(variables["thresholdDisplay"], "10 hours (Met)")
        self.assertEqual(variables["thresholdStatus"], "Met")
        self.assertEqual(variables["timeOverdue"], "1 day")
        self.assertEqual(variables["patrolTimeHours"], "12.00")
        self.assertEqual(variables["deadlineDuration"], "2 weeks")

    def test_staff_ping_variables_without_threshold(self) -> None:
        config = RoleTrackingConfig(role_name="Recruit", deadline_duration="2 weeks")

        variables = build_staff_ping_variables(
            config=config,
            role_id="role-1",
            user_id="u1",
            user_name="Alice",
            assigned_at=self.assigned_at,
            deadline_ms=2 * MS_PER_WEEK,
            elapsed_ms=MS_PER_WEEK,
            patrol_ms=0,
            now_utc=self.assigned_at + timedelta(days=7),
        )

        self.assertEqual(variables["thresholdDisplay"], "Not set")
        self.assertEqual(variables["thresholdStatus"], "N/A")
        self.assertEqual(variables["timeOverdue"], "0 seconds")
        self.assertEqual(variables["inactivityPercentage"], "100.0")


if __name__ == "__main__":
    unittest.main()
