from __future__ import annotations

import unittest
from collections.abc import Generator
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from patrol.db import Base, get_db
from patrol.gateway import DeliveryResult, MemberInfo, Occupant
from patrol.main import create_app
from patrol.models import AuditLog
from patrol.runtime import PatrolRuntime
from patrol.security import require_admin
from patrol.settings import Settings

GUILD_ID = "guild-1"
BASE = f"/api/admin/guilds/{GUILD_ID}"


class _FakeGateway:
    async def get_channel_parent_id(self, guild_id: str, channel_id: str) -> str | None:
        return None

    async def list_tracked_occupants(self, guild_id: str, category_id: str) -> list[Occupant]:
        return []

    async def resolve_member(self, guild_id: str, user_id: str) -> MemberInfo | None:
        return None

    async def is_member(self, guild_id: str, user_id: str) -> bool:
        return True

    async def list_role_holders(self, guild_id: str, role_id: str) -> list[MemberInfo]:
        return []


class _FakeMessenger:
    async def send_direct(self, user_id: str, payload: dict) -> DeliveryResult:
        return DeliveryResult.ok()

    async def send_to_channel(self, channel_id, payload, *, mention_role_ids=(), mention_here=False):  # type: ignore[no-untyped-def]
        return DeliveryResult.ok()


class _AppCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self.runtime = PatrolRuntime(
            session_factory=self.factory,
            gateway=_FakeGateway(),
            messenger=_FakeMessenger(),
            min_session_ms=3000,
            should_ping=True,
        )
        self.app = create_app(
            self.runtime,
            engine=self.engine,
            run_schema_guard=False,
            start_runtime=False,
            configure_logging=False,
        )

        def _override_get_db() -> Generator[Session, None, None]:
            db = self.factory()
            try:
                yield db
            finally:
                db.close()

        self.app.dependency_overrides[get_db] = _override_get_db

    def tearDown(self) -> None:
        self.app.dependency_overrides.clear()
        self.engine.dispose()


class AdminRouterTests(_AppCase):
    def setUp(self) -> None:
        super().setUp()
        self.app.dependency_overrides[require_admin] = lambda: "tester"

    def test_health(self) -> None:
        with TestClient(self.app) as client:
            response = client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertFalse(body["runtime_started"])
        self.assertEqual(body["open_sessions"], 0)

    def test_guild_settings_round_trip_is_audited(self) -> None:
        with TestClient(self.app) as client:
            patched = client.patch(
                f"{BASE}/settings",
                json={"tracked_category_id": "cat-1", "staff_role_ids": ["staff"]},
            )
            read = client.get(f"{BASE}/settings")

        self.assertEqual(patched.status_code, 200)
        self.assertEqual(read.json()["tracked_category_id"], "cat-1")
        self.assertEqual(read.json()["staff_role_ids"], ["staff"])
        with self.factory() as db:
            actions = db.scalars(select(AuditLog.action)).all()
        self.assertEqual(actions, ["GUILD_SETTINGS_UPDATED"])

    def test_role_config_lifecycle(self) -> None:
        with TestClient(self.app) as client:
            created = client.put(
                f"{BASE}/role-configs/role-1",
                json={"role_name": "Recruit", "deadline_duration": "4 weeks"},
            )
            warning = client.put(
                f"{BASE}/role-configs/role-1/warnings",
                json={"offset": "26 days", "message": "Last call for {roleName}"},
            )
            removed_warning = client.delete(f"{BASE}/role-configs/role-1/warnings/0")
            staff_ping = client.put(
                f"{BASE}/role-configs/role-1/staff-ping",
                json={"offset": "4 weeks", "role_ids": ["staff"]},
            )
            listed = client.get(f"{BASE}/role-configs")
            deleted = client.delete(f"{BASE}/role-configs/role-1")
            missing = client.delete(f"{BASE}/role-configs/role-1")

        self.assertEqual(created.status_code, 200)
        self.assertEqual(len(created.json()["warnings"]), 3)
        self.assertEqual(len(warning.json()["warnings"]), 4)
        self.assertEqual([item["offset"] for item in removed_warning.json()["warnings"]], ["2 weeks", "3 weeks", "26 days"])
        self.assertEqual(staff_ping.json()["staff_ping_role_ids"], ["staff"])
        self.assertIn("role-1", listed.json())
        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["error"]["code"], "NOT_FOUND")

    def test_invalid_role_config_lists_reasons(self) -> None:
        with TestClient(self.app) as client:
            response = client.put(
                f"{BASE}/role-configs/role-1",
                json={"role_name": "Recruit", "deadline_duration": "2 weeks", "conditions": ["PATROL"]},
            )

        self.assertEqual(response.status_code, 422)
        error = response.json()["error"]
        self.assertEqual(error["code"], "CONFIGURATION_INVALID")
        self.assertEqual(error["reasons"], ["patrol_time_threshold_hours must be set when using PATROL condition"])

    def test_unknown_role_config_update_is_404(self) -> None:
        with TestClient(self.app) as client:
            response = client.patch(f"{BASE}/role-configs/nope/enabled", json={"enabled": False})

        self.assertEqual(response.status_code, 404)

    def test_adjust_then_read_totals(self) -> None:
        with TestClient(self.app) as client:
            adjusted = client.post(
                f"{BASE}/totals/adjust",
                json={"user_id": "u1", "delta_ms": 7_200_000, "year": 2026, "month": 3},
            )
            total = client.get(f"{BASE}/totals/users/u1")
            month_total = client.get(f"{BASE}/totals/users/u1", params={"year": 2026, "month": 3})
            top = client.get(f"{BASE}/totals/top", params={"limit": 5})
            months = client.get(f"{BASE}/totals/months", params={"year": 2026})

        self.assertEqual(adjusted.status_code, 200)
        self.assertEqual(adjusted.json()["total_ms"], 7_200_000)
        self.assertEqual(total.json()["total_ms"], 7_200_000)
        self.assertEqual(month_total.json()["total_ms"], 7_200_000)
        self.assertEqual(top.json(), [{"user_id": "u1", "total_ms": 7_200_000}])
        self.assertEqual(months.json()[0]["month"], 3)
        self.assertEqual(months.json()[0]["total_hours"], 2)

    def test_month_without_year_rejected(self) -> None:
        with TestClient(self.app) as client:
            reset = client.post(f"{BASE}/totals/reset", json={"month": 3})
            top = client.get(f"{BASE}/totals/top", params={"month": 3})

        self.assertEqual(reset.status_code, 422)
        self.assertEqual(reset.json()["error"]["code"], "MONTH_REQUIRES_YEAR")
        self.assertEqual(top.json()["error"]["code"], "MONTH_REQUIRES_YEAR")

    def test_pause_endpoints(self) -> None:
        with TestClient(self.app) as client:
            paused = client.post(f"{BASE}/pause/users/u1")
            resumed = client.delete(f"{BASE}/pause/users/u1")
            resumed_again = client.delete(f"{BASE}/pause/users/u1")

        self.assertEqual(paused.json(), {"ok": True})
        self.assertEqual(resumed.json(), {"ok": True})
        self.assertEqual(resumed_again.json(), {"ok": False})

    def test_sweep_without_configs(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(f"{BASE}/role-tracking/sweep")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["holders_checked"], 0)


class AdminAuthTests(_AppCase):
    def test_admin_api_disabled_without_token(self) -> None:
        with patch("patrol.security.is_admin_api_enabled", return_value=False):
            with TestClient(self.app) as client:
                response = client.get(f"{BASE}/settings")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "ADMIN_API_DISABLED")

    def test_wrong_token_rejected(self) -> None:
        settings = Settings(admin_api_token="s3cret")
        with (
            patch("patrol.security.is_admin_api_enabled", return_value=True),
            patch("patrol.security.get_settings", return_value=settings),
        ):
            with TestClient(self.app) as client:
                missing = client.get(f"{BASE}/settings")
                wrong = client.get(f"{BASE}/settings", headers={"X-Admin-Token": "nope"})
                right = client.get(f"{BASE}/settings", headers={"X-Admin-Token": "s3cret"})

        self.assertEqual(missing.status_code, 401)
        self.assertEqual(wrong.json()["error"]["code"], "INVALID_TOKEN")
        self.assertEqual(right.status_code, 200)
        with self.factory() as db:
            self.assertEqual(db.scalar(select(func.count()).select_from(AuditLog)), 0)


if __name__ == "__main__":
    unittest.main()
