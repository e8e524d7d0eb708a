from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "guild_settings": {"guild_id", "tracked_category_id", "role_tracking_config", "role_tracking_initialized_at"},
    "active_patrol_sessions": {"guild_id", "user_id", "channel_id", "started_at"},
    "patrol_time_totals": {"guild_id", "user_id", "total_ms"},
    "patrol_monthly_totals": {"guild_id", "user_id", "year", "month", "total_ms"},
    "role_assignments": {"id", "guild_id", "user_id", "role_id", "assigned_at"},
    "role_tracking_warnings": {"guild_id", "user_id", "role_id", "warning_index", "role_assigned_at", "assignment_id"},
    "audit_logs": {"id", "action", "guild_id"},
    "alembic_version": {"version_num"},
}

# Enum columns store member names.
REQUIRED_ENUM_VALUES: dict[str, set[str]] = {
    "role_warning_type": {"WARNING", "STAFF_PING"},
    "audit_actor_type": {"ADMIN", "SYSTEM"},
}


def verify_runtime_schema(engine: Engine, *, require_alembic_version: bool = True) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        if table_name == "alembic_version" and not require_alembic_version:
            continue
        if table_name not in existing_tables:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    if engine.dialect.name == "postgresql":
        enum_values_by_name: dict[str, set[str]] = {}
        for enum_item in inspector.get_enums() or []:
            name = str(enum_item.get("name") or "").strip()
            labels = enum_item.get("labels")
            if name and isinstance(labels, list):
                enum_values_by_name[name] = {str(label) for label in labels}

        for enum_name, required_values in REQUIRED_ENUM_VALUES.items():
            if enum_name not in enum_values_by_name:
                warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
                continue
            missing_values = sorted(item for item in required_values if item not in enum_values_by_name[enum_name])
            if missing_values:
                issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing_values)}")
    else:
        warnings.append(f"ENUM_CHECK_SKIPPED:{engine.dialect.name}")

    if require_alembic_version and "alembic_version" in existing_tables:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
        if not (str(row).strip() if row is not None else ""):
            issues.append("ALEMBIC_VERSION_EMPTY")

    return SchemaGuardResult(
        ok=not issues,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
