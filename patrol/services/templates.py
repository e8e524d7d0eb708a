from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from patrol.schemas import RoleTrackingConfig
from patrol.services.durations import MS_PER_HOUR, format_duration_ms
from patrol.services.ledger import normalize_utc


def render_text(template: str, variables: Mapping[str, object]) -> str:
    """Replace literal {name} placeholders; unknown placeholders stay as-is."""
    rendered = template
    for key, value in variables.items():
        rendered = rendered.replace("{" + key + "}", str(value))
    return rendered


def render_payload(template: Any, variables: Mapping[str, object]) -> Any:
    if isinstance(template, str):
        return render_text(template, variables)
    if isinstance(template, list):
        return [render_payload(item, variables) for item in template]
    if isinstance(template, dict):
        return {key: render_payload(value, variables) for key, value in template.items()}
    return template


def as_message(rendered: Any) -> dict[str, Any]:
    if isinstance(rendered, dict):
        return rendered
    return {"content": str(rendered)}


def _unix(ts_utc: datetime) -> int:
    return int(normalize_utc(ts_utc).timestamp())


def build_warning_variables(
    *,
    config: RoleTrackingConfig,
    deadline_at: datetime,
    time_remaining_ms: int,
    patrol_ms: int,
) -> dict[str, object]:
    deadline_ts = _unix(deadline_at)
    return {
        "roleName": config.role_name,
        "timeRemaining": format_duration_ms(time_remaining_ms),
        "deadlineDate": f"<t:{deadline_ts}:D>",
        "deadlineDateTime": f"<t:{deadline_ts}:f>",
        "deadlineTimestamp": f"<t:{deadline_ts}:R>",
        "patrolTime": int(patrol_ms),
        "patrolTimeHours": f"{patrol_ms / MS_PER_HOUR:.1f}",
        "patrolTimeFormatted": format_duration_ms(patrol_ms),
    }


def build_staff_ping_variables(
    *,
    config: RoleTrackingConfig,
    role_id: str,
    user_id: str,
    user_name: str,
    assigned_at: datetime,
    deadline_ms: int,
    elapsed_ms: int,
    patrol_ms: int,
    now_utc: datetime,
) -> dict[str, object]:
    assigned_ts = _unix(assigned_at)
    deadline_ts = assigned_ts + deadline_ms // 1000
    overdue_ms = elapsed_ms - deadline_ms
    patrol_hours = patrol_ms / MS_PER_HOUR
    threshold = config.patrol_time_threshold_hours
    if threshold is None:
        threshold_status = "N/A"
        threshold_display = "Not set"
    else:
        threshold_status = "Met" if patrol_hours >= threshold else "Not Met"
        threshold_display = f"{threshold:g} hours ({threshold_status})"
    inactivity_ms = max(0, elapsed_ms - patrol_ms)
    inactivity_percentage = f"{inactivity_ms / elapsed_ms * 100:.1f}" if elapsed_ms > 0 else "0.0"

    return {
        "userMention": f"<@{user_id}>",
        "userId": user_id,
        "userName": user_name,
        "roleName": config.role_name,
        "roleId": role_id,
        "patrolTimeHours": f"{patrol_hours:.2f}",
        "patrolTimeFormatted": format_duration_ms(patrol_ms),
        "patrolTimeMs": str(int(patrol_ms)),
        "timeSinceAssignment": format_duration_ms(elapsed_ms),
        "timeSinceAssignmentMs": str(int(elapsed_ms)),
        "assignmentDate": f"<t:{assigned_ts}:D>",
        "assignmentDateTime": f"<t:{assigned_ts}:f>",
        "assignmentTimestamp": f"<t:{assigned_ts}:R>",
        "deadlineDate": f"<t:{deadline_ts}:D>",
        "deadlineDateTime": f"<t:{deadline_ts}:f>",
        "deadlineTimestamp": f"<t:{deadline_ts}:R>",
        "deadlineDuration": config.deadline_duration,
        "timeOverdue": format_duration_ms(overdue_ms) if overdue_ms > 0 else "0 seconds",
        "timeOverdueMs": str(max(0, int(overdue_ms))),
        "thresholdHours": f"{threshold:g}" if threshold is not None else "Not set",
        "thresholdDisplay": threshold_display,
        "thresholdStatus": threshold_status,
        "inactivityTime": format_duration_ms(inactivity_ms),
        "inactivityTimeMs": str(int(inactivity_ms)),
        "inactivityPercentage": inactivity_percentage,
        "timestamp": normalize_utc(now_utc).isoformat(),
    }
