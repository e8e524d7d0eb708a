from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_STAFF_PING_MESSAGE = (
    "{userMention} has reached the {deadlineDuration} deadline for the {roleName} role. "
    "Patrol time since assignment: {patrolTimeHours} hours (threshold: {thresholdDisplay})."
)


class WarningConfig(BaseModel):
    index: int
    offset: str
    type: Literal["warning"] = "warning"
    message: str = ""
    custom_message: dict[str, Any] | None = None

    model_config = ConfigDict(extra="ignore")


class RoleTrackingConfig(BaseModel):
    enabled: bool = True
    role_name: str
    deadline_duration: str
    conditions: list[str] = Field(default_factory=list)
    patrol_time_threshold_hours: float | None = None
    warnings: list[WarningConfig] = Field(default_factory=list)
    staff_ping_offset: str | None = None
    staff_ping_message: str | dict[str, Any] = DEFAULT_STAFF_PING_MESSAGE
    custom_staff_ping_message: dict[str, Any] | None = None
    staff_channel_id: str | None = None
    staff_ping_channel_id: str | None = None
    staff_ping_role_ids: list[str] | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("conditions", mode="before")
    @classmethod
    def _dedupe_conditions(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        seen: list[str] = []
        for item in value:
            normalized = str(item).strip().upper()
            if normalized not in seen:
                seen.append(normalized)
        return seen

    def has_condition(self, condition: str) -> bool:
        return condition in self.conditions


class GuildSettingsUpdate(BaseModel):
    tracked_category_id: str | None = None
    patrol_log_channel_id: str | None = None
    leave_role_id: str | None = None
    leave_notification_channel_id: str | None = None
    role_tracking_staff_channel_id: str | None = None
    staff_role_ids: list[str] | None = None


class GuildSettingsRead(BaseModel):
    guild_id: str
    tracked_category_id: str | None = None
    patrol_log_channel_id: str | None = None
    leave_role_id: str | None = None
    leave_notification_channel_id: str | None = None
    role_tracking_staff_channel_id: str | None = None
    staff_role_ids: list[str] = Field(default_factory=list)
    role_tracking_initialized_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class RoleConfigCreateRequest(BaseModel):
    role_name: str = Field(min_length=1, max_length=255)
    deadline_duration: str = Field(min_length=1, max_length=64)
    conditions: list[str] = Field(default_factory=list)
    patrol_time_threshold_hours: float | None = None


class RoleConfigToggleRequest(BaseModel):
    enabled: bool


class RoleConfigThresholdRequest(BaseModel):
    patrol_time_threshold_hours: float | None = None


class RoleConfigConditionsRequest(BaseModel):
    conditions: list[str] = Field(default_factory=list)


class RoleConfigStaffChannelRequest(BaseModel):
    staff_channel_id: str | None = None


class WarningConfigureRequest(BaseModel):
    offset: str = Field(min_length=1, max_length=64)
    message: str = ""
    index: int | None = Field(default=None, ge=0)
    custom_message: dict[str, Any] | None = None


class StaffPingConfigureRequest(BaseModel):
    offset: str | None = None
    message: str | dict[str, Any] | None = None
    channel_id: str | None = None
    role_ids: list[str] | None = None


class PauseResultRead(BaseModel):
    ok: bool


class TotalsResetRequest(BaseModel):
    user_id: str | None = None
    year: int | None = Field(default=None, ge=2000, le=9999)
    month: int | None = Field(default=None, ge=1, le=12)


class TotalsResetRead(BaseModel):
    rows_reset: int
    sessions_rebased: int


class TotalsAdjustRequest(BaseModel):
    user_id: str = Field(min_length=1)
    delta_ms: int
    year: int | None = Field(default=None, ge=2000, le=9999)
    month: int | None = Field(default=None, ge=1, le=12)


class TotalsAdjustRead(BaseModel):
    user_id: str
    total_ms: int
    month_total_ms: int
    year: int
    month: int


class LeaderboardEntryRead(BaseModel):
    user_id: str
    total_ms: int


class UserTotalRead(BaseModel):
    user_id: str
    total_ms: int
    year: int | None = None
    month: int | None = None


class TrackedSessionRead(BaseModel):
    user_id: str
    channel_id: str
    started_at: datetime
    elapsed_ms: int


class LedgerPeriodRead(BaseModel):
    year: int
    month: int | None = None
    user_count: int
    total_hours: int


class SweepReportRead(BaseModel):
    guild_id: str
    holders_checked: int
    warnings_sent: int
    warnings_failed: int
    escalations_sent: int
    grace_resets: int
    skipped_on_leave: int
    errors: int


class AssignmentClockResetRequest(BaseModel):
    role_id: str | None = None


class AssignmentClockResetRead(BaseModel):
    assignments_reset: int
    warnings_cleared: int


class RoleSyncRead(BaseModel):
    added: int
    existing: int
    failed: int


class CleanupRead(BaseModel):
    users_removed: int


class WarningHistoryRead(BaseModel):
    id: int
    role_id: str
    warning_type: str
    warning_index: int
    sent_at: datetime
    role_assigned_at: datetime
    assignment_id: int | None = None
