from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from patrol.errors import TransientDeliveryError

MessagePayload = dict[str, Any]


@dataclass(frozen=True, slots=True)
class Occupant:
    user_id: str
    channel_id: str
    is_bot: bool = False


@dataclass(frozen=True, slots=True)
class MemberInfo:
    user_id: str
    display_name: str
    role_ids: frozenset[str] = field(default_factory=frozenset)
    is_bot: bool = False


@dataclass(frozen=True, slots=True)
class LeaveStatus:
    assigned_until: datetime | None = None
    notifications_paused: bool = False


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    success: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> DeliveryResult:
        return cls(success=True)

    @classmethod
    def failed(cls, error: str) -> DeliveryResult:
        return cls(success=False, error=error)


@dataclass(frozen=True, slots=True)
class SessionCompletion:
    guild_id: str
    user_id: str
    channel_id: str | None
    started_at: datetime
    ended_at: datetime
    duration_ms: int


class PlatformGateway(Protocol):
    async def get_channel_parent_id(self, guild_id: str, channel_id: str) -> str | None: ...

    async def list_tracked_occupants(self, guild_id: str, category_id: str) -> list[Occupant]: ...

    async def resolve_member(self, guild_id: str, user_id: str) -> MemberInfo | None: ...

    async def is_member(self, guild_id: str, user_id: str) -> bool: ...

    async def list_role_holders(self, guild_id: str, role_id: str) -> list[MemberInfo]: ...


class LeaveLookup(Protocol):
    async def get_active_leave(self, guild_id: str, user_id: str) -> LeaveStatus | None: ...


class Messenger(Protocol):
    async def send_direct(self, user_id: str, payload: MessagePayload) -> DeliveryResult: ...

    async def send_to_channel(
        self,
        channel_id: str,
        payload: MessagePayload,
        *,
        mention_role_ids: Sequence[str] = (),
        mention_here: bool = False,
    ) -> DeliveryResult: ...


SessionCompletedCallback = Callable[[SessionCompletion], Awaitable[None]]
PromotionCheckCallback = Callable[[str, str], Awaitable[None]]


class NoLeaveLookup:
    async def get_active_leave(self, guild_id: str, user_id: str) -> LeaveStatus | None:
        return None


async def deliver_direct(messenger: Messenger, user_id: str, payload: MessagePayload) -> DeliveryResult:
    try:
        return await messenger.send_direct(user_id, payload)
    except TransientDeliveryError as exc:
        return DeliveryResult.failed(exc.reason)


async def deliver_to_channel(
    messenger: Messenger,
    channel_id: str,
    payload: MessagePayload,
    *,
    mention_role_ids: Sequence[str] = (),
    mention_here: bool = False,
) -> DeliveryResult:
    try:
        return await messenger.send_to_channel(
            channel_id,
            payload,
            mention_role_ids=mention_role_ids,
            mention_here=mention_here,
        )
    except TransientDeliveryError as exc:
        return DeliveryResult.failed(exc.reason)
