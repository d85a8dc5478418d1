from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Protocol

from .backoff import retry_with_backoff
from .helix import (
    EVENT_STREAM_OFFLINE,
    EVENT_STREAM_ONLINE,
    ChannelNotFound,
    SubscriptionInfo,
    UpstreamAPIError,
)
from .runlog import EventLog
from .store import StorageError

SUBSCRIPTION_ENABLED = "enabled"


class HelixAPI(Protocol):
    def resolve(self, login: str) -> str | None: ...

    def create_subscription(self, event_type: str, broadcaster_id: str, session_id: str) -> None: ...

    def list_subscriptions(
        self, *, event_type: str | None = None, user_id: str | None = None
    ) -> list[SubscriptionInfo]: ...

    def delete_subscription(self, subscription_id: str) -> None: ...


class ChannelStore(Protocol):
    def remove_channel(self, channel: str) -> int: ...


# Subscriptions of a dropped session are still listed with a
# websocket_disconnected status until Twitch purges them.
def _is_live_subscription(sub: SubscriptionInfo, session_id: str | None) -> bool:
    if sub.status == SUBSCRIPTION_ENABLED:
        return True
    return session_id is not None and sub.session_id == session_id


@dataclass
class ReconcileSummary:
    session_id: str
    subscribed: list[str] = field(default_factory=list)
    already_subscribed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_record(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "subscribed": self.subscribed,
            "already_subscribed": self.already_subscribed,
            "removed": self.removed,
            "failed": self.failed,
        }


class SubscriptionReconciler:
    """Keeps upstream stream.online/stream.offline subscriptions in line with
    the desired channel set.

    Every Helix call runs in a worker thread and is wrapped in
    :func:`retry_with_backoff`. Channels whose broadcaster id cannot be
    resolved are deleted from the store. Only the online subscription is
    checked before creating both types, so a lost offline subscription is
    not recreated while its online twin still exists.
    """

    def __init__(
        self,
        *,
        helix: HelixAPI,
        store: ChannelStore,
        event_log: EventLog,
        max_retries: int = 3,
        retry_base_delay_seconds: float = 0.1,
        rate_limit_delay_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._helix = helix
        self._store = store
        self._log = event_log
        self._max_retries = max_retries
        self._retry_base_delay_seconds = retry_base_delay_seconds
        self._rate_limit_delay_seconds = rate_limit_delay_seconds
        self._sleep = sleep

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await retry_with_backoff(
            lambda: asyncio.to_thread(func, *args, **kwargs),
            self._max_retries,
            base_delay_seconds=self._retry_base_delay_seconds,
            sleep=self._sleep,
        )

    async def resolve(self, channel: str) -> str:
        broadcaster_id = await self._call(self._helix.resolve, channel)
        if broadcaster_id is None:
            raise ChannelNotFound(f"channel {channel} not found")
        return broadcaster_id

    async def is_subscribed(self, broadcaster_id: str, session_id: str | None = None) -> bool:
        try:
            subscriptions = await self._call(
                self._helix.list_subscriptions,
                event_type=EVENT_STREAM_ONLINE,
                user_id=broadcaster_id,
            )
        except UpstreamAPIError as exc:
            self._log.write("subscription_check_fail", broadcaster_id=broadcaster_id, error=exc)
            return False
        return any(
            sub.broadcaster_id == broadcaster_id
            and sub.type == EVENT_STREAM_ONLINE
            and _is_live_subscription(sub, session_id)
            for sub in subscriptions
        )

    async def _ensure_subscribed(self, channel: str, broadcaster_id: str, session_id: str) -> bool:
        if await self.is_subscribed(broadcaster_id, session_id):
            self._log.write("subscribe_skip", channel=channel, reason="already_subscribed")
            return False
        failures: list[str] = []
        for event_type in (EVENT_STREAM_ONLINE, EVENT_STREAM_OFFLINE):
            try:
                await self._call(
                    self._helix.create_subscription, event_type, broadcaster_id, session_id
                )
            except UpstreamAPIError as exc:
                failures.append(event_type)
                self._log.write(
                    "subscribe_fail",
                    channel=channel,
                    event_type=event_type,
                    status_code=exc.status_code,
                    error=exc,
                )
                continue
            self._log.write("subscribe_ok", channel=channel, event_type=event_type)
        if failures:
            raise UpstreamAPIError(f"subscribe failed for {channel}: {','.join(failures)}")
        return True

    async def subscribe_one(self, channel: str, session_id: str) -> str:
        broadcaster_id = await self.resolve(channel)
        await self._ensure_subscribed(channel, broadcaster_id, session_id)
        return broadcaster_id

    async def unsubscribe_one(self, channel: str) -> int:
        try:
            broadcaster_id = await self.resolve(channel)
        except UpstreamAPIError as exc:
            self._log.write("unsubscribe_fail", channel=channel, stage="resolve", error=exc)
            return 0
        try:
            subscriptions = await self._call(self._helix.list_subscriptions)
        except UpstreamAPIError as exc:
            self._log.write("unsubscribe_fail", channel=channel, stage="list", error=exc)
            return 0
        deleted = 0
        for sub in subscriptions:
            if sub.broadcaster_id != broadcaster_id:
                continue
            try:
                await self._call(self._helix.delete_subscription, sub.id)
            except UpstreamAPIError as exc:
                self._log.write(
                    "unsubscribe_fail",
                    channel=channel,
                    stage="delete",
                    subscription_id=sub.id,
                    error=exc,
                )
                continue
            deleted += 1
        self._log.write("unsubscribe", channel=channel, deleted=deleted)
        return deleted

    async def _drop_channel(self, channel: str, exc: UpstreamAPIError) -> bool:
        self._log.write("channel_unresolved", channel=channel, error=exc)
        try:
            rows = await asyncio.to_thread(self._store.remove_channel, channel)
        except StorageError as store_exc:
            self._log.write("channel_remove_fail", channel=channel, error=store_exc)
            return False
        self._log.write("channel_removed", channel=channel, rows=rows)
        return True

    async def reconcile(self, desired_channels: Iterable[str], session_id: str) -> ReconcileSummary:
        channels = sorted({channel.lower() for channel in desired_channels})
        summary = ReconcileSummary(session_id=session_id)
        self._log.write("reconcile_start", session_id=session_id, channels=len(channels))
        for index, channel in enumerate(channels):
            if index > 0:
                await self._sleep(self._rate_limit_delay_seconds)
            try:
                broadcaster_id = await self.resolve(channel)
            except UpstreamAPIError as exc:
                if await self._drop_channel(channel, exc):
                    summary.removed.append(channel)
                else:
                    summary.failed.append(channel)
                continue
            try:
                created = await self._ensure_subscribed(channel, broadcaster_id, session_id)
            except UpstreamAPIError:
                summary.failed.append(channel)
                continue
            if created:
                summary.subscribed.append(channel)
            else:
                summary.already_subscribed.append(channel)
        self._log.write("reconcile_done", **summary.as_record())
        return summary
