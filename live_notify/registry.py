from __future__ import annotations

import asyncio
import re

from .helix import ChannelNotFound, UpstreamAPIError
from .reconcile import SubscriptionReconciler
from .runlog import EventLog
from .state import SessionCell
from .store import DuplicateStream, StreamStore

MAX_CHANNEL_NAME_LEN = 25
_CHANNEL_NAME_RE = re.compile(r"^[a-z0-9_]+$")

HELP_TEXT = """**Stream Notification Bot**

**Commands** (Server owner only):

`!addstream <channel>` - Monitor a Twitch channel
`!addstream <channel> <message>` - Monitor with custom notification
`!removestream <channel>` - Stop monitoring a channel
`!liststreams` - View monitored channels
`!helpstream` - Show this help message

**Custom Messages:**
Use `{channel}` for streamer name and `{url}` for stream link.

**Example:**
`!addstream mychannel {channel} is live! {url}`"""


def normalize_channel_name(raw: str) -> str:
    return raw.strip().lower()


def is_valid_channel_name(name: str) -> bool:
    if not name or len(name) > MAX_CHANNEL_NAME_LEN:
        return False
    return _CHANNEL_NAME_RE.match(name) is not None


class StreamRegistry:
    """Add/remove/list operations behind the chat commands.

    Every method returns the reply text the bot posts back. Storage errors
    propagate so the caller can report a failed command.
    """

    def __init__(
        self,
        *,
        store: StreamStore,
        reconciler: SubscriptionReconciler,
        session_cell: SessionCell,
        event_log: EventLog,
        max_streams_per_user: int = 3,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._session_cell = session_cell
        self._log = event_log
        self._max_streams_per_user = max_streams_per_user

    async def add_stream(
        self,
        user_id: str,
        destination: str,
        channel_name: str,
        custom_message: str | None = None,
    ) -> str:
        channel = normalize_channel_name(channel_name)
        if not is_valid_channel_name(channel):
            return (
                "Invalid channel name. Must be alphanumeric or underscores, "
                f"max {MAX_CHANNEL_NAME_LEN} characters."
            )
        count = await asyncio.to_thread(self._store.count_user_streams, user_id)
        if count >= self._max_streams_per_user:
            return f"You have reached the maximum limit of {self._max_streams_per_user} streams."
        try:
            await self._reconciler.resolve(channel)
        except ChannelNotFound:
            return f"Twitch channel '{channel}' not found."
        except UpstreamAPIError as exc:
            self._log.write("channel_validate_fail", channel=channel, error=exc)
            return "Failed to validate channel with Twitch API."
        message = custom_message.strip() if custom_message else None
        try:
            await asyncio.to_thread(
                self._store.add_stream, user_id, channel, destination, message or None
            )
        except DuplicateStream:
            return "This channel is already added in this server."
        self._log.write("stream_added", channel=channel, destination=destination, user_id=user_id)
        session_id = self._session_cell.live_session_id()
        if session_id is None:
            self._log.write("subscribe_deferred", channel=channel, reason="session_not_ready")
        else:
            try:
                await self._reconciler.subscribe_one(channel, session_id)
            except UpstreamAPIError as exc:
                self._log.write("subscribe_one_fail", channel=channel, error=exc)
        if message:
            return f"Added channel: {channel} (with custom message)"
        return f"Added channel: {channel}"

    async def remove_stream(self, user_id: str, destination: str, channel_name: str) -> str:
        channel = normalize_channel_name(channel_name)
        owner = await asyncio.to_thread(self._store.stream_owner, channel, destination)
        if owner is None:
            return f"Stream {channel} not found in this channel."
        if owner != user_id:
            return "You can only remove streams you added."
        deleted = await asyncio.to_thread(self._store.delete_stream, user_id, channel, destination)
        if not deleted:
            return "Stream not found."
        remaining = await asyncio.to_thread(self._store.count_recipients, channel)
        if remaining == 0:
            await self._reconciler.unsubscribe_one(channel)
        self._log.write("stream_removed", channel=channel, destination=destination, remaining=remaining)
        return f"Removed channel: {channel}"

    async def list_streams(self, destination: str) -> str:
        streams = await asyncio.to_thread(self._store.list_streams_for_destination, destination)
        if not streams:
            return "No streams configured for this channel."
        lines = [f"**Streams in this channel ({len(streams)}):**"]
        for stream in streams:
            marker = " (custom message)" if stream.custom_message else ""
            lines.append(f"- {stream.channel_name}{marker}")
        return "\n".join(lines) + "\n"

    def help_text(self) -> str:
        return HELP_TEXT
