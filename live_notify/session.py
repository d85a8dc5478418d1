from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import websockets

from .backoff import ReconnectPolicy
from .config import Config
from .eventsub_decode import (
    MSG_NOTIFICATION,
    MSG_REVOCATION,
    MSG_SESSION_KEEPALIVE,
    MSG_SESSION_RECONNECT,
    MSG_SESSION_WELCOME,
    EventSubFrame,
    ProtocolError,
    StreamOffline,
    StreamOnline,
    decode_frame,
    parse_notification,
    parse_reconnect,
    parse_revocation,
    parse_welcome,
)
from .notifier import NotificationDispatcher
from .reconcile import SubscriptionReconciler
from .runlog import EventLog
from .state import OnlineTracker, SessionCell

CONNECT_SUPPORTS_CLOSE_TIMEOUT = (
    "close_timeout" in inspect.signature(websockets.connect).parameters
)
DEFAULT_WS_CLOSE_TIMEOUT_SECONDS = 5.0
RECV_POLL_SECONDS = 1.0


class TransportError(RuntimeError):
    pass


class _DataIdleTimeout(TransportError):
    pass


class SessionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WELCOMED = "welcomed"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class DesiredChannelSource(Protocol):
    def get_desired_channels(self) -> set[str]: ...


@dataclass(slots=True)
class SessionStats:
    connections: int = 0
    reconnects: int = 0
    redirects: int = 0
    frames: int = 0
    protocol_errors: int = 0
    notifications: int = 0


def _normalize_keepalive(config: Config) -> tuple[float | None, float | None, float | None]:
    ping_interval = config.ws_ping_interval_seconds
    if ping_interval <= 0:
        ping_interval = None
    ping_timeout = config.ws_ping_timeout_seconds
    if ping_timeout <= 0:
        ping_timeout = None
    data_idle_reconnect = config.ws_data_idle_reconnect_seconds
    if data_idle_reconnect <= 0:
        data_idle_reconnect = None
    return ping_interval, ping_timeout, data_idle_reconnect


def _extract_close_details(exc: BaseException) -> tuple[int | None, str | None, bool | None]:
    cause = exc.__cause__ if exc.__cause__ is not None else exc
    if isinstance(cause, websockets.exceptions.ConnectionClosedOK):
        return getattr(cause, "code", None), getattr(cause, "reason", None), True
    if isinstance(cause, websockets.exceptions.ConnectionClosed):
        return getattr(cause, "code", None), getattr(cause, "reason", None), False
    return None, None, None


def _classify_reconnect_trigger(exc: BaseException) -> str:
    if isinstance(exc, _DataIdleTimeout):
        return "data_idle_timeout"
    cause = exc.__cause__ if exc.__cause__ is not None else exc
    if isinstance(cause, websockets.exceptions.ConnectionClosed):
        return "closed"
    if isinstance(cause, OSError):
        return "connect_failed"
    return "exception"


class EventSubSession:
    """Owns the EventSub WebSocket.

    One connection at a time. Each connection must be welcomed before its
    notifications are acted on; the welcome stores the session identity and
    triggers a reconciliation pass. A ``session_reconnect`` redirect is
    followed once, immediately; any other disconnect waits
    ``ws_reconnect_delay_seconds`` and dials the default URL again.
    """

    def __init__(
        self,
        *,
        config: Config,
        store: DesiredChannelSource,
        reconciler: SubscriptionReconciler,
        dispatcher: NotificationDispatcher,
        tracker: OnlineTracker,
        session_cell: SessionCell,
        event_log: EventLog,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._reconciler = reconciler
        self._dispatcher = dispatcher
        self._tracker = tracker
        self._session_cell = session_cell
        self._log = event_log
        self._stop_event = stop_event or asyncio.Event()
        self.phase = SessionPhase.DISCONNECTED
        self.stats = SessionStats()

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    def stop(self) -> None:
        self._stop_event.set()

    def _connect_kwargs(self) -> dict[str, Any]:
        ping_interval, ping_timeout, _idle = _normalize_keepalive(self._config)
        connect_kwargs: dict[str, Any] = {
            "ping_interval": ping_interval,
            "ping_timeout": ping_timeout,
        }
        if CONNECT_SUPPORTS_CLOSE_TIMEOUT:
            connect_kwargs["close_timeout"] = DEFAULT_WS_CLOSE_TIMEOUT_SECONDS
        return connect_kwargs

    async def _wait_for_stop(self, timeout: float) -> None:
        if timeout <= 0:
            await asyncio.sleep(0)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)

    async def run(self) -> None:
        reconnect_policy = ReconnectPolicy(delay_seconds=self._config.ws_reconnect_delay_seconds)
        # One-shot redirect target; never outlives the next attempt.
        next_url: str | None = None
        while not self._stop_event.is_set():
            url = next_url or self._config.eventsub_ws_url
            next_url = None
            self.phase = SessionPhase.CONNECTING
            failure: Exception | None = None
            try:
                next_url = await self._run_connection(url)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failure = exc
            self._session_cell.mark_down()
            if self._stop_event.is_set():
                break
            if next_url is not None:
                self.phase = SessionPhase.RECONNECTING
                self.stats.redirects += 1
                self._log.write("session_reconnect", from_url=url, to_url=next_url)
                continue
            self.phase = SessionPhase.DISCONNECTED
            self.stats.reconnects += 1
            close_code, close_reason, close_was_clean = (
                _extract_close_details(failure) if failure is not None else (None, None, None)
            )
            self._log.write(
                "reconnect",
                ws_url=url,
                reason=type(failure).__name__ if failure is not None else "closed",
                trigger=_classify_reconnect_trigger(failure) if failure is not None else "closed",
                error=str(failure) if failure is not None else None,
                close_code=close_code,
                close_reason=close_reason,
                close_was_clean=close_was_clean,
                reconnects=self.stats.reconnects,
                delay_seconds=reconnect_policy.backoff(),
            )
            await self._wait_for_stop(reconnect_policy.backoff())
        self.phase = SessionPhase.STOPPED
        self._log.write("stop", connections=self.stats.connections, frames=self.stats.frames)

    async def _run_connection(self, url: str) -> str | None:
        try:
            async with websockets.connect(url, **self._connect_kwargs()) as ws:
                self.stats.connections += 1
                # Live state is scoped to a single connection.
                self._tracker.reset()
                self._log.write("ws_connect", ws_url=url, connections=self.stats.connections)
                return await self._read_loop(ws)
        except (TransportError, asyncio.CancelledError):
            raise
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

    async def _read_loop(self, ws: Any) -> str | None:
        _ping_interval, _ping_timeout, data_idle_reconnect = _normalize_keepalive(self._config)
        welcomed = False
        last_rx = time.monotonic()
        while not self._stop_event.is_set():
            recv_timeout = RECV_POLL_SECONDS
            if data_idle_reconnect is not None:
                remaining = data_idle_reconnect - (time.monotonic() - last_rx)
                if remaining <= 0:
                    raise _DataIdleTimeout("data idle timeout")
                recv_timeout = min(recv_timeout, remaining)
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=recv_timeout)
            except asyncio.TimeoutError:
                continue
            self.stats.frames += 1
            try:
                frame = decode_frame(raw)
                if frame.message_type == MSG_SESSION_RECONNECT:
                    return parse_reconnect(frame.payload).reconnect_url
                welcomed = await self._handle_frame(frame, welcomed)
            except ProtocolError as exc:
                self.stats.protocol_errors += 1
                self._log.write("protocol_error", error=str(exc))
            last_rx = time.monotonic()
        with contextlib.suppress(Exception):
            await ws.close()
        return None

    async def _handle_frame(self, frame: EventSubFrame, welcomed: bool) -> bool:
        message_type = frame.message_type
        if message_type == MSG_SESSION_WELCOME:
            if welcomed:
                self._log.write("session_welcome_repeat", message_id=frame.message_id)
                return True
            await self._on_welcome(frame)
            return True
        if message_type == MSG_SESSION_KEEPALIVE:
            return welcomed
        if message_type == MSG_NOTIFICATION:
            if not welcomed:
                self._log.write("notification_before_welcome", message_id=frame.message_id)
                return welcomed
            await self._on_notification(frame)
            return welcomed
        if message_type == MSG_REVOCATION:
            revocation = parse_revocation(frame.payload)
            self._log.write(
                "revocation",
                subscription_type=revocation.subscription_type,
                status=revocation.status,
                broadcaster_id=revocation.broadcaster_user_id,
            )
            return welcomed
        self._log.write("unknown_message", message_type=message_type)
        return welcomed

    async def _on_welcome(self, frame: EventSubFrame) -> None:
        welcome = parse_welcome(frame.payload)
        self._session_cell.replace(welcome.session_id)
        self.phase = SessionPhase.WELCOMED
        self._log.write(
            "session_welcome",
            session_id=welcome.session_id,
            keepalive_timeout_seconds=welcome.keepalive_timeout_seconds,
        )
        try:
            desired = await asyncio.to_thread(self._store.get_desired_channels)
            await self._reconciler.reconcile(desired, welcome.session_id)
        except Exception as exc:
            self._log.write("reconcile_fail", session_id=welcome.session_id, error=exc)
        self.phase = SessionPhase.STREAMING

    async def _on_notification(self, frame: EventSubFrame) -> None:
        event = parse_notification(frame.payload)
        if isinstance(event, StreamOnline):
            channel = event.broadcaster_user_login.lower()
            if not self._tracker.mark_online(channel):
                self._log.write("stream_online_duplicate", channel=channel)
                return
            self._log.write(
                "stream_online",
                channel=channel,
                display_name=event.broadcaster_user_name,
            )
            self.stats.notifications += 1
            try:
                await self._dispatcher.dispatch(channel, event.broadcaster_user_name)
            except Exception as exc:
                self._log.write("dispatch_fail", channel=channel, error=exc)
            return
        if isinstance(event, StreamOffline):
            channel = event.broadcaster_user_login.lower()
            self._tracker.mark_offline(channel)
            self._log.write("stream_offline", channel=channel)
            return
        self._log.write("notification_ignored", subscription_type=event.subscription_type)
