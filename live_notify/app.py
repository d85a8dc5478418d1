from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass

from .config import Config
from .helix import HelixClient
from .notifier import ChatNotifier, NotificationDispatcher
from .reconcile import SubscriptionReconciler
from .registry import StreamRegistry
from .runlog import EventLog
from .session import EventSubSession
from .state import OnlineTracker, SessionCell
from .store import StreamStore


@dataclass
class Components:
    config: Config
    event_log: EventLog
    store: StreamStore
    helix: HelixClient
    notifier: ChatNotifier
    session_cell: SessionCell
    tracker: OnlineTracker
    reconciler: SubscriptionReconciler
    dispatcher: NotificationDispatcher
    registry: StreamRegistry

    def close(self) -> None:
        self.helix.close()
        self.notifier.close()


def build_components(config: Config, *, event_log: EventLog | None = None) -> Components:
    log = event_log or EventLog(
        config.data_dir,
        log_rotate_mb=config.log_rotate_mb,
        log_rotate_keep=config.log_rotate_keep,
        echo=config.log_echo,
    )
    store = StreamStore(config.db_path)
    store.initialize()
    helix = HelixClient(
        base_url=config.helix_base_url,
        token=config.twitch_bot_token,
        client_id=config.twitch_client_id,
        timeout=config.rest_timeout,
    )
    notifier = ChatNotifier(
        base_url=config.chat_api_base_url,
        bot_token=config.chat_bot_token,
        timeout=config.rest_timeout,
    )
    session_cell = SessionCell()
    tracker = OnlineTracker()
    reconciler = SubscriptionReconciler(
        helix=helix,
        store=store,
        event_log=log,
        max_retries=config.api_max_retries,
        retry_base_delay_seconds=config.api_retry_base_delay_seconds,
        rate_limit_delay_seconds=config.rate_limit_delay_seconds,
    )
    dispatcher = NotificationDispatcher(
        store=store,
        notifier=notifier,
        event_log=log,
        stream_url_base=config.stream_url_base,
    )
    registry = StreamRegistry(
        store=store,
        reconciler=reconciler,
        session_cell=session_cell,
        event_log=log,
        max_streams_per_user=config.max_streams_per_user,
    )
    return Components(
        config=config,
        event_log=log,
        store=store,
        helix=helix,
        notifier=notifier,
        session_cell=session_cell,
        tracker=tracker,
        reconciler=reconciler,
        dispatcher=dispatcher,
        registry=registry,
    )


def build_session(components: Components, stop_event: asyncio.Event | None = None) -> EventSubSession:
    return EventSubSession(
        config=components.config,
        store=components.store,
        reconciler=components.reconciler,
        dispatcher=components.dispatcher,
        tracker=components.tracker,
        session_cell=components.session_cell,
        event_log=components.event_log,
        stop_event=stop_event,
    )


def _install_signal_handlers(session: EventSubSession, event_log: EventLog) -> None:
    loop = asyncio.get_running_loop()

    def _request_stop(sig: signal.Signals) -> None:
        if session.stop_event.is_set():
            return
        event_log.write("stop_requested", signal=sig.name)
        loop.call_soon_threadsafe(session.stop_event.set)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig)
        except (NotImplementedError, RuntimeError):
            try:
                signal.signal(sig, lambda *_args, _sig=sig: _request_stop(_sig))
            except (ValueError, AttributeError):
                continue


async def run_service(config: Config) -> int:
    components = build_components(config)
    session = build_session(components)
    _install_signal_handlers(session, components.event_log)
    components.event_log.write(
        "startup",
        eventsub_ws_url=config.eventsub_ws_url,
        db_path=config.db_path,
        max_streams_per_user=config.max_streams_per_user,
    )
    try:
        await session.run()
    finally:
        components.close()
    return 0
