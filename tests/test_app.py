import asyncio
import signal

import pytest

from live_notify.app import _install_signal_handlers, build_components, build_session
from live_notify.config import Config
from live_notify.runlog import EventLog


def _config(tmp_path):
    return Config(
        twitch_bot_token="tok",
        twitch_client_id="cid",
        chat_bot_token="bot",
        db_path=str(tmp_path / "data" / "streams.db"),
        data_dir=str(tmp_path),
        log_echo=False,
    )


def test_build_components_initializes_store(tmp_path):
    components = build_components(_config(tmp_path), event_log=EventLog())
    try:
        assert (tmp_path / "data" / "streams.db").exists()
        assert components.store.get_desired_channels() == set()
        assert components.session_cell.live_session_id() is None
    finally:
        components.close()


@pytest.mark.asyncio
async def test_sigterm_requests_stop(tmp_path):
    log = EventLog()
    components = build_components(_config(tmp_path), event_log=log)
    stop_event = asyncio.Event()
    session = build_session(components, stop_event)
    assert session.stop_event is stop_event
    loop = asyncio.get_running_loop()
    _install_signal_handlers(session, log)
    try:
        signal.raise_signal(signal.SIGTERM)
        await asyncio.wait_for(stop_event.wait(), timeout=2)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        components.close()
    assert log.records("stop_requested")[0]["signal"] == "SIGTERM"
