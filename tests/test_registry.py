import pytest

from live_notify.helix import ChannelNotFound, UpstreamAPIError
from live_notify.registry import HELP_TEXT, StreamRegistry, is_valid_channel_name
from live_notify.runlog import EventLog
from live_notify.state import SessionCell
from live_notify.store import StreamStore


class FakeReconciler:
    def __init__(self, known=("foo", "bar", "baz", "qux"), *, resolve_error=None):
        self.known = set(known)
        self.resolve_error = resolve_error
        self.subscribed = []
        self.unsubscribed = []

    async def resolve(self, channel):
        if self.resolve_error is not None:
            raise self.resolve_error
        if channel not in self.known:
            raise ChannelNotFound(f"channel {channel} not found")
        return f"id-{channel}"

    async def subscribe_one(self, channel, session_id):
        self.subscribed.append((channel, session_id))
        return f"id-{channel}"

    async def unsubscribe_one(self, channel):
        self.unsubscribed.append(channel)
        return 2


@pytest.fixture
def store(tmp_path):
    st = StreamStore(tmp_path / "streams.db")
    st.initialize()
    return st


def _registry(store, reconciler=None, *, session_id="s1", limit=3, log=None):
    cell = SessionCell()
    if session_id is not None:
        cell.replace(session_id)
    registry = StreamRegistry(
        store=store,
        reconciler=reconciler or FakeReconciler(),
        session_cell=cell,
        event_log=log or EventLog(),
        max_streams_per_user=limit,
    )
    return registry


@pytest.mark.parametrize(
    "name,valid",
    [("foo_bar9", True), ("", False), ("a" * 26, False), ("a" * 25, True), ("bad-name", False)],
)
def test_channel_name_validation(name, valid):
    assert is_valid_channel_name(name) is valid


@pytest.mark.asyncio
async def test_add_stream_subscribes_with_live_session(store):
    reconciler = FakeReconciler()
    registry = _registry(store, reconciler)
    reply = await registry.add_stream("u1", "dest", "  Foo ")
    assert reply == "Added channel: foo"
    assert store.get_desired_channels() == {"foo"}
    assert reconciler.subscribed == [("foo", "s1")]


@pytest.mark.asyncio
async def test_add_stream_with_custom_message(store):
    registry = _registry(store)
    reply = await registry.add_stream("u1", "dest", "foo", "{channel} is up {url}")
    assert reply == "Added channel: foo (with custom message)"
    assert store.get_recipients("foo")[0].custom_template == "{channel} is up {url}"


@pytest.mark.asyncio
async def test_add_stream_without_session_defers_subscription(store):
    reconciler = FakeReconciler()
    log = EventLog()
    registry = _registry(store, reconciler, session_id=None, log=log)
    assert await registry.add_stream("u1", "dest", "foo") == "Added channel: foo"
    assert reconciler.subscribed == []
    assert len(log.records("subscribe_deferred")) == 1


@pytest.mark.asyncio
async def test_add_stream_rejections(store):
    registry = _registry(store, limit=2)
    assert (await registry.add_stream("u1", "dest", "bad name")).startswith("Invalid channel name")
    assert await registry.add_stream("u1", "dest", "ghost") == "Twitch channel 'ghost' not found."
    await registry.add_stream("u1", "dest", "foo")
    assert (
        await registry.add_stream("u2", "dest", "foo") == "Added channel: foo"
    )
    assert (
        await registry.add_stream("u1", "dest", "foo")
        == "This channel is already added in this server."
    )
    await registry.add_stream("u1", "dest", "bar")
    assert (
        await registry.add_stream("u1", "dest", "baz")
        == "You have reached the maximum limit of 2 streams."
    )


@pytest.mark.asyncio
async def test_add_stream_upstream_failure(store):
    registry = _registry(store, FakeReconciler(resolve_error=UpstreamAPIError("down")))
    assert await registry.add_stream("u1", "dest", "foo") == (
        "Failed to validate channel with Twitch API."
    )
    assert store.get_desired_channels() == set()


@pytest.mark.asyncio
async def test_remove_stream_unsubscribes_last_recipient(store):
    reconciler = FakeReconciler()
    registry = _registry(store, reconciler)
    await registry.add_stream("u1", "dest-a", "foo")
    await registry.add_stream("u2", "dest-b", "foo")
    assert await registry.remove_stream("u2", "dest-a", "foo") == (
        "You can only remove streams you added."
    )
    assert await registry.remove_stream("u1", "dest-a", "foo") == "Removed channel: foo"
    assert reconciler.unsubscribed == []
    assert await registry.remove_stream("u2", "dest-b", "FOO") == "Removed channel: foo"
    assert reconciler.unsubscribed == ["foo"]
    assert await registry.remove_stream("u2", "dest-b", "foo") == (
        "Stream foo not found in this channel."
    )


@pytest.mark.asyncio
async def test_list_streams(store):
    registry = _registry(store)
    assert await registry.list_streams("dest") == "No streams configured for this channel."
    await registry.add_stream("u1", "dest", "foo")
    await registry.add_stream("u1", "dest", "bar", "custom {url}")
    assert await registry.list_streams("dest") == (
        "**Streams in this channel (2):**\n- foo\n- bar (custom message)\n"
    )


def test_help_text():
    registry = _registry(StreamStore(":memory:"))
    assert registry.help_text() == HELP_TEXT
    assert "!addstream" in HELP_TEXT
