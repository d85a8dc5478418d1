from datetime import datetime, timezone

import pytest

from live_notify.store import DuplicateStream, NotificationRecipient, StorageError, StreamStore


@pytest.fixture
def store(tmp_path):
    st = StreamStore(tmp_path / "db" / "streams.db")
    st.initialize()
    return st


def test_initialize_is_idempotent(store):
    store.initialize()
    assert store.get_desired_channels() == set()


def test_desired_channels_are_distinct_and_lowercase(store):
    store.add_stream("u1", "Foo", "dest-a")
    store.add_stream("u2", "foo", "dest-b")
    store.add_stream("u1", "bar", "dest-a")
    assert store.get_desired_channels() == {"foo", "bar"}


def test_recipients_carry_templates_in_insert_order(store):
    store.add_stream("u1", "foo", "dest-a")
    store.add_stream("u2", "foo", "dest-b", "{channel} went live: {url}")
    assert store.get_recipients("FOO") == [
        NotificationRecipient("dest-a", "u1", None),
        NotificationRecipient("dest-b", "u2", "{channel} went live: {url}"),
    ]
    assert store.get_recipients("nobody") == []


def test_duplicate_stream_rejected(store):
    store.add_stream("u1", "foo", "dest-a")
    with pytest.raises(DuplicateStream):
        store.add_stream("u1", "foo", "dest-a")
    assert issubclass(DuplicateStream, StorageError)


def test_remove_channel_drops_every_row(store):
    store.add_stream("u1", "foo", "dest-a")
    store.add_stream("u2", "foo", "dest-b")
    store.add_stream("u2", "bar", "dest-b")
    assert store.remove_channel("foo") == 2
    assert store.get_desired_channels() == {"bar"}
    assert store.remove_channel("foo") == 0


def test_counts_owner_and_delete(store):
    store.add_stream("u1", "foo", "dest-a")
    store.add_stream("u1", "bar", "dest-a")
    store.add_stream("u2", "foo", "dest-b")
    assert store.count_user_streams("u1") == 2
    assert store.count_recipients("foo") == 2
    assert store.stream_owner("foo", "dest-b") == "u2"
    assert store.stream_owner("foo", "dest-c") is None
    assert store.delete_stream("u1", "foo", "dest-b") is False
    assert store.delete_stream("u2", "foo", "dest-b") is True
    assert store.count_recipients("foo") == 1


def test_list_streams_for_destination(store):
    added_at = datetime(2024, 1, 2, tzinfo=timezone.utc)
    store.add_stream("u1", "foo", "dest-a", now=added_at)
    store.add_stream("u2", "bar", "dest-a", "hi {url}", now=added_at)
    store.add_stream("u2", "baz", "dest-b", now=added_at)
    records = store.list_streams_for_destination("dest-a")
    assert [r.channel_name for r in records] == ["foo", "bar"]
    assert records[0].date == added_at.isoformat()
    assert records[1].custom_message == "hi {url}"


def test_unopenable_database_raises_storage_error(tmp_path):
    target = tmp_path / "dir-not-db"
    target.mkdir()
    with pytest.raises(StorageError):
        StreamStore(target).get_desired_channels()
