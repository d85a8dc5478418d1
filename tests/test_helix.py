import pytest
import requests

from live_notify.helix import (
    EVENT_STREAM_ONLINE,
    HelixClient,
    UpstreamAPIError,
    build_subscription_body,
    parse_subscription,
)


class DummyResp:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class DummySession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []
        self.closed = False

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append(
            {
                "method": method,
                "url": url,
                "params": params,
                "json": json,
                "headers": headers,
                "timeout": timeout,
            }
        )
        resp = self._responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp

    def close(self):
        self.closed = True


def _client(session):
    return HelixClient(
        base_url="https://helix.test/",
        token="tok",
        client_id="cid",
        timeout=3.0,
        session=session,
    )


def _sub(sub_id, broadcaster_id, event_type=EVENT_STREAM_ONLINE):
    return {
        "id": sub_id,
        "type": event_type,
        "status": "enabled",
        "condition": {"broadcaster_user_id": broadcaster_id},
        "transport": {"method": "websocket", "session_id": "s1"},
    }


def test_resolve_returns_first_user_id():
    session = DummySession([DummyResp(payload={"data": [{"id": "123", "login": "foo"}]})])
    client = _client(session)
    assert client.resolve("foo") == "123"
    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://helix.test/users"
    assert call["params"] == {"login": "foo"}
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["headers"]["Client-Id"] == "cid"
    assert call["timeout"] == 3.0


def test_resolve_unknown_login_returns_none():
    session = DummySession([DummyResp(payload={"data": []})])
    assert _client(session).resolve("ghost") is None


def test_non_2xx_maps_to_upstream_error():
    session = DummySession([DummyResp(status_code=401, payload={"message": "bad"})])
    with pytest.raises(UpstreamAPIError) as excinfo:
        _client(session).resolve("foo")
    assert excinfo.value.status_code == 401


def test_transport_error_maps_to_upstream_error():
    session = DummySession([requests.ConnectionError("down")])
    with pytest.raises(UpstreamAPIError) as excinfo:
        _client(session).resolve("foo")
    assert excinfo.value.status_code is None


def test_invalid_json_maps_to_upstream_error():
    session = DummySession([DummyResp(payload=ValueError("nope"))])
    with pytest.raises(UpstreamAPIError):
        _client(session).resolve("foo")


def test_create_subscription_body():
    session = DummySession([DummyResp(status_code=202, payload={"data": []})])
    _client(session).create_subscription("stream.offline", "42", "sess")
    call = session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "https://helix.test/eventsub/subscriptions"
    assert call["json"] == build_subscription_body("stream.offline", "42", "sess")
    assert call["json"]["transport"] == {"method": "websocket", "session_id": "sess"}


def test_list_subscriptions_follows_cursor():
    session = DummySession(
        [
            DummyResp(payload={"data": [_sub("a", "1")], "pagination": {"cursor": "c1"}}),
            DummyResp(payload={"data": [_sub("b", "2"), {"bogus": True}], "pagination": {}}),
        ]
    )
    subs = _client(session).list_subscriptions(event_type=EVENT_STREAM_ONLINE, user_id="1")
    assert [sub.id for sub in subs] == ["a", "b"]
    assert session.calls[0]["params"] == {"type": EVENT_STREAM_ONLINE, "user_id": "1"}
    assert session.calls[1]["params"] == {
        "type": EVENT_STREAM_ONLINE,
        "user_id": "1",
        "after": "c1",
    }


def test_delete_subscription():
    session = DummySession([DummyResp(status_code=204)])
    client = _client(session)
    client.delete_subscription("sub-1")
    assert session.calls[0]["method"] == "DELETE"
    assert session.calls[0]["params"] == {"id": "sub-1"}
    client.close()
    assert session.closed


def test_parse_subscription_rejects_missing_id():
    assert parse_subscription({"type": "stream.online"}) is None
    assert parse_subscription("nope") is None
    parsed = parse_subscription(_sub("x", "9"))
    assert parsed.broadcaster_id == "9"
    assert parsed.session_id == "s1"
