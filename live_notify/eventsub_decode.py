from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import orjson

MSG_SESSION_WELCOME = "session_welcome"
MSG_SESSION_KEEPALIVE = "session_keepalive"
MSG_SESSION_RECONNECT = "session_reconnect"
MSG_NOTIFICATION = "notification"
MSG_REVOCATION = "revocation"

SUB_STREAM_ONLINE = "stream.online"
SUB_STREAM_OFFLINE = "stream.offline"


class ProtocolError(ValueError):
    pass


@dataclass(frozen=True)
class EventSubFrame:
    message_type: str
    message_id: str | None
    payload: dict[str, Any]


@dataclass(frozen=True)
class SessionWelcome:
    session_id: str
    keepalive_timeout_seconds: int | None = None


@dataclass(frozen=True)
class SessionReconnect:
    reconnect_url: str


@dataclass(frozen=True)
class StreamOnline:
    broadcaster_user_id: str | None
    broadcaster_user_login: str
    broadcaster_user_name: str


@dataclass(frozen=True)
class StreamOffline:
    broadcaster_user_id: str | None
    broadcaster_user_login: str


@dataclass(frozen=True)
class OtherNotification:
    subscription_type: str


@dataclass(frozen=True)
class Revocation:
    subscription_type: str
    status: str
    broadcaster_user_id: str | None


def _require_dict(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ProtocolError(f"{what} missing or not an object")
    return value


def _require_str(container: dict[str, Any], key: str, what: str) -> str:
    value = container.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"{what}.{key} missing")
    return value


def _optional_str(container: dict[str, Any], key: str) -> str | None:
    value = container.get(key)
    if value is None:
        return None
    return str(value)


def decode_frame(raw: Any) -> EventSubFrame:
    """Decode one text/binary WebSocket frame into its EventSub envelope."""
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw_payload: bytes | str = bytes(raw)
    elif isinstance(raw, str):
        raw_payload = raw
    else:
        raise ProtocolError(f"unsupported frame type {type(raw).__name__}")
    try:
        envelope = orjson.loads(raw_payload)
    except orjson.JSONDecodeError as exc:
        raise ProtocolError(f"invalid JSON: {exc}") from exc
    envelope = _require_dict(envelope, "envelope")
    metadata = _require_dict(envelope.get("metadata"), "metadata")
    message_type = _require_str(metadata, "message_type", "metadata")
    payload = envelope.get("payload")
    if payload is None:
        payload = {}
    payload = _require_dict(payload, "payload")
    return EventSubFrame(
        message_type=message_type,
        message_id=_optional_str(metadata, "message_id"),
        payload=payload,
    )


def parse_welcome(payload: dict[str, Any]) -> SessionWelcome:
    session = _require_dict(payload.get("session"), "payload.session")
    keepalive = session.get("keepalive_timeout_seconds")
    return SessionWelcome(
        session_id=_require_str(session, "id", "session"),
        keepalive_timeout_seconds=keepalive if isinstance(keepalive, int) else None,
    )


def parse_reconnect(payload: dict[str, Any]) -> SessionReconnect:
    session = _require_dict(payload.get("session"), "payload.session")
    return SessionReconnect(reconnect_url=_require_str(session, "reconnect_url", "session"))


def parse_notification(payload: dict[str, Any]) -> StreamOnline | StreamOffline | OtherNotification:
    subscription = _require_dict(payload.get("subscription"), "payload.subscription")
    event = _require_dict(payload.get("event"), "payload.event")
    sub_type = _require_str(subscription, "type", "subscription")
    if sub_type == SUB_STREAM_ONLINE:
        login = _require_str(event, "broadcaster_user_login", "event")
        return StreamOnline(
            broadcaster_user_id=_optional_str(event, "broadcaster_user_id"),
            broadcaster_user_login=login,
            broadcaster_user_name=_optional_str(event, "broadcaster_user_name") or login,
        )
    if sub_type == SUB_STREAM_OFFLINE:
        return StreamOffline(
            broadcaster_user_id=_optional_str(event, "broadcaster_user_id"),
            broadcaster_user_login=_require_str(event, "broadcaster_user_login", "event"),
        )
    return OtherNotification(subscription_type=sub_type)


def parse_revocation(payload: dict[str, Any]) -> Revocation:
    subscription = _require_dict(payload.get("subscription"), "payload.subscription")
    condition = subscription.get("condition")
    broadcaster_id = None
    if isinstance(condition, dict):
        broadcaster_id = _optional_str(condition, "broadcaster_user_id")
    return Revocation(
        subscription_type=_require_str(subscription, "type", "subscription"),
        status=str(subscription.get("status", "")),
        broadcaster_user_id=broadcaster_id,
    )
