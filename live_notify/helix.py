from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests

DEFAULT_USER_AGENT = "live-notify/1"
SUBSCRIPTIONS_ENDPOINT = "/eventsub/subscriptions"
USERS_ENDPOINT = "/users"

EVENT_STREAM_ONLINE = "stream.online"
EVENT_STREAM_OFFLINE = "stream.offline"
STREAM_EVENT_TYPES = (EVENT_STREAM_ONLINE, EVENT_STREAM_OFFLINE)


class UpstreamAPIError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChannelNotFound(UpstreamAPIError):
    pass


@dataclass(frozen=True)
class SubscriptionInfo:
    id: str
    type: str
    status: str
    broadcaster_id: str | None
    session_id: str | None = None


def build_subscription_body(event_type: str, broadcaster_id: str, session_id: str) -> dict[str, Any]:
    return {
        "type": event_type,
        "version": "1",
        "condition": {"broadcaster_user_id": broadcaster_id},
        "transport": {"method": "websocket", "session_id": session_id},
    }


def parse_subscription(item: Any) -> SubscriptionInfo | None:
    if not isinstance(item, dict):
        return None
    sub_id = item.get("id")
    if not isinstance(sub_id, str) or not sub_id:
        return None
    condition = item.get("condition")
    broadcaster_id = None
    if isinstance(condition, dict):
        value = condition.get("broadcaster_user_id")
        broadcaster_id = str(value) if value is not None else None
    transport = item.get("transport")
    session_id = None
    if isinstance(transport, dict):
        session_id = transport.get("session_id")
    return SubscriptionInfo(
        id=sub_id,
        type=str(item.get("type", "")),
        status=str(item.get("status", "")),
        broadcaster_id=broadcaster_id,
        session_id=session_id,
    )


class HelixClient:
    """Blocking Twitch Helix client; async callers go through ``asyncio.to_thread``."""

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        client_id: str,
        timeout: float,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._client_id = client_id
        self._session = session or requests.Session()

    def close(self) -> None:
        self._session.close()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Client-Id": self._client_id,
            "User-Agent": DEFAULT_USER_AGENT,
        }

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> requests.Response:
        url = f"{self.base_url}{endpoint}"
        try:
            resp = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamAPIError(f"{method} {endpoint} failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise UpstreamAPIError(
                f"{method} {endpoint} returned {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp

    def _json(self, resp: requests.Response, endpoint: str) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamAPIError(f"{endpoint} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise UpstreamAPIError(f"unexpected {endpoint} response shape")
        return data

    def resolve(self, login: str) -> str | None:
        resp = self._request("GET", USERS_ENDPOINT, params={"login": login})
        data = self._json(resp, USERS_ENDPOINT).get("data")
        if not isinstance(data, list) or not data:
            return None
        first = data[0]
        if not isinstance(first, dict) or not first.get("id"):
            return None
        return str(first["id"])

    def create_subscription(self, event_type: str, broadcaster_id: str, session_id: str) -> None:
        self._request(
            "POST",
            SUBSCRIPTIONS_ENDPOINT,
            json_body=build_subscription_body(event_type, broadcaster_id, session_id),
        )

    def list_subscriptions(
        self,
        *,
        event_type: str | None = None,
        user_id: str | None = None,
    ) -> list[SubscriptionInfo]:
        params: dict[str, Any] = {}
        if event_type is not None:
            params["type"] = event_type
        if user_id is not None:
            params["user_id"] = user_id
        subscriptions: list[SubscriptionInfo] = []
        while True:
            resp = self._request("GET", SUBSCRIPTIONS_ENDPOINT, params=dict(params))
            payload = self._json(resp, SUBSCRIPTIONS_ENDPOINT)
            page = payload.get("data")
            if isinstance(page, list):
                for item in page:
                    parsed = parse_subscription(item)
                    if parsed is not None:
                        subscriptions.append(parsed)
            pagination = payload.get("pagination")
            cursor = pagination.get("cursor") if isinstance(pagination, dict) else None
            if not cursor or not page:
                return subscriptions
            params["after"] = cursor

    def delete_subscription(self, subscription_id: str) -> None:
        self._request("DELETE", SUBSCRIPTIONS_ENDPOINT, params={"id": subscription_id})
