from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Protocol

import requests

from .runlog import EventLog
from .store import NotificationRecipient

DEFAULT_STREAM_URL_BASE = "https://twitch.tv"
DEFAULT_TEMPLATE = "{channel} is now live! {url}"


class NotifyError(RuntimeError):
    pass


class NotifierSink(Protocol):
    def send(self, destination: str, text: str) -> None: ...


class RecipientSource(Protocol):
    def get_recipients(self, channel: str) -> list[NotificationRecipient]: ...


def stream_url(login: str, base_url: str = DEFAULT_STREAM_URL_BASE) -> str:
    return f"{base_url.rstrip('/')}/{login}"


def render_message(
    template: str | None,
    *,
    display_name: str,
    login: str,
    base_url: str = DEFAULT_STREAM_URL_BASE,
) -> str:
    url = stream_url(login, base_url)
    if template:
        # Plain substitution: custom text may contain other braces.
        return template.replace("{channel}", display_name).replace("{url}", url)
    return DEFAULT_TEMPLATE.format(channel=display_name, url=url)


class ChatNotifier:
    """Posts messages to ``{base_url}/channels/{destination}/messages``."""

    def __init__(
        self,
        *,
        base_url: str,
        bot_token: str,
        timeout: float,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._bot_token = bot_token
        self._session = session or requests.Session()

    def close(self) -> None:
        self._session.close()

    def send(self, destination: str, text: str) -> None:
        url = f"{self.base_url}/channels/{destination}/messages"
        try:
            resp = self._session.post(
                url,
                json={"content": text},
                headers={"x-bot-token": self._bot_token},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NotifyError(f"send to {destination} failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise NotifyError(f"send to {destination} returned {resp.status_code}")


@dataclass
class DispatchSummary:
    channel: str
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class NotificationDispatcher:
    def __init__(
        self,
        *,
        store: RecipientSource,
        notifier: NotifierSink,
        event_log: EventLog,
        stream_url_base: str = DEFAULT_STREAM_URL_BASE,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._log = event_log
        self._stream_url_base = stream_url_base

    async def _send_one(self, recipient: NotificationRecipient, text: str) -> bool:
        try:
            await asyncio.to_thread(self._notifier.send, recipient.destination_channel, text)
        except Exception as exc:
            self._log.write(
                "notify_fail",
                destination=recipient.destination_channel,
                error=exc,
            )
            return False
        self._log.write("notify_sent", destination=recipient.destination_channel)
        return True

    async def dispatch(self, stream_channel: str, display_name: str) -> DispatchSummary:
        login = stream_channel.lower()
        recipients = await asyncio.to_thread(self._store.get_recipients, login)
        summary = DispatchSummary(channel=login)
        if not recipients:
            self._log.write("notify_no_recipients", channel=login)
            return summary
        messages = [
            render_message(
                recipient.custom_template,
                display_name=display_name,
                login=login,
                base_url=self._stream_url_base,
            )
            for recipient in recipients
        ]
        results = await asyncio.gather(
            *(self._send_one(recipient, text) for recipient, text in zip(recipients, messages))
        )
        for recipient, ok in zip(recipients, results):
            bucket = summary.sent if ok else summary.failed
            bucket.append(recipient.destination_channel)
        return summary
