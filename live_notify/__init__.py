"""Twitch EventSub go-live notifier."""

__all__ = [
    "app",
    "backoff",
    "cli",
    "config",
    "eventsub_decode",
    "helix",
    "notifier",
    "reconcile",
    "registry",
    "runlog",
    "session",
    "state",
    "store",
]
