from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping

ENV_PREFIX = "LIVE_NOTIFY_"

# Bare variable names read by earlier deployments of the bot.
LEGACY_ENV_KEYS = {
    "twitch_bot_token": "TWITCH_BOT_TOKEN",
    "twitch_client_id": "TWITCH_CLIENT_ID",
    "chat_bot_token": "STOAT_TOKEN",
    "max_streams_per_user": "MAX_STREAMS_PER_USER",
}

REQUIRED_SECRETS = ("twitch_bot_token", "twitch_client_id", "chat_bot_token")


def _parse_bool(value: str) -> bool:
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"invalid bool: {value}")


_FIELD_PARSERS = {"bool": _parse_bool, "int": int, "float": float}


def field_kind(field_type: Any) -> str:
    # Postponed annotations arrive as strings.
    if isinstance(field_type, str):
        return field_type
    return getattr(field_type, "__name__", "")


def parse_field(field_type: Any, raw: str) -> Any:
    parser = _FIELD_PARSERS.get(field_kind(field_type))
    if parser is None:
        return raw
    return parser(raw)


@dataclass
class Config:
    eventsub_ws_url: str = "wss://eventsub.wss.twitch.tv/ws"
    helix_base_url: str = "https://api.twitch.tv/helix"
    chat_api_base_url: str = "https://api.revolt.chat"
    stream_url_base: str = "https://twitch.tv"
    twitch_bot_token: str = ""
    twitch_client_id: str = ""
    chat_bot_token: str = ""
    db_path: str = "streams.db"
    data_dir: str = "./data"
    rest_timeout: float = 10.0
    api_max_retries: int = 3
    api_retry_base_delay_seconds: float = 0.1
    rate_limit_delay_seconds: float = 0.1
    ws_reconnect_delay_seconds: float = 5.0
    ws_ping_interval_seconds: float = 20.0
    ws_ping_timeout_seconds: float = 20.0
    ws_data_idle_reconnect_seconds: float = 30.0
    max_streams_per_user: int = 3
    log_rotate_mb: int = 50
    log_rotate_keep: int = 5
    log_echo: bool = True

    def apply_overrides(self, overrides: Mapping[str, Any]) -> "Config":
        for field in fields(self):
            name = field.name
            if name in overrides:
                value = overrides[name]
                if value is None:
                    continue
                setattr(self, name, value)
        return self

    def missing_secrets(self) -> list[str]:
        return [name for name in REQUIRED_SECRETS if not getattr(self, name)]

    def validate_credentials(self) -> None:
        missing = self.missing_secrets()
        if missing:
            env_names = ", ".join(ENV_PREFIX + name.upper() for name in missing)
            raise ValueError(f"missing credentials: {env_names}")

    @classmethod
    def from_env_and_cli(
        cls, cli_overrides: Mapping[str, Any], env: Mapping[str, str]
    ) -> "Config":
        cfg = cls()
        for field in fields(cfg):
            env_key = ENV_PREFIX + field.name.upper()
            raw = env.get(env_key)
            if raw is None and field.name in LEGACY_ENV_KEYS:
                raw = env.get(LEGACY_ENV_KEYS[field.name])
            if raw is None:
                continue
            setattr(cfg, field.name, parse_field(field.type, raw))
        # CLI flags win over the environment.
        return cfg.apply_overrides(cli_overrides)
