from __future__ import annotations

import sys
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

import orjson

SCHEMA_VERSION = 1
RECENT_RECORDS = 500

_ORJSON_NDJSON_OPTIONS = orjson.OPT_APPEND_NEWLINE
if hasattr(orjson, "OPT_ESCAPE_NON_ASCII"):
    _ORJSON_NDJSON_OPTIONS |= orjson.OPT_ESCAPE_NON_ASCII

_ECHO_SKIP_FIELDS = {"schema_version", "record_type", "run_id", "ts_wall", "ts_mono_ns"}


def _normalize_orjson(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalize_orjson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value) if isinstance(value, (set, frozenset)) else value
        return [_normalize_orjson(item) for item in items]
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if isinstance(value, Path):
        return str(value)
    return value


class EventLog:
    """Append-only NDJSON event log.

    Every record carries ``record_type``, ``run_id``, a UTC wall timestamp and
    a monotonic timestamp. Files live under ``{data_dir}/logs/{YYYY-MM-DD}``
    and rotate by size. With ``data_dir=None`` records are only kept in
    memory, which is what the tests use.
    """

    def __init__(
        self,
        data_dir: str | Path | None = None,
        *,
        log_rotate_mb: int = 50,
        log_rotate_keep: int = 5,
        echo: bool = False,
        echo_stream: TextIO | None = None,
        run_id: str | None = None,
    ) -> None:
        self.run_id = run_id or uuid.uuid4().hex
        self.data_dir = Path(data_dir) if data_dir is not None else None
        self.log_rotate_mb = log_rotate_mb
        self.log_rotate_keep = log_rotate_keep
        self.echo = echo
        self._echo_stream = echo_stream
        self.recent: deque[dict[str, Any]] = deque(maxlen=RECENT_RECORDS)
        self._lock = threading.Lock()
        self.log_path = self._resolve_log_path() if self.data_dir is not None else None

    def _resolve_log_path(self) -> Path:
        assert self.data_dir is not None
        now = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        log_dir = self.data_dir / "logs" / now
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir / "events.ndjson"

    def _rotate_if_needed(self, next_len: int) -> None:
        assert self.log_path is not None
        size = self.log_path.stat().st_size if self.log_path.exists() else 0
        if size + next_len < self.log_rotate_mb * 1024 * 1024:
            return
        # events.ndjson -> .1 -> .2 ... -> .{keep}; the last generation is dropped.
        generations = [self.log_path] + [
            self.log_path.with_name(f"{self.log_path.name}.{idx}")
            for idx in range(1, self.log_rotate_keep + 1)
        ]
        generations[-1].unlink(missing_ok=True)
        for src, dst in reversed(list(zip(generations, generations[1:]))):
            if src.exists():
                src.replace(dst)

    def write(self, record_type: str, **fields: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "record_type": record_type,
            "run_id": self.run_id,
            "ts_wall": datetime.now(timezone.utc).isoformat(),
            "ts_mono_ns": time.perf_counter_ns(),
        }
        record.update(_normalize_orjson(fields))
        line = orjson.dumps(record, option=_ORJSON_NDJSON_OPTIONS)
        with self._lock:
            self.recent.append(record)
            if self.log_path is not None:
                self._rotate_if_needed(len(line))
                with self.log_path.open("ab") as handle:
                    handle.write(line)
        if self.echo:
            self._echo(record)
        return record

    def records(self, record_type: str) -> list[dict[str, Any]]:
        with self._lock:
            return [item for item in self.recent if item["record_type"] == record_type]

    def _echo(self, record: dict[str, Any]) -> None:
        stream = self._echo_stream or sys.stderr
        extras = " ".join(
            f"{key}={value}"
            for key, value in record.items()
            if key not in _ECHO_SKIP_FIELDS
        )
        stream.write(f"{record['ts_wall']} {record['record_type']} {extras}".rstrip() + "\n")
        stream.flush()
