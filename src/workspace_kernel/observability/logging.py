from __future__ import annotations

import json
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Protocol

_LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass(frozen=True, slots=True)
class LogMessage:
    # Structured log payload emitted by host and worker lifecycle code.
    level: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    fields: dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.level or not self.message:
            raise ValueError("LogMessage requires non-empty level/message")


class LogSink(Protocol):
    def emit(self, message: LogMessage) -> None: ...


class StdoutLogSink:
    def __init__(self, stream: object | None = None) -> None:
        self._stream = stream

    def emit(self, message: LogMessage) -> None:
        stream = self._stream or sys.stdout
        print(json.dumps(log_to_dict(message), separators=(",", ":"), ensure_ascii=False, default=str), file=stream)

    def close(self) -> None:
        return None


class JsonlLogSink:
    # File-backed sink; one JSON object per line, flushed on every record.
    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = self._path.open("a", encoding="utf-8")
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, message: LogMessage) -> None:
        payload = json.dumps(log_to_dict(message), separators=(",", ":"), ensure_ascii=False, default=str)
        with self._lock:
            if self._file.closed:
                return
            self._file.write(payload + "\n")
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            self._file.close()


class MemoryLogSink:
    # Keeps records in memory, the newest max_messages when bounded.
    def __init__(self, max_messages: int | None = None) -> None:
        if max_messages is not None and max_messages <= 0:
            raise ValueError("max_messages must be > 0")
        self._lock = Lock()
        self._messages: deque[LogMessage] = deque(maxlen=max_messages)

    def emit(self, message: LogMessage) -> None:
        with self._lock:
            self._messages.append(message)

    def messages(self) -> list[LogMessage]:
        with self._lock:
            return list(self._messages)

    def close(self) -> None:
        return None


@dataclass(slots=True)
class FanoutLogSink:
    sinks: list[object]

    def emit(self, message: LogMessage) -> None:
        for sink in list(self.sinks):
            emit = getattr(sink, "emit", None)
            if not callable(emit):
                continue
            try:
                emit(message)
            except Exception:
                continue

    def close(self) -> None:
        for sink in list(self.sinks):
            close = getattr(sink, "close", None)
            if not callable(close):
                continue
            try:
                close()
            except Exception:
                continue


def log_to_dict(message: LogMessage) -> dict[str, object]:
    return {
        "level": message.level,
        "message": message.message,
        "timestamp": message.timestamp.isoformat().replace("+00:00", "Z"),
        "fields": message.fields,
    }


def normalize_level(level: object) -> str:
    if not isinstance(level, str) or level.lower() not in _LEVELS:
        raise ValueError(f"log level must be one of: {list(_LEVELS)}")
    return level.lower()


def level_enabled(level: str, threshold: str) -> bool:
    return _LEVELS.index(normalize_level(level)) >= _LEVELS.index(normalize_level(threshold))


def build_log_sink(exporters: list[dict[str, object]] | None) -> object | None:
    # Resolve exporter specs ({kind: stdout} / {kind: jsonl, path: ...}) into one sink.
    if not exporters:
        return None
    sinks: list[object] = []
    for exporter in exporters:
        if not isinstance(exporter, dict):
            raise ValueError("logging exporter entries must be mappings")
        kind = exporter.get("kind")
        if kind == "stdout":
            sinks.append(StdoutLogSink())
            continue
        if kind == "jsonl":
            path = exporter.get("path")
            if not isinstance(path, str) or not path:
                raise ValueError("jsonl exporter requires a non-empty path")
            sinks.append(JsonlLogSink(Path(path)))
            continue
        raise ValueError(f"unsupported logging exporter kind: {kind!r}")
    if len(sinks) == 1:
        return sinks[0]
    return FanoutLogSink(sinks=sinks)


def emit_log(sink: object | None, *, level: str, message: str, fields: dict[str, object]) -> None:
    # Logging never breaks the caller; sink failures are dropped.
    emit = getattr(sink, "emit", None)
    if not callable(emit):
        return
    try:
        emit(LogMessage(level=level, message=message, timestamp=datetime.now(tz=UTC), fields=dict(fields)))
    except Exception:
        return


def close_log_sink(sink: object | None) -> None:
    close = getattr(sink, "close", None)
    if callable(close):
        try:
            close()
        except Exception:
            return
