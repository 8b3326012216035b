from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from workspace_kernel.observability.logging import (
    LogMessage,
    build_log_sink,
    close_log_sink,
    normalize_level,
)

# Record attributes copied into LogMessage.fields when user code passes them via `extra=`.
_TAGGED_EXTRAS = ("run_id", "step_key", "job_name", "repository_name")


@dataclass(frozen=True, slots=True)
class LogCaptureConfig:
    # Handed to the worker at spawn time; the worker owns its own handlers.
    level: str = "info"
    loggers: tuple[str, ...] = ()
    exporters: tuple[dict[str, object], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "level", normalize_level(self.level))
        object.__setattr__(self, "loggers", tuple(self.loggers))
        object.__setattr__(self, "exporters", tuple(dict(item) for item in self.exporters))

    def to_wire(self) -> dict[str, object]:
        return {
            "level": self.level,
            "loggers": list(self.loggers),
            "exporters": [dict(item) for item in self.exporters],
        }

    @classmethod
    def from_wire(cls, wire: object) -> LogCaptureConfig:
        if wire is None:
            return cls()
        if not isinstance(wire, dict):
            raise ValueError("log capture config must be a mapping")
        return cls(
            level=wire.get("level", "info"),  # type: ignore[arg-type]
            loggers=tuple(wire.get("loggers", []) or []),  # type: ignore[arg-type]
            exporters=tuple(wire.get("exporters", []) or []),  # type: ignore[arg-type]
        )


class CaptureHandler(logging.Handler):
    # Bridges stdlib records from user loggers into structured LogMessage sinks.
    def __init__(self, sink: object, *, location_name: str, level: int) -> None:
        super().__init__(level=level)
        self._sink = sink
        self._location_name = location_name

    def emit(self, record: logging.LogRecord) -> None:
        fields: dict[str, object] = {
            "location_name": self._location_name,
            "logger": record.name,
        }
        for key in _TAGGED_EXTRAS:
            value = getattr(record, key, None)
            if value is not None:
                fields[key] = value
        if record.exc_info:
            fields["exc_info"] = logging.Formatter().formatException(record.exc_info)
        try:
            self._sink.emit(  # type: ignore[attr-defined]
                LogMessage(
                    level=record.levelname.lower(),
                    message=record.getMessage() or record.name,
                    timestamp=datetime.fromtimestamp(record.created, tz=UTC),
                    fields=fields,
                )
            )
        except Exception:
            self.handleError(record)


@dataclass(slots=True)
class InstalledCapture:
    sink: object | None
    handlers: list[tuple[logging.Logger, CaptureHandler]] = field(default_factory=list)

    def uninstall(self) -> None:
        for logger, handler in self.handlers:
            logger.removeHandler(handler)
        self.handlers.clear()
        close_log_sink(self.sink)


def install_log_capture(config: LogCaptureConfig, *, location_name: str) -> InstalledCapture:
    sink = build_log_sink(list(config.exporters))
    installed = InstalledCapture(sink=sink)
    if sink is None:
        return installed
    level = logging.getLevelName(config.level.upper())
    for name in config.loggers:
        logger = logging.getLogger(name)
        handler = CaptureHandler(sink, location_name=location_name, level=level)
        logger.addHandler(handler)
        if logger.level == logging.NOTSET or logger.level > level:
            logger.setLevel(level)
        installed.handlers.append((logger, handler))
    return installed
