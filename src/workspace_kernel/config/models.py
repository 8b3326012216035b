from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from workspace_kernel.domain.origins import DEFAULT_ATTRIBUTE
from workspace_kernel.observability.capture import LogCaptureConfig

# Config models map workspace YAML sections to typed structures.


class PythonFileEntry(BaseModel):
    # `python_file` entry; `path` is accepted as a shorter alias for relative_path.
    model_config = ConfigDict(extra="forbid")
    relative_path: str = Field(min_length=1, validation_alias=AliasChoices("relative_path", "path"))
    working_directory: str | None = None
    location_name: str | None = None
    attribute: str = DEFAULT_ATTRIBUTE


class PythonModuleEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")
    module_name: str = Field(min_length=1, validation_alias=AliasChoices("module_name", "module"))
    working_directory: str | None = None
    location_name: str | None = None
    attribute: str = DEFAULT_ATTRIBUTE


class GrpcServerEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")
    host: str = "localhost"
    port: int = Field(ge=1, le=65535)
    location_name: str | None = None


class TimeoutsConfig(BaseModel):
    # Per-operation RPC deadlines in seconds.
    model_config = ConfigDict(extra="forbid")
    handshake: float = Field(default=30.0, gt=0)
    ping: float = Field(default=5.0, gt=0)
    list_repositories: float = Field(default=10.0, gt=0)
    get_repository: float = Field(default=30.0, gt=0)
    evaluation: float = Field(default=60.0, gt=0)
    shutdown: float = Field(default=2.0, gt=0)


class ReconnectConfig(BaseModel):
    # Backoff used when attaching to a grpc_server origin that is not accepting yet.
    model_config = ConfigDict(extra="forbid")
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=0.2, ge=0)
    max_delay_seconds: float = Field(default=2.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)


class LogExporterConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    kind: Literal["stdout", "jsonl"]
    path: str | None = None

    @model_validator(mode="after")
    def _require_path(self) -> LogExporterConfig:
        if self.kind == "jsonl" and not self.path:
            raise ValueError("logging exporter path is required when kind is 'jsonl'")
        return self


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    loggers: list[str] = Field(default_factory=list)
    exporters: list[LogExporterConfig] = Field(default_factory=list)


class HostSettings(BaseModel):
    # Host-side knobs for the workspace: pool size, heartbeat, deadlines, retry and logging.
    model_config = ConfigDict(extra="forbid")
    max_concurrent_loads: int = Field(default=4, ge=1)
    heartbeat_interval_seconds: float = Field(default=1.0, gt=0)
    read_retries: int = Field(default=1, ge=0)
    max_payload_bytes: int = Field(default=16 * 1024 * 1024, gt=0)
    secret: str | None = None
    event_history: int = Field(default=1024, ge=1)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def log_capture(self) -> LogCaptureConfig:
        return LogCaptureConfig(
            level=self.logging.level,
            loggers=tuple(self.logging.loggers),
            exporters=tuple(item.model_dump(exclude_none=True) for item in self.logging.exporters),
        )
