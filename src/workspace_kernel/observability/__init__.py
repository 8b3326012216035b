from workspace_kernel.observability.capture import LogCaptureConfig, install_log_capture
from workspace_kernel.observability.logging import (
    FanoutLogSink,
    JsonlLogSink,
    LogMessage,
    MemoryLogSink,
    StdoutLogSink,
    build_log_sink,
    emit_log,
)

__all__ = [
    "FanoutLogSink",
    "JsonlLogSink",
    "LogCaptureConfig",
    "LogMessage",
    "MemoryLogSink",
    "StdoutLogSink",
    "build_log_sink",
    "emit_log",
    "install_log_capture",
]
