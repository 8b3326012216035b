from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from workspace_kernel.observability.logging import (
    FanoutLogSink,
    JsonlLogSink,
    LogMessage,
    MemoryLogSink,
    StdoutLogSink,
    build_log_sink,
    emit_log,
    level_enabled,
    log_to_dict,
)


def test_stdout_sink_writes_one_json_object_per_line() -> None:
    stream = io.StringIO()
    sink = StdoutLogSink(stream)
    emit_log(sink, level="info", message="location.loaded", fields={"location_name": "loc"})
    record = json.loads(stream.getvalue())
    assert record["message"] == "location.loaded"
    assert record["fields"] == {"location_name": "loc"}
    assert record["timestamp"].endswith("Z")


def test_jsonl_sink_appends_records(tmp_path: Path) -> None:
    sink = JsonlLogSink(tmp_path / "logs" / "host.jsonl")
    emit_log(sink, level="info", message="one", fields={})
    emit_log(sink, level="warning", message="two", fields={"n": 2})
    sink.close()
    emit_log(sink, level="info", message="after close", fields={})
    lines = sink.path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["message"] for line in lines] == ["one", "two"]


def test_fanout_isolates_failing_sinks() -> None:
    # One broken exporter never blocks the others.
    class _Broken:
        def emit(self, message: LogMessage) -> None:
            raise RuntimeError("disk full")

    memory = MemoryLogSink()
    emit_log(FanoutLogSink(sinks=[_Broken(), memory]), level="info", message="kept", fields={})
    assert [message.message for message in memory.messages()] == ["kept"]


def test_emit_log_tolerates_missing_sink() -> None:
    emit_log(None, level="info", message="dropped", fields={})


def test_build_log_sink(tmp_path: Path) -> None:
    assert build_log_sink(None) is None
    assert isinstance(build_log_sink([{"kind": "stdout"}]), StdoutLogSink)
    fanout = build_log_sink([{"kind": "stdout"}, {"kind": "jsonl", "path": str(tmp_path / "x.jsonl")}])
    assert isinstance(fanout, FanoutLogSink)
    fanout.close()
    with pytest.raises(ValueError):
        build_log_sink([{"kind": "jsonl"}])
    with pytest.raises(ValueError):
        build_log_sink([{"kind": "syslog"}])


def test_levels() -> None:
    assert level_enabled("warning", "info")
    assert not level_enabled("debug", "info")
    with pytest.raises(ValueError):
        level_enabled("verbose", "info")
    with pytest.raises(ValueError):
        LogMessage(level="", message="x")
    assert log_to_dict(LogMessage(level="info", message="m"))["level"] == "info"


def test_bounded_memory_sink_keeps_the_newest_records() -> None:
    sink = MemoryLogSink(max_messages=2)
    for index in range(5):
        emit_log(sink, level="info", message=f"m{index}", fields={})
    assert [message.message for message in sink.messages()] == ["m3", "m4"]
    with pytest.raises(ValueError):
        MemoryLogSink(max_messages=0)
