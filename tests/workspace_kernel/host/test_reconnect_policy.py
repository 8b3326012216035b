from __future__ import annotations

import socket

import pytest

from workspace_kernel.config.models import HostSettings, ReconnectConfig, TimeoutsConfig
from workspace_kernel.domain.errors import LocationErrorKind, LocationFault
from workspace_kernel.domain.origins import GrpcServerOrigin
from workspace_kernel.host.supervisor import ProcessSupervisor, ReconnectPolicy
from workspace_kernel.observability.logging import MemoryLogSink


def test_delays_grow_and_are_capped() -> None:
    policy = ReconnectPolicy(max_attempts=5, initial_delay_seconds=0.5, max_delay_seconds=2.0, multiplier=2.0)
    assert policy.delays() == [0.5, 1.0, 2.0, 2.0]
    assert ReconnectPolicy(max_attempts=1).delays() == []


def test_policy_validation() -> None:
    with pytest.raises(ValueError):
        ReconnectPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        ReconnectPolicy(multiplier=0.5)


def test_from_config() -> None:
    policy = ReconnectPolicy.from_config(ReconnectConfig(max_attempts=2, initial_delay_seconds=0.1))
    assert policy.delays() == [0.1]


def _free_port() -> int:
    scratch = socket.socket()
    scratch.bind(("127.0.0.1", 0))
    port = scratch.getsockname()[1]
    scratch.close()
    return port


def test_remote_handshake_retries_with_backoff_then_fails() -> None:
    # Nothing listens on the port: every attempt is refused, sleeps follow the policy.
    slept: list[float] = []
    settings = HostSettings(
        read_retries=0,
        reconnect=ReconnectConfig(max_attempts=3, initial_delay_seconds=0.25, multiplier=2.0),
        timeouts=TimeoutsConfig(handshake=1.0),
        logging={"level": "debug"},
    )
    sink = MemoryLogSink()
    supervisor = ProcessSupervisor(settings, log_sink=sink, sleep=slept.append)
    origin = GrpcServerOrigin(host="127.0.0.1", port=_free_port(), location_name="remote")
    with pytest.raises(LocationFault) as info:
        supervisor.materialize(origin)
    assert info.value.error.kind is LocationErrorKind.CONNECTION_LOST
    assert slept == [0.25, 0.5]
    kinds = [event["kind"] for event in supervisor.lifecycle_events()]
    assert kinds == [
        "worker_attaching",
        "handshake_retry",
        "handshake_retry",
        "handshake_failed",
        "worker_stopped",
    ]
    assert "supervisor.handshake_retry" in [message.message for message in sink.messages()]
    assert supervisor.handles() == []


def test_lifecycle_history_keeps_only_recent_events() -> None:
    settings = HostSettings(
        event_history=2,
        reconnect=ReconnectConfig(max_attempts=3, initial_delay_seconds=0.0),
        timeouts=TimeoutsConfig(handshake=1.0),
    )
    supervisor = ProcessSupervisor(settings, sleep=lambda _: None)
    origin = GrpcServerOrigin(host="127.0.0.1", port=_free_port(), location_name="remote")
    with pytest.raises(LocationFault):
        supervisor.materialize(origin)
    kinds = [event["kind"] for event in supervisor.lifecycle_events()]
    assert kinds == ["handshake_failed", "worker_stopped"]
