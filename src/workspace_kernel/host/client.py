from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from datetime import datetime

from workspace_kernel.config.models import TimeoutsConfig
from workspace_kernel.domain.definitions import (
    EvaluationError,
    Repository,
    RepositorySummary,
    RunRequest,
    ScheduleOutcome,
    SensorOutcome,
    SensorResult,
    SkipResult,
)
from workspace_kernel.domain.errors import DefinitionGraphError, LocationError, LocationErrorKind, LocationFault
from workspace_kernel.host.isolation import RequestRejectedError, isolate
from workspace_kernel.protocol.channel import Channel
from workspace_kernel.protocol.messages import (
    ERROR_CATEGORY_EVALUATION,
    ERROR_CATEGORY_LOCATION,
    ERROR_CATEGORY_REQUEST,
    IDEMPOTENT_KINDS,
    KIND_EVALUATE_SCHEDULE,
    KIND_EVALUATE_SENSOR,
    KIND_GET_REPOSITORY,
    KIND_HANDSHAKE,
    KIND_LIST_REPOSITORIES,
    KIND_PING,
    KIND_SHUTDOWN,
    PROTOCOL_VERSION,
    Message,
    ProtocolError,
    request,
)

_RETRYABLE_KINDS = frozenset({LocationErrorKind.TIMEOUT, LocationErrorKind.CONNECTION_LOST})


@dataclass(frozen=True, slots=True)
class HandshakeInfo:
    protocol_version: int
    pid: int | None
    location_name: str | None
    loaded: bool


def default_host_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class LocationClient:
    # Typed RPC surface over one channel; every call carries its own deadline.
    def __init__(
        self,
        channel: Channel,
        *,
        timeouts: TimeoutsConfig | None = None,
        read_retries: int = 0,
        location_name: str | None = None,
        host_id: str | None = None,
    ) -> None:
        self._channel = channel
        self._timeouts = timeouts or TimeoutsConfig()
        self._read_retries = max(0, read_retries)
        self._location_name = location_name
        self._host_id = host_id or default_host_id()

    @property
    def channel(self) -> Channel:
        return self._channel

    @property
    def timeouts(self) -> TimeoutsConfig:
        return self._timeouts

    def handshake(self, *, timeout: float | None = None) -> HandshakeInfo:
        payload = self._call(
            KIND_HANDSHAKE,
            {"host_id": self._host_id, "protocol_version": PROTOCOL_VERSION},
            timeout=timeout or self._timeouts.handshake,
        )
        version = payload.get("protocol_version")
        if version != PROTOCOL_VERSION:
            raise LocationFault.of(
                LocationErrorKind.PROTOCOL_VERSION_MISMATCH,
                f"host speaks protocol {PROTOCOL_VERSION}, worker answered {version}",
                location_name=self._location_name,
            )
        pid = payload.get("pid")
        name = payload.get("location_name")
        return HandshakeInfo(
            protocol_version=version,
            pid=pid if isinstance(pid, int) else None,
            location_name=name if isinstance(name, str) else None,
            loaded=bool(payload.get("loaded", False)),
        )

    def ping(self, *, timeout: float | None = None) -> bool:
        payload = self._call(KIND_PING, {}, timeout=timeout or self._timeouts.ping)
        return bool(payload.get("ok", False))

    def list_repositories(self) -> list[RepositorySummary]:
        payload = self._call(KIND_LIST_REPOSITORIES, {}, timeout=self._timeouts.list_repositories)
        items = payload.get("repositories")
        if not isinstance(items, list):
            raise self._malformed("list_repositories response has no repositories list")
        try:
            return [RepositorySummary.from_wire(item) for item in items]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise self._malformed(f"invalid repository summary: {exc}") from exc

    def get_repository(self, name: str) -> Repository:
        payload = self._call(KIND_GET_REPOSITORY, {"name": name}, timeout=self._timeouts.get_repository)
        try:
            return Repository.from_wire(payload.get("repository"))
        except (DefinitionGraphError, AttributeError) as exc:
            raise self._malformed(f"invalid repository payload: {exc}") from exc

    def evaluate_schedule(
        self,
        *,
        repository_name: str,
        schedule_name: str,
        scheduled_time: datetime | None = None,
        job_name: str | None = None,
    ) -> ScheduleOutcome:
        payload = self._call(
            KIND_EVALUATE_SCHEDULE,
            {
                "repository_name": repository_name,
                "schedule_name": schedule_name,
                "job_name": job_name,
                "scheduled_time": scheduled_time.isoformat() if scheduled_time is not None else None,
            },
            timeout=self._timeouts.evaluation,
        )
        kind = payload.get("type")
        if kind == "evaluation_error":
            return _evaluation_error(payload)
        if kind == "skip":
            return SkipResult(reason=payload.get("reason"))  # type: ignore[arg-type]
        if kind == "run_request" and isinstance(payload.get("run_request"), dict):
            try:
                return RunRequest.from_wire(payload["run_request"])  # type: ignore[arg-type]
            except (DefinitionGraphError, AttributeError) as exc:
                raise self._malformed(f"invalid run request: {exc}") from exc
        raise self._malformed(f"unexpected schedule outcome type: {kind!r}")

    def evaluate_sensor(
        self,
        *,
        repository_name: str,
        sensor_name: str,
        cursor: str | None = None,
        last_run_key: str | None = None,
        job_name: str | None = None,
    ) -> SensorOutcome:
        payload = self._call(
            KIND_EVALUATE_SENSOR,
            {
                "repository_name": repository_name,
                "sensor_name": sensor_name,
                "job_name": job_name,
                "cursor": cursor,
                "last_run_key": last_run_key,
            },
            timeout=self._timeouts.evaluation,
        )
        kind = payload.get("type")
        if kind == "evaluation_error":
            return _evaluation_error(payload)
        if kind == "skip":
            return SkipResult(reason=payload.get("reason"))  # type: ignore[arg-type]
        if kind == "sensor_result" and isinstance(payload.get("run_requests"), list):
            try:
                requests = tuple(RunRequest.from_wire(item) for item in payload["run_requests"])  # type: ignore[union-attr]
            except (DefinitionGraphError, AttributeError) as exc:
                raise self._malformed(f"invalid run request: {exc}") from exc
            cursor_value = payload.get("cursor")
            return SensorResult(run_requests=requests, cursor=cursor_value if isinstance(cursor_value, str) else None)
        raise self._malformed(f"unexpected sensor outcome type: {kind!r}")

    def shutdown(self, *, timeout: float | None = None) -> None:
        self._call(KIND_SHUTDOWN, {}, timeout=timeout or self._timeouts.shutdown)

    def close(self) -> None:
        self._channel.close()

    def _call(self, kind: str, payload: dict[str, object], *, timeout: float) -> dict[str, object]:
        # Idempotent reads are retried on timeout/connection loss; evaluations get exactly one attempt.
        attempts = 1 + (self._read_retries if kind in IDEMPOTENT_KINDS else 0)
        for attempt in range(attempts):
            message = request(kind, payload)
            try:
                with isolate(self._location_name):
                    response = self._channel.request(message, timeout=timeout)
            except LocationFault as exc:
                if attempt + 1 < attempts and exc.error.kind in _RETRYABLE_KINDS:
                    continue
                raise
            return self._unwrap(kind, response)
        raise AssertionError("unreachable")

    def _unwrap(self, kind: str, response: Message) -> dict[str, object]:
        if response.protocol_version != PROTOCOL_VERSION:
            raise LocationFault.of(
                LocationErrorKind.PROTOCOL_VERSION_MISMATCH,
                f"response uses protocol {response.protocol_version}, host speaks {PROTOCOL_VERSION}",
                location_name=self._location_name,
            )
        if not response.is_error:
            return response.payload
        category = response.payload.get("category")
        error = response.payload.get("error")
        if not isinstance(error, dict):
            raise self._malformed("error response has no error payload")
        if category == ERROR_CATEGORY_LOCATION:
            try:
                location_error = LocationError.from_wire(error)
            except ValueError as exc:
                raise self._malformed(f"invalid location error payload: {exc}") from exc
            if location_error.location_name is None and self._location_name is not None:
                location_error = location_error.for_location(self._location_name)
            raise LocationFault(location_error)
        if category == ERROR_CATEGORY_REQUEST:
            raise RequestRejectedError(str(error.get("message") or f"{kind} request rejected"))
        if category == ERROR_CATEGORY_EVALUATION and kind in {KIND_EVALUATE_SCHEDULE, KIND_EVALUATE_SENSOR}:
            return {"type": "evaluation_error", **error}
        raise self._malformed(f"unknown error category: {category!r}")

    def _malformed(self, detail: str) -> LocationFault:
        # Undecodable responses are treated like a broken connection.
        return LocationFault.of(
            LocationErrorKind.CONNECTION_LOST,
            detail,
            error_type=ProtocolError.__name__,
            location_name=self._location_name,
        )


def _evaluation_error(payload: dict[str, object]) -> EvaluationError:
    message = payload.get("message")
    error_type = payload.get("error_type")
    trace = payload.get("traceback")
    return EvaluationError(
        message=message if isinstance(message, str) and message else "evaluation failed",
        error_type=error_type if isinstance(error_type, str) else None,
        traceback=trace if isinstance(trace, str) else None,
    )
