from __future__ import annotations

import os
import socket
import threading
import time
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from workspace_kernel.domain.definitions import (
    EvaluationError,
    Repository,
    RunRequest,
    ScheduleDefinition,
    ScheduleEvaluationContext,
    SensorDefinition,
    SensorEvaluationContext,
    SensorResult,
    SkipResult,
)
from workspace_kernel.domain.errors import LocationError, LocationErrorKind, LocationFault
from workspace_kernel.domain.origins import LocationOrigin, origin_from_wire
from workspace_kernel.observability.capture import LogCaptureConfig, install_log_capture
from workspace_kernel.observability.logging import emit_log
from workspace_kernel.protocol.framing import FrameCodec
from workspace_kernel.protocol.messages import (
    ERROR_CATEGORY_EVALUATION,
    ERROR_CATEGORY_LOCATION,
    ERROR_CATEGORY_REQUEST,
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
    error_for,
    result_for,
)
from workspace_kernel.worker.loader import CodeLoadError, load_code

_EVALUATION_KINDS = frozenset({KIND_EVALUATE_SCHEDULE, KIND_EVALUATE_SENSOR})


class RequestRejected(ValueError):
    # Request is well-formed on the wire but names something the loaded graph does not have.
    pass


@dataclass(frozen=True, slots=True)
class WorkerBootstrap:
    # Everything a spawned worker needs; built by the supervisor and pickled across the spawn boundary.
    origin: dict[str, object]
    location_name: str
    secret: bytes | None = None
    max_payload_bytes: int = 16 * 1024 * 1024
    log_capture: dict[str, object] = field(default_factory=dict)


class WorkerServer:
    # Dispatches protocol requests against the loaded repository graph (or its load error).
    def __init__(
        self,
        origin: LocationOrigin,
        *,
        location_name: str | None = None,
        repositories: tuple[Repository, ...] = (),
        load_error: LocationError | None = None,
        log_sink: object | None = None,
    ) -> None:
        self._origin = origin
        self._location_name = location_name or origin.display_name
        self._repositories = {repository.name: repository for repository in repositories}
        self._load_error = load_error.for_location(self._location_name) if load_error is not None else None
        self._log_sink = log_sink
        self._stopping = threading.Event()
        # User evaluation functions never run concurrently in one worker interpreter.
        self._evaluation_lock = threading.Lock()
        self._handlers: dict[str, Callable[[Message], dict[str, object]]] = {
            KIND_HANDSHAKE: self._handshake,
            KIND_PING: self._ping,
            KIND_LIST_REPOSITORIES: self._list_repositories,
            KIND_GET_REPOSITORY: self._get_repository,
            KIND_EVALUATE_SCHEDULE: self._evaluate_schedule,
            KIND_EVALUATE_SENSOR: self._evaluate_sensor,
            KIND_SHUTDOWN: self._shutdown,
        }

    @classmethod
    def load(
        cls,
        origin: LocationOrigin,
        *,
        location_name: str | None = None,
        log_sink: object | None = None,
    ) -> WorkerServer:
        # Eager load: the graph or its classified error is fixed for the lifetime of the worker.
        name = location_name or origin.display_name
        try:
            repositories = load_code(origin)
        except CodeLoadError as exc:
            emit_log(
                log_sink,
                level="warning",
                message="worker.code_load_failed",
                fields={"location_name": name, "pid": os.getpid(), "kind": exc.error.kind.value},
            )
            return cls(origin, location_name=name, load_error=exc.error, log_sink=log_sink)
        emit_log(
            log_sink,
            level="info",
            message="worker.code_loaded",
            fields={"location_name": name, "pid": os.getpid(), "repositories": sorted(r.name for r in repositories)},
        )
        return cls(origin, location_name=name, repositories=repositories, log_sink=log_sink)

    @property
    def location_name(self) -> str:
        return self._location_name

    @property
    def load_error(self) -> LocationError | None:
        return self._load_error

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def handle(self, message: Message) -> Message:
        if message.protocol_version != PROTOCOL_VERSION:
            error = LocationError(
                kind=LocationErrorKind.PROTOCOL_VERSION_MISMATCH,
                message=f"worker speaks protocol {PROTOCOL_VERSION}, request uses {message.protocol_version}",
                location_name=self._location_name,
            )
            return error_for(message, category=ERROR_CATEGORY_LOCATION, error=error.to_wire())
        handler = self._handlers.get(message.kind)
        if handler is None:
            return error_for(
                message,
                category=ERROR_CATEGORY_REQUEST,
                error={"message": f"unsupported request kind: {message.kind}"},
            )
        try:
            if message.kind in _EVALUATION_KINDS:
                with self._evaluation_lock:
                    payload = handler(message)
            else:
                payload = handler(message)
        except LocationFault as exc:
            return error_for(message, category=ERROR_CATEGORY_LOCATION, error=exc.error.to_wire())
        except RequestRejected as exc:
            return error_for(message, category=ERROR_CATEGORY_REQUEST, error={"message": str(exc)})
        return result_for(message, payload)

    def respond(self, codec: FrameCodec, body: bytes) -> bytes | None:
        # Decode -> handle -> encode; an unserializable result becomes an error reply, never a partial one.
        try:
            message = codec.decode(body)
        except ProtocolError as exc:
            emit_log(
                self._log_sink,
                level="warning",
                message="worker.request_rejected",
                fields={"location_name": self._location_name, "error_type": type(exc).__name__},
            )
            return None
        reply = self.handle(message)
        try:
            return codec.encode(reply)
        except ProtocolError as exc:
            category = ERROR_CATEGORY_EVALUATION if message.kind in _EVALUATION_KINDS else ERROR_CATEGORY_REQUEST
            fallback = error_for(
                message,
                category=category,
                error={
                    "message": f"response for '{message.kind}' could not be serialized: {exc}",
                    "error_type": type(exc).__name__,
                },
            )
            return codec.encode(fallback)

    def _handshake(self, message: Message) -> dict[str, object]:
        requested = message.payload.get("protocol_version", message.protocol_version)
        if requested != PROTOCOL_VERSION:
            raise LocationFault.of(
                LocationErrorKind.PROTOCOL_VERSION_MISMATCH,
                f"worker speaks protocol {PROTOCOL_VERSION}, host requested {requested}",
                location_name=self._location_name,
            )
        return {
            "protocol_version": PROTOCOL_VERSION,
            "pid": os.getpid(),
            "location_name": self._location_name,
            "loaded": self._load_error is None,
        }

    def _ping(self, message: Message) -> dict[str, object]:
        return {"ok": True, "pid": os.getpid()}

    def _list_repositories(self, message: Message) -> dict[str, object]:
        self._require_loaded()
        return {
            "repositories": [repository.summary().to_wire() for repository in self._repositories.values()],
        }

    def _get_repository(self, message: Message) -> dict[str, object]:
        self._require_loaded()
        name = message.payload.get("name")
        repository = self._repositories.get(name) if isinstance(name, str) else None
        if repository is None:
            raise RequestRejected(f"repository '{name}' not found in location '{self._location_name}'")
        return {"repository": repository.to_wire()}

    def _evaluate_schedule(self, message: Message) -> dict[str, object]:
        self._require_loaded()
        repository = self._repository(message.payload.get("repository_name"))
        schedule_name = message.payload.get("schedule_name")
        schedule = repository.schedule(schedule_name) if isinstance(schedule_name, str) else None
        if schedule is None:
            raise RequestRejected(f"schedule '{schedule_name}' not found in repository '{repository.name}'")
        _check_job_ref(message, schedule.job_name)
        scheduled_time = _parse_time(message.payload.get("scheduled_time"))
        context = ScheduleEvaluationContext(
            scheduled_time=scheduled_time,
            repository_name=repository.name,
            schedule_name=schedule.name,
        )
        try:
            outcome = _run_schedule(schedule, context)
        except Exception as exc:  # noqa: BLE001 - user-code failure is returned as an evaluation error.
            return _evaluation_error_payload(_capture_error(exc))
        return _schedule_outcome_payload(outcome)

    def _evaluate_sensor(self, message: Message) -> dict[str, object]:
        self._require_loaded()
        repository = self._repository(message.payload.get("repository_name"))
        sensor_name = message.payload.get("sensor_name")
        sensor = repository.sensor(sensor_name) if isinstance(sensor_name, str) else None
        if sensor is None:
            raise RequestRejected(f"sensor '{sensor_name}' not found in repository '{repository.name}'")
        _check_job_ref(message, sensor.job_name)
        cursor = message.payload.get("cursor")
        last_run_key = message.payload.get("last_run_key")
        context = SensorEvaluationContext(
            cursor=cursor if isinstance(cursor, str) else None,
            repository_name=repository.name,
            sensor_name=sensor.name,
            last_run_key=last_run_key if isinstance(last_run_key, str) else None,
        )
        try:
            outcome = _run_sensor(sensor, context)
        except Exception as exc:  # noqa: BLE001 - user-code failure is returned as an evaluation error.
            return _evaluation_error_payload(_capture_error(exc))
        return _sensor_outcome_payload(outcome)

    def _shutdown(self, message: Message) -> dict[str, object]:
        self._stopping.set()
        return {"stopping": True, "pid": os.getpid()}

    def _require_loaded(self) -> None:
        if self._load_error is not None:
            raise LocationFault(self._load_error)

    def _repository(self, name: object) -> Repository:
        repository = self._repositories.get(name) if isinstance(name, str) else None
        if repository is None:
            raise RequestRejected(f"repository '{name}' not found in location '{self._location_name}'")
        return repository


def _check_job_ref(message: Message, expected_job: str) -> None:
    job_name = message.payload.get("job_name")
    if job_name is not None and job_name != expected_job:
        raise RequestRejected(f"definition targets job '{expected_job}', request referenced '{job_name}'")


def _parse_time(value: object) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise RequestRejected("scheduled_time must be an ISO-8601 string")
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise RequestRejected(f"scheduled_time is not ISO-8601: {value!r}") from exc


def _run_schedule(
    schedule: ScheduleDefinition,
    context: ScheduleEvaluationContext,
) -> RunRequest | SkipResult | EvaluationError:
    if schedule.evaluation_fn is None:
        return RunRequest(job_name=schedule.job_name, run_config=dict(schedule.run_config), tags=_schedule_tags(context))
    result = schedule.evaluation_fn(context)
    if result is None:
        return RunRequest(job_name=schedule.job_name, run_config=dict(schedule.run_config), tags=_schedule_tags(context))
    if isinstance(result, SkipResult):
        return result
    if isinstance(result, RunRequest):
        return RunRequest(
            job_name=result.job_name or schedule.job_name,
            run_key=result.run_key,
            run_config=dict(result.run_config),
            tags={**_schedule_tags(context), **result.tags},
        )
    if isinstance(result, dict):
        return RunRequest(job_name=schedule.job_name, run_config=dict(result), tags=_schedule_tags(context))
    return EvaluationError(
        message=f"schedule '{schedule.name}' returned unsupported value of type {type(result).__name__}",
        error_type="TypeError",
    )


def _schedule_tags(context: ScheduleEvaluationContext) -> dict[str, str]:
    tags = {"schedule_name": context.schedule_name}
    if context.scheduled_time is not None:
        tags["scheduled_time"] = context.scheduled_time.isoformat()
    return tags


def _run_sensor(
    sensor: SensorDefinition,
    context: SensorEvaluationContext,
) -> SensorResult | SkipResult | EvaluationError:
    if sensor.evaluation_fn is None:
        return SkipResult(reason=f"sensor '{sensor.name}' has no evaluation function")
    result = sensor.evaluation_fn(context)
    if result is None:
        return SkipResult(reason=None)
    if isinstance(result, SkipResult):
        return result
    if isinstance(result, RunRequest):
        result = [result]
    if isinstance(result, SensorResult):
        requests = result.run_requests
        cursor = result.cursor if result.cursor is not None else context.cursor
    elif isinstance(result, (list, tuple)) and all(isinstance(item, RunRequest) for item in result):
        requests = tuple(result)
        cursor = context.cursor
    else:
        return EvaluationError(
            message=f"sensor '{sensor.name}' returned unsupported value of type {type(result).__name__}",
            error_type="TypeError",
        )
    filled = tuple(
        RunRequest(
            job_name=request.job_name or sensor.job_name,
            run_key=request.run_key,
            run_config=dict(request.run_config),
            tags={"sensor_name": sensor.name, **request.tags},
        )
        for request in requests
    )
    return SensorResult(run_requests=filled, cursor=cursor)


def _schedule_outcome_payload(outcome: RunRequest | SkipResult | EvaluationError) -> dict[str, object]:
    if isinstance(outcome, EvaluationError):
        return _evaluation_error_payload(outcome)
    if isinstance(outcome, SkipResult):
        return {"type": "skip", "reason": outcome.reason}
    return {"type": "run_request", "run_request": outcome.to_wire()}


def _sensor_outcome_payload(outcome: SensorResult | SkipResult | EvaluationError) -> dict[str, object]:
    if isinstance(outcome, EvaluationError):
        return _evaluation_error_payload(outcome)
    if isinstance(outcome, SkipResult):
        return {"type": "skip", "reason": outcome.reason}
    return {
        "type": "sensor_result",
        "run_requests": [request.to_wire() for request in outcome.run_requests],
        "cursor": outcome.cursor,
    }


def _evaluation_error_payload(error: EvaluationError) -> dict[str, object]:
    return {
        "type": "evaluation_error",
        "message": error.message,
        "error_type": error.error_type,
        "traceback": error.traceback,
    }


def _capture_error(exc: BaseException) -> EvaluationError:
    return EvaluationError(
        message=f"{type(exc).__name__}: {exc}",
        error_type=type(exc).__name__,
        traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )


def run_pipe_worker(bootstrap: WorkerBootstrap, connection: Any) -> None:
    # Spawned process target: load eagerly, then answer framed requests until shutdown or EOF.
    capture = install_log_capture(
        LogCaptureConfig.from_wire(bootstrap.log_capture or None),
        location_name=bootstrap.location_name,
    )
    base_fields = {"location_name": bootstrap.location_name, "pid": os.getpid()}
    emit_log(capture.sink, level="info", message="worker.started", fields=base_fields)
    codec = FrameCodec(secret=bootstrap.secret, max_payload_bytes=bootstrap.max_payload_bytes)
    server = WorkerServer.load(
        origin_from_wire(bootstrap.origin),
        location_name=bootstrap.location_name,
        log_sink=capture.sink,
    )
    try:
        while not server.stopping:
            try:
                body = connection.recv_bytes()
            except (EOFError, OSError):
                break
            reply = server.respond(codec, body)
            if reply is None:
                continue
            try:
                connection.send_bytes(reply)
            except (OSError, ValueError):
                break
    finally:
        emit_log(capture.sink, level="info", message="worker.stopped", fields=base_fields)
        capture.uninstall()
        connection.close()


class TcpWorkerServer:
    # Serves a WorkerServer over TCP for grpc_server origins; one thread and one request per connection.
    def __init__(
        self,
        server: WorkerServer,
        *,
        host: str = "127.0.0.1",
        port: int = 0,
        codec: FrameCodec | None = None,
        log_sink: object | None = None,
        accept_timeout_seconds: float = 0.2,
        read_timeout_seconds: float = 30.0,
    ) -> None:
        self._server = server
        self._host = host
        self._port = port
        self._codec = codec or FrameCodec()
        self._log_sink = log_sink
        self._accept_timeout = accept_timeout_seconds
        self._read_timeout = read_timeout_seconds
        self._listener: socket.socket | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        if self._listener is None:
            return (self._host, self._port)
        host, port = self._listener.getsockname()[:2]
        return (host, port)

    def open_listener(self) -> tuple[str, int]:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((self._host, self._port))
        listener.listen()
        listener.settimeout(self._accept_timeout)
        self._listener = listener
        emit_log(
            self._log_sink,
            level="info",
            message="worker.listening",
            fields={"location_name": self._server.location_name, "address": "%s:%d" % self.address},
        )
        return self.address

    def start(self) -> tuple[str, int]:
        address = self.open_listener()
        self._thread = threading.Thread(target=self.serve_forever, name="tcp-worker-accept", daemon=True)
        self._thread.start()
        return address

    def serve_forever(self) -> None:
        if self._listener is None:
            self.open_listener()
        listener = self._listener
        assert listener is not None
        try:
            while not self._stop.is_set() and not self._server.stopping:
                try:
                    conn, _ = listener.accept()
                except socket.timeout:
                    continue
                except OSError:
                    break
                threading.Thread(target=self._serve_connection, args=(conn,), daemon=True).start()
        finally:
            listener.close()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _serve_connection(self, conn: socket.socket) -> None:
        with conn:
            # A client that connects and never finishes its request is dropped at the deadline.
            deadline = time.monotonic() + self._read_timeout
            try:
                body = self._codec.read_frame(conn, deadline=deadline)
            except (OSError, ProtocolError):
                return
            conn.settimeout(self._read_timeout)
            reply = self._server.respond(self._codec, body)
            if reply is None:
                return
            try:
                self._codec.write_frame(conn, reply)
            except OSError:
                return
