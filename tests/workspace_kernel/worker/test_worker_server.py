from __future__ import annotations

from workspace_kernel.domain.definitions import (
    JobDefinition,
    Repository,
    RunRequest,
    ScheduleDefinition,
    SensorDefinition,
    SensorResult,
    SkipResult,
)
from workspace_kernel.domain.errors import LocationError, LocationErrorKind
from workspace_kernel.domain.origins import PythonFileOrigin
from workspace_kernel.observability.logging import MemoryLogSink
from workspace_kernel.protocol.framing import FrameCodec
from workspace_kernel.protocol.messages import (
    KIND_EVALUATE_SCHEDULE,
    KIND_EVALUATE_SENSOR,
    KIND_GET_REPOSITORY,
    KIND_HANDSHAKE,
    KIND_LIST_REPOSITORIES,
    KIND_PING,
    KIND_SHUTDOWN,
    Message,
    request,
)
from workspace_kernel.worker.server import WorkerServer

_ORIGIN = PythonFileOrigin(path="/tmp/defs.py", location_name="loc")


def _explode(context):
    raise RuntimeError("boom")


def _server() -> WorkerServer:
    repository = Repository(
        name="R",
        jobs=[JobDefinition(name="J")],
        schedules=[
            ScheduleDefinition(name="plain", job_name="J", cron_schedule="0 0 * * *", run_config={"a": 1}),
            ScheduleDefinition(name="as_dict", job_name="J", cron_schedule="0 0 * * *", evaluation_fn=lambda ctx: {"b": 2}),
            ScheduleDefinition(name="skips", job_name="J", cron_schedule="0 0 * * *", evaluation_fn=lambda ctx: SkipResult("off")),
            ScheduleDefinition(name="fails", job_name="J", cron_schedule="0 0 * * *", evaluation_fn=_explode),
            ScheduleDefinition(
                name="odd",
                job_name="J",
                cron_schedule="0 0 * * *",
                evaluation_fn=lambda ctx: RunRequest(run_config={"value": object()}),
            ),
        ],
        sensors=[
            SensorDefinition(name="quiet", job_name="J", evaluation_fn=lambda ctx: None),
            SensorDefinition(
                name="single",
                job_name="J",
                evaluation_fn=lambda ctx: RunRequest(run_key=f"{ctx.cursor}-{ctx.last_run_key}"),
            ),
            SensorDefinition(
                name="cursor",
                job_name="J",
                evaluation_fn=lambda ctx: SensorResult(run_requests=[RunRequest(run_key="k")], cursor="next"),
            ),
            SensorDefinition(name="broken", job_name="J", evaluation_fn=_explode),
        ],
    )
    return WorkerServer(_ORIGIN, repositories=(repository,))


def test_handshake_reports_load_state() -> None:
    server = _server()
    reply = server.handle(request(KIND_HANDSHAKE, {"host_id": "h", "protocol_version": 1}))
    assert not reply.is_error
    assert reply.payload["loaded"] is True
    assert reply.payload["location_name"] == "loc"
    assert server.handle(request(KIND_PING)).payload["ok"] is True


def test_version_mismatch_is_a_location_error() -> None:
    # Rejected before dispatch; the reply still pairs with the request.
    message = Message(kind=KIND_PING, correlation_id="c1", protocol_version=99)
    reply = _server().handle(message)
    assert reply.is_error
    assert reply.correlation_id == "c1"
    assert reply.payload["category"] == "location"
    assert reply.payload["error"]["kind"] == "protocol_version_mismatch"


def test_list_and_get_repository() -> None:
    server = _server()
    listed = server.handle(request(KIND_LIST_REPOSITORIES)).payload["repositories"]
    assert listed == [{"name": "R", "job_count": 1, "schedule_count": 5, "sensor_count": 4}]
    repository = server.handle(request(KIND_GET_REPOSITORY, {"name": "R"})).payload["repository"]
    assert repository["jobs"][0]["name"] == "J"
    missing = server.handle(request(KIND_GET_REPOSITORY, {"name": "nope"}))
    assert missing.is_error
    assert missing.payload["category"] == "request"


def test_load_error_is_returned_to_reads() -> None:
    # A worker that failed to load still answers, with its classified error.
    error = LocationError(kind=LocationErrorKind.IMPORT_FAILURE, message="ModuleNotFoundError: x")
    server = WorkerServer(_ORIGIN, load_error=error)
    assert server.handle(request(KIND_HANDSHAKE, {"protocol_version": 1})).payload["loaded"] is False
    reply = server.handle(request(KIND_LIST_REPOSITORIES))
    assert reply.is_error
    assert reply.payload["error"]["kind"] == "import_failure"
    assert reply.payload["error"]["location_name"] == "loc"


def _schedule(server: WorkerServer, name: str, **extra: object) -> Message:
    payload = {"repository_name": "R", "schedule_name": name, "scheduled_time": "2024-01-01T00:00:00+00:00", **extra}
    return server.handle(request(KIND_EVALUATE_SCHEDULE, payload))


def test_schedule_outcomes() -> None:
    server = _server()
    plain = _schedule(server, "plain").payload
    assert plain["type"] == "run_request"
    assert plain["run_request"]["job_name"] == "J"
    assert plain["run_request"]["run_config"] == {"a": 1}
    assert plain["run_request"]["tags"]["scheduled_time"] == "2024-01-01T00:00:00+00:00"

    assert _schedule(server, "as_dict").payload["run_request"]["run_config"] == {"b": 2}
    assert _schedule(server, "skips").payload == {"type": "skip", "reason": "off"}


def test_schedule_user_failure_is_an_evaluation_result() -> None:
    # User-code exceptions never become location errors.
    reply = _schedule(_server(), "fails")
    assert not reply.is_error
    assert reply.payload["type"] == "evaluation_error"
    assert reply.payload["error_type"] == "RuntimeError"
    assert "boom" in reply.payload["traceback"]


def test_schedule_request_validation() -> None:
    server = _server()
    assert _schedule(server, "missing").payload["category"] == "request"
    assert _schedule(server, "plain", job_name="other").payload["category"] == "request"
    bad_time = _schedule(server, "plain", scheduled_time="yesterday")
    assert bad_time.is_error and bad_time.payload["category"] == "request"


def _sensor(server: WorkerServer, name: str, **extra: object) -> Message:
    payload = {"repository_name": "R", "sensor_name": name, "cursor": "c0", "last_run_key": "k0", **extra}
    return server.handle(request(KIND_EVALUATE_SENSOR, payload))


def test_sensor_outcomes() -> None:
    server = _server()
    assert _sensor(server, "quiet").payload == {"type": "skip", "reason": None}

    single = _sensor(server, "single").payload
    assert single["type"] == "sensor_result"
    assert single["cursor"] == "c0"
    assert single["run_requests"][0]["run_key"] == "c0-k0"
    assert single["run_requests"][0]["job_name"] == "J"
    assert single["run_requests"][0]["tags"] == {"sensor_name": "single"}

    assert _sensor(server, "cursor").payload["cursor"] == "next"
    assert _sensor(server, "broken").payload["type"] == "evaluation_error"


def test_unserializable_result_becomes_error_reply() -> None:
    # The encoder refuses the reply; the caller gets an evaluation error, not a partial frame.
    server = _server()
    codec = FrameCodec()
    message = request(
        KIND_EVALUATE_SCHEDULE,
        {"repository_name": "R", "schedule_name": "odd", "scheduled_time": None},
    )
    reply = codec.decode(server.respond(codec, codec.encode(message)))
    assert reply.is_error
    assert reply.correlation_id == message.correlation_id
    assert reply.payload["category"] == "evaluation"


def test_undecodable_request_is_dropped_and_logged() -> None:
    sink = MemoryLogSink()
    server = WorkerServer(_ORIGIN, log_sink=sink)
    assert server.respond(FrameCodec(), b"not json") is None
    assert [message.message for message in sink.messages()] == ["worker.request_rejected"]


def test_shutdown_sets_stopping() -> None:
    server = _server()
    assert not server.stopping
    assert server.handle(request(KIND_SHUTDOWN)).payload["stopping"] is True
    assert server.stopping


def test_load_classifies_failures(tmp_path) -> None:
    path = tmp_path / "bad_worker_defs.py"
    path.write_text("\n".join(["raise ImportError('nope')", ""]), encoding="utf-8")
    sink = MemoryLogSink()
    server = WorkerServer.load(PythonFileOrigin(path=str(path)), log_sink=sink)
    assert server.load_error is not None
    assert server.load_error.kind is LocationErrorKind.IMPORT_FAILURE
    assert server.load_error.location_name == "bad_worker_defs"
    assert sink.messages()[-1].message == "worker.code_load_failed"
