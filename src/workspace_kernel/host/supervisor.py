from __future__ import annotations

import multiprocessing as mp
import secrets
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from threading import Event, Lock, Thread

from workspace_kernel.config.models import HostSettings, ReconnectConfig
from workspace_kernel.domain.errors import LocationError, LocationErrorKind, LocationFault
from workspace_kernel.domain.origins import GrpcServerOrigin, LocationOrigin, is_spawnable, origin_to_wire
from workspace_kernel.host.client import HandshakeInfo, LocationClient, default_host_id
from workspace_kernel.host.isolation import process_terminated
from workspace_kernel.observability.logging import emit_log, level_enabled
from workspace_kernel.protocol.channel import PipeChannel, SocketChannel
from workspace_kernel.protocol.framing import FrameCodec
from workspace_kernel.worker.server import WorkerBootstrap, run_pipe_worker

DisconnectCallback = Callable[[LocationError], None]


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    # Bounded exponential backoff for attaching to a server that may still be starting.
    max_attempts: int = 3
    initial_delay_seconds: float = 0.2
    max_delay_seconds: float = 2.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("reconnect delays must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    @classmethod
    def from_config(cls, config: ReconnectConfig) -> ReconnectPolicy:
        return cls(
            max_attempts=config.max_attempts,
            initial_delay_seconds=config.initial_delay_seconds,
            max_delay_seconds=config.max_delay_seconds,
            multiplier=config.multiplier,
        )

    def delays(self) -> list[float]:
        # Sleep before attempt 2..N.
        result: list[float] = []
        delay = self.initial_delay_seconds
        for _ in range(self.max_attempts - 1):
            result.append(min(delay, self.max_delay_seconds))
            delay *= self.multiplier
        return result


class ConnectionHandle:
    # Live connection to one worker; becomes disconnected once and never reconnects.
    def __init__(
        self,
        *,
        origin: LocationOrigin,
        location_name: str,
        client: LocationClient,
        process: mp.process.BaseProcess | None = None,
        on_disconnect: DisconnectCallback | None = None,
    ) -> None:
        self.origin = origin
        self.location_name = location_name
        self.client = client
        self.process = process
        self.handshake: HandshakeInfo | None = None
        self._on_disconnect = on_disconnect
        self._lock = Lock()
        self._connected = True
        self._closing = False
        self._disconnect_error: LocationError | None = None

    @property
    def pid(self) -> int | None:
        if self.process is not None:
            return self.process.pid
        return self.handshake.pid if self.handshake is not None else None

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._connected

    @property
    def closing(self) -> bool:
        with self._lock:
            return self._closing

    @property
    def disconnect_error(self) -> LocationError | None:
        with self._lock:
            return self._disconnect_error

    def mark_closing(self) -> bool:
        with self._lock:
            if self._closing:
                return False
            self._closing = True
            return True

    def mark_disconnected(self, error: LocationError) -> bool:
        # Returns True only for the first transition; closing handles do not report a loss.
        with self._lock:
            if not self._connected or self._closing:
                return False
            self._connected = False
            self._disconnect_error = error
            callback = self._on_disconnect
        if callback is not None:
            callback(error)
        return True


class ProcessSupervisor:
    # Materializes origins into handshaken connections, watches liveness, stops workers.
    def __init__(
        self,
        settings: HostSettings | None = None,
        *,
        log_sink: object | None = None,
        host_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or HostSettings()
        self._ctx = mp.get_context("spawn")
        self._log_sink = log_sink
        self._host_id = host_id or default_host_id()
        self._sleep = sleep
        self._lock = Lock()
        # Most recent lifecycle events only; older ones are dropped.
        self._events: deque[dict[str, object]] = deque(maxlen=self._settings.event_history)
        self._handles: list[ConnectionHandle] = []
        self._heartbeat_stop = Event()
        self._heartbeat_thread: Thread | None = None
        self._closed = False

    @property
    def settings(self) -> HostSettings:
        return self._settings

    def materialize(
        self,
        origin: LocationOrigin,
        *,
        location_name: str | None = None,
        on_started: Callable[[ConnectionHandle], None] | None = None,
        on_disconnect: DisconnectCallback | None = None,
    ) -> ConnectionHandle:
        # Spawn or attach, then handshake; raises LocationFault when the connection is not usable.
        name = location_name or origin.display_name
        with self._lock:
            if self._closed:
                raise RuntimeError("supervisor is shut down")
        if is_spawnable(origin):
            handle = self._spawn(origin, name, on_disconnect)
        elif isinstance(origin, GrpcServerOrigin):
            handle = self._attach(origin, name, on_disconnect)
        else:
            raise ValueError(f"unsupported origin type: {type(origin).__name__}")

        if on_started is not None:
            on_started(handle)
        try:
            handle.handshake = self._handshake(handle)
        except LocationFault as exc:
            self._emit_event(
                kind="handshake_failed",
                location_name=name,
                origin_key=origin.origin_key,
                pid=handle.pid,
                error_kind=exc.error.kind.value,
            )
            self.terminate(handle, graceful=False)
            raise
        except BaseException:
            self.terminate(handle, graceful=False)
            raise

        self._emit_event(
            kind="handshake_completed",
            location_name=name,
            origin_key=origin.origin_key,
            pid=handle.pid,
            protocol_version=handle.handshake.protocol_version,
        )
        # A handle stopped while its handshake was in flight is never registered.
        with self._lock:
            if not handle.closing:
                self._handles.append(handle)
                self._ensure_heartbeat_locked()
        return handle

    def terminate(self, handle: ConnectionHandle, *, graceful: bool = True) -> None:
        if not handle.mark_closing():
            return
        process = handle.process
        if process is not None:
            if graceful and process.is_alive():
                try:
                    handle.client.shutdown()
                except LocationFault as exc:
                    self._emit_event(
                        kind="shutdown_request_failed",
                        location_name=handle.location_name,
                        pid=process.pid,
                        error_kind=exc.error.kind.value,
                    )
                process.join(timeout=self._settings.timeouts.shutdown)
            if process.is_alive():
                process.terminate()
                process.join(timeout=1.0)
            if process.is_alive():
                process.kill()
                process.join(timeout=1.0)
        handle.client.close()
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)
        self._emit_event(
            kind="worker_stopped",
            location_name=handle.location_name,
            origin_key=handle.origin.origin_key,
            pid=handle.pid,
            mode="graceful" if graceful else "forced",
            exitcode=process.exitcode if process is not None else None,
        )

    def check_liveness(self) -> None:
        # One heartbeat pass; also callable directly from tests.
        with self._lock:
            handles = list(self._handles)
        for handle in handles:
            if handle.closing or not handle.connected:
                continue
            if handle.process is not None:
                if handle.process.is_alive():
                    continue
                error = process_terminated(handle.location_name, handle.process.exitcode)
            else:
                try:
                    handle.client.ping()
                    continue
                except LocationFault as exc:
                    if exc.error.kind is not LocationErrorKind.CONNECTION_LOST:
                        continue
                    error = exc.error
            self._report_lost(handle, error)

    def report_connection_lost(self, handle: ConnectionHandle, error: LocationError) -> None:
        self._report_lost(handle, error)

    def handles(self) -> list[ConnectionHandle]:
        with self._lock:
            return list(self._handles)

    def lifecycle_events(self) -> list[dict[str, object]]:
        with self._lock:
            return list(self._events)

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            handles = list(self._handles)
            thread = self._heartbeat_thread
            self._heartbeat_thread = None
        self._heartbeat_stop.set()
        if thread is not None:
            thread.join(timeout=self._settings.heartbeat_interval_seconds + 1.0)
        for handle in handles:
            self.terminate(handle)

    def _spawn(
        self,
        origin: LocationOrigin,
        name: str,
        on_disconnect: DisconnectCallback | None,
    ) -> ConnectionHandle:
        # Each worker gets its own signing secret; it never leaves the host/worker pair.
        secret = secrets.token_bytes(32)
        codec = FrameCodec(secret=secret, max_payload_bytes=self._settings.max_payload_bytes)
        parent_pipe, child_pipe = self._ctx.Pipe(duplex=True)
        bootstrap = WorkerBootstrap(
            origin=origin_to_wire(origin),
            location_name=name,
            secret=secret,
            max_payload_bytes=self._settings.max_payload_bytes,
            log_capture=self._settings.log_capture().to_wire(),
        )
        process = self._ctx.Process(
            target=run_pipe_worker,
            args=(bootstrap, child_pipe),
            name=f"wk:{name}",
            daemon=True,
        )
        process.start()
        child_pipe.close()
        self._emit_event(kind="worker_spawned", location_name=name, origin_key=origin.origin_key, pid=process.pid)

        channel = PipeChannel(parent_pipe, codec, is_alive=process.is_alive)
        client = LocationClient(
            channel,
            timeouts=self._settings.timeouts,
            read_retries=self._settings.read_retries,
            location_name=name,
            host_id=self._host_id,
        )
        return ConnectionHandle(
            origin=origin,
            location_name=name,
            client=client,
            process=process,
            on_disconnect=on_disconnect,
        )

    def _attach(
        self,
        origin: GrpcServerOrigin,
        name: str,
        on_disconnect: DisconnectCallback | None,
    ) -> ConnectionHandle:
        secret = self._settings.secret.encode("utf-8") if self._settings.secret else None
        codec = FrameCodec(secret=secret, max_payload_bytes=self._settings.max_payload_bytes)
        client = LocationClient(
            SocketChannel(origin.host, origin.port, codec),
            timeouts=self._settings.timeouts,
            read_retries=self._settings.read_retries,
            location_name=name,
            host_id=self._host_id,
        )
        self._emit_event(
            kind="worker_attaching",
            location_name=name,
            origin_key=origin.origin_key,
            address=f"{origin.host}:{origin.port}",
        )
        return ConnectionHandle(origin=origin, location_name=name, client=client, on_disconnect=on_disconnect)

    def _handshake(self, handle: ConnectionHandle) -> HandshakeInfo:
        if handle.process is not None:
            return handle.client.handshake()
        # Remote servers may still be binding; only refused/closed connections are retried.
        policy = ReconnectPolicy.from_config(self._settings.reconnect)
        delays = policy.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return handle.client.handshake()
            except LocationFault as exc:
                if exc.error.kind is not LocationErrorKind.CONNECTION_LOST or attempt > len(delays):
                    raise
                delay = delays[attempt - 1]
                self._emit_event(
                    kind="handshake_retry",
                    location_name=handle.location_name,
                    attempt=attempt,
                    delay_seconds=delay,
                    level="debug",
                )
                self._sleep(delay)

    def _report_lost(self, handle: ConnectionHandle, error: LocationError) -> None:
        if not handle.mark_disconnected(error):
            return
        self._emit_event(
            kind="worker_exited",
            location_name=handle.location_name,
            origin_key=handle.origin.origin_key,
            pid=handle.pid,
            error_kind=error.kind.value,
            message=error.message,
            level="warning",
        )

    def _ensure_heartbeat_locked(self) -> None:
        if self._heartbeat_thread is not None and self._heartbeat_thread.is_alive():
            return
        self._heartbeat_stop.clear()
        self._heartbeat_thread = Thread(target=self._heartbeat_loop, name="supervisor-heartbeat", daemon=True)
        self._heartbeat_thread.start()

    def _heartbeat_loop(self) -> None:
        interval = self._settings.heartbeat_interval_seconds
        while not self._heartbeat_stop.wait(interval):
            self.check_liveness()

    def _emit_event(self, *, kind: str, level: str = "info", **fields: object) -> None:
        event = {
            "kind": kind,
            "ts_epoch_ms": int(time.time() * 1000),
            **fields,
        }
        with self._lock:
            self._events.append(event)
        if not level_enabled(level, self._settings.logging.level):
            return
        emit_log(self._log_sink, level=level, message=f"supervisor.{kind}", fields=event)
