from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import Enum
from threading import Event, RLock
from typing import TypeVar

from workspace_kernel.domain.definitions import (
    Repository,
    RepositorySummary,
    ScheduleOutcome,
    SensorOutcome,
)
from workspace_kernel.domain.errors import LocationError, LocationErrorKind, LocationFault
from workspace_kernel.domain.origins import LocationOrigin
from workspace_kernel.domain.snapshot import LocationSnapshot, build_snapshot
from workspace_kernel.host.client import LocationClient
from workspace_kernel.host.isolation import isolate
from workspace_kernel.host.supervisor import ConnectionHandle, ProcessSupervisor
from workspace_kernel.observability.logging import emit_log

T = TypeVar("T")


class LocationStatus(str, Enum):
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class RepositoryLocation:
    # Host-side state of one origin. Every failure below this boundary is stored as a LocationError value.
    def __init__(
        self,
        origin: LocationOrigin,
        *,
        supervisor: ProcessSupervisor,
        log_sink: object | None = None,
    ) -> None:
        self._origin = origin
        self._name = origin.display_name
        self._supervisor = supervisor
        self._log_sink = log_sink
        self._lock = RLock()
        self._status = LocationStatus.LOADING
        self._snapshot: LocationSnapshot | None = None
        self._error: LocationError | None = None
        self._handle: ConnectionHandle | None = None
        self._cancelled = Event()

    @property
    def origin(self) -> LocationOrigin:
        return self._origin

    @property
    def name(self) -> str:
        return self._name

    @property
    def origin_key(self) -> str:
        return self._origin.origin_key

    @property
    def status(self) -> LocationStatus:
        with self._lock:
            return self._status

    @property
    def snapshot(self) -> LocationSnapshot | None:
        with self._lock:
            return self._snapshot

    @property
    def error(self) -> LocationError | None:
        with self._lock:
            return self._error

    @property
    def handle(self) -> ConnectionHandle | None:
        with self._lock:
            return self._handle

    @property
    def pid(self) -> int | None:
        handle = self.handle
        return handle.pid if handle is not None else None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def load(self) -> LocationStatus:
        # LOADING -> LOADED | FAILED; runs at most once per instance.
        try:
            with isolate(self._name):
                handle = self._supervisor.materialize(
                    self._origin,
                    location_name=self._name,
                    on_started=self._attach,
                    on_disconnect=self._on_disconnect,
                )
                if self._cancelled.is_set():
                    raise LocationFault.of(
                        LocationErrorKind.CONNECTION_LOST,
                        "load cancelled by a newer reload",
                        location_name=self._name,
                    )
                snapshot = self._fetch_snapshot(handle.client)
        except LocationFault as exc:
            self._fail(exc.error)
            handle = self.handle
            if handle is not None:
                self._supervisor.terminate(handle, graceful=False)
            return LocationStatus.FAILED

        with self._lock:
            if self._status is LocationStatus.LOADING:
                self._snapshot = snapshot
                self._status = LocationStatus.LOADED
            status = self._status
        emit_log(
            self._log_sink,
            level="info",
            message="location.loaded",
            fields={
                "location_name": self._name,
                "origin_key": self.origin_key,
                "pid": self.pid,
                "snapshot_id": snapshot.snapshot_id,
                "repositories": snapshot.repository_names(),
            },
        )
        return status

    def mark_failed(self, error: LocationError) -> None:
        # Load aborted outside the classified paths; the worker, if any, is killed.
        self._fail(error)
        handle = self.handle
        if handle is not None:
            self._supervisor.terminate(handle, graceful=False)

    def cancel(self) -> None:
        # Kill an in-flight load; any RPC it is blocked on fails fast.
        self._cancelled.set()
        handle = self.handle
        if handle is not None:
            self._supervisor.terminate(handle, graceful=False)

    def close(self) -> None:
        handle = self.handle
        if handle is not None:
            self._supervisor.terminate(handle)

    def ping(self) -> bool | LocationError:
        return self._guarded(lambda client: client.ping())

    def list_repositories(self) -> list[RepositorySummary] | LocationError:
        return self._guarded(lambda client: client.list_repositories())

    def get_repository(self, name: str) -> Repository | LocationError:
        return self._guarded(lambda client: client.get_repository(name))

    def evaluate_schedule(
        self,
        *,
        repository_name: str,
        schedule_name: str,
        scheduled_time: datetime | None = None,
        job_name: str | None = None,
    ) -> ScheduleOutcome | LocationError:
        return self._guarded(
            lambda client: client.evaluate_schedule(
                repository_name=repository_name,
                schedule_name=schedule_name,
                scheduled_time=scheduled_time,
                job_name=job_name,
            )
        )

    def evaluate_sensor(
        self,
        *,
        repository_name: str,
        sensor_name: str,
        cursor: str | None = None,
        last_run_key: str | None = None,
        job_name: str | None = None,
    ) -> SensorOutcome | LocationError:
        return self._guarded(
            lambda client: client.evaluate_sensor(
                repository_name=repository_name,
                sensor_name=sensor_name,
                cursor=cursor,
                last_run_key=last_run_key,
                job_name=job_name,
            )
        )

    def _guarded(self, call: Callable[[LocationClient], T]) -> T | LocationError:
        with self._lock:
            handle = self._handle
            status = self._status
            error = self._error
        if handle is None or status is not LocationStatus.LOADED:
            return error or LocationError(
                kind=LocationErrorKind.CONNECTION_LOST,
                message="location is not loaded",
                location_name=self._name,
            )
        if not handle.connected and handle.disconnect_error is not None:
            return handle.disconnect_error
        try:
            with isolate(self._name):
                return call(handle.client)
        except LocationFault as exc:
            if exc.error.kind is LocationErrorKind.CONNECTION_LOST:
                self._supervisor.report_connection_lost(handle, exc.error)
            return exc.error

    def _fetch_snapshot(self, client: LocationClient) -> LocationSnapshot:
        summaries = client.list_repositories()
        repositories = [client.get_repository(summary.name) for summary in summaries]
        return build_snapshot(location_name=self._name, origin_key=self.origin_key, repositories=repositories)

    def _attach(self, handle: ConnectionHandle) -> None:
        with self._lock:
            self._handle = handle
        if self._cancelled.is_set():
            self._supervisor.terminate(handle, graceful=False)

    def _on_disconnect(self, error: LocationError) -> None:
        # Heartbeat or RPC observed the worker gone; the last snapshot stays readable, status flips.
        with self._lock:
            if self._status is LocationStatus.FAILED:
                return
            self._status = LocationStatus.FAILED
            self._error = error
        emit_log(
            self._log_sink,
            level="warning",
            message="location.disconnected",
            fields={"location_name": self._name, "origin_key": self.origin_key, "error": error.display()},
        )

    def _fail(self, error: LocationError) -> None:
        with self._lock:
            self._status = LocationStatus.FAILED
            self._error = error
        emit_log(
            self._log_sink,
            level="warning",
            message="location.load_failed",
            fields={
                "location_name": self._name,
                "origin_key": self.origin_key,
                "error_kind": error.kind.value,
                "error": error.display(),
            },
        )
