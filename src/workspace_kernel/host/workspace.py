from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from threading import Condition, Lock

from workspace_kernel.config.loader import ConfigEntryError, WorkspaceConfig, load_workspace_config
from workspace_kernel.config.models import HostSettings
from workspace_kernel.domain.definitions import DefinitionRef, ScheduleOutcome, SensorOutcome
from workspace_kernel.domain.errors import LocationError
from workspace_kernel.domain.snapshot import LocationSnapshot
from workspace_kernel.host.cache import SnapshotCache
from workspace_kernel.host.isolation import unexpected_failure
from workspace_kernel.host.location import LocationStatus, RepositoryLocation
from workspace_kernel.host.supervisor import ProcessSupervisor
from workspace_kernel.observability.logging import build_log_sink, emit_log, level_enabled


@dataclass(slots=True)
class _ReloadSlot:
    # Per-origin single-writer state: requested/completed generations and the in-flight candidate.
    requested: int = 0
    completed: int = 0
    candidate: RepositoryLocation | None = None
    run_lock: Lock = field(default_factory=Lock)
    changed: Condition = field(default_factory=Condition)


class WorkspaceManager:
    # Builds a Workspace from a WorkspaceConfig; settings default to the ones in the config.
    def __init__(
        self,
        settings: HostSettings | None = None,
        *,
        supervisor: ProcessSupervisor | None = None,
        log_sink: object | None = None,
    ) -> None:
        self._settings = settings
        self._supervisor = supervisor
        self._log_sink = log_sink

    def load(self, config: WorkspaceConfig) -> Workspace:
        settings = self._settings or config.settings
        log_sink = self._log_sink
        if log_sink is None:
            # No exporters configured means no host log output.
            log_sink = build_log_sink([item.model_dump(exclude_none=True) for item in settings.logging.exporters])
        owns_supervisor = self._supervisor is None
        supervisor = self._supervisor or ProcessSupervisor(settings, log_sink=log_sink)
        workspace = Workspace(
            config,
            settings=settings,
            supervisor=supervisor,
            log_sink=log_sink,
            owns_supervisor=owns_supervisor,
        )
        try:
            workspace.reload()
        except BaseException:
            workspace.shutdown()
            raise
        return workspace


class Workspace:
    # Live set of locations for one config; other origins are untouched by any single reload.
    def __init__(
        self,
        config: WorkspaceConfig,
        *,
        settings: HostSettings,
        supervisor: ProcessSupervisor,
        log_sink: object | None = None,
        owns_supervisor: bool = False,
    ) -> None:
        self._config = config
        self._settings = settings
        self._supervisor = supervisor
        self._log_sink = log_sink
        self._owns_supervisor = owns_supervisor
        self._cache = SnapshotCache()
        self._lock = Lock()
        self._locations: dict[str, RepositoryLocation] = {}
        self._slots = {origin.origin_key: _ReloadSlot() for origin in config.origins}
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent_loads,
            thread_name_prefix="workspace-load",
        )
        self._closed = False
        self._log_config_errors(config)

    def __enter__(self) -> Workspace:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.shutdown()

    @property
    def config(self) -> WorkspaceConfig:
        return self._config

    @property
    def config_errors(self) -> tuple[ConfigEntryError, ...]:
        return self._config.errors

    @property
    def cache(self) -> SnapshotCache:
        return self._cache

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    def locations(self) -> list[RepositoryLocation]:
        config = self._config
        locations = self._locations
        return [locations[origin.origin_key] for origin in config.origins if origin.origin_key in locations]

    def location(self, name: str) -> RepositoryLocation:
        for location in self.locations():
            if location.name == name:
                return location
        raise KeyError(f"unknown location: {name}")

    def location_for_key(self, origin_key: str) -> RepositoryLocation:
        location = self._locations.get(origin_key)
        if location is None:
            raise KeyError(f"unknown origin_key: {origin_key}")
        return location

    def get_snapshot(self, origin_key: str) -> LocationSnapshot | None:
        return self._cache.get(origin_key)

    def is_stale(self, ref: DefinitionRef) -> bool:
        current = self._cache.get(ref.origin_key)
        return current is None or current.snapshot_id != ref.snapshot_id

    def reload(self, origin_key: str | None = None) -> None:
        # Blocks until every targeted origin reflects a load at least as new as this request.
        self._ensure_open()
        if origin_key is None:
            keys = [origin.origin_key for origin in self._config.origins]
        else:
            if self._config.origin(origin_key) is None:
                raise KeyError(f"unknown origin_key: {origin_key}")
            keys = [origin_key]
        self._reload_keys(keys)

    def reload_config(self, config: WorkspaceConfig | None = None) -> None:
        # Swap in a new origin list: added or edited origins load, removed ones close,
        # unchanged ones keep their worker. Without an argument the source file is read again.
        self._ensure_open()
        if config is None:
            if self._config.source_path is None:
                raise ValueError("workspace config has no source file to reload from")
            config = load_workspace_config(Path(self._config.source_path))

        with self._lock:
            previous = {origin.origin_key: origin for origin in self._config.origins}
            current = {origin.origin_key for origin in config.origins}
            removed = set(previous) - current
            slots = dict(self._slots)
            for key in current - set(previous):
                slots.setdefault(key, _ReloadSlot())
            self._slots = slots
            self._config = config
            locations = dict(self._locations)
            dropped = [locations.pop(key) for key in removed if key in locations]
            self._locations = locations

        self._log_config_errors(config)
        for key in removed:
            # Supersede anything still loading for the removed origin.
            self._request(key)
            self._cache.evict(key)
        for location in dropped:
            location.close()
            self._log("info", "workspace.location_removed", origin_key=location.origin_key, location_name=location.name)
        # Same key with different content, e.g. a renamed location, is reloaded in place.
        changed = [origin.origin_key for origin in config.origins if previous.get(origin.origin_key) != origin]
        if changed:
            self._reload_keys(changed)

    def evaluate_schedule(
        self,
        location_name: str,
        *,
        repository_name: str,
        schedule_name: str,
        scheduled_time: datetime | None = None,
    ) -> ScheduleOutcome | LocationError:
        location = self.location(location_name)
        snapshot = self._cache.get(location.origin_key)
        job_name = _schedule_job(snapshot, repository_name, schedule_name)
        return location.evaluate_schedule(
            repository_name=repository_name,
            schedule_name=schedule_name,
            scheduled_time=scheduled_time,
            job_name=job_name,
        )

    def evaluate_sensor(
        self,
        location_name: str,
        *,
        repository_name: str,
        sensor_name: str,
        cursor: str | None = None,
        last_run_key: str | None = None,
    ) -> SensorOutcome | LocationError:
        location = self.location(location_name)
        snapshot = self._cache.get(location.origin_key)
        job_name = _sensor_job(snapshot, repository_name, sensor_name)
        return location.evaluate_sensor(
            repository_name=repository_name,
            sensor_name=sensor_name,
            cursor=cursor,
            last_run_key=last_run_key,
            job_name=job_name,
        )

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            locations = list(self._locations.values())
            slots = list(self._slots.values())
        for slot in slots:
            with slot.changed:
                candidate = slot.candidate
            if candidate is not None:
                candidate.cancel()
        self._executor.shutdown(wait=True)
        for location in locations:
            location.close()
        if self._owns_supervisor:
            self._supervisor.shutdown()
        self._log("info", "workspace.shutdown", locations=len(locations))

    def _ensure_open(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("workspace is shut down")

    def _reload_keys(self, keys: list[str]) -> None:
        requests = [(key, self._request(key)) for key in keys]
        futures = [self._executor.submit(self._reload_origin, key, generation) for key, generation in requests]
        for future in futures:
            future.result()
        for key, generation in requests:
            slot = self._slots[key]
            with slot.changed:
                slot.changed.wait_for(lambda: slot.completed >= generation)

    def _request(self, origin_key: str) -> int:
        # New request supersedes whatever is loading for this origin.
        slot = self._slots[origin_key]
        with slot.changed:
            slot.requested += 1
            generation = slot.requested
            candidate = slot.candidate
        if candidate is not None:
            self._log("info", "workspace.load_cancelled", origin_key=origin_key, location_name=candidate.name)
            candidate.cancel()
        return generation

    def _reload_origin(self, origin_key: str, generation: int) -> None:
        slot = self._slots[origin_key]
        with slot.run_lock:
            origin = self._config.origin(origin_key)
            with slot.changed:
                if generation < slot.requested or origin is None:
                    slot.completed = max(slot.completed, generation)
                    slot.changed.notify_all()
                    return
            candidate = RepositoryLocation(origin, supervisor=self._supervisor, log_sink=self._log_sink)
            with slot.changed:
                slot.candidate = candidate
            try:
                candidate.load()
            except Exception as exc:
                # Unclassified failure: this origin fails, the rest of the workspace keeps loading.
                candidate.mark_failed(unexpected_failure(exc, location_name=candidate.name))
            except BaseException:
                with slot.changed:
                    slot.candidate = None
                    slot.completed = max(slot.completed, generation)
                    slot.changed.notify_all()
                raise
            with slot.changed:
                slot.candidate = None
                superseded = generation < slot.requested
            if superseded or not self._swap(origin_key, candidate, generation):
                candidate.close()
                self._log("info", "workspace.load_discarded", origin_key=origin_key, generation=generation)
            with slot.changed:
                slot.completed = max(slot.completed, generation)
                slot.changed.notify_all()

    def _swap(self, origin_key: str, candidate: RepositoryLocation, generation: int) -> bool:
        # False when the origin left the config while this candidate was loading.
        with self._lock:
            if self._config.origin(origin_key) is None:
                return False
            if candidate.status is LocationStatus.LOADED and candidate.snapshot is not None:
                self._cache.publish(origin_key, candidate.snapshot, generation)
            previous = self._locations.get(origin_key)
            updated = dict(self._locations)
            updated[origin_key] = candidate
            self._locations = updated
        if previous is not None and previous is not candidate:
            previous.close()
        error = candidate.error
        self._log(
            "info" if error is None else "warning",
            "workspace.location_swapped",
            origin_key=origin_key,
            location_name=candidate.name,
            status=candidate.status.value,
            generation=generation,
            error=error.display() if error is not None else None,
        )
        return True

    def _log_config_errors(self, config: WorkspaceConfig) -> None:
        for entry in config.errors:
            self._log("warning", "workspace.config_entry_rejected", index=entry.index, error=entry.message)

    def _log(self, level: str, message: str, **fields: object) -> None:
        if not level_enabled(level, self._settings.logging.level):
            return
        emit_log(self._log_sink, level=level, message=message, fields=fields)


def _schedule_job(snapshot: LocationSnapshot | None, repository_name: str, schedule_name: str) -> str | None:
    if snapshot is None:
        return None
    repository = snapshot.repository(repository_name)
    if repository is None:
        raise KeyError(f"repository '{repository_name}' is not in location '{snapshot.location_name}'")
    schedule = repository.schedule(schedule_name)
    if schedule is None:
        raise KeyError(f"schedule '{schedule_name}' is not in repository '{repository_name}'")
    return schedule.job_name


def _sensor_job(snapshot: LocationSnapshot | None, repository_name: str, sensor_name: str) -> str | None:
    if snapshot is None:
        return None
    repository = snapshot.repository(repository_name)
    if repository is None:
        raise KeyError(f"repository '{repository_name}' is not in location '{snapshot.location_name}'")
    sensor = repository.sensor(sensor_name)
    if sensor is None:
        raise KeyError(f"sensor '{sensor_name}' is not in repository '{repository_name}'")
    return sensor.job_name
