from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from workspace_kernel.domain.errors import DefinitionGraphError

# Definition records are opaque metadata on the host side; evaluation callables only exist inside workers.

_CRON_FIELD = re.compile(r"^[0-9A-Za-z*/,\-?LW#]+$")
_CRON_ALIASES = frozenset({"@yearly", "@annually", "@monthly", "@weekly", "@daily", "@midnight", "@hourly"})


def _str_dict(value: object, label: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionGraphError(f"{label} must be a mapping")
    return {str(key): str(item) for key, item in value.items()}


def _any_dict(value: object, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionGraphError(f"{label} must be a mapping")
    return dict(value)


def is_valid_cron(expression: str) -> bool:
    if not isinstance(expression, str):
        return False
    text = expression.strip()
    if text in _CRON_ALIASES:
        return True
    parts = text.split()
    return len(parts) == 5 and all(_CRON_FIELD.match(part) for part in parts)


@dataclass(frozen=True, slots=True)
class JobDefinition:
    name: str
    description: str | None = None
    config_schema: dict[str, Any] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)

    def to_wire(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "config_schema": dict(self.config_schema),
            "tags": dict(self.tags),
        }

    @classmethod
    def from_wire(cls, wire: dict[str, Any]) -> JobDefinition:
        return cls(
            name=wire["name"],
            description=wire.get("description"),
            config_schema=_any_dict(wire.get("config_schema"), "job.config_schema"),
            tags=_str_dict(wire.get("tags"), "job.tags"),
        )


@dataclass(frozen=True, slots=True)
class ScheduleDefinition:
    name: str
    job_name: str
    cron_schedule: str
    execution_timezone: str | None = None
    description: str | None = None
    run_config: dict[str, Any] = field(default_factory=dict)
    evaluation_fn: Callable[..., Any] | None = field(default=None, compare=False, repr=False)

    def to_wire(self) -> dict[str, object]:
        return {
            "name": self.name,
            "job_name": self.job_name,
            "cron_schedule": self.cron_schedule,
            "execution_timezone": self.execution_timezone,
            "description": self.description,
            "run_config": dict(self.run_config),
        }

    @classmethod
    def from_wire(cls, wire: dict[str, Any]) -> ScheduleDefinition:
        return cls(
            name=wire["name"],
            job_name=wire["job_name"],
            cron_schedule=wire["cron_schedule"],
            execution_timezone=wire.get("execution_timezone"),
            description=wire.get("description"),
            run_config=_any_dict(wire.get("run_config"), "schedule.run_config"),
        )


@dataclass(frozen=True, slots=True)
class SensorDefinition:
    name: str
    job_name: str
    minimum_interval_seconds: int = 30
    description: str | None = None
    evaluation_fn: Callable[..., Any] | None = field(default=None, compare=False, repr=False)

    def to_wire(self) -> dict[str, object]:
        return {
            "name": self.name,
            "job_name": self.job_name,
            "minimum_interval_seconds": self.minimum_interval_seconds,
            "description": self.description,
        }

    @classmethod
    def from_wire(cls, wire: dict[str, Any]) -> SensorDefinition:
        return cls(
            name=wire["name"],
            job_name=wire["job_name"],
            minimum_interval_seconds=int(wire.get("minimum_interval_seconds", 30)),
            description=wire.get("description"),
        )


@dataclass(frozen=True, slots=True)
class RepositorySummary:
    name: str
    job_count: int
    schedule_count: int
    sensor_count: int

    def to_wire(self) -> dict[str, object]:
        return {
            "name": self.name,
            "job_count": self.job_count,
            "schedule_count": self.schedule_count,
            "sensor_count": self.sensor_count,
        }

    @classmethod
    def from_wire(cls, wire: dict[str, Any]) -> RepositorySummary:
        return cls(
            name=wire["name"],
            job_count=int(wire.get("job_count", 0)),
            schedule_count=int(wire.get("schedule_count", 0)),
            sensor_count=int(wire.get("sensor_count", 0)),
        )


@dataclass(frozen=True, slots=True)
class Repository:
    # Named collection of definitions; lists passed in are frozen into tuples.
    name: str
    jobs: tuple[JobDefinition, ...] = ()
    schedules: tuple[ScheduleDefinition, ...] = ()
    sensors: tuple[SensorDefinition, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "schedules", tuple(self.schedules))
        object.__setattr__(self, "sensors", tuple(self.sensors))

    def job(self, name: str) -> JobDefinition | None:
        return next((item for item in self.jobs if item.name == name), None)

    def schedule(self, name: str) -> ScheduleDefinition | None:
        return next((item for item in self.schedules if item.name == name), None)

    def sensor(self, name: str) -> SensorDefinition | None:
        return next((item for item in self.sensors if item.name == name), None)

    def summary(self) -> RepositorySummary:
        return RepositorySummary(
            name=self.name,
            job_count=len(self.jobs),
            schedule_count=len(self.schedules),
            sensor_count=len(self.sensors),
        )

    def to_wire(self) -> dict[str, object]:
        return {
            "name": self.name,
            "jobs": [item.to_wire() for item in self.jobs],
            "schedules": [item.to_wire() for item in self.schedules],
            "sensors": [item.to_wire() for item in self.sensors],
        }

    @classmethod
    def from_wire(cls, wire: object) -> Repository:
        if not isinstance(wire, dict):
            raise DefinitionGraphError("repository payload must be a mapping")
        try:
            return cls(
                name=wire["name"],
                jobs=tuple(JobDefinition.from_wire(item) for item in wire.get("jobs", [])),
                schedules=tuple(ScheduleDefinition.from_wire(item) for item in wire.get("schedules", [])),
                sensors=tuple(SensorDefinition.from_wire(item) for item in wire.get("sensors", [])),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise DefinitionGraphError(f"repository payload is malformed: {exc!r}") from exc


def validate_repository(repository: Repository) -> Repository:
    # Load-time referential checks: unique names and schedule/sensor -> job references.
    if not isinstance(repository, Repository):
        raise DefinitionGraphError(f"expected Repository, got {type(repository).__name__}")
    if not isinstance(repository.name, str) or not repository.name:
        raise DefinitionGraphError("repository name must be a non-empty string")

    seen: set[str] = set()
    for definition in (*repository.jobs, *repository.schedules, *repository.sensors):
        if not isinstance(definition, (JobDefinition, ScheduleDefinition, SensorDefinition)):
            raise DefinitionGraphError(
                f"repository '{repository.name}' contains unsupported definition {type(definition).__name__}"
            )
        if not isinstance(definition.name, str) or not definition.name:
            raise DefinitionGraphError(f"repository '{repository.name}' has a definition without a name")
        if definition.name in seen:
            raise DefinitionGraphError(
                f"duplicate definition name '{definition.name}' in repository '{repository.name}'"
            )
        seen.add(definition.name)

    job_names = {job.name for job in repository.jobs}
    for schedule in repository.schedules:
        if schedule.job_name not in job_names:
            raise DefinitionGraphError(
                f"schedule '{schedule.name}' targets unknown job '{schedule.job_name}' "
                f"in repository '{repository.name}'"
            )
        if not is_valid_cron(schedule.cron_schedule):
            raise DefinitionGraphError(
                f"schedule '{schedule.name}' has invalid cron expression {schedule.cron_schedule!r}"
            )
    for sensor in repository.sensors:
        if sensor.job_name not in job_names:
            raise DefinitionGraphError(
                f"sensor '{sensor.name}' targets unknown job '{sensor.job_name}' "
                f"in repository '{repository.name}'"
            )
        if not isinstance(sensor.minimum_interval_seconds, int) or sensor.minimum_interval_seconds <= 0:
            raise DefinitionGraphError(f"sensor '{sensor.name}' minimum_interval_seconds must be > 0")
    return repository


def validate_repositories(repositories: Iterable[Repository]) -> tuple[Repository, ...]:
    validated: list[Repository] = []
    names: set[str] = set()
    for repository in repositories:
        validate_repository(repository)
        if repository.name in names:
            raise DefinitionGraphError(f"duplicate repository name '{repository.name}'")
        names.add(repository.name)
        validated.append(repository)
    return tuple(validated)


@dataclass(frozen=True, slots=True)
class RunRequest:
    job_name: str | None = None
    run_key: str | None = None
    run_config: dict[str, Any] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)

    def to_wire(self) -> dict[str, object]:
        return {
            "job_name": self.job_name,
            "run_key": self.run_key,
            "run_config": dict(self.run_config),
            "tags": dict(self.tags),
        }

    @classmethod
    def from_wire(cls, wire: dict[str, Any]) -> RunRequest:
        return cls(
            job_name=wire.get("job_name"),
            run_key=wire.get("run_key"),
            run_config=_any_dict(wire.get("run_config"), "run_request.run_config"),
            tags=_str_dict(wire.get("tags"), "run_request.tags"),
        )


@dataclass(frozen=True, slots=True)
class SkipResult:
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class SensorResult:
    run_requests: tuple[RunRequest, ...] = ()
    cursor: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "run_requests", tuple(self.run_requests))


@dataclass(frozen=True, slots=True)
class EvaluationError:
    # User-code failure inside a schedule/sensor evaluation.
    message: str
    error_type: str | None = None
    traceback: str | None = None


@dataclass(slots=True)
class ScheduleEvaluationContext:
    scheduled_time: datetime | None
    repository_name: str
    schedule_name: str


@dataclass(slots=True)
class SensorEvaluationContext:
    cursor: str | None
    repository_name: str
    sensor_name: str
    last_run_key: str | None = None

    def update_cursor(self, cursor: str | None) -> None:
        self.cursor = cursor


@dataclass(frozen=True, slots=True)
class DefinitionRef:
    # Cross-process identity of a definition inside one published snapshot.
    origin_key: str
    repository_name: str
    name: str
    snapshot_id: str


ScheduleOutcome = RunRequest | SkipResult | EvaluationError
SensorOutcome = SensorResult | SkipResult | EvaluationError
