from __future__ import annotations

import pytest

from workspace_kernel.domain.definitions import (
    JobDefinition,
    Repository,
    RunRequest,
    ScheduleDefinition,
    SensorDefinition,
    is_valid_cron,
    validate_repositories,
    validate_repository,
)
from workspace_kernel.domain.errors import DefinitionGraphError


def _repo(**overrides: object) -> Repository:
    fields: dict[str, object] = {
        "name": "R",
        "jobs": [JobDefinition(name="J")],
        "schedules": [ScheduleDefinition(name="S", job_name="J", cron_schedule="0 0 * * *")],
        "sensors": [SensorDefinition(name="watch", job_name="J")],
    }
    fields.update(overrides)
    return Repository(**fields)  # type: ignore[arg-type]


def test_valid_repository_passes_and_freezes_collections() -> None:
    # Lists passed by user code are stored as tuples.
    repo = validate_repository(_repo())
    assert isinstance(repo.jobs, tuple)
    assert repo.schedule("S").job_name == "J"
    assert repo.summary().to_wire() == {"name": "R", "job_count": 1, "schedule_count": 1, "sensor_count": 1}


def test_schedule_pointing_at_missing_job_is_a_definition_error() -> None:
    # Dangling schedule -> job reference.
    repo = _repo(schedules=[ScheduleDefinition(name="S", job_name="missing", cron_schedule="0 0 * * *")])
    with pytest.raises(DefinitionGraphError, match="unknown job 'missing'"):
        validate_repository(repo)


def test_sensor_pointing_at_missing_job_is_a_definition_error() -> None:
    repo = _repo(sensors=[SensorDefinition(name="watch", job_name="nope")])
    with pytest.raises(DefinitionGraphError, match="unknown job 'nope'"):
        validate_repository(repo)


def test_definition_names_are_unique_across_kinds() -> None:
    # A sensor may not reuse a job's name.
    repo = _repo(sensors=[SensorDefinition(name="J", job_name="J")])
    with pytest.raises(DefinitionGraphError, match="duplicate definition name 'J'"):
        validate_repository(repo)


def test_repository_names_are_unique_within_a_location() -> None:
    with pytest.raises(DefinitionGraphError, match="duplicate repository name 'R'"):
        validate_repositories([_repo(), _repo()])


def test_invalid_cron_and_interval_are_rejected() -> None:
    # Cron needs five fields; sensor interval must be positive.
    with pytest.raises(DefinitionGraphError, match="invalid cron"):
        validate_repository(_repo(schedules=[ScheduleDefinition(name="S", job_name="J", cron_schedule="daily")]))
    with pytest.raises(DefinitionGraphError, match="minimum_interval_seconds"):
        validate_repository(_repo(sensors=[SensorDefinition(name="watch", job_name="J", minimum_interval_seconds=0)]))


@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("0 0 * * *", True),
        ("*/5 1-3 * * MON-FRI", True),
        ("@daily", True),
        ("0 0 * *", False),
        ("", False),
    ],
)
def test_cron_shape(expression: str, expected: bool) -> None:
    assert is_valid_cron(expression) is expected


def test_evaluation_fn_is_not_part_of_wire_form_or_equality() -> None:
    # Callables stay inside the worker.
    with_fn = ScheduleDefinition(name="S", job_name="J", cron_schedule="0 0 * * *", evaluation_fn=lambda ctx: None)
    without_fn = ScheduleDefinition(name="S", job_name="J", cron_schedule="0 0 * * *")
    assert with_fn == without_fn
    assert "evaluation_fn" not in with_fn.to_wire()


def test_repository_wire_form_rebuilds_metadata() -> None:
    # Host side rebuilds definitions from what the worker sends.
    repo = _repo(jobs=[JobDefinition(name="J", description="nightly", tags={"team": "data"}, config_schema={"x": "int"})])
    restored = Repository.from_wire(repo.to_wire())
    assert restored == repo
    assert restored.job("J").tags == {"team": "data"}


def test_malformed_repository_payload() -> None:
    with pytest.raises(DefinitionGraphError):
        Repository.from_wire({"jobs": []})
    with pytest.raises(DefinitionGraphError):
        Repository.from_wire(["R"])


def test_run_request_wire_defaults() -> None:
    request = RunRequest.from_wire({"job_name": "J"})
    assert request == RunRequest(job_name="J")
