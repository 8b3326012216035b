from __future__ import annotations

# Public definition API imported by user code running inside workers.

from workspace_kernel.domain.definitions import (
    JobDefinition,
    Repository,
    RunRequest,
    ScheduleDefinition,
    ScheduleEvaluationContext,
    SensorDefinition,
    SensorEvaluationContext,
    SensorResult,
    SkipResult,
)

__all__ = [
    "JobDefinition",
    "Repository",
    "RunRequest",
    "ScheduleDefinition",
    "ScheduleEvaluationContext",
    "SensorDefinition",
    "SensorEvaluationContext",
    "SensorResult",
    "SkipResult",
]
