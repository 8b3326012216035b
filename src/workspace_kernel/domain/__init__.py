# Domain package: origins, definition records, snapshots and the location error taxonomy.

from workspace_kernel.domain.definitions import (
    DefinitionRef,
    EvaluationError,
    JobDefinition,
    Repository,
    RepositorySummary,
    RunRequest,
    ScheduleDefinition,
    ScheduleEvaluationContext,
    SensorDefinition,
    SensorEvaluationContext,
    SensorResult,
    SkipResult,
    validate_repositories,
    validate_repository,
)
from workspace_kernel.domain.errors import (
    DefinitionGraphError,
    LocationError,
    LocationErrorKind,
    LocationFault,
)
from workspace_kernel.domain.origins import (
    GrpcServerOrigin,
    LocationOrigin,
    OriginError,
    PythonFileOrigin,
    PythonModuleOrigin,
    origin_from_wire,
    origin_to_wire,
)
from workspace_kernel.domain.snapshot import LocationSnapshot, build_snapshot, compute_snapshot_id

__all__ = [
    "DefinitionGraphError",
    "DefinitionRef",
    "EvaluationError",
    "GrpcServerOrigin",
    "JobDefinition",
    "LocationError",
    "LocationErrorKind",
    "LocationFault",
    "LocationOrigin",
    "LocationSnapshot",
    "OriginError",
    "PythonFileOrigin",
    "PythonModuleOrigin",
    "Repository",
    "RepositorySummary",
    "RunRequest",
    "ScheduleDefinition",
    "ScheduleEvaluationContext",
    "SensorDefinition",
    "SensorEvaluationContext",
    "SensorResult",
    "SkipResult",
    "build_snapshot",
    "compute_snapshot_id",
    "origin_from_wire",
    "origin_to_wire",
    "validate_repositories",
    "validate_repository",
]
