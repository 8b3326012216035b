# Host side: supervisor, client, failure isolation, snapshot cache and the workspace manager.

from workspace_kernel.host.cache import SnapshotCache
from workspace_kernel.host.client import HandshakeInfo, LocationClient
from workspace_kernel.host.isolation import RequestRejectedError, classify_exception, isolate
from workspace_kernel.host.location import LocationStatus, RepositoryLocation
from workspace_kernel.host.supervisor import ConnectionHandle, ProcessSupervisor, ReconnectPolicy
from workspace_kernel.host.workspace import Workspace, WorkspaceManager

__all__ = [
    "ConnectionHandle",
    "HandshakeInfo",
    "LocationClient",
    "LocationStatus",
    "ProcessSupervisor",
    "ReconnectPolicy",
    "RepositoryLocation",
    "RequestRejectedError",
    "SnapshotCache",
    "Workspace",
    "WorkspaceManager",
    "classify_exception",
    "isolate",
]
