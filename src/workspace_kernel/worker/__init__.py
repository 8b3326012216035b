# Worker side: user-code loading and the request server running inside spawned or remote processes.

from workspace_kernel.worker.loader import CodeLoadError, load_code
from workspace_kernel.worker.server import (
    RequestRejected,
    TcpWorkerServer,
    WorkerBootstrap,
    WorkerServer,
    run_pipe_worker,
)

__all__ = [
    "CodeLoadError",
    "RequestRejected",
    "TcpWorkerServer",
    "WorkerBootstrap",
    "WorkerServer",
    "load_code",
    "run_pipe_worker",
]
