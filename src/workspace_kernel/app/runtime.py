from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import TextIO

from workspace_kernel.app.cli import parse_args
from workspace_kernel.config.loader import (
    ConfigError,
    WorkspaceConfig,
    WorkspaceFileNotFoundError,
    load_workspace_config,
    single_location_config,
)
from workspace_kernel.host.location import LocationStatus
from workspace_kernel.host.workspace import Workspace, WorkspaceManager
from workspace_kernel.observability.capture import install_log_capture
from workspace_kernel.protocol.framing import FrameCodec
from workspace_kernel.worker.server import TcpWorkerServer, WorkerServer

EXIT_OK = 0
EXIT_WORKSPACE_NOT_FOUND = 2
EXIT_LOCATION_ERROR = 3
EXIT_CONFIG_ERROR = 4


def run(argv: list[str] | None, *, stdout: TextIO | None = None, stderr: TextIO | None = None) -> int:
    # CLI entrypoint; returns a process exit code instead of raising.
    args = parse_args(argv or [])
    out = stdout or sys.stdout
    err = stderr or sys.stderr
    if args.command == "serve":
        return run_serve(args, stdout=out, stderr=err)
    return run_locations(args, stdout=out, stderr=err)


def run_locations(args: argparse.Namespace, *, stdout: TextIO, stderr: TextIO) -> int:
    try:
        config = config_from_args(args)
    except WorkspaceFileNotFoundError as exc:
        print(f"error: {exc}", file=stderr)
        return EXIT_WORKSPACE_NOT_FOUND
    except ConfigError as exc:
        print(f"error: {exc}", file=stderr)
        return EXIT_CONFIG_ERROR

    for entry in config.errors:
        print(json.dumps({"config_error": entry.display()}), file=stdout)
    with WorkspaceManager().load(config) as workspace:
        rows = describe_locations(workspace)
    for row in rows:
        print(json.dumps(row, sort_keys=True), file=stdout)

    # A failed location outranks rejected config entries.
    if any(row["status"] != LocationStatus.LOADED.value for row in rows):
        return EXIT_LOCATION_ERROR
    if config.errors:
        return EXIT_CONFIG_ERROR
    return EXIT_OK


def run_serve(args: argparse.Namespace, *, stdout: TextIO, stderr: TextIO) -> int:
    try:
        config = config_from_args(args)
    except ConfigError as exc:
        print(f"error: {exc}", file=stderr)
        return EXIT_CONFIG_ERROR

    origin = config.origins[0]
    capture = install_log_capture(config.settings.log_capture(), location_name=origin.display_name)
    server = WorkerServer.load(origin, log_sink=capture.sink)
    if server.load_error is not None:
        print(f"warning: {server.load_error.display()}", file=stderr)
    codec = FrameCodec(secret=args.secret.encode("utf-8") if args.secret else None)
    tcp = TcpWorkerServer(server, host=args.host, port=args.port, codec=codec, log_sink=capture.sink)
    try:
        host, port = tcp.open_listener()
        print(json.dumps({"serving": origin.display_name, "host": host, "port": port}), file=stdout, flush=True)
        tcp.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        capture.uninstall()
    return EXIT_OK


def config_from_args(args: argparse.Namespace) -> WorkspaceConfig:
    workspace = getattr(args, "workspace", None)
    if workspace:
        return load_workspace_config(Path(workspace))
    return single_location_config(
        python_file=args.python_file,
        python_module=args.module_name,
        attribute=args.attribute,
        working_directory=args.working_directory,
        location_name=args.location_name,
    )


def describe_locations(workspace: Workspace) -> list[dict[str, object]]:
    rows: list[dict[str, object]] = []
    for location in workspace.locations():
        snapshot = workspace.get_snapshot(location.origin_key)
        error = location.error
        rows.append(
            {
                "location": location.name,
                "origin_key": location.origin_key,
                "status": location.status.value,
                "snapshot_id": snapshot.snapshot_id if snapshot is not None else None,
                "repositories": snapshot.repository_names() if snapshot is not None else [],
                "error": error.display() if error is not None else None,
                "error_kind": error.kind.value if error is not None else None,
            }
        )
    return rows
