from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Union

DEFAULT_ATTRIBUTE = "definitions"

KIND_PYTHON_FILE = "python_file"
KIND_PYTHON_MODULE = "python_module"
KIND_GRPC_SERVER = "grpc_server"

ORIGIN_KINDS = frozenset({KIND_PYTHON_FILE, KIND_PYTHON_MODULE, KIND_GRPC_SERVER})


class OriginError(ValueError):
    # Raised when an origin description is malformed.
    pass


def _digest(identity: dict[str, object]) -> str:
    canonical = json.dumps(identity, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


@dataclass(frozen=True, slots=True)
class PythonFileOrigin:
    # User code loaded from a python file inside a spawned worker.
    path: str
    working_directory: str | None = None
    attribute: str = DEFAULT_ATTRIBUTE
    location_name: str | None = None

    kind = KIND_PYTHON_FILE

    def __post_init__(self) -> None:
        if not isinstance(self.path, str) or not self.path:
            raise OriginError("python_file origin requires a non-empty path")
        if not isinstance(self.attribute, str) or not self.attribute:
            raise OriginError("python_file origin attribute must be a non-empty string")

    @property
    def display_name(self) -> str:
        return self.location_name or Path(self.path).stem

    @property
    def origin_key(self) -> str:
        return _digest(
            {
                "kind": self.kind,
                "path": self.path,
                "working_directory": self.working_directory,
                "attribute": self.attribute,
            }
        )


@dataclass(frozen=True, slots=True)
class PythonModuleOrigin:
    # User code loaded from an importable module inside a spawned worker.
    module_name: str
    working_directory: str | None = None
    attribute: str = DEFAULT_ATTRIBUTE
    location_name: str | None = None

    kind = KIND_PYTHON_MODULE

    def __post_init__(self) -> None:
        if not isinstance(self.module_name, str) or not self.module_name:
            raise OriginError("python_module origin requires a non-empty module_name")
        if not isinstance(self.attribute, str) or not self.attribute:
            raise OriginError("python_module origin attribute must be a non-empty string")

    @property
    def display_name(self) -> str:
        return self.location_name or self.module_name

    @property
    def origin_key(self) -> str:
        return _digest(
            {
                "kind": self.kind,
                "module_name": self.module_name,
                "working_directory": self.working_directory,
                "attribute": self.attribute,
            }
        )


@dataclass(frozen=True, slots=True)
class GrpcServerOrigin:
    # Already-running worker reachable by address; attached to without spawning.
    host: str
    port: int
    location_name: str | None = None

    kind = KIND_GRPC_SERVER

    def __post_init__(self) -> None:
        if not isinstance(self.host, str) or not self.host:
            raise OriginError("grpc_server origin requires a non-empty host")
        if not isinstance(self.port, int) or self.port <= 0 or self.port > 65535:
            raise OriginError("grpc_server origin port must be in range [1, 65535]")

    @property
    def display_name(self) -> str:
        return self.location_name or f"{self.host}:{self.port}"

    @property
    def origin_key(self) -> str:
        return _digest({"kind": self.kind, "host": self.host, "port": self.port})


LocationOrigin = Union[PythonFileOrigin, PythonModuleOrigin, GrpcServerOrigin]


def is_spawnable(origin: LocationOrigin) -> bool:
    return origin.kind in {KIND_PYTHON_FILE, KIND_PYTHON_MODULE}


def origin_to_wire(origin: LocationOrigin) -> dict[str, object]:
    if isinstance(origin, PythonFileOrigin):
        return {
            "kind": origin.kind,
            "path": origin.path,
            "working_directory": origin.working_directory,
            "attribute": origin.attribute,
            "location_name": origin.location_name,
        }
    if isinstance(origin, PythonModuleOrigin):
        return {
            "kind": origin.kind,
            "module_name": origin.module_name,
            "working_directory": origin.working_directory,
            "attribute": origin.attribute,
            "location_name": origin.location_name,
        }
    if isinstance(origin, GrpcServerOrigin):
        return {
            "kind": origin.kind,
            "host": origin.host,
            "port": origin.port,
            "location_name": origin.location_name,
        }
    raise OriginError(f"unsupported origin type: {type(origin).__name__}")


def origin_from_wire(wire: object) -> LocationOrigin:
    if not isinstance(wire, dict):
        raise OriginError("origin payload must be a mapping")
    kind = wire.get("kind")
    if kind == KIND_PYTHON_FILE:
        return PythonFileOrigin(
            path=wire.get("path"),  # type: ignore[arg-type]
            working_directory=wire.get("working_directory"),  # type: ignore[arg-type]
            attribute=wire.get("attribute") or DEFAULT_ATTRIBUTE,  # type: ignore[arg-type]
            location_name=wire.get("location_name"),  # type: ignore[arg-type]
        )
    if kind == KIND_PYTHON_MODULE:
        return PythonModuleOrigin(
            module_name=wire.get("module_name"),  # type: ignore[arg-type]
            working_directory=wire.get("working_directory"),  # type: ignore[arg-type]
            attribute=wire.get("attribute") or DEFAULT_ATTRIBUTE,  # type: ignore[arg-type]
            location_name=wire.get("location_name"),  # type: ignore[arg-type]
        )
    if kind == KIND_GRPC_SERVER:
        return GrpcServerOrigin(
            host=wire.get("host"),  # type: ignore[arg-type]
            port=wire.get("port"),  # type: ignore[arg-type]
            location_name=wire.get("location_name"),  # type: ignore[arg-type]
        )
    raise OriginError(f"origin kind must be one of: {sorted(ORIGIN_KINDS)}")
