from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


# Stable load/connection failure kinds surfaced on a RepositoryLocation.
class LocationErrorKind(str, Enum):
    IMPORT_FAILURE = "import_failure"
    DEFINITION_ERROR = "definition_error"
    CONNECTION_LOST = "connection_lost"
    TIMEOUT = "timeout"
    PROTOCOL_VERSION_MISMATCH = "protocol_version_mismatch"


@dataclass(frozen=True, slots=True)
class LocationError:
    # Displayable failure value attached to a location; never raised across the workspace boundary.
    kind: LocationErrorKind
    message: str
    error_type: str | None = None
    traceback: str | None = None
    location_name: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, LocationErrorKind):
            object.__setattr__(self, "kind", LocationErrorKind(self.kind))
        if not isinstance(self.message, str) or not self.message:
            raise ValueError("LocationError.message must be a non-empty string")

    def display(self) -> str:
        prefix = f"[{self.location_name}] " if self.location_name else ""
        return f"{prefix}{self.kind.value}: {self.message}"

    def for_location(self, location_name: str) -> LocationError:
        return LocationError(
            kind=self.kind,
            message=self.message,
            error_type=self.error_type,
            traceback=self.traceback,
            location_name=location_name,
        )

    def to_wire(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "error_type": self.error_type,
            "traceback": self.traceback,
            "location_name": self.location_name,
        }

    @classmethod
    def from_wire(cls, wire: object) -> LocationError:
        if not isinstance(wire, dict):
            raise ValueError("location error payload must be a mapping")
        kind = wire.get("kind")
        try:
            parsed_kind = LocationErrorKind(kind)
        except ValueError as exc:
            raise ValueError(f"unknown location error kind: {kind!r}") from exc
        message = wire.get("message")
        if not isinstance(message, str) or not message:
            raise ValueError("location error message must be a non-empty string")
        return cls(
            kind=parsed_kind,
            message=message,
            error_type=_optional_str(wire.get("error_type")),
            traceback=_optional_str(wire.get("traceback")),
            location_name=_optional_str(wire.get("location_name")),
        )


class LocationFault(RuntimeError):
    # Internal carrier for a LocationError; caught at the RepositoryLocation boundary.
    def __init__(self, error: LocationError) -> None:
        super().__init__(error.display())
        self.error = error

    @classmethod
    def of(cls, kind: LocationErrorKind, message: str, **fields: str | None) -> LocationFault:
        return cls(LocationError(kind=kind, message=message, **fields))


class DefinitionGraphError(ValueError):
    # Raised when a repository graph violates naming or reference invariants.
    pass


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
