from __future__ import annotations

import secrets
from dataclasses import dataclass, field

PROTOCOL_VERSION = 1

KIND_HANDSHAKE = "handshake"
KIND_PING = "ping"
KIND_LIST_REPOSITORIES = "list_repositories"
KIND_GET_REPOSITORY = "get_repository"
KIND_EVALUATE_SCHEDULE = "evaluate_schedule"
KIND_EVALUATE_SENSOR = "evaluate_sensor"
KIND_SHUTDOWN = "shutdown"

KIND_RESULT = "result"
KIND_ERROR = "error"

REQUEST_KINDS = frozenset(
    {
        KIND_HANDSHAKE,
        KIND_PING,
        KIND_LIST_REPOSITORIES,
        KIND_GET_REPOSITORY,
        KIND_EVALUATE_SCHEDULE,
        KIND_EVALUATE_SENSOR,
        KIND_SHUTDOWN,
    }
)
RESPONSE_KINDS = frozenset({KIND_RESULT, KIND_ERROR})
IDEMPOTENT_KINDS = frozenset({KIND_PING, KIND_LIST_REPOSITORIES, KIND_GET_REPOSITORY})

# Error payload categories: location errors map onto the LocationError taxonomy,
# evaluation errors are user-code failures returned as results of evaluation calls.
ERROR_CATEGORY_LOCATION = "location"
ERROR_CATEGORY_EVALUATION = "evaluation"
ERROR_CATEGORY_REQUEST = "request"


class ProtocolError(ValueError):
    # Malformed message, frame or payload on the wire.
    pass


def new_correlation_id() -> str:
    return secrets.token_hex(8)


@dataclass(frozen=True, slots=True)
class Message:
    kind: str
    correlation_id: str
    payload: dict[str, object] = field(default_factory=dict)
    protocol_version: int = PROTOCOL_VERSION

    def __post_init__(self) -> None:
        if not isinstance(self.kind, str) or not self.kind:
            raise ProtocolError("Message.kind must be a non-empty string")
        if self.kind not in REQUEST_KINDS and self.kind not in RESPONSE_KINDS:
            raise ProtocolError(f"unsupported message kind: {self.kind}")
        if not isinstance(self.correlation_id, str) or not self.correlation_id:
            raise ProtocolError("Message.correlation_id must be a non-empty string")
        if not isinstance(self.payload, dict):
            raise ProtocolError("Message.payload must be a mapping")
        if not isinstance(self.protocol_version, int):
            raise ProtocolError("Message.protocol_version must be an integer")

    @property
    def is_error(self) -> bool:
        return self.kind == KIND_ERROR

    def to_wire(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "correlation_id": self.correlation_id,
            "protocol_version": self.protocol_version,
            "payload": self.payload,
        }

    @classmethod
    def from_wire(cls, wire: object) -> Message:
        if not isinstance(wire, dict):
            raise ProtocolError("message must be a json object")
        payload = wire.get("payload", {})
        if payload is None:
            payload = {}
        return cls(
            kind=wire.get("kind"),  # type: ignore[arg-type]
            correlation_id=wire.get("correlation_id"),  # type: ignore[arg-type]
            payload=payload,  # type: ignore[arg-type]
            protocol_version=wire.get("protocol_version"),  # type: ignore[arg-type]
        )


def request(kind: str, payload: dict[str, object] | None = None) -> Message:
    if kind not in REQUEST_KINDS:
        raise ProtocolError(f"unsupported request kind: {kind}")
    return Message(kind=kind, correlation_id=new_correlation_id(), payload=dict(payload or {}))


def result_for(message: Message, payload: dict[str, object]) -> Message:
    return Message(kind=KIND_RESULT, correlation_id=message.correlation_id, payload=payload)


def error_for(
    message: Message | None,
    *,
    category: str,
    error: dict[str, object],
    correlation_id: str | None = None,
) -> Message:
    cid = message.correlation_id if message is not None else correlation_id
    return Message(
        kind=KIND_ERROR,
        correlation_id=cid or new_correlation_id(),
        payload={"category": category, "error": error},
    )


def handshake_request(*, host_id: str) -> Message:
    return request(KIND_HANDSHAKE, {"host_id": host_id, "protocol_version": PROTOCOL_VERSION})
