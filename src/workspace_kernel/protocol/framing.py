from __future__ import annotations

import hashlib
import hmac
import json
import socket
import time
from dataclasses import dataclass

from workspace_kernel.protocol.messages import Message, ProtocolError

_LENGTH_PREFIX = 4


class FrameTooLargeError(ProtocolError):
    # Declared frame length exceeds max_payload_bytes before decode.
    pass


class MissingSignatureError(ProtocolError):
    pass


class InvalidSignatureError(ProtocolError):
    pass


@dataclass(frozen=True, slots=True)
class FrameCodec:
    # Canonical JSON message codec with optional HMAC-SHA256 signature.
    secret: bytes | None = None
    max_payload_bytes: int = 16 * 1024 * 1024

    def __post_init__(self) -> None:
        if self.secret is not None and (not isinstance(self.secret, bytes) or not self.secret):
            raise ValueError("secret must be non-empty bytes when provided")
        if not isinstance(self.max_payload_bytes, int) or self.max_payload_bytes <= 0:
            raise ValueError("max_payload_bytes must be > 0")

    def encode(self, message: Message) -> bytes:
        wire = message.to_wire()
        if self.secret is not None:
            wire["sig"] = self._sign(wire)
        try:
            body = _canonical(wire)
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"message payload is not json serializable: {exc}") from exc
        if len(body) > self.max_payload_bytes:
            raise FrameTooLargeError("encoded message exceeds max_payload_bytes")
        return body

    def decode(self, body: bytes) -> Message:
        if len(body) > self.max_payload_bytes:
            raise FrameTooLargeError("message exceeds max_payload_bytes")
        try:
            wire = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ProtocolError("invalid wire payload json") from exc
        if not isinstance(wire, dict):
            raise ProtocolError("wire payload must be a json object")
        sig = wire.pop("sig", None)
        if self.secret is not None:
            if not isinstance(sig, str) or not sig:
                raise MissingSignatureError("missing signature")
            if not hmac.compare_digest(sig, self._sign(wire)):
                raise InvalidSignatureError("invalid signature")
        return Message.from_wire(wire)

    def frame(self, message: Message) -> bytes:
        body = self.encode(message)
        return len(body).to_bytes(_LENGTH_PREFIX, byteorder="big", signed=False) + body

    def unframe(self, framed: bytes) -> Message:
        if len(framed) < _LENGTH_PREFIX:
            raise ProtocolError("framed message must contain 4-byte length prefix")
        declared = int.from_bytes(framed[:_LENGTH_PREFIX], byteorder="big", signed=False)
        if declared > self.max_payload_bytes:
            raise FrameTooLargeError("framed payload exceeds max_payload_bytes")
        body = framed[_LENGTH_PREFIX:]
        if len(body) != declared:
            raise ProtocolError("framed payload length does not match prefix")
        return self.decode(body)

    def read_frame(self, conn: socket.socket, *, deadline: float | None = None) -> bytes:
        # Raw body of the next frame; the length is checked before the body is read.
        header = read_exact(conn, _LENGTH_PREFIX, deadline=deadline)
        declared = int.from_bytes(header, byteorder="big", signed=False)
        if declared > self.max_payload_bytes:
            raise FrameTooLargeError("framed payload exceeds max_payload_bytes")
        return read_exact(conn, declared, deadline=deadline)

    def write_frame(self, conn: socket.socket, body: bytes) -> None:
        conn.sendall(len(body).to_bytes(_LENGTH_PREFIX, byteorder="big", signed=False) + body)

    def read_message(self, conn: socket.socket, *, deadline: float | None = None) -> Message:
        return self.decode(self.read_frame(conn, deadline=deadline))

    def write_message(self, conn: socket.socket, message: Message) -> None:
        conn.sendall(self.frame(message))

    def _sign(self, wire: dict[str, object]) -> str:
        assert self.secret is not None
        return hmac.new(self.secret, _canonical(wire), digestmod=hashlib.sha256).hexdigest()


def read_exact(conn: socket.socket, size: int, *, deadline: float | None = None) -> bytes:
    # deadline is a time.monotonic() value covering the whole read, not each recv.
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        if deadline is not None:
            left = deadline - time.monotonic()
            if left <= 0:
                raise socket.timeout("deadline exceeded while reading framed payload")
            conn.settimeout(left)
        chunk = conn.recv(remaining)
        if not chunk:
            raise ConnectionError("unexpected EOF while reading framed payload")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _canonical(wire: dict[str, object]) -> bytes:
    return json.dumps(wire, sort_keys=True, separators=(",", ":"), allow_nan=False).encode("utf-8")
