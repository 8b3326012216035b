from __future__ import annotations

import socket
import time
from collections.abc import Callable
from threading import Lock
from typing import Protocol

from workspace_kernel.protocol.framing import FrameCodec
from workspace_kernel.protocol.messages import Message, ProtocolError

_POLL_SLICE_SECONDS = 0.05


class Channel(Protocol):
    def request(self, message: Message, *, timeout: float) -> Message: ...

    def close(self) -> None: ...


class PipeChannel:
    # Duplex multiprocessing pipe to a spawned worker; one outstanding request at a time.
    def __init__(
        self,
        connection: object,
        codec: FrameCodec,
        *,
        is_alive: Callable[[], bool] | None = None,
    ) -> None:
        self._conn = connection
        self._codec = codec
        self._is_alive = is_alive
        self._lock = Lock()
        self._closed = False

    def request(self, message: Message, *, timeout: float) -> Message:
        body = self._codec.encode(message)
        with self._lock:
            if self._closed:
                raise ConnectionError("worker channel is closed")
            if self._is_alive is not None and not self._is_alive():
                raise ConnectionError("worker process is not running")
            try:
                self._conn.send_bytes(body)  # type: ignore[attr-defined]
            except (OSError, ValueError) as exc:
                raise ConnectionError("worker channel send failed") from exc

            deadline = time.monotonic() + max(0.0, timeout)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"no response to '{message.kind}' within {timeout:g}s")
                try:
                    ready = self._conn.poll(min(remaining, _POLL_SLICE_SECONDS))  # type: ignore[attr-defined]
                except (OSError, ValueError) as exc:
                    raise ConnectionError("worker channel poll failed") from exc
                if not ready:
                    if self._is_alive is not None and not self._is_alive():
                        raise ConnectionError("worker process exited while a request was in flight")
                    continue
                try:
                    raw = self._conn.recv_bytes()  # type: ignore[attr-defined]
                except (EOFError, OSError) as exc:
                    raise ConnectionError("worker channel closed") from exc
                response = self._codec.decode(raw)
                if response.correlation_id != message.correlation_id:
                    # Late answer to an earlier call that already timed out.
                    continue
                return response

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            close = getattr(self._conn, "close", None)
            if callable(close):
                try:
                    close()
                except OSError:
                    return


class SocketChannel:
    # Request-scoped TCP: one connection per call, so concurrent calls never share a stream.
    # The worker serializes user-code evaluations, so a ping is never queued behind one here.
    def __init__(self, host: str, port: int, codec: FrameCodec) -> None:
        self._host = host
        self._port = port
        self._codec = codec

    @property
    def address(self) -> tuple[str, int]:
        return (self._host, self._port)

    def request(self, message: Message, *, timeout: float) -> Message:
        deadline = time.monotonic() + max(0.0, timeout)
        try:
            with socket.create_connection((self._host, self._port), timeout=_remaining(deadline, message)) as conn:
                conn.settimeout(_remaining(deadline, message))
                self._codec.write_message(conn, message)
                response = self._codec.read_message(conn, deadline=deadline)
        except socket.timeout as exc:
            raise TimeoutError(f"no response to '{message.kind}' within {timeout:g}s") from exc
        if response.correlation_id != message.correlation_id:
            raise ProtocolError("response correlation_id does not match request")
        return response

    def close(self) -> None:
        return None


def _remaining(deadline: float, message: Message) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError(f"deadline exceeded for '{message.kind}'")
    return remaining
