from __future__ import annotations

import socket
import threading
import time

import pytest

from workspace_kernel.domain.definitions import JobDefinition, Repository, SensorDefinition
from workspace_kernel.domain.origins import GrpcServerOrigin
from workspace_kernel.protocol.channel import SocketChannel
from workspace_kernel.protocol.framing import FrameCodec
from workspace_kernel.protocol.messages import (
    KIND_EVALUATE_SENSOR,
    KIND_LIST_REPOSITORIES,
    KIND_PING,
    ProtocolError,
    request,
    result_for,
)
from workspace_kernel.worker.server import TcpWorkerServer, WorkerServer


def _tcp_server(codec: FrameCodec) -> TcpWorkerServer:
    server = WorkerServer(
        GrpcServerOrigin(host="127.0.0.1", port=1, location_name="remote"),
        repositories=(Repository(name="R", jobs=[JobDefinition(name="J")]),),
    )
    return TcpWorkerServer(server, codec=codec)


def test_socket_channel_against_tcp_worker() -> None:
    # One connection per request; signed frames both ways.
    codec = FrameCodec(secret=b"shared")
    tcp = _tcp_server(codec)
    host, port = tcp.start()
    try:
        channel = SocketChannel(host, port, codec)
        assert channel.address == (host, port)
        assert channel.request(request(KIND_PING), timeout=2.0).payload["ok"] is True
        listed = channel.request(request(KIND_LIST_REPOSITORIES), timeout=2.0)
        assert listed.payload["repositories"][0]["name"] == "R"
    finally:
        tcp.stop()


def test_wrong_secret_gets_no_answer() -> None:
    # The worker drops frames it cannot verify, so the caller sees a closed stream.
    tcp = _tcp_server(FrameCodec(secret=b"shared"))
    host, port = tcp.start()
    try:
        channel = SocketChannel(host, port, FrameCodec(secret=b"other"))
        with pytest.raises(ConnectionError):
            channel.request(request(KIND_PING), timeout=2.0)
    finally:
        tcp.stop()


def test_refused_connection_is_a_connection_error() -> None:
    scratch = socket.socket()
    scratch.bind(("127.0.0.1", 0))
    port = scratch.getsockname()[1]
    scratch.close()
    with pytest.raises(ConnectionError):
        SocketChannel("127.0.0.1", port, FrameCodec()).request(request(KIND_PING), timeout=1.0)


def _silent_listener() -> tuple[socket.socket, int]:
    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    listener.listen()
    return listener, listener.getsockname()[1]


def test_unresponsive_peer_times_out() -> None:
    listener, port = _silent_listener()
    with listener:
        with pytest.raises(TimeoutError):
            SocketChannel("127.0.0.1", port, FrameCodec()).request(request(KIND_PING), timeout=0.2)


def test_mismatched_correlation_id_is_a_protocol_error() -> None:
    codec = FrameCodec()
    listener, port = _silent_listener()

    def _answer_wrong() -> None:
        conn, _ = listener.accept()
        with conn:
            codec.read_message(conn)
            codec.write_message(conn, result_for(request(KIND_PING), {"ok": True}))

    thread = threading.Thread(target=_answer_wrong, daemon=True)
    thread.start()
    with listener:
        with pytest.raises(ProtocolError):
            SocketChannel("127.0.0.1", port, codec).request(request(KIND_PING), timeout=2.0)
        thread.join(timeout=2.0)


def test_tcp_worker_runs_evaluations_one_at_a_time() -> None:
    # Connections get their own threads, but user evaluation code never overlaps.
    lock = threading.Lock()
    running: list[int] = []
    overlaps: list[int] = []

    def _tracked(context):
        with lock:
            running.append(1)
            overlaps.append(len(running))
        time.sleep(0.3)
        with lock:
            running.pop()

    server = WorkerServer(
        GrpcServerOrigin(host="127.0.0.1", port=1, location_name="remote"),
        repositories=(
            Repository(
                name="R",
                jobs=[JobDefinition(name="J")],
                sensors=[SensorDefinition(name="tracked", job_name="J", evaluation_fn=_tracked)],
            ),
        ),
    )
    codec = FrameCodec()
    tcp = TcpWorkerServer(server, codec=codec)
    host, port = tcp.start()
    replies: list[object] = []

    def _evaluate() -> None:
        message = request(KIND_EVALUATE_SENSOR, {"repository_name": "R", "sensor_name": "tracked"})
        replies.append(SocketChannel(host, port, codec).request(message, timeout=5.0).payload)

    try:
        threads = [threading.Thread(target=_evaluate) for _ in range(2)]
        for thread in threads:
            thread.start()
        time.sleep(0.1)
        # Reads are not queued behind a running evaluation.
        assert SocketChannel(host, port, codec).request(request(KIND_PING), timeout=2.0).payload["ok"] is True
        with lock:
            assert running
        for thread in threads:
            thread.join(timeout=5.0)
    finally:
        tcp.stop()
    assert replies == [{"type": "skip", "reason": None}] * 2
    assert overlaps == [1, 1]


def test_idle_connection_is_dropped_at_the_read_deadline() -> None:
    server = WorkerServer(GrpcServerOrigin(host="127.0.0.1", port=1), repositories=())
    tcp = TcpWorkerServer(server, read_timeout_seconds=0.2)
    host, port = tcp.start()
    try:
        with socket.create_connection((host, port), timeout=2.0) as client:
            # Nothing is sent; the worker closes its side instead of waiting forever.
            assert client.recv(1) == b""
    finally:
        tcp.stop()


def test_slow_dripping_peer_hits_the_call_deadline() -> None:
    # The call deadline covers the whole frame, not each chunk.
    codec = FrameCodec()
    listener, port = _silent_listener()

    def _drip() -> None:
        conn, _ = listener.accept()
        with conn:
            codec.read_frame(conn)
            try:
                conn.sendall((64).to_bytes(4, byteorder="big"))
                for _ in range(64):
                    conn.sendall(b" ")
                    time.sleep(0.05)
            except OSError:
                return

    thread = threading.Thread(target=_drip, daemon=True)
    thread.start()
    with listener:
        started = time.monotonic()
        with pytest.raises(TimeoutError):
            SocketChannel("127.0.0.1", port, codec).request(request(KIND_PING), timeout=0.3)
        assert time.monotonic() - started < 1.5
        thread.join(timeout=5.0)
