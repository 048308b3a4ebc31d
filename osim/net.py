"""TCP connections between modules, with the module handshake."""

from __future__ import annotations

import logging
import socket
import struct
import threading

from .protocol import Buffer, OpCode, Packet, handshake_accepted

MAX_CONNECTIONS = 5

_INT = struct.Struct("<i")

log = logging.getLogger(__name__)


class ConnectionFailed(Exception):
    """Raised when a connection to another module cannot be established."""


class Connection:
    """A stream socket that speaks the packet protocol."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._pending = bytearray()
        self._send_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _fill(self, count: int) -> bool:
        while len(self._pending) < count:
            try:
                chunk = self._sock.recv(max(4096, count - len(self._pending)))
            except OSError:
                return False
            if not chunk:
                return False
            self._pending += chunk
        return True

    def _take(self, count: int) -> bytes:
        data = bytes(self._pending[:count])
        del self._pending[:count]
        return data

    def _receive_int(self) -> int | None:
        if not self._fill(_INT.size):
            return None
        return _INT.unpack(self._take(_INT.size))[0]

    def send_packet(self, packet: Packet) -> None:
        with self._send_lock:
            self._sock.sendall(packet.serialize())

    def send_int(self, value: int) -> None:
        with self._send_lock:
            self._sock.sendall(_INT.pack(int(value)))

    def receive_operation(self) -> OpCode | int | None:
        """Read the next operation code; ``None`` once the peer has gone.

        An empty payload that follows the code is consumed along with it.
        """
        op = self._receive_int()
        if op is None:
            self.close()
            return None
        if self._fill(_INT.size) and _INT.unpack_from(self._pending)[0] == 0:
            del self._pending[:_INT.size]
        try:
            return OpCode(op)
        except ValueError:
            return op

    def receive_buffer(self) -> Buffer:
        size = self._receive_int()
        if size is None:
            raise ConnectionError("connection closed")
        if size < 0:
            raise ValueError(f"negative payload size {size}")
        if not self._fill(size):
            raise ConnectionError("connection closed mid-payload")
        return Buffer(self._take(size))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError:
            pass


def start_server(port, host=None) -> socket.socket:
    """Open a listening TCP socket on ``port``."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind((host or "", int(port)))
        server.listen(MAX_CONNECTIONS)
    except OSError:
        server.close()
        raise
    log.debug("ready to accept clients on port %s", server.getsockname()[1])
    return server


def accept_client(server: socket.socket, module) -> Connection:
    """Accept one client and answer its handshake as ``module``.

    The connection is returned even when the handshake is refused; the client
    is told so and is expected to give up.
    """
    sock, _ = server.accept()
    connection = Connection(sock)
    received = connection._receive_int()
    if received is None:
        connection.close()
        raise ConnectionError("client left before the handshake")
    if handshake_accepted(module, received):
        connection.send_int(0)
    else:
        connection.send_int(-1)
        log.info("handshake refused for module %s", received)
    log.info("client connected")
    return connection


def connect(host, port, module) -> Connection:
    """Connect to another module and present ``module`` in the handshake."""
    try:
        sock = socket.create_connection((host, int(port)))
    except OSError as exc:
        log.error("connection to %s:%s failed", host, port)
        raise ConnectionFailed(f"cannot connect to {host}:{port}") from exc
    connection = Connection(sock)
    try:
        connection.send_int(module)
        result = connection._receive_int()
    except OSError as exc:
        connection.close()
        raise ConnectionFailed("handshake failed") from exc
    if result != 0:
        connection.close()
        raise ConnectionFailed(f"handshake rejected by {host}:{port}")
    return connection


def read_config(path) -> dict[str, str]:
    """Read a ``KEY=VALUE`` configuration file; ``#`` starts a comment line."""
    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for raw in handle:
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            values[key.strip()] = value.strip()
    return values