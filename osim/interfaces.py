"""I/O interfaces connected to the kernel and the requests queued on them.

The ``scheduler`` handed to :meth:`ConnectedInterface.serve` must provide a
``lock`` context manager, ``schedule(operation, pcb, buffer)`` and
``send_to_exit(pcb, reason)``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from .net import Connection, accept_client
from .protocol import PCB, Buffer, Module, OpCode, Packet

log = logging.getLogger(__name__)


class InterfaceType(Enum):
    GENERIC = 0
    STDIN = 1
    STDOUT = 2
    DIALFS = 3


_CONNECTION_KINDS = {
    OpCode.CONNECT_GENERIC_IO: InterfaceType.GENERIC,
    OpCode.CONNECT_STDIN: InterfaceType.STDIN,
    OpCode.CONNECT_STDOUT: InterfaceType.STDOUT,
    OpCode.CONNECT_DIAL_FS: InterfaceType.DIALFS,
}

_FS_OPERATIONS = frozenset({
    OpCode.FS_CREATE,
    OpCode.FS_DELETE,
    OpCode.FS_TRUNCATE,
    OpCode.FS_READ,
    OpCode.FS_WRITE,
})

_ACCEPTED = {
    InterfaceType.GENERIC: frozenset({OpCode.IO_GEN_SLEEP}),
    InterfaceType.STDIN: frozenset({OpCode.IO_STDIN_READ}),
    InterfaceType.STDOUT: frozenset({OpCode.IO_STDOUT_WRITE}),
    InterfaceType.DIALFS: _FS_OPERATIONS,
}


def interface_type_for(operation) -> InterfaceType | None:
    """Map the operation an interface connects with to its kind."""
    return _CONNECTION_KINDS.get(operation)


@dataclass
class MemoryAddress:
    address: int
    size: int


@dataclass
class FileAccess:
    address: int
    size: int
    pointer: int


@dataclass
class GenericRequest:
    pcb: PCB
    work_units: int

    @classmethod
    def from_buffer(cls, pcb, buffer: Buffer) -> "GenericRequest":
        return cls(pcb, buffer.read_int())

    def to_packet(self) -> Packet:
        return Packet(OpCode.CONNECT_GENERIC_IO).add_int(self.work_units)


@dataclass
class StdRequest:
    pcb: PCB
    addresses: list[MemoryAddress] = field(default_factory=list)

    @classmethod
    def from_buffer(cls, pcb, buffer: Buffer) -> "StdRequest":
        addresses = []
        while buffer.size > 0:
            address = buffer.read_uint32()
            addresses.append(MemoryAddress(address, buffer.read_uint32()))
        return cls(pcb, addresses)

    def to_packet(self) -> Packet:
        packet = Packet(OpCode.CONNECT_STDOUT).add_int(self.pcb.pid)
        for entry in self.addresses:
            packet.add_uint32(entry.address).add_uint32(entry.size)
        return packet


@dataclass
class FsRequest:
    pcb: PCB
    operation: OpCode
    filename: str
    size: int = 0
    accesses: list[FileAccess] = field(default_factory=list)

    @classmethod
    def from_buffer(cls, pcb, operation, buffer: Buffer) -> "FsRequest":
        request = cls(pcb, operation, buffer.read_string())
        if operation == OpCode.FS_TRUNCATE:
            request.size = buffer.read_uint32()
        elif operation in (OpCode.FS_READ, OpCode.FS_WRITE):
            while buffer.size > 0:
                pointer = buffer.read_uint32()
                address = buffer.read_uint32()
                size = buffer.read_uint32()
                request.accesses.append(FileAccess(address, size, pointer))
        return request

    def to_packet(self) -> Packet:
        packet = Packet(self.operation).add_int(self.pcb.pid).add_string(self.filename)
        if self.operation == OpCode.FS_TRUNCATE:
            packet.add_uint32(self.size)
        elif self.operation in (OpCode.FS_READ, OpCode.FS_WRITE):
            for access in self.accesses:
                packet.add_uint32(access.address)
                packet.add_uint32(access.size)
                packet.add_uint32(access.pointer)
        return packet


def build_request(pcb, operation, buffer: Buffer):
    """Read the request for an I/O ``operation`` from the rest of ``buffer``."""
    if operation == OpCode.IO_GEN_SLEEP:
        return GenericRequest.from_buffer(pcb, buffer)
    if operation in (OpCode.IO_STDIN_READ, OpCode.IO_STDOUT_WRITE):
        return StdRequest.from_buffer(pcb, buffer)
    if operation in _FS_OPERATIONS:
        return FsRequest.from_buffer(pcb, operation, buffer)
    raise ValueError(f"{operation!r} is not an I/O operation")


def _reject(scheduler, pcb: PCB) -> None:
    from .kernel import ExitReason

    scheduler.send_to_exit(pcb, ExitReason.INVALID_INTERFACE)


class ConnectedInterface:
    """An interface attached to the kernel and the requests waiting on it."""

    def __init__(self, name: str, kind: InterfaceType) -> None:
        self.name = name
        self.kind = kind
        self._queue: deque = deque()
        self._lock = threading.Lock()
        self._pending = threading.Semaphore(0)

    def __repr__(self) -> str:
        return f"ConnectedInterface({self.name!r}, {self.kind})"

    def accepts(self, operation) -> bool:
        return operation in _ACCEPTED.get(self.kind, ())

    def submit(self, request) -> list[int]:
        """Queue ``request``; return the PIDs now waiting on this interface."""
        with self._lock:
            self._queue.append(request)
            pids = [queued.pcb.pid for queued in self._queue]
        self._pending.release()
        return pids

    def next_request(self):
        """Block until a request is queued and take it."""
        while True:
            self._pending.acquire()
            with self._lock:
                if self._queue:
                    return self._queue.popleft()

    def remove_blocked(self, pid: int) -> bool:
        with self._lock:
            for request in self._queue:
                if request.pcb.pid == pid:
                    self._queue.remove(request)
                    return True
        return False

    def _drain(self) -> list:
        with self._lock:
            pending = list(self._queue)
            self._queue.clear()
        return pending

    def serve(self, connection: Connection, scheduler) -> None:
        """Hand queued requests to the device until it fails or disconnects.

        The process whose request failed, and every one still queued, is sent
        to exit.
        """
        while True:
            request = self.next_request()
            try:
                connection.send_packet(request.to_packet())
            except OSError:
                operation = None
            else:
                operation = connection.receive_operation()
            if operation is None or operation <= 0:
                log.error("I/O operation on %s could not be completed", self.name)
                _reject(scheduler, request.pcb)
                break
            with scheduler.lock:
                scheduler.schedule(operation, request.pcb, None)
        connection.close()
        for pending in self._drain():
            _reject(scheduler, pending.pcb)


class InterfaceRegistry:
    """Interfaces currently connected to the kernel."""

    def __init__(self) -> None:
        self._interfaces: list[ConnectedInterface] = []
        self._lock = threading.Lock()

    def __iter__(self):
        with self._lock:
            return iter(list(self._interfaces))

    def register(self, name: str, kind: InterfaceType) -> ConnectedInterface:
        interface = ConnectedInterface(name, kind)
        with self._lock:
            self._interfaces.append(interface)
        return interface

    def find(self, name: str) -> ConnectedInterface | None:
        with self._lock:
            return next((i for i in self._interfaces if i.name == name), None)

    def remove(self, interface: ConnectedInterface) -> None:
        with self._lock:
            if interface in self._interfaces:
                self._interfaces.remove(interface)

    def remove_blocked(self, pid: int) -> bool:
        """Drop process ``pid`` from whichever interface queue holds it."""
        return any(interface.remove_blocked(pid) for interface in self)

    def attach(self, connection: Connection, kind, scheduler) -> ConnectedInterface:
        """Register the interface on ``connection`` and serve it until it leaves."""
        name = connection.receive_buffer().read_string()
        interface = self.register(name, kind)
        try:
            interface.serve(connection, scheduler)
        finally:
            self.remove(interface)
        return interface

    def accept_clients(self, server, scheduler) -> None:
        """Accept interfaces on ``server``, each served on its own thread."""
        while True:
            try:
                connection = accept_client(server, Module.KERNEL)
            except OSError:
                break
            kind = interface_type_for(connection.receive_operation())
            if kind is None:
                log.error("invalid connection from an interface")
                connection.close()
                continue
            threading.Thread(
                target=self.attach,
                args=(connection, kind, scheduler),
                daemon=True,
            ).start()