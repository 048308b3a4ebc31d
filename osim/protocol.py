"""Wire format shared by the kernel, memory, CPU and I/O modules.

Every message is an operation code followed by a payload. The payload is a
sequence of fields, each prefixed by its length as a 4-byte little-endian
signed integer.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum

_INT = struct.Struct("<i")
_UINT32 = struct.Struct("<I")
_BYTE = struct.Struct("<B")
_REGISTERS = struct.Struct("<4B7I")


class OpCode(IntEnum):
    """Operation codes exchanged between modules."""

    PACKET = 0
    # Kernel - IO
    CONNECT_GENERIC_IO = 1
    CONNECT_STDIN = 2
    CONNECT_STDOUT = 3
    CONNECT_DIALFS = 4
    OPERATION_FINISHED = 5
    # Kernel - CPU
    SEND_PCB = 6
    # Kernel <-> CPU
    FINISH_PROCESS = 7
    END_OF_QUANTUM = 8
    # CPU - Kernel
    INSTRUCTION_EXIT = 9
    INSTRUCTION_WAIT = 10
    INSTRUCTION_SIGNAL = 11
    IO_GEN_SLEEP = 12
    IO_STDIN_READ = 13
    IO_STDOUT_WRITE = 14
    FS_CREATE = 15
    FS_DELETE = 16
    FS_TRUNCATE = 17
    FS_WRITE = 18
    FS_READ = 19
    # CPU - Memory
    SEND_PC = 20
    SEND_PAGE_SIZE = 21
    RESIZE = 22
    # Kernel - Memory
    CREATE_PROCESS = 23
    END_PROCESS = 24
    # CPU or IO - Memory
    USER_SPACE_READ = 25
    USER_SPACE_WRITE = 26
    WRITE_OK = 27
    CONNECT_DIAL_FS = 28
    # Instruction memory - CPU
    SEND_INSTRUCTION = 29
    # Any module - Memory
    ADJUST_PROCESS_SIZE = 30
    PAGE_TABLE_ACCESS = 31
    OUT_OF_MEMORY = 32
    RESIZE_ACCEPTED = 33


class Module(IntEnum):
    """Identifiers each module presents during the handshake."""

    CPU = 0
    CPU_DISPATCH = 1
    CPU_INTERRUPT = 2
    IO = 3
    KERNEL = 4
    MEMORY = 5


class ProcessState(IntEnum):
    NEW = 0
    READY = 1
    BLOCKED = 2
    EXEC = 3
    EXIT = 4


class Register(IntEnum):
    AX = 0
    BX = 1
    CX = 2
    DX = 3
    EAX = 4
    EBX = 5
    ECX = 6
    EDX = 7
    SI = 8
    DI = 9
    PC = 10


class InstructionType(IntEnum):
    SET = 0
    MOV_IN = 1
    MOV_OUT = 2
    SUM = 3
    SUB = 4
    JNZ = 5
    RESIZE = 6
    COPY_STRING = 7
    WAIT = 8
    SIGNAL = 9
    IO_GEN_SLEEP = 10
    IO_STDIN_READ = 11
    IO_STDOUT_WRITE = 12
    IO_FS_CREATE = 13
    IO_FS_DELETE = 14
    IO_FS_TRUNCATE = 15
    IO_FS_WRITE = 16
    IO_FS_READ = 17
    EXIT = 18


_BYTE_REGISTERS = frozenset({Register.AX, Register.BX, Register.CX, Register.DX})


def register_size(register: Register) -> int:
    """Return the width in bytes of a CPU register."""
    if register in _BYTE_REGISTERS:
        return _BYTE.size
    return _UINT32.size


def handshake_accepted(listening: int, received: int) -> bool:
    """Tell whether a server of kind ``listening`` accepts a ``received`` client."""
    if listening == Module.MEMORY:
        return received != Module.MEMORY
    if listening == Module.CPU:
        return received == Module.KERNEL
    if listening == Module.KERNEL:
        return received == Module.IO
    return False


@dataclass
class Registers:
    """CPU registers: four 8-bit and seven 32-bit ones."""

    ax: int = 0
    bx: int = 0
    cx: int = 0
    dx: int = 0
    eax: int = 0
    ebx: int = 0
    ecx: int = 0
    edx: int = 0
    si: int = 0
    di: int = 0
    pc: int = 0

    def to_bytes(self) -> bytes:
        return _REGISTERS.pack(
            self.ax, self.bx, self.cx, self.dx,
            self.eax, self.ebx, self.ecx, self.edx,
            self.si, self.di, self.pc,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Registers":
        if len(data) != _REGISTERS.size:
            raise ValueError(
                f"registers need {_REGISTERS.size} bytes, got {len(data)}"
            )
        return cls(*_REGISTERS.unpack(data))


@dataclass(eq=False)
class PCB:
    """Process control block."""

    pid: int
    quantum: int
    state: ProcessState = ProcessState.NEW
    registers: Registers = field(default_factory=Registers)
    resources: list[str] = field(default_factory=list)


@dataclass
class Instruction:
    type: InstructionType
    arg1: bytes = b""
    arg2: bytes = b""
    arg3: bytes = b""
    interface: str = ""
    file: str = ""


@dataclass
class GenericInterface:
    name: str
    work_units: int


@dataclass
class Packet:
    """An outgoing message: an operation code and its payload."""

    operation: int
    payload: bytearray = field(default_factory=bytearray)

    def add(self, data: bytes) -> "Packet":
        self.payload += _INT.pack(len(data))
        self.payload += data
        return self

    def add_int(self, value: int) -> "Packet":
        return self.add(_INT.pack(value))

    def add_uint32(self, value: int) -> "Packet":
        return self.add(_UINT32.pack(value))

    def add_string(self, text: str) -> "Packet":
        return self.add(text.encode("utf-8") + b"\0")

    def add_string_array(self, strings) -> "Packet":
        strings = list(strings)
        self.add_int(len(strings))
        for text in strings:
            self.add_string(text)
        return self

    def add_pcb(self, pcb: PCB) -> "Packet":
        self.add_int(pcb.pid)
        self.add_int(pcb.quantum)
        self.add_int(int(pcb.state))
        self.add(pcb.registers.to_bytes())
        return self.add_string_array(pcb.resources)

    def add_instruction(self, instruction: Instruction) -> "Packet":
        self.add_int(int(instruction.type))
        self.add(instruction.arg1)
        self.add(instruction.arg2)
        self.add(instruction.arg3)
        self.add_string(instruction.interface)
        return self.add_string(instruction.file)

    def add_generic_interface(self, interface: GenericInterface) -> "Packet":
        self.add_string(interface.name)
        return self.add_int(interface.work_units)

    def serialize(self) -> bytes:
        header = _INT.pack(int(self.operation)) + _INT.pack(len(self.payload))
        return header + bytes(self.payload)


class Buffer:
    """A received payload, consumed field by field from the front."""

    def __init__(self, data: bytes = b"") -> None:
        self._data = bytes(data)
        self._offset = 0

    @property
    def size(self) -> int:
        """Bytes not yet read."""
        return len(self._data) - self._offset

    def __len__(self) -> int:
        return self.size

    def read(self) -> bytes:
        if self.size < _INT.size:
            raise ValueError("buffer exhausted")
        (length,) = _INT.unpack_from(self._data, self._offset)
        start = self._offset + _INT.size
        end = start + length
        if length < 0 or end > len(self._data):
            raise ValueError(f"field of {length} bytes exceeds the buffer")
        self._offset = end
        return self._data[start:end]

    def _read_fixed(self, codec: struct.Struct) -> int:
        data = self.read()
        if len(data) != codec.size:
            raise ValueError(f"expected {codec.size} bytes, got {len(data)}")
        return codec.unpack(data)[0]

    def read_int(self) -> int:
        return self._read_fixed(_INT)

    def read_uint32(self) -> int:
        return self._read_fixed(_UINT32)

    def read_string(self) -> str:
        data = self.read()
        return data.split(b"\0", 1)[0].decode("utf-8")

    def read_string_array(self) -> list[str]:
        count = self.read_int()
        return [self.read_string() for _ in range(count)]

    def read_pcb(self) -> PCB:
        pid = self.read_int()
        quantum = self.read_int()
        state = ProcessState(self.read_int())
        registers = Registers.from_bytes(self.read())
        resources = self.read_string_array()
        return PCB(pid, quantum, state, registers, resources)

    def read_instruction(self) -> Instruction:
        kind = InstructionType(self.read_int())
        arg1 = self.read()
        arg2 = self.read()
        arg3 = self.read()
        interface = self.read_string()
        file = self.read_string()
        return Instruction(kind, arg1, arg2, arg3, interface, file)

    def read_generic_interface(self) -> GenericInterface:
        name = self.read_string()
        return GenericInterface(name, self.read_int())