import struct

import pytest

from osim.protocol import (
    PCB,
    Buffer,
    GenericInterface,
    Instruction,
    InstructionType,
    Module,
    OpCode,
    Packet,
    ProcessState,
    Register,
    Registers,
    handshake_accepted,
    register_size,
)


def test_packet_wire_bytes():
    wire = Packet(OpCode.PACKET).add_int(1).serialize()
    assert wire == (
        b"\x00\x00\x00\x00"
        b"\x08\x00\x00\x00"
        b"\x04\x00\x00\x00"
        b"\x01\x00\x00\x00"
    )


def test_string_is_nul_terminated_on_the_wire():
    packet = Packet(OpCode.PACKET).add_string("ab")
    assert bytes(packet.payload) == b"\x03\x00\x00\x00ab\x00"


def test_serialize_header_matches_payload():
    packet = Packet(OpCode.RESIZE).add_int(7).add_string("x")
    wire = packet.serialize()
    op, size = struct.unpack_from("<ii", wire)
    assert op == OpCode.RESIZE
    assert size == len(packet.payload)
    assert wire[8:] == bytes(packet.payload)


@pytest.mark.parametrize("register", [Register.AX, Register.BX, Register.CX, Register.DX])
def test_small_registers_are_one_byte(register):
    assert register_size(register) == 1


@pytest.mark.parametrize(
    "register",
    [Register.EAX, Register.EBX, Register.ECX, Register.EDX, Register.SI, Register.DI, Register.PC],
)
def test_wide_registers_are_four_bytes(register):
    assert register_size(register) == 4


@pytest.mark.parametrize(
    "listening, received, expected",
    [
        (Module.MEMORY, Module.KERNEL, True),
        (Module.MEMORY, Module.CPU, True),
        (Module.MEMORY, Module.IO, True),
        (Module.MEMORY, Module.MEMORY, False),
        (Module.CPU, Module.KERNEL, True),
        (Module.CPU, Module.IO, False),
        (Module.KERNEL, Module.IO, True),
        (Module.KERNEL, Module.CPU, False),
        (Module.IO, Module.KERNEL, False),
        (Module.CPU_DISPATCH, Module.KERNEL, False),
    ],
)
def test_handshake_rules(listening, received, expected):
    assert handshake_accepted(listening, received) is expected


def test_registers_round_trip():
    regs = Registers(ax=1, bx=2, cx=3, dx=255, eax=10, ebx=20, ecx=30,
                     edx=2**32 - 1, si=5, di=6, pc=7)
    data = regs.to_bytes()
    assert len(data) == 32
    assert Registers.from_bytes(data) == regs


def test_registers_reject_wrong_length():
    with pytest.raises(ValueError):
        Registers.from_bytes(b"\x00" * 5)


def test_int_and_uint32_round_trip():
    packet = Packet(OpCode.PACKET).add_int(-42).add_uint32(2**32 - 1)
    buffer = Buffer(packet.payload)
    assert buffer.read_int() == -42
    assert buffer.read_uint32() == 2**32 - 1
    assert buffer.size == 0


def test_string_array_round_trip():
    packet = Packet(OpCode.PACKET).add_string_array(["RA", "RB", "ñ"])
    assert Buffer(packet.payload).read_string_array() == ["RA", "RB", "ñ"]


def test_empty_string_array_round_trip():
    packet = Packet(OpCode.PACKET).add_string_array([])
    buffer = Buffer(packet.payload)
    assert buffer.read_string_array() == []
    assert len(buffer) == 0


def test_pcb_round_trip():
    pcb = PCB(pid=3, quantum=2000, state=ProcessState.EXEC,
              registers=Registers(ax=4, pc=12), resources=["RA", "RB"])
    buffer = Buffer(Packet(OpCode.SEND_PCB).add_pcb(pcb).payload)
    got = buffer.read_pcb()
    assert (got.pid, got.quantum, got.state) == (3, 2000, ProcessState.EXEC)
    assert got.registers == pcb.registers
    assert got.resources == ["RA", "RB"]
    assert buffer.size == 0


def test_instruction_round_trip():
    inst = Instruction(InstructionType.IO_FS_WRITE, b"\x01", b"ab", b"",
                       "FS", "notes.txt")
    buffer = Buffer(Packet(OpCode.PACKET).add_instruction(inst).payload)
    assert buffer.read_instruction() == inst


def test_generic_interface_round_trip():
    iface = GenericInterface("GENERICA", 10)
    buffer = Buffer(Packet(OpCode.PACKET).add_generic_interface(iface).payload)
    assert buffer.read_generic_interface() == iface


def test_fields_are_read_in_order_and_size_shrinks():
    packet = Packet(OpCode.PACKET).add_int(1).add_string("two").add_uint32(3)
    buffer = Buffer(packet.payload)
    total = buffer.size
    assert buffer.read_int() == 1
    assert buffer.size < total
    assert buffer.read_string() == "two"
    assert buffer.read_uint32() == 3
    assert buffer.size == 0


def test_read_past_end_raises():
    buffer = Buffer(Packet(OpCode.PACKET).add_int(1).payload)
    buffer.read_int()
    with pytest.raises(ValueError):
        buffer.read()


def test_truncated_field_raises():
    data = bytes(Packet(OpCode.PACKET).add_string("hello").payload)[:-2]
    with pytest.raises(ValueError):
        Buffer(data).read_string()


def test_read_int_rejects_wrong_width():
    buffer = Buffer(Packet(OpCode.PACKET).add(b"12345678").payload)
    with pytest.raises(ValueError):
        buffer.read_int()


def test_read_pcb_rejects_unknown_state():
    packet = Packet(OpCode.SEND_PCB).add_int(1).add_int(1).add_int(99)
    packet.add(Registers().to_bytes()).add_string_array([])
    with pytest.raises(ValueError):
        Buffer(packet.payload).read_pcb()