import time

from osim.interfaces import InterfaceType
from osim.kernel import ExitReason, Kernel
from osim.policies import Fifo, RoundRobin, VirtualRoundRobin, make_policy
from osim.protocol import Buffer, OpCode, Packet, ProcessState
from osim.resources import ResourceTable


class FakeConnection:
    def __init__(self):
        self.sent = []

    def send_packet(self, packet):
        self.sent.append(packet)

    def receive_operation(self):
        return OpCode.PACKET


def make_kernel(policy="FIFO", quantum=10000):
    kernel = Kernel(FakeConnection(), FakeConnection(), FakeConnection(), quantum, 5)
    make_policy(policy, kernel)
    return kernel


def admit(kernel, count=1):
    pcbs = [kernel.create_process(f"prog{i}") for i in range(count)]
    for _ in pcbs:
        kernel.schedule(OpCode.CREATE_PROCESS, None, None)
    return pcbs


def dispatched(kernel):
    return [
        Buffer(p.payload).read_pcb().pid
        for p in kernel.cpu_dispatch.sent
        if p.operation == OpCode.SEND_PCB
    ]


def interrupts(kernel):
    return [
        (p.operation, Buffer(p.payload).read_int()) for p in kernel.cpu_interrupt.sent
    ]


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def string_buffer(*texts):
    packet = Packet(OpCode.PACKET)
    for text in texts:
        packet.add_string(text)
    return Buffer(packet.payload)


def test_make_policy_installs_by_name():
    for name, kind in (("FIFO", Fifo), ("RR", RoundRobin), ("VRR", VirtualRoundRobin)):
        kernel = Kernel(FakeConnection(), FakeConnection(), FakeConnection(), 100, 1)
        policy = make_policy(name, kernel)
        assert kernel.policy is policy
        assert type(policy) is kind
        assert policy.kernel is kernel


def test_fifo_dispatches_first_ready_only():
    kernel = make_kernel()
    first, second = admit(kernel, 2)
    assert dispatched(kernel) == [first.pid]
    assert first.state == ProcessState.EXEC
    assert second.state == ProcessState.READY
    assert kernel.cpu_free is False


def test_fifo_exit_frees_cpu_and_dispatches_next():
    kernel = make_kernel()
    first, second = admit(kernel, 2)
    kernel.schedule(OpCode.INSTRUCTION_EXIT, first, None)
    assert first.state == ProcessState.EXIT
    assert list(kernel.exit_queue) == [(first, ExitReason.SUCCESS)]
    assert dispatched(kernel) == [first.pid, second.pid]
    assert second.state == ProcessState.EXEC


def test_fifo_wait_available_resource_keeps_cpu():
    kernel = make_kernel()
    kernel.resources = ResourceTable.from_config(["RA"], ["1"])
    (pcb,) = admit(kernel)
    kernel.policy.wait(pcb, string_buffer("RA"))
    assert kernel.cpu_free is False
    assert dispatched(kernel) == [pcb.pid, pcb.pid]
    assert pcb.resources == ["RA"]


def test_fifo_wait_busy_resource_blocks():
    kernel = make_kernel()
    kernel.resources = ResourceTable.from_config(["RA"], ["0"])
    (pcb,) = admit(kernel)
    kernel.policy.wait(pcb, string_buffer("RA"))
    assert kernel.cpu_free is True
    assert pcb.state == ProcessState.BLOCKED


def test_fifo_wait_unknown_resource_exits():
    kernel = make_kernel()
    (pcb,) = admit(kernel)
    kernel.policy.wait(pcb, string_buffer("NOPE"))
    assert kernel.cpu_free is True
    assert list(kernel.exit_queue) == [(pcb, ExitReason.INVALID_RESOURCE)]


def test_fifo_io_to_unknown_interface_exits():
    kernel = make_kernel()
    (pcb,) = admit(kernel)
    buffer = Buffer(Packet(OpCode.PACKET).add_string("missing").add_int(3).payload)
    kernel.policy.io(pcb, OpCode.IO_GEN_SLEEP, buffer)
    assert kernel.cpu_free is True
    assert list(kernel.exit_queue) == [(pcb, ExitReason.INVALID_INTERFACE)]


def test_fifo_io_blocks_and_finish_returns_to_ready():
    kernel = make_kernel()
    kernel.interfaces.register("IO1", InterfaceType.GENERIC)
    (pcb,) = admit(kernel)
    buffer = Buffer(Packet(OpCode.PACKET).add_string("IO1").add_int(3).payload)
    kernel.policy.io(pcb, OpCode.IO_GEN_SLEEP, buffer)
    assert pcb.state == ProcessState.BLOCKED
    assert kernel.cpu_free is True
    kernel.policy.io_finished(pcb)
    assert pcb.state == ProcessState.READY
    assert list(kernel.ready_queue) == [pcb]


def test_round_robin_exit_cancels_quantum():
    kernel = make_kernel("RR", quantum=10000)
    (pcb,) = admit(kernel)
    kernel.schedule(OpCode.INSTRUCTION_EXIT, pcb, None)
    assert pcb.state == ProcessState.EXIT
    assert kernel.cpu_free is True
    assert kernel.policy.interrupted is False
    assert interrupts(kernel) == []


def test_round_robin_signal_ends_process():
    kernel = make_kernel("RR")
    kernel.resources = ResourceTable.from_config(["RA"], ["1"])
    (pcb,) = admit(kernel)
    kernel.policy.signal(pcb, string_buffer("RA"))
    assert list(kernel.exit_queue) == [(pcb, ExitReason.SUCCESS)]
    assert kernel.cpu_free is True


def test_vrr_io_finished_full_quantum_goes_to_ready():
    kernel = make_kernel("VRR")
    running, other = admit(kernel, 2)
    kernel.ready_queue.clear()
    kernel.policy.io_finished(other)
    assert list(kernel.ready_queue) == [other]
    assert list(kernel.policy.priority_queue) == []
    kernel.policy.cut_quantum()


def test_vrr_io_finished_partial_quantum_goes_to_priority():
    kernel = make_kernel("VRR")
    running, other = admit(kernel, 2)
    kernel.ready_queue.clear()
    other.quantum = kernel.quantum - 1
    kernel.policy.io_finished(other)
    assert list(kernel.policy.priority_queue) == [other]
    assert other.state == ProcessState.READY
    assert interrupts(kernel) == [(OpCode.END_OF_QUANTUM, running.pid)]
    assert kernel.policy.last_priority is True
    kernel.policy.cut_quantum()


def test_vrr_prefers_priority_queue():
    kernel = make_kernel("VRR")
    running, waiting, favoured = admit(kernel, 3)
    kernel.ready_queue.remove(favoured)
    favoured.quantum = kernel.quantum - 1
    kernel.policy.io_finished(favoured)
    kernel.schedule(OpCode.INSTRUCTION_EXIT, running, None)
    assert dispatched(kernel)[-1] == favoured.pid
    assert kernel.policy.running_pid == favoured.pid
    assert kernel.policy.last_priority is True
    assert waiting.state == ProcessState.READY
    kernel.policy.cut_quantum()


def test_vrr_io_keeps_remaining_quantum():
    kernel = make_kernel("VRR", quantum=10000)
    kernel.interfaces.register("IO1", InterfaceType.GENERIC)
    (pcb,) = admit(kernel)
    buffer = Buffer(Packet(OpCode.PACKET).add_string("IO1").add_int(3).payload)
    kernel.policy.io(pcb, OpCode.IO_GEN_SLEEP, buffer)
    assert 0 < pcb.quantum <= kernel.quantum
    assert pcb.state == ProcessState.BLOCKED
    assert kernel.cpu_free is True


def test_vrr_io_after_expiry_resets_quantum():
    kernel = make_kernel("VRR", quantum=20)
    kernel.interfaces.register("IO1", InterfaceType.GENERIC)
    (pcb,) = admit(kernel)
    assert wait_for(lambda: interrupts(kernel))
    pcb.quantum = 5
    buffer = Buffer(Packet(OpCode.PACKET).add_string("IO1").add_int(3).payload)
    kernel.policy.io(pcb, OpCode.IO_GEN_SLEEP, buffer)
    assert pcb.quantum == kernel.quantum