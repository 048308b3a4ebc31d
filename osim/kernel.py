"""Process lifecycle and scheduling core of the kernel.

The kernel owns the NEW, READY and EXIT queues and the list of every live
process. What happens when the CPU hands a process back is decided by the
scheduling policy in :attr:`Kernel.policy`, which must provide ``io``,
``io_finished``, ``wait``, ``signal``, ``exit``, ``interrupt`` and
``pick_next``. Policies read and set :attr:`Kernel.cpu_free`.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from enum import Enum

from .interfaces import InterfaceRegistry, build_request
from .protocol import PCB, Buffer, OpCode, Packet, ProcessState
from .resources import ResourceTable

log = logging.getLogger(__name__)

_IO_OPERATIONS = frozenset({
    OpCode.IO_GEN_SLEEP,
    OpCode.IO_STDIN_READ,
    OpCode.IO_STDOUT_WRITE,
    OpCode.FS_CREATE,
    OpCode.FS_DELETE,
    OpCode.FS_TRUNCATE,
    OpCode.FS_WRITE,
    OpCode.FS_READ,
})


class ExitReason(Enum):
    """Why a process reached EXIT; the value is the text that is logged."""

    SUCCESS = "SUCCESS"
    INVALID_RESOURCE = "INVALID RESOURCE"
    INVALID_INTERFACE = "INVALID INTERFACE"
    OOM = "OUT OF MEMORY"
    INTERRUPTED_BY_USER = "INTERRUPTED BY USER"


def state_name(state) -> str:
    """Return the display name of a process state."""
    names = {
        ProcessState.NEW: "NEW",
        ProcessState.READY: "READY",
        ProcessState.BLOCKED: "BLOCKED",
        ProcessState.EXEC: "EXEC",
    }
    return names.get(state, "EXIT")


def format_queue(name: str, pids) -> str:
    """Describe a queue and the PIDs waiting in it."""
    return f"Queue {name}: [{', '.join(str(pid) for pid in pids)}]"


class Kernel:
    """Long- and short-term scheduling state of the kernel.

    ``lock`` stops the scheduler while held; the console takes it to pause
    planning and every scheduling decision runs under it.
    """

    def __init__(self, memory, cpu_dispatch, cpu_interrupt, quantum,
                 multiprogramming, resources=None, interfaces=None) -> None:
        self.memory = memory
        self.cpu_dispatch = cpu_dispatch
        self.cpu_interrupt = cpu_interrupt
        self.quantum = int(quantum)
        self.multiprogramming = int(multiprogramming)
        self.resources = resources if resources is not None else ResourceTable()
        self.interfaces = interfaces if interfaces is not None else InterfaceRegistry()
        self.policy = None
        self.cpu_free = True
        self.next_pid = 0

        self.lock = threading.RLock()
        self.new_queue: deque[PCB] = deque()
        self.ready_queue: deque[PCB] = deque()
        self.exit_queue: deque[tuple[PCB, ExitReason]] = deque()
        self.processes: list[PCB] = []

        self._new_lock = threading.Lock()
        self._ready_lock = threading.Lock()
        self._exit_lock = threading.Lock()
        self._processes_lock = threading.Lock()
        self._new_count = threading.Semaphore(0)
        self._exit_count = threading.Semaphore(0)
        self._degree = threading.Semaphore(self.multiprogramming)

    def _require_policy(self):
        if self.policy is None:
            raise RuntimeError("no scheduling policy set")
        return self.policy

    def create_process(self, path: str) -> PCB:
        """Create a process in NEW and ask memory to load its instructions."""
        pcb = PCB(self.next_pid, self.quantum)
        with self._processes_lock, self._new_lock:
            self.new_queue.append(pcb)
            self.processes.append(pcb)
        packet = Packet(OpCode.CREATE_PROCESS).add_int(pcb.pid).add_string(path)
        self.memory.send_packet(packet)
        log.info("Process %d created in NEW", pcb.pid)
        self.memory.receive_operation()
        self.next_pid += 1
        with self._new_lock:
            log.info(format_queue("NEW", [p.pid for p in self.new_queue]))
        self._new_count.release()
        return pcb

    def finish_process(self, pid: int) -> PCB:
        """End process ``pid`` on the user's request."""
        with self.lock:
            pcb = self.find_process(pid)
            if pcb is None:
                raise LookupError(f"no process with PID {pid}")
            if pcb.state == ProcessState.EXEC:
                self.send_interrupt(pid, OpCode.FINISH_PROCESS)
                return pcb
            if pcb.state == ProcessState.BLOCKED:
                if not self.interfaces.remove_blocked(pid):
                    self.resources.remove_blocked(pid)
            elif pcb.state == ProcessState.NEW:
                with self._new_lock:
                    if pcb in self.new_queue:
                        self.new_queue.remove(pcb)
            elif pcb.state == ProcessState.READY:
                with self._ready_lock:
                    if pcb in self.ready_queue:
                        self.ready_queue.remove(pcb)
            self.schedule(OpCode.FINISH_PROCESS, pcb, None)
            return pcb

    def find_process(self, pid: int) -> PCB | None:
        with self._processes_lock:
            return next((p for p in self.processes if p.pid == pid), None)

    def change_state(self, pcb: PCB, state: ProcessState) -> None:
        previous = pcb.state
        pcb.state = state
        log.info(
            "PID: %d - Previous state: %s - Current state: %s",
            pcb.pid, state_name(previous), state_name(state),
        )

    def send_to_ready(self, pcb: PCB) -> None:
        with self._ready_lock:
            self.change_state(pcb, ProcessState.READY)
            self.ready_queue.append(pcb)
            log.info(format_queue("READY", [p.pid for p in self.ready_queue]))

    def send_to_exit(self, pcb: PCB, reason: ExitReason) -> None:
        """Release what ``pcb`` holds and queue it for removal."""
        for unblocked in self.resources.release_all(pcb):
            self.send_to_ready(unblocked)
        with self._exit_lock:
            self.change_state(pcb, ProcessState.EXIT)
            self.exit_queue.append((pcb, reason))
        self._exit_count.release()

    def reap_exit(self) -> tuple[PCB, ExitReason]:
        """Wait for a process in EXIT, tell memory and forget it."""
        self._exit_count.acquire()
        with self._exit_lock:
            pcb, reason = self.exit_queue.popleft()
        with self._processes_lock:
            if pcb in self.processes:
                self.processes.remove(pcb)
        self.memory.send_packet(Packet(OpCode.FINISH_PROCESS).add_int(pcb.pid))
        log.info("Process %d finished - Reason: %s", pcb.pid, reason.value)
        self._degree.release()
        return pcb, reason

    def send_interrupt(self, pid: int, reason) -> None:
        self.cpu_interrupt.send_packet(Packet(reason).add_int(pid))

    def dispatch(self, pcb: PCB) -> None:
        self.cpu_dispatch.send_packet(Packet(OpCode.SEND_PCB).add_pcb(pcb))

    def pop_ready(self) -> PCB:
        """Take the first READY process and mark it EXEC."""
        with self._ready_lock:
            if not self.ready_queue:
                raise IndexError("no process in READY")
            pcb = self.ready_queue.popleft()
            self.change_state(pcb, ProcessState.EXEC)
        return pcb

    def send_to_io(self, pcb: PCB, operation, buffer: Buffer) -> None:
        """Block ``pcb`` on the interface named in ``buffer``, or end it."""
        name = buffer.read_string()
        interface = self.interfaces.find(name)
        if interface is None or not interface.accepts(operation):
            log.info("Interface not found - NAME: %s", name)
            self.send_to_exit(pcb, ExitReason.INVALID_INTERFACE)
            return
        try:
            request = build_request(pcb, operation, buffer)
        except ValueError:
            log.info("Interface not found - NAME: %s", name)
            self.send_to_exit(pcb, ExitReason.INVALID_INTERFACE)
            return
        self.change_state(pcb, ProcessState.BLOCKED)
        log.info("PID: %d - Blocked by: %s", pcb.pid, interface.name)
        pids = interface.submit(request)
        log.info(format_queue(f"BLOCKED {interface.name}", pids))

    def wait_instruction(self, pcb: PCB, buffer: Buffer) -> bool:
        """Run WAIT; ``True`` if the CPU is left free (process blocked or ended)."""
        resource = self.resources.find(buffer.read_string())
        if resource is None:
            self.send_to_exit(pcb, ExitReason.INVALID_RESOURCE)
            return True
        if resource.wait(pcb):
            self.dispatch(pcb)
            return False
        self.change_state(pcb, ProcessState.BLOCKED)
        return True

    def signal_instruction(self, pcb: PCB, buffer: Buffer) -> bool:
        """Run SIGNAL; ``True`` if the CPU is left free (process ended)."""
        resource = self.resources.find(buffer.read_string())
        if resource is None:
            self.send_to_exit(pcb, ExitReason.INVALID_RESOURCE)
            return True
        woken = resource.signal(pcb)
        if woken is not None:
            self.send_to_ready(woken)
        self.dispatch(pcb)
        return False

    def schedule(self, operation, pcb: PCB | None, buffer: Buffer | None) -> None:
        """Act on ``operation`` for ``pcb`` and let the policy pick the next process."""
        policy = self._require_policy()
        if operation == OpCode.CREATE_PROCESS:
            with self._new_lock:
                new = self.new_queue.popleft()
            self.send_to_ready(new)
        elif operation == OpCode.FINISH_PROCESS:
            if pcb.state == ProcessState.EXEC:
                self.cpu_free = True
            self.send_to_exit(pcb, ExitReason.INTERRUPTED_BY_USER)
        elif operation == OpCode.OUT_OF_MEMORY:
            self.send_to_exit(pcb, ExitReason.OOM)
            self.cpu_free = True
        elif operation in _IO_OPERATIONS:
            policy.io(pcb, operation, buffer)
        elif operation == OpCode.OPERATION_FINISHED:
            policy.io_finished(pcb)
        elif operation == OpCode.INSTRUCTION_WAIT:
            policy.wait(pcb, buffer)
        elif operation == OpCode.INSTRUCTION_SIGNAL:
            policy.signal(pcb, buffer)
        elif operation == OpCode.INSTRUCTION_EXIT:
            policy.exit(pcb)
        elif operation == OpCode.END_OF_QUANTUM:
            policy.interrupt(pcb)
        else:
            log.error("Invalid instruction %r", operation)
        policy.pick_next()

    def admit_new(self) -> None:
        """Wait for room and a NEW process, then move it to READY."""
        self._degree.acquire()
        self._new_count.acquire()
        with self.lock:
            self.schedule(OpCode.CREATE_PROCESS, None, None)

    def receive_from_cpu(self) -> bool:
        """Handle one process returned by the CPU; ``False`` once it has gone."""
        operation = self.cpu_dispatch.receive_operation()
        if operation is None:
            return False
        with self.lock:
            buffer = self.cpu_dispatch.receive_buffer()
            received = buffer.read_pcb()
            pcb = self.find_process(received.pid)
            if pcb is None:
                raise LookupError(f"no process with PID {received.pid}")
            pcb.quantum = received.quantum
            pcb.state = received.state
            pcb.registers = received.registers
            pcb.resources = received.resources
            self.schedule(operation, pcb, buffer)
        return True

    def set_multiprogramming(self, degree: int) -> None:
        """Change how many processes may be past NEW at once."""
        degree = int(degree)
        for _ in range(self.multiprogramming, degree):
            self._degree.release()
        for _ in range(degree, self.multiprogramming):
            self._degree.acquire()
        log.info(
            "Multiprogramming degree changed. Previous: %d, current: %d.",
            self.multiprogramming, degree,
        )
        self.multiprogramming = degree

    def processes_by_state(self) -> dict[ProcessState, list[int]]:
        """PIDs of every live process grouped by state, both ascending."""
        with self._processes_lock:
            ordered = sorted(self.processes, key=lambda p: (p.state, p.pid))
        groups: dict[ProcessState, list[int]] = {}
        for pcb in ordered:
            groups.setdefault(pcb.state, []).append(pcb.pid)
        return groups

    def start(self) -> list[threading.Thread]:
        """Start the threads that reap EXIT, admit NEW and listen to the CPU."""
        def reap() -> None:
            while True:
                self.reap_exit()

        def admit() -> None:
            while True:
                self.admit_new()

        def listen() -> None:
            while self.receive_from_cpu():
                pass

        threads = [
            threading.Thread(target=target, daemon=True)
            for target in (reap, admit, listen)
        ]
        for thread in threads:
            thread.start()
        return threads