"""Short-term scheduling policies: FIFO, round robin and virtual round robin.

A policy decides what happens to a process the CPU hands back and which
READY process runs next. It works on a :class:`~osim.kernel.Kernel` and
keeps ``kernel.cpu_free`` up to date.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque

from .kernel import ExitReason, format_queue
from .protocol import PCB, OpCode, ProcessState

log = logging.getLogger(__name__)


class Fifo:
    """Run processes in arrival order until they block or end."""

    def __init__(self, kernel) -> None:
        self.kernel = kernel

    def io(self, pcb: PCB, operation, buffer) -> None:
        self.kernel.send_to_io(pcb, operation, buffer)
        self.kernel.cpu_free = True

    def io_finished(self, pcb: PCB) -> None:
        self.kernel.send_to_ready(pcb)

    def wait(self, pcb: PCB, buffer) -> None:
        self.kernel.cpu_free = self.kernel.wait_instruction(pcb, buffer)

    def signal(self, pcb: PCB, buffer) -> None:
        self.kernel.cpu_free = self.kernel.signal_instruction(pcb, buffer)

    def exit(self, pcb: PCB) -> None:
        self.kernel.send_to_exit(pcb, ExitReason.SUCCESS)
        self.kernel.cpu_free = True

    def interrupt(self, pcb: PCB) -> None:
        self.kernel.send_to_ready(pcb)
        self.kernel.cpu_free = True

    def _send(self, pcb: PCB) -> None:
        self.kernel.dispatch(pcb)

    def pick_next(self) -> None:
        """Dispatch the first READY process if the CPU is idle."""
        if self.kernel.cpu_free and self.kernel.ready_queue:
            self._send(self.kernel.pop_ready())
            self.kernel.cpu_free = False


class RoundRobin(Fifo):
    """FIFO with a quantum: a running process is interrupted when it expires."""

    def __init__(self, kernel) -> None:
        super().__init__(kernel)
        self.interrupted = False
        self._timer: threading.Timer | None = None
        self._running_pid: int | None = None

    def _expire(self, pid: int) -> None:
        try:
            self.kernel.send_interrupt(pid, OpCode.END_OF_QUANTUM)
        except OSError:
            log.error("could not interrupt process %d", pid)
        self.interrupted = True

    def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None:
            return
        timer.cancel()
        timer.join()
        if self.interrupted:
            log.info("Process %d interrupted by end of quantum", self._running_pid)

    def _start_quantum(self, pcb: PCB) -> None:
        self._stop_timer()
        self.interrupted = False
        self._running_pid = pcb.pid
        timer = threading.Timer(max(pcb.quantum, 0) / 1000, self._expire, args=(pcb.pid,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def cut_quantum(self) -> None:
        """Stop counting the quantum of the running process."""
        self._stop_timer()

    def _send(self, pcb: PCB) -> None:
        self.kernel.dispatch(pcb)
        self._start_quantum(pcb)

    def io(self, pcb: PCB, operation, buffer) -> None:
        self.cut_quantum()
        self.kernel.send_to_io(pcb, operation, buffer)
        self.kernel.cpu_free = True

    def wait(self, pcb: PCB, buffer) -> None:
        self.kernel.cpu_free = self.kernel.wait_instruction(pcb, buffer)
        if self.kernel.cpu_free:
            self.cut_quantum()

    def signal(self, pcb: PCB, buffer) -> None:
        self.cut_quantum()
        self.kernel.send_to_exit(pcb, ExitReason.SUCCESS)
        self.kernel.cpu_free = True

    def exit(self, pcb: PCB) -> None:
        self.cut_quantum()
        super().exit(pcb)

    def interrupt(self, pcb: PCB) -> None:
        self.cut_quantum()
        self.kernel.send_to_ready(pcb)
        self.kernel.cpu_free = True

    def pick_next(self) -> None:
        super().pick_next()


class VirtualRoundRobin(RoundRobin):
    """Round robin where processes back from I/O keep their unused quantum.

    Such processes wait in a priority queue (READY+) served before READY.
    """

    def __init__(self, kernel) -> None:
        super().__init__(kernel)
        self.priority_queue: deque[PCB] = deque()
        self.last_priority = False
        self.running_pid: int | None = None
        self._priority_lock = threading.Lock()
        self._started: float | None = None

    def send_to_priority(self, pcb: PCB) -> None:
        with self._priority_lock:
            self.kernel.change_state(pcb, ProcessState.READY)
            self.priority_queue.append(pcb)
            log.info(format_queue("READY+", [p.pid for p in self.priority_queue]))
        if not self.last_priority:
            if self.running_pid is not None:
                self.kernel.send_interrupt(self.running_pid, OpCode.END_OF_QUANTUM)
            self.last_priority = True

    def _elapsed_ms(self) -> int:
        if self._started is None:
            return 0
        return int((time.monotonic() - self._started) * 1000)

    def _assign_quantum(self, pcb: PCB) -> None:
        self.cut_quantum()
        elapsed = self._elapsed_ms()
        self._started = None
        if self.interrupted:
            pcb.quantum = self.kernel.quantum
            return
        pcb.quantum -= elapsed
        if pcb.quantum <= 0:
            pcb.quantum = self.kernel.quantum

    def io(self, pcb: PCB, operation, buffer) -> None:
        self._assign_quantum(pcb)
        self.kernel.send_to_io(pcb, operation, buffer)
        self.kernel.cpu_free = True

    def io_finished(self, pcb: PCB) -> None:
        if pcb.quantum == self.kernel.quantum:
            self.kernel.send_to_ready(pcb)
        else:
            self.send_to_priority(pcb)

    def pick_next(self) -> None:
        if not self.kernel.cpu_free:
            return
        with self._priority_lock:
            pcb = self.priority_queue.popleft() if self.priority_queue else None
            if pcb is not None:
                self.kernel.change_state(pcb, ProcessState.EXEC)
        from_priority = pcb is not None
        if pcb is None:
            if not self.kernel.ready_queue:
                return
            pcb = self.kernel.pop_ready()
        self._send(pcb)
        self.running_pid = pcb.pid
        self.last_priority = from_priority
        self.kernel.cpu_free = False
        self._started = time.monotonic()


def make_policy(name: str, kernel):
    """Install on ``kernel`` the policy called ``name`` (FIFO, RR, otherwise VRR)."""
    if name == "FIFO":
        policy = Fifo(kernel)
    elif name == "RR":
        policy = RoundRobin(kernel)
    else:
        policy = VirtualRoundRobin(kernel)
    log.info("Scheduling algorithm selected: %s", name if name in ("FIFO", "RR") else "VRR")
    kernel.policy = policy
    return policy