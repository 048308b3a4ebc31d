"""Paged user memory with per-process page tables and instruction lists."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


class OutOfMemory(Exception):
    """Raised when a process cannot grow because memory is exhausted."""


class MemoryAccessError(LookupError):
    """Raised for accesses to unknown processes, pages or addresses."""


@dataclass
class PageTableEntry:
    frame: int
    valid: bool = True


@dataclass(eq=False)
class MemoryProcess:
    """What memory keeps for a process: its instructions and its page table."""

    pid: int
    path: str
    instructions: list[str] = field(default_factory=list)
    page_table: list[PageTableEntry] = field(default_factory=list)
    size: int = 0
    pc: int = 0


class Memory:
    """Contiguous user space split into frames, plus the process table."""

    def __init__(self, size, page_size, instructions_path, delay_ms) -> None:
        if page_size <= 0:
            raise ValueError("page size must be positive")
        if size < 0:
            raise ValueError("memory size must not be negative")
        self.size = int(size)
        self.page_size = int(page_size)
        self.instructions_path = str(instructions_path)
        self.delay_ms = delay_ms
        self._space = bytearray(self.size)
        self._frames = [False] * (self.size // self.page_size)
        self._processes: list[MemoryProcess] = []
        self._space_lock = threading.Lock()
        self._frames_lock = threading.Lock()
        self._processes_lock = threading.Lock()

    def _delay(self) -> None:
        if self.delay_ms:
            time.sleep(self.delay_ms / 1000)

    def _require(self, pid: int) -> MemoryProcess:
        process = self.find_process(pid)
        if process is None:
            raise MemoryAccessError(f"no process with PID {pid}")
        return process

    def frame_count(self) -> int:
        return len(self._frames)

    def free_frames(self) -> int:
        with self._frames_lock:
            return self._frames.count(False)

    def create_process(self, pid, filename) -> MemoryProcess:
        """Load the instruction file of a new process and register it."""
        self._delay()
        path = f"{self.instructions_path}{filename}"
        with open(path, encoding="utf-8", newline="") as handle:
            instructions = [
                line[:-1] if line.endswith("\n") else line for line in handle
            ]
        process = MemoryProcess(pid, path, instructions)
        with self._processes_lock:
            self._processes.append(process)
        log.info(
            "Page table created - PID: %d - Size: %d",
            process.pid,
            len(process.page_table),
        )
        return process

    def find_process(self, pid) -> MemoryProcess | None:
        with self._processes_lock:
            return next((p for p in self._processes if p.pid == pid), None)

    def finish_process(self, pid) -> MemoryProcess:
        """Free the frames of a process and drop it from the table."""
        self._delay()
        process = self._require(pid)
        with self._frames_lock:
            for entry in process.page_table:
                if entry.valid:
                    self._frames[entry.frame] = False
        log.info(
            "Page table destroyed - PID: %d - Size: %d",
            pid,
            len(process.page_table),
        )
        with self._processes_lock:
            self._processes = [p for p in self._processes if p.pid != pid]
        return process

    def get_instruction(self, pid, pc) -> str:
        process = self._require(pid)
        if not 0 <= pc < len(process.instructions):
            raise IndexError(f"PID {pid} has no instruction at {pc}")
        return process.instructions[pc]

    def _pages(self, size: int) -> int:
        return math.ceil(size / self.page_size)

    def resize(self, pid, new_size) -> bool:
        """Grow or shrink a process; ``False`` if it already had that size."""
        process = self._require(pid)
        if new_size > process.size:
            if new_size > self.size:
                log.info("OUT OF MEMORY, the process will be finished.")
                raise OutOfMemory(f"{new_size} bytes exceed the memory size")
            extra = self._pages(new_size) - self._pages(process.size)
            with self._frames_lock:
                free = [i for i, used in enumerate(self._frames) if not used]
                if len(free) < extra:
                    raise OutOfMemory(
                        f"PID {pid} needs {extra} frames, {len(free)} free"
                    )
                self._delay()
                log.info(
                    "Process grown - PID: %d - Current size: %d - New size: %d",
                    pid, process.size, new_size,
                )
                process.size = new_size
                for frame in free[:extra]:
                    self._frames[frame] = True
                    process.page_table.append(PageTableEntry(frame))
            return True
        if new_size < process.size:
            log.info(
                "Process shrunk - PID: %d - Current size: %d - New size: %d",
                pid, process.size, new_size,
            )
            self._delay()
            removed = self._pages(process.size) - self._pages(new_size)
            if removed > len(process.page_table):
                raise MemoryAccessError("more pages to remove than the table holds")
            with self._frames_lock:
                for _ in range(removed):
                    entry = process.page_table.pop()
                    if entry.valid:
                        self._frames[entry.frame] = False
            process.size = new_size
            return True
        log.info("Requested resize matches the current size of the process")
        return False

    def frame_of(self, pid, page) -> int:
        process = self._require(pid)
        if not 0 <= page < len(process.page_table):
            raise MemoryAccessError(f"PID {pid} has no page {page}")
        self._delay()
        return process.page_table[page].frame

    def _check_range(self, address: int, size: int) -> None:
        if address < 0 or size < 0 or address + size > self.size:
            raise MemoryAccessError(
                f"access of {size} bytes at {address} exceeds the memory"
            )

    def write(self, pid, address, data) -> None:
        data = bytes(data)
        self._check_range(address, len(data))
        self._delay()
        log.info(
            "PID: %d - Action: WRITE - Physical address: %d - Size: %d",
            pid, address, len(data),
        )
        with self._space_lock:
            self._space[address:address + len(data)] = data

    def read(self, pid, address, size) -> bytes:
        self._check_range(address, size)
        self._delay()
        log.info(
            "PID: %d - Action: READ - Physical address: %d - Size: %d",
            pid, address, size,
        )
        with self._space_lock:
            return bytes(self._space[address:address + size])