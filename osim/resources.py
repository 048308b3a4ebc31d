"""Kernel resources: counted instances with a queue of blocked processes."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field

from .protocol import PCB

log = logging.getLogger(__name__)


@dataclass(eq=False)
class Resource:
    """A named resource with a number of free instances.

    A negative count means that many processes are waiting for it.
    """

    name: str
    instances: int
    blocked: deque = field(default_factory=deque)

    def wait(self, pcb: PCB) -> bool:
        """Assign the resource to ``pcb``.

        Returns ``True`` when an instance was free. Otherwise the process is
        queued, ``False`` is returned and the caller marks it blocked. Either
        way the resource is recorded as held by the process.
        """
        taken = self.instances > 0
        pcb.resources.append(self.name)
        if not taken:
            self.blocked.append(pcb)
            log.info("PID: %d - Blocked by: %s", pcb.pid, self.name)
            pids = ", ".join(str(p.pid) for p in self.blocked)
            log.info("Queue BLOCKED %s: [%s]", self.name, pids)
        self.instances -= 1
        return taken

    def signal(self, pcb: PCB) -> PCB | None:
        """Give back an instance held by ``pcb``.

        Returns the first waiting process, now unblocked, for the caller to
        send to READY; ``None`` if nobody was waiting.
        """
        self.instances += 1
        pcb.resources = [name for name in pcb.resources if name != self.name]
        return self.blocked.popleft() if self.blocked else None

    def remove_blocked(self, pid: int) -> bool:
        for pcb in self.blocked:
            if pcb.pid == pid:
                self.blocked.remove(pcb)
                return True
        return False


class ResourceTable:
    """Every resource the kernel knows, in configuration order."""

    def __init__(self, resources=()) -> None:
        self._resources: list[Resource] = list(resources)

    def __iter__(self):
        return iter(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    @classmethod
    def from_config(cls, names, instances) -> "ResourceTable":
        """Build the table from parallel lists of names and instance counts."""
        names = list(names)
        instances = list(instances)
        if len(names) != len(instances):
            raise ValueError(
                f"{len(names)} resources but {len(instances)} instance counts"
            )
        return cls(Resource(name, int(count)) for name, count in zip(names, instances))

    def find(self, name: str) -> Resource | None:
        return next((r for r in self._resources if r.name == name), None)

    def release_all(self, pcb: PCB) -> list[PCB]:
        """Signal every resource ``pcb`` holds; return the processes unblocked."""
        unblocked: list[PCB] = []
        while pcb.resources:
            name = pcb.resources[0]
            resource = self.find(name)
            if resource is None:
                pcb.resources = [held for held in pcb.resources if held != name]
                continue
            woken = resource.signal(pcb)
            if woken is not None:
                unblocked.append(woken)
        return unblocked

    def remove_blocked(self, pid: int) -> bool:
        """Drop process ``pid`` from whichever resource queue holds it."""
        return any(resource.remove_blocked(pid) for resource in self._resources)