"""Interactive command console of the kernel."""

from __future__ import annotations

import logging
import sys

from .kernel import state_name

log = logging.getLogger(__name__)


class Console:
    """Reads kernel commands and carries them out.

    Commands:
    ``EJECUTAR_SCRIPT name``, ``INICIAR_PROCESO path``,
    ``FINALIZAR_PROCESO pid``, ``MULTIPROGRAMACION degree``,
    ``DETENER_PLANIFICACION``, ``INICIAR_PLANIFICACION`` and
    ``PROCESO_ESTADO``. Unknown commands are ignored.
    """

    def __init__(self, kernel, scripts_path) -> None:
        self.kernel = kernel
        self.scripts_path = str(scripts_path)
        self.paused = False
        self._commands = {
            "EJECUTAR_SCRIPT": lambda args: self.run_script(self._argument(args)),
            "INICIAR_PROCESO": lambda args: self.kernel.create_process(self._argument(args)),
            "FINALIZAR_PROCESO": lambda args: self.kernel.finish_process(
                self._number(args)
            ),
            "MULTIPROGRAMACION": lambda args: self.kernel.set_multiprogramming(
                self._number(args)
            ),
            "DETENER_PLANIFICACION": lambda args: self._pause(),
            "INICIAR_PLANIFICACION": lambda args: self._resume(),
            "PROCESO_ESTADO": lambda args: print(self.list_processes(), end=""),
        }

    @staticmethod
    def _argument(args: list[str]) -> str:
        if not args:
            raise ValueError("the command needs an argument")
        return args[0]

    def _number(self, args: list[str]) -> int:
        value = self._argument(args)
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"{value!r} is not a number") from None

    def _pause(self) -> None:
        if not self.paused:
            self.kernel.lock.acquire()
            self.paused = True

    def _resume(self) -> None:
        if self.paused:
            self.paused = False
            self.kernel.lock.release()

    def execute(self, line: str) -> None:
        """Interpret one command line."""
        words = line.split(" ")
        words = [word for word in words if word]
        if not words:
            return
        command = self._commands.get(words[0])
        if command is not None:
            command(words[1:])

    def run_script(self, name: str) -> None:
        """Execute every command in the script ``name`` with scheduling held."""
        path = f"{self.scripts_path}{name}"
        with open(path, encoding="utf-8") as script, self.kernel.lock:
            for line in script:
                self.execute(line.rstrip("\n"))

    def list_processes(self) -> str:
        """Describe every live process, grouped by state, PIDs ascending."""
        parts = []
        for state, pids in self.kernel.processes_by_state().items():
            parts.append(f"\n{state_name(state)}\n\n")
            parts.extend(f"PID: {pid}\n" for pid in pids)
        return "".join(parts)

    def run(self, read=None) -> None:
        """Prompt for commands until an empty line or end of input."""
        if read is None:
            read = input
        while True:
            try:
                line = read(">")
            except EOFError:
                break
            if not line:
                break
            try:
                self.execute(line)
            except (ValueError, LookupError, OSError) as exc:
                log.error("command %r failed: %s", line, exc)
                print(f"error: {exc}", file=sys.stderr)