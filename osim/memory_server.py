"""Network front end of the memory module.

Memory answers the kernel (process creation and removal), the CPU
(instructions, resizes, page tables and user space) and any number of I/O
interfaces (user space reads and writes).
"""

from __future__ import annotations

import logging
import sys
import threading

from .memory import Memory, MemoryAccessError, OutOfMemory
from .net import Connection, accept_client, read_config, start_server
from .protocol import Buffer, Module, OpCode, Packet

log = logging.getLogger(__name__)

_CPU_OPERATIONS = frozenset({
    OpCode.SEND_INSTRUCTION,
    OpCode.RESIZE,
    OpCode.PAGE_TABLE_ACCESS,
    OpCode.USER_SPACE_READ,
    OpCode.USER_SPACE_WRITE,
})

_KERNEL_OPERATIONS = frozenset({OpCode.CREATE_PROCESS, OpCode.FINISH_PROCESS})

_IO_KINDS = frozenset({OpCode.CONNECT_STDIN, OpCode.CONNECT_STDOUT, OpCode.CONNECT_DIAL_FS})


class MemoryServer:
    """Serves a :class:`Memory` to the kernel, the CPU and I/O interfaces."""

    def __init__(self, memory: Memory, kernel, cpu) -> None:
        self.memory = memory
        self.kernel = kernel
        self.cpu = cpu

    def send_page_size(self) -> None:
        self.cpu.send_packet(Packet(OpCode.SEND_PAGE_SIZE).add_int(self.memory.page_size))

    def _read_user_space(self, buffer: Buffer) -> Packet:
        address = buffer.read_uint32()
        size = buffer.read_uint32()
        pid = buffer.read_int()
        data = self.memory.read(pid, address, size)
        return Packet(OpCode.USER_SPACE_READ).add(data)

    def _write_user_space(self, buffer: Buffer) -> None:
        address = buffer.read_uint32()
        size = buffer.read_uint32()
        pid = buffer.read_int()
        data = buffer.read()
        if len(data) < size:
            raise ValueError(f"{size} bytes to write but only {len(data)} received")
        self.memory.write(pid, address, data[:size])

    def handle_cpu(self, operation, buffer: Buffer) -> Packet | None:
        """Serve one CPU request; return the reply, if it gets one."""
        if operation == OpCode.SEND_INSTRUCTION:
            pid = buffer.read_int()
            pc = buffer.read_uint32()
            try:
                instruction = self.memory.get_instruction(pid, pc)
            except (MemoryAccessError, IndexError) as exc:
                log.error("cannot fetch instruction: %s", exc)
                return None
            self.memory._delay()
            return Packet(OpCode.SEND_INSTRUCTION).add_string(instruction)
        if operation == OpCode.RESIZE:
            pid = buffer.read_int()
            new_size = buffer.read_int()
            try:
                changed = self.memory.resize(pid, new_size)
            except OutOfMemory as exc:
                log.error("resize refused: %s", exc)
                return Packet(OpCode.OUT_OF_MEMORY)
            return Packet(OpCode.RESIZE_ACCEPTED) if changed else None
        if operation == OpCode.PAGE_TABLE_ACCESS:
            pid = buffer.read_int()
            page = buffer.read_int()
            try:
                frame = self.memory.frame_of(pid, page)
            except MemoryAccessError as exc:
                log.error("page table access failed: %s", exc)
                return None
            return Packet(OpCode.PAGE_TABLE_ACCESS).add_int(frame)
        if operation == OpCode.USER_SPACE_READ:
            return self._read_user_space(buffer)
        if operation == OpCode.USER_SPACE_WRITE:
            self._write_user_space(buffer)
            return None
        raise ValueError(f"unexpected CPU operation {operation!r}")

    def handle_kernel(self, operation, buffer: Buffer) -> Packet | None:
        """Serve one kernel request; return the reply, if it gets one."""
        if operation == OpCode.CREATE_PROCESS:
            pid = buffer.read_int()
            filename = buffer.read_string()
            self.memory.create_process(pid, filename)
            return Packet(OpCode.PACKET)
        if operation == OpCode.FINISH_PROCESS:
            self.memory.finish_process(buffer.read_int())
            return None
        raise ValueError(f"unexpected kernel operation {operation!r}")

    def _serve(self, connection, operations, handler) -> None:
        while True:
            operation = connection.receive_operation()
            if operation not in operations:
                return
            reply = handler(operation, connection.receive_buffer())
            if reply is not None:
                connection.send_packet(reply)

    def serve_cpu(self) -> None:
        """Answer the CPU until it disconnects or sends something unknown."""
        self._serve(self.cpu, _CPU_OPERATIONS, self.handle_cpu)

    def serve_kernel(self) -> None:
        """Answer the kernel until it disconnects or sends something unknown."""
        self._serve(self.kernel, _KERNEL_OPERATIONS, self.handle_kernel)

    def serve_io(self, connection: Connection, kind) -> None:
        """Answer an interface that connected as ``kind`` until it leaves."""
        if kind not in _IO_KINDS:
            raise ValueError(f"{kind!r} is not an interface connection")
        try:
            while True:
                operation = connection.receive_operation()
                if operation is None or operation <= 0:
                    break
                if kind == OpCode.CONNECT_STDIN:
                    reading = False
                elif kind == OpCode.CONNECT_STDOUT:
                    reading = True
                elif operation == OpCode.USER_SPACE_WRITE:
                    reading = False
                elif operation == OpCode.USER_SPACE_READ:
                    reading = True
                else:
                    break
                buffer = connection.receive_buffer()
                if reading:
                    connection.send_packet(self._read_user_space(buffer))
                else:
                    self._write_user_space(buffer)
        finally:
            connection.close()

    def accept_io(self, server) -> None:
        """Accept interfaces on ``server``, each served on its own thread."""
        while True:
            try:
                connection = accept_client(server, Module.MEMORY)
            except OSError:
                break
            kind = connection.receive_operation()
            if kind not in _IO_KINDS:
                log.error("invalid connection from an interface")
                connection.close()
                continue
            threading.Thread(
                target=self.serve_io, args=(connection, kind), daemon=True
            ).start()


def main(argv=None) -> int:
    """Start memory with the configuration file named in ``argv``."""
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        print("usage: memory CONFIG", file=sys.stderr)
        return 1
    try:
        config = read_config(args[0])
    except OSError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 1
    logging.basicConfig(level=logging.INFO)

    server = start_server(config["PUERTO_ESCUCHA"])
    try:
        kernel = accept_client(server, Module.MEMORY)
        cpu = accept_client(server, Module.MEMORY)
        memory = Memory(
            int(config["TAM_MEMORIA"]),
            int(config["TAM_PAGINA"]),
            config.get("PATH_INSTRUCCIONES", ""),
            int(config.get("RETARDO_RESPUESTA", "0")),
        )
        memory_server = MemoryServer(memory, kernel, cpu)
        memory_server.send_page_size()

        kernel_thread = threading.Thread(target=memory_server.serve_kernel)
        cpu_thread = threading.Thread(target=memory_server.serve_cpu)
        io_thread = threading.Thread(
            target=memory_server.accept_io, args=(server,), daemon=True
        )
        for thread in (kernel_thread, cpu_thread, io_thread):
            thread.start()
        cpu_thread.join()
        kernel_thread.join()
        kernel.close()
        cpu.close()
    finally:
        server.close()
    return 0