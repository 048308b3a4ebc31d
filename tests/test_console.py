import threading

import pytest

from osim.console import Console
from osim.kernel import ExitReason, Kernel
from osim.policies import Fifo
from osim.protocol import Buffer, OpCode, ProcessState


class FakeConnection:
    def __init__(self):
        self.sent = []

    def send_packet(self, packet):
        self.sent.append(packet)

    def receive_operation(self):
        return OpCode.PACKET


@pytest.fixture
def kernel():
    k = Kernel(FakeConnection(), FakeConnection(), FakeConnection(), 2000, 2)
    k.policy = Fifo(k)
    return k


@pytest.fixture
def console(kernel, tmp_path):
    return Console(kernel, f"{tmp_path}/")


def _try_lock(lock):
    result = []

    def attempt():
        got = lock.acquire(blocking=False)
        result.append(got)
        if got:
            lock.release()

    thread = threading.Thread(target=attempt)
    thread.start()
    thread.join()
    return result[0]


def test_start_process_sends_path_to_memory(console, kernel):
    console.execute("INICIAR_PROCESO prog.txt")
    assert [p.pid for p in kernel.processes] == [0]
    packet = kernel.memory.sent[0]
    assert packet.operation == OpCode.CREATE_PROCESS
    buffer = Buffer(bytes(packet.payload))
    assert buffer.read_int() == 0
    assert buffer.read_string() == "prog.txt"


def test_finish_process_moves_it_to_exit(console, kernel):
    console.execute("INICIAR_PROCESO prog.txt")
    console.execute("FINALIZAR_PROCESO 0")
    pcb = kernel.find_process(0)
    assert pcb.state == ProcessState.EXIT
    assert list(kernel.new_queue) == []
    assert kernel.exit_queue[0] == (pcb, ExitReason.INTERRUPTED_BY_USER)


def test_multiprogramming_changes_degree(console, kernel):
    console.execute("MULTIPROGRAMACION 5")
    assert kernel.multiprogramming == 5
    console.execute("MULTIPROGRAMACION 1")
    assert kernel.multiprogramming == 1


def test_unknown_command_is_ignored(console, kernel):
    console.execute("NO_EXISTE 3")
    console.execute("")
    assert kernel.processes == []
    assert kernel.memory.sent == []


def test_missing_argument_raises(console):
    with pytest.raises(ValueError):
        console.execute("INICIAR_PROCESO")


def test_non_numeric_pid_raises(console):
    with pytest.raises(ValueError):
        console.execute("FINALIZAR_PROCESO abc")


def test_finishing_unknown_process_raises(console):
    with pytest.raises(LookupError):
        console.execute("FINALIZAR_PROCESO 7")


def test_pause_and_resume_hold_the_scheduler(console, kernel):
    console.execute("DETENER_PLANIFICACION")
    assert console.paused is True
    assert _try_lock(kernel.lock) is False
    console.execute("INICIAR_PLANIFICACION")
    assert console.paused is False
    assert _try_lock(kernel.lock) is True


def test_resume_without_pause_keeps_lock_free(console, kernel):
    console.execute("INICIAR_PLANIFICACION")
    assert console.paused is False
    assert _try_lock(kernel.lock) is True


def test_list_processes_groups_by_state(console, kernel):
    console.execute("INICIAR_PROCESO a")
    console.execute("INICIAR_PROCESO b")
    assert console.list_processes() == "\nNEW\n\nPID: 0\nPID: 1\n"


def test_list_processes_orders_states(console, kernel):
    console.execute("INICIAR_PROCESO a")
    console.execute("INICIAR_PROCESO b")
    kernel.find_process(1).state = ProcessState.READY
    text = console.list_processes()
    assert text.index("NEW") < text.index("READY")
    assert text.index("PID: 0") < text.index("PID: 1")


def test_process_state_command_prints(console, capsys):
    console.execute("INICIAR_PROCESO a")
    console.execute("PROCESO_ESTADO")
    assert capsys.readouterr().out == console.list_processes()


def test_list_processes_empty(console):
    assert console.list_processes() == ""


def test_run_script(console, kernel, tmp_path):
    (tmp_path / "script").write_text(
        "INICIAR_PROCESO a.txt\nINICIAR_PROCESO b.txt\nMULTIPROGRAMACION 3\n"
    )
    console.execute("EJECUTAR_SCRIPT script")
    assert [p.pid for p in kernel.processes] == [0, 1]
    paths = [Buffer(bytes(p.payload)) for p in kernel.memory.sent]
    assert [(b.read_int(), b.read_string()) for b in paths] == [(0, "a.txt"), (1, "b.txt")]
    assert kernel.multiprogramming == 3
    assert _try_lock(kernel.lock) is True


def test_run_missing_script_raises(console):
    with pytest.raises(OSError):
        console.run_script("missing")


def test_run_stops_at_empty_line(console, kernel):
    lines = iter(["INICIAR_PROCESO p", "", "INICIAR_PROCESO q"])
    console.run(lambda prompt: next(lines))
    assert [p.pid for p in kernel.processes] == [0]


def test_run_stops_at_end_of_input(console, kernel):
    lines = iter(["INICIAR_PROCESO p", "INICIAR_PROCESO q"])

    def read(prompt):
        try:
            return next(lines)
        except StopIteration:
            raise EOFError from None

    console.run(read)
    assert [p.pid for p in kernel.processes] == [0, 1]


def test_run_reports_errors_and_continues(console, kernel, capsys):
    lines = iter(["FINALIZAR_PROCESO 9", "INICIAR_PROCESO p", ""])
    console.run(lambda prompt: next(lines))
    assert [p.pid for p in kernel.processes] == [0]
    assert "error" in capsys.readouterr().err