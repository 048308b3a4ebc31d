# osim

`osim` simulates two modules of a small operating system that talk to each
other, and to a CPU and I/O interfaces, over TCP:

- **kernel**: keeps the process control blocks, moves processes through
  NEW, READY, EXEC, BLOCKED and EXIT, schedules them with FIFO, Round Robin
  or Virtual Round Robin, manages shared resources (WAIT/SIGNAL), and queues
  blocked processes on connected I/O interfaces (generic, STDIN, STDOUT,
  DialFS).
- **memory**: loads each process's instruction file, serves instructions
  to the CPU, keeps a page table per process over a contiguous user space
  divided into frames, resizes processes and serves reads and writes from
  the CPU and the I/O interfaces.

All messages use one wire format: a 4-byte operation code, a 4-byte
payload length and a payload made of length-prefixed fields, all
little-endian. Every connection starts with a 4-byte handshake naming the
module that connects; the server answers `0` to accept and `-1` to refuse.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Running

Both programs take the path of a configuration file of `KEY=VALUE` lines
(blank lines and lines starting with `#` are skipped):

```
osim-memory memory.config
osim-kernel kernel.config
```

The memory accepts two clients before it starts serving: the first is
treated as the kernel, the second as the CPU. It then sends the page size
to the CPU and keeps accepting I/O interfaces. It logs to standard error.

The kernel connects to the CPU's dispatch and interrupt ports and to the
memory, listens on its own port for I/O interfaces, starts scheduling and
opens the console. It logs to `Kernel.log`.

### Memory configuration

```
PUERTO_ESCUCHA=8002
PATH_INSTRUCCIONES=/home/user/scripts/
RETARDO_RESPUESTA=100
TAM_MEMORIA=4096
TAM_PAGINA=32
```

- `PATH_INSTRUCCIONES` is prefixed as-is to the file name the kernel sends.
- `RETARDO_RESPUESTA` is the delay, in milliseconds, applied to each access.
- `TAM_MEMORIA` / `TAM_PAGINA` gives the number of frames.

### Kernel configuration

```
PUERTO_ESCUCHA=8003
IP_MEMORIA=127.0.0.1
PUERTO_MEMORIA=8002
IP_CPU=127.0.0.1
PUERTO_CPU_DISPATCH=8006
PUERTO_CPU_INTERRUPT=8007
ALGORITMO_PLANIFICACION=VRR
QUANTUM=2000
RECURSOS=[RA,RB,RC]
INSTANCIAS_RECURSOS=[1,2,1]
GRADO_MULTIPROGRAMACION=10
PATH_SCRIPTS=/home/user/scripts/
```

`ALGORITMO_PLANIFICACION` is `FIFO`, `RR` or anything else for VRR.
`QUANTUM` is in milliseconds.

## Kernel console

Once started, the kernel reads commands at the `>` prompt; an empty line
or end of input ends it. Unknown commands are ignored.

| Command | Effect |
| --- | --- |
| `INICIAR_PROCESO <path>` | create a process from an instruction file |
| `FINALIZAR_PROCESO <pid>` | end a process (reason: interrupted by user) |
| `MULTIPROGRAMACION <n>` | change the degree of multiprogramming |
| `DETENER_PLANIFICACION` | pause scheduling |
| `INICIAR_PLANIFICACION` | resume scheduling |
| `PROCESO_ESTADO` | list processes grouped by state |
| `EJECUTAR_SCRIPT <name>` | run the commands in a file under `PATH_SCRIPTS` |

## Using the library

The building blocks can be used on their own. For example, the paged
memory:

```python
from osim.memory import Memory, OutOfMemory

memory = Memory(size=256, page_size=32, instructions_path="programs/", delay_ms=0)
memory.create_process(0, "program.txt")   # reads programs/program.txt
memory.resize(0, 64)           # two pages; raises OutOfMemory if frames run out
frame = memory.frame_of(0, 1)  # frame backing page 1
memory.write(0, frame * 32, b"hi")
assert memory.read(0, frame * 32, 2) == b"hi"
```

and the wire format:

```python
from osim.protocol import Buffer, OpCode, Packet

packet = Packet(OpCode.INSTRUCTION_WAIT).add_string("RA")
data = packet.serialize()
payload = Buffer(data[8:])
assert payload.read_string() == "RA"
```

Modules:

- `osim.protocol`: operation codes, `PCB`, `Registers`, `Packet` and `Buffer`.
- `osim.net`: `Connection`, `start_server`, `accept_client`, `connect`,
  `read_config`.
- `osim.memory` and `osim.memory_server`: the paged memory and its network
  front end (`MemoryServer`).
- `osim.resources`: `Resource` and `ResourceTable`.
- `osim.interfaces`: I/O requests, `ConnectedInterface` and
  `InterfaceRegistry`.
- `osim.kernel`: `Kernel` and `ExitReason`.
- `osim.policies`: `Fifo`, `RoundRobin`, `VirtualRoundRobin` and
  `make_policy`.
- `osim.console`: `Console`.
- `osim.kernel_app`: `build_kernel` and the kernel command.

## What this package does not do

There is no CPU and there are no I/O devices here. The kernel cannot start
without a CPU listening on its dispatch and interrupt ports, and the memory
expects a CPU as its second client; a program that fetches and executes
instructions and speaks the wire format above must be supplied separately.
Likewise, processes blocked on an interface only progress if a generic,
STDIN, STDOUT or DialFS device connects to the kernel (and, for memory
access, to the memory) and answers its requests.