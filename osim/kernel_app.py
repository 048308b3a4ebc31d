"""Kernel start-up: configuration, connections, scheduling and the console."""

from __future__ import annotations

import logging
import sys
import threading

from .console import Console
from .interfaces import InterfaceRegistry
from .kernel import Kernel
from .net import ConnectionFailed, connect, read_config, start_server
from .policies import make_policy
from .protocol import Module
from .resources import ResourceTable

log = logging.getLogger(__name__)


def _array(value) -> list[str]:
    """Parse a configuration array such as ``[A,B,C]``."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    text = str(value).strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    return [item.strip() for item in text.split(",") if item.strip()]


def build_kernel(config, memory, cpu_dispatch, cpu_interrupt) -> Kernel:
    """Create a kernel from ``config`` with its resources and policy installed."""
    resources = ResourceTable.from_config(
        _array(config.get("RECURSOS")),
        _array(config.get("INSTANCIAS_RECURSOS")),
    )
    kernel = Kernel(
        memory,
        cpu_dispatch,
        cpu_interrupt,
        int(config["QUANTUM"]),
        int(config["GRADO_MULTIPROGRAMACION"]),
        resources,
        InterfaceRegistry(),
    )
    make_policy(config.get("ALGORITMO_PLANIFICACION", ""), kernel)
    return kernel


def main(argv=None) -> int:
    """Start the kernel with the configuration file named in ``argv``."""
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        print("usage: kernel CONFIG", file=sys.stderr)
        return 1
    try:
        config = read_config(args[0])
    except (OSError, ValueError) as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 1
    if not config:
        print("configuration error: empty configuration", file=sys.stderr)
        return 1

    logging.basicConfig(filename="Kernel.log", level=logging.INFO)

    connections = []
    try:
        server = start_server(config["PUERTO_ESCUCHA"])
    except (OSError, KeyError) as exc:
        print(f"cannot start server: {exc}", file=sys.stderr)
        return 1
    try:
        cpu_host = config["IP_CPU"]
        cpu_dispatch = connect(cpu_host, config["PUERTO_CPU_DISPATCH"], Module.KERNEL)
        connections.append(cpu_dispatch)
        cpu_interrupt = connect(cpu_host, config["PUERTO_CPU_INTERRUPT"], Module.KERNEL)
        connections.append(cpu_interrupt)
        memory = connect(config["IP_MEMORIA"], config["PUERTO_MEMORIA"], Module.KERNEL)
        connections.append(memory)
        cpu_dispatch.send_int(1)

        kernel = build_kernel(config, memory, cpu_dispatch, cpu_interrupt)
        threading.Thread(
            target=kernel.interfaces.accept_clients,
            args=(server, kernel),
            daemon=True,
        ).start()
        kernel.start()

        Console(kernel, config.get("PATH_SCRIPTS", "")).run()
    except (ConnectionFailed, OSError, KeyError, ValueError) as exc:
        log.error("kernel stopped: %s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        for connection in connections:
            connection.close()
        server.close()
    return 0