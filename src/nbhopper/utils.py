from __future__ import annotations

import re
import socket
import uuid
from collections.abc import Callable

JOB_ID_REGEX = re.compile(r"^(\d+(?:\[\d*\])?(?:\.[A-Za-z0-9_.-]+)?)$")
JOB_STATE_REGEX = re.compile(r"^\s*job_state\s*=\s*(\S+)", re.MULTILINE)
ACTIVE_JOB_STATES = frozenset({"Q", "R"})


def parse_qsub_job_id(output: str) -> str | None:
    for line in output.splitlines():
        candidate = line.strip()
        if JOB_ID_REGEX.match(candidate):
            return candidate
    return None


def parse_job_state(qstat_output: str) -> str | None:
    match = JOB_STATE_REGEX.search(qstat_output)
    if not match:
        return None
    return match.group(1)


def is_active_state(state: str | None) -> bool:
    return state in ACTIVE_JOB_STATES


def port_accepts_connections(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        return sock.connect_ex((host, port)) == 0


class NoFreePortError(RuntimeError):
    pass


def find_free_port(start: int, in_use: Callable[[int], bool] = port_accepts_connections) -> int:
    port = start
    while port <= 65535:
        if not in_use(port):
            return port
        port += 1
    raise NoFreePortError(f"no free local port at or above {start}")


def default_memory(ncpus: int, per_cpu_gb: int) -> str:
    return f"{ncpus * per_cpu_gb}GB"


def new_lease_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:12]}"
