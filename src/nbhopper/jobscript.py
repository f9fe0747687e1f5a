from __future__ import annotations

import shlex
from dataclasses import dataclass

# Lets the Dask JupyterLab extension start a LocalCluster sized to the job
# without any configuration from the user.  {port} is filled in by Dask.
DASK_ENVIRONMENT: tuple[tuple[str, str], ...] = (
    ("DASK_LABEXTENSION__FACTORY__MODULE", "dask.distributed"),
    ("DASK_LABEXTENSION__FACTORY__CLASS", "LocalCluster"),
    ("DASK_LABEXTENSION__FACTORY__KWARGS__N_WORKERS", "${PBS_NCPUS:-1}"),
    ("DASK_LABEXTENSION__FACTORY__KWARGS__MEMORY_LIMIT", "$(( ${PBS_VMEM:-0} / ${PBS_NCPUS:-1} ))"),
    ("DASK_LABEXTENSION__FACTORY__KWARGS__LOCAL_DIRECTORY", "${PBS_JOBFS:-/tmp}/dask-worker-space"),
    ("DASK_DISTRIBUTED__DASHBOARD__LINK", "/proxy/{port}/status"),
)

_PICK_PORT = (
    'import socket; s = socket.socket(); s.bind(("", 0)); '
    "print(s.getsockname()[1]); s.close()"
)
_MAKE_TOKEN = "import secrets; print(secrets.token_hex(24))"


@dataclass(frozen=True, slots=True)
class JobScript:
    """Everything the batch payload needs, rendered once into bash.

    The script runs on the compute node.  It picks a port and a token, writes
    ``{host} {token} {job id} {port}`` to the message file, then execs the
    notebook server for the rest of the walltime.
    """

    message_path: str
    module_use: str
    module: str
    notebook_command: str = "jupyter lab"
    debug: bool = False

    def render(self) -> str:
        message = shlex.quote(self.message_path)
        message_tmp = shlex.quote(f"{self.message_path}.tmp")
        lines = ["#!/bin/bash", "set -eu"]
        if self.debug:
            lines.append("set -x")
        lines += [
            "",
            f"module use {shlex.quote(self.module_use)}",
            f"module load {shlex.quote(self.module)}",
            "",
            "host=$(hostname)",
            f"port=$(python3 -c {shlex.quote(_PICK_PORT)})",
            f"token=$(python3 -c {shlex.quote(_MAKE_TOKEN)})",
            "",
        ]
        for name, value in DASK_ENVIRONMENT:
            # values carry shell expansions, so only the literal ones get quoted
            rendered = f'"{value}"' if "$" in value else shlex.quote(value)
            lines.append(f"export {name}={rendered}")
        lines += [
            "",
            f'echo "$host $token $PBS_JOBID $port" > {message_tmp}',
            f"mv -f {message_tmp} {message}",
            "",
            (
                f'exec {self.notebook_command} --no-browser --ip="$host" --port="$port" '
                '--ServerApp.token="$token" --ServerApp.root_dir="$HOME"'
            ),
            "",
        ]
        return "\n".join(lines)
