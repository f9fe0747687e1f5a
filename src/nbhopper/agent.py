from __future__ import annotations

import logging
import os
import subprocess
import sys
from collections.abc import Mapping, Sequence

from .app_logging import get_logger, log_with_fields
from .config import SshConfig
from .models import AgentStatus
from .remote import PreconditionError

RELAUNCH_MARKER = "NBHOPPER_UNDER_AGENT"

# ssh-add -l: 0 lists identities, 1 means the agent holds none, 2 means no agent answered
_SSH_ADD_NO_IDENTITIES = 1


def detect_agent_status(env: Mapping[str, str], ssh_add_returncode: int | None) -> AgentStatus:
    if not env.get("SSH_AUTH_SOCK"):
        return AgentStatus.NEEDS_AGENT
    if ssh_add_returncode == 0:
        return AgentStatus.READY
    if ssh_add_returncode == _SSH_ADD_NO_IDENTITIES:
        return AgentStatus.NEEDS_CREDENTIAL
    return AgentStatus.NEEDS_AGENT


def query_ssh_add(ssh_config: SshConfig, env: Mapping[str, str]) -> int | None:
    if not env.get("SSH_AUTH_SOCK"):
        return None
    try:
        process = subprocess.run(
            [ssh_config.add_command, "-l"],
            capture_output=True,
            text=True,
            check=False,
            env=dict(env),
        )
    except FileNotFoundError as exc:
        raise PreconditionError(f"{ssh_config.add_command} not found on PATH") from exc
    return process.returncode


def relaunch_under_agent(ssh_config: SshConfig, argv: Sequence[str]) -> None:
    """Replace this process with ``ssh-agent python -m nbhopper.cli ...``."""
    if os.environ.get(RELAUNCH_MARKER):
        raise PreconditionError("ssh-agent was started but is still not reachable; check SSH_AUTH_SOCK")
    os.environ[RELAUNCH_MARKER] = "1"
    cmd = [ssh_config.agent_command, sys.executable, "-m", "nbhopper.cli", *argv]
    log_with_fields(get_logger("agent"), logging.INFO, "relaunch_under_agent", command=cmd[0])
    try:
        os.execvp(cmd[0], cmd)
    except FileNotFoundError as exc:
        raise PreconditionError(f"{ssh_config.agent_command} not found on PATH") from exc


def add_credential(ssh_config: SshConfig) -> None:
    print("No key loaded in ssh-agent; adding one now.", file=sys.stderr)
    process = subprocess.run([ssh_config.add_command], check=False)
    if process.returncode != 0:
        raise PreconditionError(f"{ssh_config.add_command} failed with exit code {process.returncode}")


def ensure_agent(ssh_config: SshConfig, argv: Sequence[str]) -> None:
    logger = get_logger("agent")
    status = detect_agent_status(os.environ, query_ssh_add(ssh_config, os.environ))
    log_with_fields(logger, logging.DEBUG, "agent_status", status=status.value)
    if status is AgentStatus.READY:
        return
    if status is AgentStatus.NEEDS_AGENT:
        relaunch_under_agent(ssh_config, argv)
        return

    add_credential(ssh_config)
    status = detect_agent_status(os.environ, query_ssh_add(ssh_config, os.environ))
    if status is not AgentStatus.READY:
        raise PreconditionError("ssh-agent still holds no usable key")
