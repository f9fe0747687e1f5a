from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass

from .app_logging import get_logger, log_with_fields
from .config import SshConfig


class RemoteError(RuntimeError):
    pass


class PreconditionError(RuntimeError):
    pass


@dataclass(slots=True)
class RemoteResult:
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ConnectionGateway:
    """All traffic to the login host goes through here.

    Authentication is left to the ambient ssh agent, so every call runs with
    ``BatchMode=yes`` and never prompts.
    """

    def __init__(self, ssh_config: SshConfig, user: str, login_host: str, *, debug: bool = False) -> None:
        self.ssh_config = ssh_config
        self.user = user
        self.login_host = login_host
        self.ssh_options = ["-o", "BatchMode=yes", *shlex.split(ssh_config.options)]
        if debug:
            self.ssh_options.append("-v")
        self.logger = get_logger("remote")

    @property
    def address(self) -> str:
        return f"{self.user}@{self.login_host}"

    def _run(self, cmd: list[str], input_text: str | None = None) -> subprocess.CompletedProcess[str]:
        self.logger.debug("exec %s", shlex.join(cmd))
        return subprocess.run(cmd, input=input_text, capture_output=True, text=True, check=False)

    def run_remote(self, command: str, *, input_text: str | None = None) -> RemoteResult:
        cmd = ["ssh", *self.ssh_options, self.address, "bash", "-lc", shlex.quote(command)]
        process = self._run(cmd, input_text)
        return RemoteResult(stdout=process.stdout, stderr=process.stderr, returncode=process.returncode)

    def require_ok(self, result: RemoteResult, context: str) -> RemoteResult:
        if not result.ok:
            stderr = result.stderr.strip()
            stdout = result.stdout.strip()
            output = stderr if stderr else stdout
            raise RemoteError(f"{context} failed: {output or 'exit code ' + str(result.returncode)}")
        return result

    def check_connectivity(self) -> None:
        result = self.run_remote("true")
        if not result.ok:
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            log_with_fields(
                self.logger,
                logging.ERROR,
                "login_unreachable",
                host=self.login_host,
                user=self.user,
                returncode=result.returncode,
            )
            raise PreconditionError(f"cannot reach {self.address} over ssh: {detail}")
        log_with_fields(self.logger, logging.DEBUG, "login_reachable", host=self.login_host)

    def list_groups(self) -> list[str]:
        result = self.require_ok(self.run_remote("id -Gn"), "list groups")
        return result.stdout.split()

    def existing_directories(self, paths: list[str]) -> set[str]:
        if not paths:
            return set()
        script = "for d in " + " ".join(shlex.quote(p) for p in paths) + '; do [ -d "$d" ] && echo "$d"; done; true'
        result = self.require_ok(self.run_remote(script), "check mount points")
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def remote_env(self, name: str) -> str | None:
        result = self.require_ok(self.run_remote(f'printf "%s" "${{{name}:-}}"'), f"read ${name}")
        value = result.stdout.strip()
        return value or None

    def open_tunnel(self, local_port: int, remote_host: str, remote_port: int) -> subprocess.Popen:
        cmd = [
            "ssh",
            *self.ssh_options,
            "-o",
            "ExitOnForwardFailure=yes",
            "-N",
            "-L",
            f"{local_port}:{remote_host}:{remote_port}",
            self.address,
        ]
        self.logger.debug("spawn %s", shlex.join(cmd))
        return subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL)

    def run_interactive(self, command: str) -> int:
        # allocate a tty so full-screen views like `watch` render
        cmd = ["ssh", *self.ssh_options, "-t", self.address, command]
        self.logger.debug("exec %s", shlex.join(cmd))
        return subprocess.run(cmd, check=False).returncode
