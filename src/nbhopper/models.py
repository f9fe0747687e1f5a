from __future__ import annotations

import subprocess
from dataclasses import dataclass
from enum import Enum


class MessageStatus(str, Enum):
    NEW = "NEW"
    RECONNECT = "RECONNECT"
    ERROR = "ERROR"


class AgentStatus(str, Enum):
    READY = "ready"
    NEEDS_AGENT = "needs_agent"
    NEEDS_CREDENTIAL = "needs_credential"


class MessageFormatError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class JobDescriptor:
    queue: str
    ncpus: int
    ngpus: int
    mem: str
    walltime: str
    jobfs: str
    project: str
    storage: str | None
    environment: str

    def qsub_resources(self, storage: str) -> list[str]:
        args = ["-q", self.queue, "-P", self.project, "-l", f"ncpus={self.ncpus}"]
        if self.ngpus > 0:
            args += ["-l", f"ngpus={self.ngpus}"]
        args += [
            "-l",
            f"mem={self.mem}",
            "-l",
            f"walltime={self.walltime}",
            "-l",
            f"jobfs={self.jobfs}",
            "-l",
            f"storage={storage}",
        ]
        return args


@dataclass(frozen=True, slots=True)
class ConnectionMessage:
    host: str
    token: str
    job_id: str
    port: int
    status: MessageStatus
    detail: str | None = None

    @classmethod
    def parse(cls, text: str, status: MessageStatus) -> "ConnectionMessage":
        fields = text.split()
        if len(fields) != 4:
            raise MessageFormatError(f"expected 4 fields in connection message, found {len(fields)}: {text!r}")
        host, token, job_id, port = fields
        if not port.isdigit():
            raise MessageFormatError(f"connection message port is not numeric: {port!r}")
        return cls(host=host, token=token, job_id=job_id, port=int(port), status=status)

    @classmethod
    def error(cls, detail: str) -> "ConnectionMessage":
        return cls(host="", token="", job_id="", port=0, status=MessageStatus.ERROR, detail=detail)

    @property
    def ok(self) -> bool:
        return self.status is not MessageStatus.ERROR

    def url(self, local_port: int) -> str:
        return f"http://localhost:{local_port}/?token={self.token}"


@dataclass(slots=True)
class TunnelSession:
    local_port: int
    remote_host: str
    remote_port: int
    process: subprocess.Popen

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self.local_port}/"


@dataclass(frozen=True, slots=True)
class LeaseRecord:
    owner: str
    heartbeat: int
