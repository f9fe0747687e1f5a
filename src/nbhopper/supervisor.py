"""Cleanup on every exit path.

Two scopes, never both armed:

* queued  - the job has been submitted but has not published its message.
  Teardown cancels the job.
* running - the tunnel is up.  Teardown closes the tunnel, then cancels the job.

The supervisor is a context manager; teardown of whichever scope is armed runs
when the ``with`` block exits, however it exits.
"""

from __future__ import annotations

import logging
import signal
import sys
from enum import Enum
from types import FrameType, TracebackType
from typing import Protocol

from .app_logging import get_logger, log_with_fields
from .models import TunnelSession


class Scope(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"


class JobCanceller(Protocol):
    def cancel(self, job_id: str) -> None: ...


class TunnelCloser(Protocol):
    def close(self, session: TunnelSession) -> None: ...


def _raise_system_exit(signum: int, frame: FrameType | None) -> None:
    raise SystemExit(128 + signum)


class LifecycleSupervisor:
    def __init__(self, scheduler: JobCanceller, tunnels: TunnelCloser) -> None:
        self.scheduler = scheduler
        self.tunnels = tunnels
        self.scope = Scope.IDLE
        self.job_id: str | None = None
        self.session: TunnelSession | None = None
        self.logger = get_logger("supervisor")

    def install_signal_handlers(self) -> None:
        for name in ("SIGTERM", "SIGHUP"):
            signum = getattr(signal, name, None)
            if signum is not None:
                signal.signal(signum, _raise_system_exit)

    def arm_queued(self, job_id: str) -> None:
        self.scope = Scope.QUEUED
        self.job_id = job_id
        self.session = None
        log_with_fields(self.logger, logging.DEBUG, "scope_armed", scope=self.scope.value, job_id=job_id)

    def arm_running(self, job_id: str, session: TunnelSession) -> None:
        self.scope = Scope.RUNNING
        self.job_id = job_id
        self.session = session
        log_with_fields(self.logger, logging.DEBUG, "scope_armed", scope=self.scope.value, job_id=job_id)

    def disarm(self) -> None:
        self.scope = Scope.IDLE
        self.job_id = None
        self.session = None

    def __enter__(self) -> "LifecycleSupervisor":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.teardown()

    def teardown(self) -> None:
        scope, job_id, session = self.scope, self.job_id, self.session
        self.disarm()
        if scope is Scope.QUEUED and job_id is not None:
            print(
                f"Cancelling queued job {job_id}. Interrupting again now will leave it in the queue.",
                file=sys.stderr,
            )
            self._cancel_job(job_id)
        elif scope is Scope.RUNNING and job_id is not None:
            if session is not None:
                self._close_tunnel(session)
            self._cancel_job(job_id)

    def _close_tunnel(self, session: TunnelSession) -> None:
        try:
            self.tunnels.close(session)
        except Exception as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "cleanup_failed",
                step="close_tunnel",
                local_port=session.local_port,
                error=str(exc),
            )

    def _cancel_job(self, job_id: str) -> None:
        try:
            self.scheduler.cancel(job_id)
        except Exception as exc:
            log_with_fields(self.logger, logging.ERROR, "cleanup_failed", step="cancel_job", job_id=job_id, error=str(exc))
