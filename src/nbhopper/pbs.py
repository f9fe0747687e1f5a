from __future__ import annotations

import logging
import shlex

from .app_logging import get_logger, log_with_fields
from .remote import ConnectionGateway, RemoteError
from .utils import is_active_state, parse_job_state, parse_qsub_job_id


class SubmissionError(RemoteError):
    pass


class PbsScheduler:
    def __init__(self, gateway: ConnectionGateway) -> None:
        self.gateway = gateway
        self.logger = get_logger("pbs")

    def submit(self, resources: list[str], script_path: str) -> str:
        command = shlex.join(["qsub", *resources, script_path])
        result = self.gateway.run_remote(command)
        if not result.ok:
            output = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            raise SubmissionError(f"qsub rejected the job: {output}")
        job_id = parse_qsub_job_id(result.stdout)
        if job_id is None:
            raise SubmissionError(f"qsub printed no job id: {result.stdout.strip()!r}")
        log_with_fields(self.logger, logging.DEBUG, "qsub_ok", job_id=job_id)
        return job_id

    def job_state(self, job_id: str) -> str | None:
        # unknown or finished jobs make qstat exit non-zero; that just means "not active"
        result = self.gateway.run_remote(shlex.join(["qstat", "-f", job_id]))
        if not result.ok:
            return None
        return parse_job_state(result.stdout)

    def is_active(self, job_id: str) -> bool:
        return is_active_state(self.job_state(job_id))

    def cancel(self, job_id: str) -> None:
        result = self.gateway.run_remote(shlex.join(["qdel", job_id]))
        self.gateway.require_ok(result, f"qdel {job_id}")
        log_with_fields(self.logger, logging.INFO, "job_cancelled", job_id=job_id)
