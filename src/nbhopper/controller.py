from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from .app_logging import get_logger, log_with_fields
from .config import AppConfig
from .jobscript import JobScript
from .models import ConnectionMessage, JobDescriptor, MessageStatus
from .pbs import PbsScheduler
from .polling import CancelToken, Clock, poll_until
from .remote import ConnectionGateway
from .utils import new_lease_id
from .workdir import MESSAGE_FILE, WorkDirectory


def compute_storage_flags(
    explicit: str | None,
    groups: Iterable[str],
    existing: set[str],
    *,
    required: list[str],
    excluded: Iterable[str],
    scratch_root: str = "/scratch",
    gdata_root: str = "/g/data",
) -> str:
    """Build the ``-l storage=`` value for qsub.

    Explicit storage wins, with the required mounts always added.  Otherwise
    every group the user belongs to contributes its scratch and gdata mounts
    when those directories exist on the login host.
    """
    entries: list[str] = list(required)
    if explicit:
        entries += [item for item in explicit.split("+") if item]
    else:
        skip = set(excluded)
        for group in groups:
            if group in skip:
                continue
            if f"{scratch_root.rstrip('/')}/{group}" in existing:
                entries.append(f"scratch/{group}")
            if f"{gdata_root.rstrip('/')}/{group}" in existing:
                entries.append(f"gdata/{group}")
    return "+".join(dict.fromkeys(entries))


def candidate_mounts(groups: Iterable[str], excluded: Iterable[str], scratch_root: str, gdata_root: str) -> list[str]:
    skip = set(excluded)
    paths: list[str] = []
    for group in groups:
        if group in skip:
            continue
        paths.append(f"{scratch_root.rstrip('/')}/{group}")
        paths.append(f"{gdata_root.rstrip('/')}/{group}")
    return paths


class RemoteJobController:
    def __init__(
        self,
        config: AppConfig,
        gateway: ConnectionGateway,
        workdir: WorkDirectory,
        scheduler: PbsScheduler,
        *,
        debug: bool = False,
        clock: Clock | None = None,
        cancel: CancelToken | None = None,
        lease_owner: str | None = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.workdir = workdir
        self.scheduler = scheduler
        self.debug = debug
        self.clock = clock
        self.cancel = cancel
        self.lease_owner = lease_owner or new_lease_id()
        self.logger = get_logger("controller")

    def missing_groups(self, groups: list[str]) -> list[str]:
        have = set(groups)
        return [group for group in self.config.site.required_groups if group not in have]

    def join_instructions(self, missing: list[str]) -> str:
        lines = ["You need to join the following projects before starting a notebook:"]
        for group in missing:
            url = self.config.site.join_url_template.format(group=group)
            lines.append(f"  {group}: {url}")
        return "\n".join(lines)

    def resolve_storage(self, descriptor: JobDescriptor, groups: list[str]) -> str:
        site = self.config.site
        existing: set[str] = set()
        if not descriptor.storage:
            mounts = candidate_mounts(groups, site.excluded_groups, site.scratch_root, site.gdata_root)
            existing = self.gateway.existing_directories(mounts)
        return compute_storage_flags(
            descriptor.storage,
            groups,
            existing,
            required=site.required_storage,
            excluded=site.excluded_groups,
            scratch_root=site.scratch_root,
            gdata_root=site.gdata_root,
        )

    def build_script(self, descriptor: JobDescriptor) -> JobScript:
        notebook = self.config.notebook
        return JobScript(
            message_path=self.workdir.file(MESSAGE_FILE),
            module_use=notebook.module_use,
            module=notebook.module_template.format(env=descriptor.environment),
            notebook_command=notebook.command,
            debug=self.debug,
        )

    def wait_for_message(self, status: MessageStatus) -> ConnectionMessage:
        return poll_until(
            lambda: self.workdir.read_message(status),
            self.config.poll.message_interval_seconds,
            clock=self.clock,
            cancel=self.cancel,
        )

    def ensure_job_running(
        self,
        descriptor: JobDescriptor,
        on_submitted: Callable[[str], None] | None = None,
    ) -> ConnectionMessage:
        self.workdir.ensure()

        groups = self.gateway.list_groups()
        missing = self.missing_groups(groups)
        if missing:
            log_with_fields(self.logger, logging.ERROR, "missing_group_membership", groups=missing)
            return ConnectionMessage.error(self.join_instructions(missing))

        poll = self.config.poll
        with self.workdir.lease(
            self.lease_owner,
            ttl_seconds=poll.lease_ttl_seconds,
            interval_seconds=poll.lease_interval_seconds,
            clock=self.clock,
            cancel=self.cancel,
        ) as lease:
            active_id = self._active_job_id()
            job_id = active_id or self._submit(descriptor, groups, lease.heartbeat, on_submitted)

        if active_id is not None:
            log_with_fields(self.logger, logging.INFO, "job_reattached", job_id=job_id)
            print(f"Found running job {job_id}, waiting for its notebook server...")
            return self.wait_for_message(MessageStatus.RECONNECT)

        print(f"Submitted job {job_id}, waiting for it to start...")
        message = self.wait_for_message(MessageStatus.NEW)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_running",
            job_id=message.job_id,
            host=message.host,
            port=message.port,
        )
        return message

    def _active_job_id(self) -> str | None:
        job_id = self.workdir.read_jobid()
        if job_id is not None and self.scheduler.is_active(job_id):
            return job_id
        return None

    def _submit(
        self,
        descriptor: JobDescriptor,
        groups: list[str],
        heartbeat: Callable[[], None],
        on_submitted: Callable[[str], None] | None,
    ) -> str:
        self.workdir.clear_message()
        storage = self.resolve_storage(descriptor, groups)
        script_path = self.workdir.write_script(self.build_script(descriptor).render())
        heartbeat()

        resources = [
            *descriptor.qsub_resources(storage),
            "-N",
            self.config.notebook.job_name,
            "-j",
            "oe",
            "-o",
            self.workdir.log_path,
        ]
        job_id = self.scheduler.submit(resources, script_path)
        if on_submitted is not None:
            on_submitted(job_id)
        self.workdir.write_jobid(job_id)
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_submitted",
            job_id=job_id,
            queue=descriptor.queue,
            ncpus=descriptor.ncpus,
            storage=storage,
        )
        return job_id
