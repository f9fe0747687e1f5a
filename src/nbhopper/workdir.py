from __future__ import annotations

import logging
import shlex
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from .app_logging import get_logger, log_with_fields
from .models import ConnectionMessage, LeaseRecord, MessageStatus
from .polling import CancelToken, Clock, poll_until
from .remote import ConnectionGateway, RemoteError

JOBID_FILE = "jobid"
MESSAGE_FILE = "message"
SCRIPT_FILE = "runjp.sh"
LOG_FILE = "pbs.log"
LEASE_DIR = "lease"

_PRESENT = "present"
_ABSENT = "absent"


class LeaseError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class LeaseOutcome:
    acquired: bool
    holder: LeaseRecord | None = None
    stolen_from: str | None = None


class WorkDirectory:
    """Coordination files for one (project, user) pair on shared storage.

    The directory survives across invocations so a later run can find the job
    an earlier one submitted.  Nothing here ever deletes it.
    """

    def __init__(self, gateway: ConnectionGateway, path: str) -> None:
        self.gateway = gateway
        self.path = path.rstrip("/")
        self.logger = get_logger("workdir")

    def file(self, name: str) -> str:
        return f"{self.path}/{name}"

    @property
    def script_path(self) -> str:
        return self.file(SCRIPT_FILE)

    @property
    def log_path(self) -> str:
        return self.file(LOG_FILE)

    def ensure(self) -> None:
        result = self.gateway.run_remote(f"mkdir -p {shlex.quote(self.path)}")
        self.gateway.require_ok(result, f"create work directory {self.path}")

    def read_text(self, name: str) -> str | None:
        target = shlex.quote(self.file(name))
        script = (
            f"if [ -e {target} ]; then echo {_PRESENT}; cat {target}; "
            f"else echo {_ABSENT}; fi"
        )
        result = self.gateway.require_ok(self.gateway.run_remote(script), f"read {name}")
        marker, _, body = result.stdout.partition("\n")
        if marker.strip() == _ABSENT:
            return None
        if marker.strip() != _PRESENT:
            raise RemoteError(f"read {name} failed: unexpected output {result.stdout!r}")
        return body

    def write_text(self, name: str, text: str, *, executable: bool = False) -> None:
        target = shlex.quote(self.file(name))
        tmp = shlex.quote(self.file(f".{name}.tmp"))
        script = f"cat > {tmp} && mv -f {tmp} {target}"
        if executable:
            script += f" && chmod u+x {target}"
        result = self.gateway.run_remote(script, input_text=text)
        self.gateway.require_ok(result, f"write {name}")

    def remove(self, name: str) -> None:
        result = self.gateway.run_remote(f"rm -f {shlex.quote(self.file(name))}")
        self.gateway.require_ok(result, f"remove {name}")

    def read_jobid(self) -> str | None:
        text = self.read_text(JOBID_FILE)
        if text is None:
            return None
        return text.strip() or None

    def write_jobid(self, job_id: str) -> None:
        self.write_text(JOBID_FILE, f"{job_id}\n")

    def read_message(self, status: MessageStatus) -> ConnectionMessage | None:
        text = self.read_text(MESSAGE_FILE)
        if text is None or not text.strip():
            return None
        return ConnectionMessage.parse(text.strip(), status)

    def clear_message(self) -> None:
        self.remove(MESSAGE_FILE)

    def write_script(self, script: str) -> str:
        self.write_text(SCRIPT_FILE, script, executable=True)
        return self.script_path

    def try_acquire_lease(self, owner: str, ttl_seconds: int) -> LeaseOutcome:
        lease = shlex.quote(self.file(LEASE_DIR))
        me = shlex.quote(owner)
        script = "\n".join(
            [
                "set -u",
                f"d={lease}; me={me}; ttl={int(ttl_seconds)}",
                'claim() { echo "$me $(date +%s)" > "$d/owner.tmp" && mv -f "$d/owner.tmp" "$d/owner"; }',
                'if mkdir "$d" 2>/dev/null; then claim; echo acquired; exit 0; fi',
                'if [ -s "$d/owner" ]; then read -r holder beat < "$d/owner"; '
                'else holder=unknown; beat=$(stat -c %Y "$d"); fi',
                'if [ "$holder" = "$me" ]; then claim; echo acquired; exit 0; fi',
                'if [ $(( $(date +%s) - beat )) -gt "$ttl" ]; then claim; '
                'read -r current since < "$d/owner"; '
                'if [ "$current" = "$me" ]; then echo "stolen $holder"; else echo "held $current $since"; fi; '
                'exit 0; fi',
                'echo "held $holder $beat"',
            ]
        )
        result = self.gateway.require_ok(self.gateway.run_remote(script), "acquire lease")
        fields = result.stdout.split()
        if fields[:1] == ["acquired"]:
            return LeaseOutcome(acquired=True)
        if fields[:1] == ["stolen"] and len(fields) == 2:
            return LeaseOutcome(acquired=True, stolen_from=fields[1])
        if fields[:1] == ["held"] and len(fields) == 3 and fields[2].isdigit():
            return LeaseOutcome(acquired=False, holder=LeaseRecord(owner=fields[1], heartbeat=int(fields[2])))
        raise LeaseError(f"unexpected lease response: {result.stdout!r}")

    def heartbeat_lease(self, owner: str) -> None:
        lease = shlex.quote(self.file(LEASE_DIR))
        script = (
            f"d={lease}; me={shlex.quote(owner)}; "
            'read -r holder beat < "$d/owner" || exit 3; '
            '[ "$holder" = "$me" ] || exit 4; '
            'echo "$me $(date +%s)" > "$d/owner.tmp" && mv -f "$d/owner.tmp" "$d/owner"'
        )
        result = self.gateway.run_remote(script)
        if not result.ok:
            raise LeaseError(f"lease for {self.path} is no longer held by {owner}")

    def release_lease(self, owner: str) -> None:
        lease = shlex.quote(self.file(LEASE_DIR))
        script = (
            f"d={lease}; me={shlex.quote(owner)}; "
            '[ -d "$d" ] || exit 0; '
            'if [ -s "$d/owner" ]; then read -r holder beat < "$d/owner"; else holder=unknown; fi; '
            '[ "$holder" = "$me" ] || exit 0; '
            'rm -rf "$d"'
        )
        result = self.gateway.run_remote(script)
        self.gateway.require_ok(result, "release lease")

    @contextmanager
    def lease(
        self,
        owner: str,
        *,
        ttl_seconds: int,
        interval_seconds: float,
        clock: Clock | None = None,
        cancel: CancelToken | None = None,
    ) -> Iterator["LeaseHandle"]:
        def attempt() -> LeaseOutcome | None:
            outcome = self.try_acquire_lease(owner, ttl_seconds)
            if outcome.acquired:
                return outcome
            if outcome.holder is not None:
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "lease_busy",
                    workdir=self.path,
                    holder=outcome.holder.owner,
                    heartbeat=outcome.holder.heartbeat,
                )
            return None

        outcome = poll_until(attempt, interval_seconds, clock=clock, cancel=cancel)
        if outcome.stolen_from:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "lease_stolen",
                workdir=self.path,
                previous_owner=outcome.stolen_from,
            )
        handle = LeaseHandle(self, owner)
        try:
            yield handle
        finally:
            self.release_lease(owner)


class LeaseHandle:
    def __init__(self, workdir: WorkDirectory, owner: str) -> None:
        self.workdir = workdir
        self.owner = owner

    def heartbeat(self) -> None:
        self.workdir.heartbeat_lease(self.owner)
