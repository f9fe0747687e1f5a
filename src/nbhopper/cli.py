from __future__ import annotations

import argparse
import getpass
import logging
import sys
import webbrowser
from collections.abc import Callable, Sequence

import yaml

from .agent import ensure_agent
from .app_logging import PhaseTimer, get_logger, log_with_fields, setup_logger
from .config import AppConfig, load_config
from .controller import RemoteJobController
from .models import JobDescriptor, MessageFormatError, MessageStatus
from .pbs import PbsScheduler
from .polling import PollCancelled
from .remote import ConnectionGateway, PreconditionError, RemoteError
from .supervisor import LifecycleSupervisor
from .tunnel import LocalTunnelManager
from .utils import NoFreePortError, default_memory
from .workdir import LeaseError, WorkDirectory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nbhopper",
        description="Run a Jupyter server on a PBS compute node and tunnel it to your browser",
    )
    parser.add_argument("--config", help="Path to nbhopper YAML config")
    parser.add_argument("-u", "--username", help="Login username (default: local user)")
    parser.add_argument("-l", "--loginnode", help="Login host to tunnel through")
    parser.add_argument("-e", "--env", help="Conda environment module to load")
    parser.add_argument("-d", "--debug", action="store_true", help="Verbose logging and traced job script")
    parser.add_argument("-p", "--profile", action="store_true", help="Log how long each phase takes")

    resources = parser.add_argument_group("job resources")
    resources.add_argument("-q", "--queue", default="normal", help="PBS queue")
    resources.add_argument("-n", "--ncpus", type=int, default=1, help="Number of cpus")
    resources.add_argument("-g", "--ngpus", type=int, default=0, help="Number of gpus")
    resources.add_argument("-m", "--mem", help="Memory, e.g. 16GB (default: 4GB per cpu)")
    resources.add_argument("-t", "--walltime", default="1:00:00", help="Walltime limit")
    resources.add_argument("-J", "--jobfs", default="10GB", help="Local job storage")
    resources.add_argument("-P", "--project", help="Project to charge (default: $PROJECT on the login host)")
    resources.add_argument("-s", "--storage", help="Storage flags, e.g. gdata/w35+scratch/w35")

    parser.add_argument("-y", "--yes", action="store_true", help="Do not ask before large jobs")
    parser.add_argument("--no-browser", action="store_true", help="Print the URL instead of opening a browser")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("start", help="Start or reattach to a notebook job (default)")
    subparsers.add_parser("status", help="Show the recorded job and its connection details")
    subparsers.add_parser("stop", help="Cancel the recorded job")
    return parser


def confirm_large_job(
    ncpus: int,
    threshold: int,
    *,
    assume_yes: bool = False,
    input_fn: Callable[[str], str] | None = None,
) -> bool:
    if ncpus <= threshold or assume_yes:
        return True
    ask = input_fn or input
    try:
        answer = ask(f"You asked for {ncpus} cpus, which will take a while to schedule. Continue? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def validate_resources(args: argparse.Namespace) -> None:
    if args.ncpus < 1:
        raise ValueError("--ncpus must be >= 1")
    if args.ngpus < 0:
        raise ValueError("--ngpus must be >= 0")


def build_descriptor(args: argparse.Namespace, config: AppConfig, project: str) -> JobDescriptor:
    return JobDescriptor(
        queue=args.queue,
        ncpus=args.ncpus,
        ngpus=args.ngpus,
        mem=args.mem or default_memory(args.ncpus, config.notebook.mem_per_cpu_gb),
        walltime=args.walltime,
        jobfs=args.jobfs,
        project=project,
        storage=args.storage,
        environment=args.env or config.notebook.default_env,
    )


def _connect(config: AppConfig, args: argparse.Namespace, argv: Sequence[str]) -> tuple[ConnectionGateway, str, str]:
    ensure_agent(config.ssh, argv)
    user = args.username or getpass.getuser()
    login_host = args.loginnode or config.site.login_host
    gateway = ConnectionGateway(config.ssh, user, login_host, debug=args.debug)
    gateway.check_connectivity()
    project = args.project or gateway.remote_env("PROJECT")
    if not project:
        raise PreconditionError("no project given and $PROJECT is not set on the login host; pass -P")
    return gateway, user, project


def cmd_start(config: AppConfig, args: argparse.Namespace, argv: Sequence[str]) -> int:
    logger = get_logger()
    validate_resources(args)
    if not confirm_large_job(args.ncpus, config.notebook.confirm_cpu_threshold, assume_yes=args.yes):
        print("Aborted.", file=sys.stderr)
        return 2

    timer = PhaseTimer(logger, args.profile)
    with timer.phase("connect"):
        gateway, user, project = _connect(config, args, argv)
    descriptor = build_descriptor(args, config, project)

    workdir = WorkDirectory(gateway, config.site.workdir_for(project, user))
    scheduler = PbsScheduler(gateway)
    tunnels = LocalTunnelManager(
        gateway,
        start_port=config.notebook.local_start_port,
        ready_interval_seconds=config.poll.ready_interval_seconds,
    )
    controller = RemoteJobController(config, gateway, workdir, scheduler, debug=args.debug)

    with LifecycleSupervisor(scheduler, tunnels) as supervisor:
        supervisor.install_signal_handlers()
        with timer.phase("job"):
            message = controller.ensure_job_running(descriptor, on_submitted=supervisor.arm_queued)
        if not message.ok:
            print(message.detail, file=sys.stderr)
            return 1

        session = tunnels.open(message.host, message.port)
        supervisor.arm_running(message.job_id, session)
        with timer.phase("tunnel"):
            tunnels.wait_until_ready(session)

        url = message.url(session.local_port)
        print(f"Jupyter is running at {url}")
        if not args.no_browser:
            webbrowser.open(url)

        print("Close the monitor (Ctrl-C) to stop the notebook and cancel the job.")
        gateway.run_interactive(config.site.monitor_command.format(job_id=message.job_id))
    return 0


def cmd_status(config: AppConfig, args: argparse.Namespace, argv: Sequence[str]) -> int:
    gateway, user, project = _connect(config, args, argv)
    workdir = WorkDirectory(gateway, config.site.workdir_for(project, user))
    scheduler = PbsScheduler(gateway)

    job_id = workdir.read_jobid()
    print(f"Work directory: {workdir.path}")
    if job_id is None:
        print("Job: (none recorded)")
        return 0
    state = scheduler.job_state(job_id)
    print(f"Job: {job_id} state={state or 'finished'}")
    message = workdir.read_message(MessageStatus.RECONNECT)
    if message is None:
        print("Notebook: not started yet")
    else:
        print(f"Notebook: {message.host}:{message.port}")
    return 0


def cmd_stop(config: AppConfig, args: argparse.Namespace, argv: Sequence[str]) -> int:
    gateway, user, project = _connect(config, args, argv)
    workdir = WorkDirectory(gateway, config.site.workdir_for(project, user))
    scheduler = PbsScheduler(gateway)

    job_id = workdir.read_jobid()
    if job_id is None or not scheduler.is_active(job_id):
        print("No active job to stop.")
        return 0
    scheduler.cancel(job_id)
    print(f"Cancelled {job_id}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    raw_argv = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(raw_argv)
    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2
    logger = setup_logger(config.paths.log, debug=args.debug)

    command = args.command or "start"
    try:
        if command == "start":
            return cmd_start(config, args, raw_argv)
        if command == "status":
            return cmd_status(config, args, raw_argv)
        if command == "stop":
            return cmd_stop(config, args, raw_argv)
    except PreconditionError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except (RemoteError, LeaseError, MessageFormatError) as exc:
        log_with_fields(logger, logging.ERROR, "remote_failure", error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except (NoFreePortError, PollCancelled) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 130
    parser.error(f"Unknown command: {command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
