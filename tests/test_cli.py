from __future__ import annotations

import contextlib
import io
import unittest
from collections.abc import Callable
from unittest import mock

from nbhopper import cli
from nbhopper.config import AppConfig
from nbhopper.models import ConnectionMessage, MessageFormatError, MessageStatus, TunnelSession
from nbhopper.polling import PollCancelled
from nbhopper.remote import PreconditionError
from nbhopper.supervisor import LifecycleSupervisor, Scope
from nbhopper.utils import NoFreePortError


class CliTest(unittest.TestCase):
    def test_parser_defaults_to_start(self) -> None:
        parser = cli.build_parser()
        args = parser.parse_args(["-n", "4", "-P", "w35", "-s", "gdata/w35"])
        self.assertIsNone(args.command)
        self.assertEqual(args.ncpus, 4)
        self.assertEqual(args.project, "w35")
        self.assertEqual(args.storage, "gdata/w35")
        self.assertEqual(args.queue, "normal")
        self.assertEqual(args.walltime, "1:00:00")

    def test_parser_subcommands(self) -> None:
        parser = cli.build_parser()
        self.assertEqual(parser.parse_args(["-P", "w35", "stop"]).command, "stop")
        self.assertEqual(parser.parse_args(["status"]).command, "status")

    def test_large_job_needs_confirmation(self) -> None:
        prompts: list[str] = []

        def answer(prompt: str) -> str:
            prompts.append(prompt)
            return "n"

        self.assertFalse(cli.confirm_large_job(16, 8, input_fn=answer))
        self.assertEqual(len(prompts), 1)
        self.assertTrue(cli.confirm_large_job(16, 8, input_fn=lambda _: "yes"))
        self.assertTrue(cli.confirm_large_job(16, 8, assume_yes=True, input_fn=answer))
        self.assertTrue(cli.confirm_large_job(8, 8, input_fn=answer))
        self.assertEqual(len(prompts), 1)

    def test_declining_large_job_touches_nothing_remote(self) -> None:
        with mock.patch.object(cli, "load_config", return_value=AppConfig()), mock.patch.object(
            cli, "setup_logger"
        ), mock.patch.object(cli, "ensure_agent") as ensure_agent, mock.patch.object(
            cli, "ConnectionGateway"
        ) as gateway, mock.patch("builtins.input", return_value="n"):
            code = cli.main(["-n", "12", "-P", "w35"])
        self.assertEqual(code, 2)
        ensure_agent.assert_not_called()
        gateway.assert_not_called()

    def test_precondition_failure_exits_one(self) -> None:
        with mock.patch.object(cli, "load_config", return_value=AppConfig()), mock.patch.object(
            cli, "setup_logger"
        ), mock.patch.object(cli, "ensure_agent", side_effect=PreconditionError("no agent")):
            code = cli.main(["-P", "w35"])
        self.assertEqual(code, 1)

    def test_descriptor_defaults_memory_per_cpu(self) -> None:
        args = cli.build_parser().parse_args(["-n", "3"])
        descriptor = cli.build_descriptor(args, AppConfig(), "w35")
        self.assertEqual(descriptor.mem, "12GB")
        self.assertEqual(descriptor.environment, "analysis3")
        self.assertEqual(descriptor.project, "w35")


JOB_ID = "7.gadi-pbs"
PUBLISHED = ConnectionMessage.parse(f"gadi-cpu-0001 tok {JOB_ID} 40123", MessageStatus.NEW)


class RecordingScheduler:
    def __init__(self, events: list[tuple]) -> None:
        self.events = events

    def cancel(self, job_id: str) -> None:
        self.events.append(("cancel", job_id))


class RecordingTunnels:
    def __init__(self, harness: "StartHarness") -> None:
        self.harness = harness

    def open(self, remote_host: str, remote_port: int) -> TunnelSession:
        if self.harness.open_error is not None:
            raise self.harness.open_error
        self.harness.events.append(("open", remote_host, remote_port))
        return TunnelSession(local_port=8888, remote_host=remote_host, remote_port=remote_port, process=mock.Mock())

    def wait_until_ready(self, session: TunnelSession, cancel: object = None) -> None:
        self.harness.events.append(("wait", self.harness.supervisors[0].scope))
        if self.harness.wait_error is not None:
            raise self.harness.wait_error

    def close(self, session: TunnelSession) -> None:
        self.harness.events.append(("close", session.local_port))


class StartHarness:
    """Runs ``nbhopper start`` with every remote collaborator replaced.

    ``outcome`` plays the job controller: it gets the submission callback and
    returns the connection message (or raises).
    """

    def __init__(
        self,
        outcome: Callable[[Callable[[str], None]], ConnectionMessage],
        *,
        open_error: BaseException | None = None,
        wait_error: BaseException | None = None,
    ) -> None:
        self.outcome = outcome
        self.open_error = open_error
        self.wait_error = wait_error
        self.events: list[tuple] = []
        self.supervisors: list[LifecycleSupervisor] = []
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()
        self.browser = mock.Mock()

    def run(self, argv: list[str]) -> int:
        harness = self

        class QuietSupervisor(LifecycleSupervisor):
            def __init__(self, scheduler, tunnels) -> None:  # type: ignore[no-untyped-def]
                super().__init__(scheduler, tunnels)
                harness.supervisors.append(self)

            def install_signal_handlers(self) -> None:
                pass

        gateway = mock.Mock()
        gateway.run_interactive.side_effect = lambda command: self.events.append(("monitor", command)) or 0
        controller = mock.Mock()
        controller.ensure_job_running.side_effect = lambda descriptor, on_submitted: self.outcome(on_submitted)

        with contextlib.ExitStack() as stack:
            stack.enter_context(mock.patch.object(cli, "load_config", return_value=AppConfig()))
            stack.enter_context(mock.patch.object(cli, "setup_logger"))
            stack.enter_context(mock.patch.object(cli, "ensure_agent"))
            stack.enter_context(mock.patch.object(cli, "ConnectionGateway", return_value=gateway))
            stack.enter_context(mock.patch.object(cli, "WorkDirectory"))
            stack.enter_context(mock.patch.object(cli, "PbsScheduler", return_value=RecordingScheduler(self.events)))
            stack.enter_context(mock.patch.object(cli, "LocalTunnelManager", return_value=RecordingTunnels(self)))
            stack.enter_context(mock.patch.object(cli, "RemoteJobController", return_value=controller))
            stack.enter_context(mock.patch.object(cli, "LifecycleSupervisor", QuietSupervisor))
            stack.enter_context(mock.patch.object(cli, "webbrowser", self.browser))
            stack.enter_context(contextlib.redirect_stdout(self.stdout))
            stack.enter_context(contextlib.redirect_stderr(self.stderr))
            return cli.main(argv)


def submitted_then(result: ConnectionMessage | BaseException) -> Callable[[Callable[[str], None]], ConnectionMessage]:
    def outcome(on_submitted: Callable[[str], None]) -> ConnectionMessage:
        on_submitted(JOB_ID)
        if isinstance(result, BaseException):
            raise result
        return result

    return outcome


def returning(message: ConnectionMessage) -> Callable[[Callable[[str], None]], ConnectionMessage]:
    return lambda on_submitted: message


def raising(exc: BaseException) -> Callable[[Callable[[str], None]], ConnectionMessage]:
    def outcome(on_submitted: Callable[[str], None]) -> ConnectionMessage:
        raise exc

    return outcome


class StartCommandTest(unittest.TestCase):
    def test_monitor_exit_closes_tunnel_then_cancels(self) -> None:
        harness = StartHarness(submitted_then(PUBLISHED))

        self.assertEqual(harness.run(["-P", "w35"]), 0)

        self.assertEqual(
            harness.events,
            [
                ("open", "gadi-cpu-0001", 40123),
                ("wait", Scope.RUNNING),
                ("monitor", f"watch -n 10 qstat -x {JOB_ID}"),
                ("close", 8888),
                ("cancel", JOB_ID),
            ],
        )
        harness.browser.open.assert_called_once_with("http://localhost:8888/?token=tok")
        self.assertIn("http://localhost:8888/?token=tok", harness.stdout.getvalue())

    def test_no_browser_prints_url_only(self) -> None:
        harness = StartHarness(submitted_then(PUBLISHED))
        self.assertEqual(harness.run(["-P", "w35", "--no-browser"]), 0)
        harness.browser.open.assert_not_called()
        self.assertIn("http://localhost:8888/?token=tok", harness.stdout.getvalue())

    def test_interrupt_while_queued_cancels_without_tunnel(self) -> None:
        harness = StartHarness(submitted_then(KeyboardInterrupt()))

        self.assertEqual(harness.run(["-P", "w35"]), 130)

        self.assertEqual(harness.events, [("cancel", JOB_ID)])
        self.assertIn(f"Cancelling queued job {JOB_ID}", harness.stderr.getvalue())

    def test_running_scope_armed_before_readiness_wait(self) -> None:
        harness = StartHarness(submitted_then(PUBLISHED), wait_error=KeyboardInterrupt())

        self.assertEqual(harness.run(["-P", "w35"]), 130)

        self.assertEqual(
            harness.events,
            [
                ("open", "gadi-cpu-0001", 40123),
                ("wait", Scope.RUNNING),
                ("close", 8888),
                ("cancel", JOB_ID),
            ],
        )

    def test_error_message_is_reported_and_nothing_cancelled(self) -> None:
        harness = StartHarness(returning(ConnectionMessage.error("join hh5 at https://my.nci.org.au")))

        self.assertEqual(harness.run(["-P", "w35"]), 1)

        self.assertEqual(harness.events, [])
        self.assertIn("join hh5 at https://my.nci.org.au", harness.stderr.getvalue())

    def test_malformed_connection_message_exits_one(self) -> None:
        harness = StartHarness(raising(MessageFormatError("expected 4 fields in connection message, found 3")))

        self.assertEqual(harness.run(["-P", "w35"]), 1)

        self.assertIn("expected 4 fields", harness.stderr.getvalue())
        self.assertEqual(harness.events, [])

    def test_no_free_local_port_exits_one_and_cancels_job(self) -> None:
        harness = StartHarness(
            submitted_then(PUBLISHED),
            open_error=NoFreePortError("no free local port at or above 8888"),
        )

        self.assertEqual(harness.run(["-P", "w35"]), 1)

        self.assertIn("no free local port", harness.stderr.getvalue())
        self.assertEqual(harness.events, [("cancel", JOB_ID)])

    def test_cancelled_wait_exits_one(self) -> None:
        harness = StartHarness(submitted_then(PollCancelled("wait cancelled")))

        self.assertEqual(harness.run(["-P", "w35"]), 1)

        self.assertIn("wait cancelled", harness.stderr.getvalue())
        self.assertEqual(harness.events, [("cancel", JOB_ID)])


if __name__ == "__main__":
    unittest.main()
