from __future__ import annotations

import logging
import subprocess
from collections.abc import Callable

import requests

from .app_logging import get_logger, log_with_fields
from .models import TunnelSession
from .polling import CancelToken, Clock, poll_until
from .remote import ConnectionGateway, RemoteError
from .utils import find_free_port, port_accepts_connections

CLOSE_GRACE_SECONDS = 5.0


class LocalTunnelManager:
    def __init__(
        self,
        gateway: ConnectionGateway,
        *,
        start_port: int = 8888,
        ready_interval_seconds: float = 1.0,
        in_use: Callable[[int], bool] = port_accepts_connections,
        clock: Clock | None = None,
        http: requests.Session | None = None,
    ) -> None:
        self.gateway = gateway
        self.start_port = start_port
        self.ready_interval_seconds = ready_interval_seconds
        self.in_use = in_use
        self.clock = clock
        self.http = http or requests.Session()
        self.logger = get_logger("tunnel")

    def open(self, remote_host: str, remote_port: int) -> TunnelSession:
        local_port = find_free_port(self.start_port, self.in_use)
        process = self.gateway.open_tunnel(local_port, remote_host, remote_port)
        log_with_fields(
            self.logger,
            logging.INFO,
            "tunnel_opened",
            local_port=local_port,
            remote=f"{remote_host}:{remote_port}",
            pid=process.pid,
        )
        return TunnelSession(
            local_port=local_port,
            remote_host=remote_host,
            remote_port=remote_port,
            process=process,
        )

    def probe(self, session: TunnelSession) -> bool:
        returncode = session.process.poll()
        if returncode is not None:
            raise RemoteError(f"ssh tunnel exited with code {returncode} before the notebook answered")
        try:
            self.http.get(session.base_url, timeout=5)
        except requests.RequestException as exc:
            self.logger.debug("not ready yet: %s", exc)
            return False
        # any HTTP answer, even a redirect to the login page, means the server is up
        return True

    def wait_until_ready(self, session: TunnelSession, cancel: CancelToken | None = None) -> None:
        poll_until(
            lambda: True if self.probe(session) else None,
            self.ready_interval_seconds,
            clock=self.clock,
            cancel=cancel,
        )
        log_with_fields(self.logger, logging.INFO, "notebook_ready", local_port=session.local_port)

    def close(self, session: TunnelSession) -> None:
        process = session.process
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=CLOSE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        log_with_fields(self.logger, logging.INFO, "tunnel_closed", local_port=session.local_port)
