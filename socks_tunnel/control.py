"""
Start/stop/status orchestration.

Each CLI invocation builds a TunnelController, which reconciles the registry
against live process and port state before acting. Nothing here is locked;
every operation re-verifies pids and port bindings so concurrent invocations
degrade to an extra retry instead of corrupting state.
"""

import logging
import os
import select
import subprocess
import sys
import time
from collections import deque
from typing import Optional, TextIO

from .config import Config
from .exceptions import PortInUseError, StartTimeoutError, TunnelError
from .models import RecordKind, StartResult, StatusReport, StopResult, TunnelStatus
from .ports import PortReconciler, TunnelIdentity
from .registry import ProcessRegistry

logger = logging.getLogger(__name__)

RUN_LOOP_COMMAND = "_run_loop"


class TunnelController:
    """Implements the start, stop, status, restart and logs commands."""

    def __init__(
        self,
        config: Config,
        registry: ProcessRegistry = None,
        ports: PortReconciler = None,
    ):
        self.config = config
        self.registry = registry or ProcessRegistry(config)
        self.ports = ports or PortReconciler(config)

    def _identity(self) -> TunnelIdentity:
        return TunnelIdentity(
            known_pids=[self.registry.read(RecordKind.CHILD)],
            launcher=self.config.ssh_binary,
        )

    def _port_bound(self) -> bool:
        return self.ports.is_port_bound(self.config.socks_host, self.config.socks_port)

    def _ensure_port_free(self, message: str):
        if self._port_bound():
            listeners = self.ports.listening_processes(self.config.socks_port)
            raise PortInUseError(message, listeners)

    def start(self) -> StartResult:
        """Launch a detached run loop unless one is already alive."""
        cfg = self.config
        cfg.ensure_state_dir()

        pid = self.registry.live_pid(RecordKind.SUPERVISOR)
        if pid:
            logger.info(f"Already running (PID={pid})")
            return StartResult(pid=pid, already_running=True)

        # Never start next to a foreign listener
        if self._port_bound():
            self.ports.reclaim(cfg.socks_port, self._identity())
        self._ensure_port_free(
            f"Port {cfg.socks_port}/TCP is in use. Stop the listener or change SOCKS_PORT."
        )

        self.registry.clear_all()
        pid = self._launch_run_loop()
        logger.info(f"Started supervisor PID={pid}")
        return StartResult(pid=pid)

    def _launch_run_loop(self) -> int:
        read_fd, write_fd = os.pipe()
        try:
            process = subprocess.Popen(
                [sys.executable, "-m", "socks_tunnel", RUN_LOOP_COMMAND, "--ready-fd", str(write_fd)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env={**os.environ, **self.config.to_env()},
                pass_fds=(write_fd,),
                start_new_session=True,
            )
        except OSError as e:
            os.close(read_fd)
            raise TunnelError(f"Could not launch supervisor: {e}") from e
        finally:
            os.close(write_fd)

        try:
            pid = self._await_ready(read_fd)
        finally:
            os.close(read_fd)

        recorded = self.registry.read(RecordKind.SUPERVISOR)
        if pid != process.pid or recorded != pid or not self.registry.is_alive(pid):
            raise StartTimeoutError(f"Failed to start (no PID file). Check logs: {self.config.log_file}")
        return pid

    def _await_ready(self, read_fd: int) -> Optional[int]:
        """Wait for the run loop to write its pid to the readiness pipe."""
        deadline = time.monotonic() + self.config.start_timeout
        data = b""
        while b"\n" not in data:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise StartTimeoutError(
                    f"Supervisor did not report in within {self.config.start_timeout:g}s. "
                    f"Check logs: {self.config.log_file}"
                )
            ready, _, _ = select.select([read_fd], [], [], remaining)
            if not ready:
                continue
            chunk = os.read(read_fd, 64)
            if not chunk:
                raise StartTimeoutError(f"Supervisor exited during startup. Check logs: {self.config.log_file}")
            data += chunk

        line = data.split(b"\n", 1)[0].strip()
        return int(line) if line.isdigit() else None

    def stop(self) -> StopResult:
        """Stop the run loop and its child, then make sure the port is free."""
        cfg = self.config
        cfg.ensure_state_dir()

        pid = self.registry.read(RecordKind.SUPERVISOR)
        child_pid = self.registry.read(RecordKind.CHILD)
        identity = self._identity()

        # No pid file: still clean up an orphaned tunnel on the port
        if not pid:
            logger.info("Not running (no PID file)")
            self.ports.reclaim(cfg.socks_port, identity)
            self._ensure_port_free(f"Port {cfg.socks_port}/TCP still in use.")
            self.registry.clear_all()
            return StopResult(pid=None, was_running=False)

        logger.info(f"Stopping (PID={pid})")
        self.registry.request_stop()

        # Child first, it frees the port sooner
        if child_pid and self.registry.is_alive(child_pid):
            self.ports.terminate(child_pid)
        self.registry.clear(RecordKind.CHILD)

        if self.registry.is_alive(pid):
            self.ports.terminate(pid)

        self.ports.reclaim(cfg.socks_port, identity)
        self.registry.clear_all()

        self._ensure_port_free(f"Stop finished, but port {cfg.socks_port}/TCP is still in use.")
        return StopResult(pid=pid, was_running=True)

    def status(self) -> StatusReport:
        cfg = self.config
        record = self.registry.read_record(RecordKind.SUPERVISOR)
        alive = bool(record) and self.registry.is_alive(record.pid)
        port_bound = self._port_bound()

        report = StatusReport(
            status=TunnelStatus.RUNNING if alive else TunnelStatus.STOPPED,
            listen_address=cfg.listen_address,
            port_bound=port_bound,
        )
        if alive:
            report.pid = record.pid
            report.started_at = record.started_at
            report.child_pid = self.registry.live_pid(RecordKind.CHILD)
            if not port_bound:
                report.warnings.append(f"supervisor running, but no listener on TCP/{cfg.socks_port}.")
        else:
            if record:
                report.warnings.append(f"stale PID file (PID={record.pid} is not running).")
            if port_bound:
                report.warnings.append(f"STOPPED, but someone is still LISTENing on TCP/{cfg.socks_port}.")

        if port_bound:
            report.listeners = self.ports.listening_processes(cfg.socks_port)
        return report

    def restart(self) -> StartResult:
        try:
            self.stop()
        except TunnelError as e:
            logger.warning(f"Stop before restart failed: {e}")
        return self.start()

    def follow_logs(self, lines: int = 200, follow: bool = True, out: TextIO = None):
        """Print the last lines of the log, then keep printing appended lines.

        Follows the log across rotation by reopening it when the inode changes.
        """
        out = out or sys.stdout
        self.config.ensure_state_dir()
        path = self.config.log_file

        f = open(path, "r", errors="replace")
        try:
            for line in deque(f, maxlen=lines):
                out.write(line)
            out.flush()

            while follow:
                line = f.readline()
                if line:
                    out.write(line)
                    out.flush()
                    continue

                time.sleep(self.config.poll_interval)
                if self._rotated(f):
                    f.close()
                    f = open(path, "r", errors="replace")
        finally:
            f.close()

    def _rotated(self, f) -> bool:
        try:
            return os.stat(self.config.log_file).st_ino != os.fstat(f.fileno()).st_ino
        except FileNotFoundError:
            return False
