"""
Tunnel run loop.

Owns the ssh child: starts it, waits for it to exit and restarts it with
backoff until the stop flag appears. On every way out of the loop (normal
stop, error, SIGTERM/SIGINT/SIGHUP) a single cleanup scope kills the child
and removes the supervisor record, the child record and the stop flag.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from contextlib import contextmanager
from typing import Callable, Optional

from .backoff import BackoffPolicy
from .config import Config
from .exceptions import StateDirError, SupervisorInterrupted
from .launcher import TunnelLauncher
from .models import RecordKind, SupervisorPhase, SupervisorState
from .ports import PortReconciler
from .registry import ProcessRegistry

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)


class Supervisor:
    """Single-threaded restart loop for one tunnel."""

    def __init__(
        self,
        config: Config,
        registry: ProcessRegistry = None,
        ports: PortReconciler = None,
        launcher: TunnelLauncher = None,
        backoff: BackoffPolicy = None,
        state: SupervisorState = None,
        pause: Callable[[float], bool] = None,
        install_signals: bool = True,
    ):
        self.config = config
        self.registry = registry or ProcessRegistry(config)
        self.ports = ports or PortReconciler(config)
        self.launcher = launcher or TunnelLauncher(config)
        self.backoff = backoff or BackoffPolicy(config.backoff_initial, config.backoff_max)
        self.state = state
        self._pause = pause or self.pause
        self._install_signals = install_signals
        self._child: Optional[subprocess.Popen] = None
        self._wakeup = threading.Event()
        self._previous_handlers = {}
        self._interruptible = False
        self._pending_signal: Optional[int] = None

    def run(self, max_spawns: int = None, on_ready: Callable[[int], None] = None) -> SupervisorState:
        """Run until the stop flag or a termination signal ends the loop.

        Raises StateDirError before entering the loop if the supervisor
        record cannot be written. max_spawns caps the number of children
        started, for embedding and tests.
        """
        self.config.ensure_state_dir()
        if self.state is None:
            self.state = SupervisorState(pid=os.getpid())

        self.registry.write(RecordKind.SUPERVISOR, self.state.pid)
        self.registry.clear_stop()
        self._wakeup.clear()
        self._interruptible = False
        self._pending_signal = None

        self._set_signal_handlers(self._on_signal)
        try:
            self._log_banner()
            if on_ready:
                on_ready(self.state.pid)
            self._loop(max_spawns)
        except SupervisorInterrupted as e:
            logger.info(f"received signal {signal.Signals(e.signum).name}; exiting supervisor")
        finally:
            self._set_signal_handlers(signal.SIG_IGN)
            try:
                self._cleanup()
            finally:
                self._restore_signal_handlers()

        return self.state

    def request_stop(self):
        """Ask the loop to stop from inside this process (wakes any pause)."""
        self.registry.request_stop()
        self._wakeup.set()

    def pause(self, seconds: float) -> bool:
        """Sleep up to seconds. Returns True early if a stop was requested."""
        deadline = time.monotonic() + seconds
        while True:
            if self.registry.stop_requested():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if self._wakeup.wait(min(remaining, self.config.poll_interval)):
                return True

    def _loop(self, max_spawns: Optional[int]):
        cfg = self.config
        while True:
            if self.registry.stop_requested():
                logger.info("stop flag detected; exiting supervisor")
                return

            # start avoids this, but another process may grab the port later
            if self.ports.is_port_bound(cfg.socks_host, cfg.socks_port):
                self._transition(
                    SupervisorPhase.PORT_WAIT,
                    f"port {cfg.socks_port}/TCP already in use; waiting...",
                )
                with self._interruptible_wait():
                    self._pause(cfg.port_wait)
                continue

            self._run_child()

            if self.registry.stop_requested():
                logger.info("stop flag set; not restarting")
                return
            if max_spawns is not None and self.state.spawns >= max_spawns:
                logger.info(f"spawn limit {max_spawns} reached; exiting supervisor")
                return

            delay = self.backoff.next_delay(self.state.backoff)
            self.state.backoff = delay
            self._transition(SupervisorPhase.BACKOFF, f"restarting in {delay:g}s (auto-restart)")
            with self._interruptible_wait():
                self._pause(delay)

    def _run_child(self) -> Optional[int]:
        """Spawn ssh and block until it exits. Returns its exit code."""
        if self.state.spawns:
            self.state.restarts += 1
        self.state.spawns += 1
        self._transition(SupervisorPhase.LAUNCHING, "starting ssh dynamic forward (-D) ...")

        try:
            self._child = self.launcher.spawn()
        except OSError as e:
            logger.error(f"failed to start ssh: {e}")
            self.state.last_exit_code = None
            return None

        pid = self._child.pid
        self.state.child_pid = pid
        try:
            self.registry.write(RecordKind.CHILD, pid)
        except StateDirError as e:
            logger.warning(f"could not record ssh PID={pid}: {e}")

        self._transition(SupervisorPhase.WAITING, f"ssh running (PID={pid})")
        with self._interruptible_wait():
            rc = self._child.wait()

        self._child = None
        self.state.child_pid = None
        self.state.last_exit_code = rc
        self.registry.clear(RecordKind.CHILD)
        logger.info(f"ssh exited with code={rc}")
        return rc

    def _stop_child(self):
        child = self._child
        if child is not None:
            if child.poll() is None:
                logger.info(f"terminating ssh (PID={child.pid})")
                child.terminate()
                try:
                    child.wait(timeout=self.config.kill_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(f"ssh (PID={child.pid}) did not stop gracefully, forcing kill")
                    child.kill()
                    child.wait(timeout=self.config.kill_timeout)
            self._child = None
            return

        # Left over from a loop that died before it could clean up
        pid = self.registry.read(RecordKind.CHILD)
        if pid and pid != self.state.pid and self.registry.is_alive(pid):
            logger.info(f"terminating recorded ssh (PID={pid})")
            self.ports.terminate(pid)

    def _cleanup(self):
        self._transition(SupervisorPhase.TERMINATING, "tearing down")
        try:
            self._stop_child()
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"error stopping ssh: {e}")
        finally:
            self.state.child_pid = None
            self.registry.clear(RecordKind.CHILD)
            # Another supervisor may have replaced our record after a race
            if self.registry.read(RecordKind.SUPERVISOR) in (None, self.state.pid):
                self.registry.clear(RecordKind.SUPERVISOR)
            self.registry.clear_stop()
            self.state.phase = SupervisorPhase.IDLE
            logger.info("tunnel supervisor stopped")

    def _transition(self, phase: SupervisorPhase, message: str):
        self.state.phase = phase
        cfg = self.config
        logger.info(
            f"[{phase.value}] {message} "
            f"(socks={cfg.listen_address} ssh={cfg.ssh_target} "
            f"keepalive={cfg.alive_interval}s/{cfg.alive_countmax})"
        )

    def _log_banner(self):
        cfg = self.config
        logger.info(f"tunnel supervisor started (PID={self.state.pid})")
        logger.info(f"SOCKS5 listening on {cfg.listen_address} (local)")
        logger.info(f"SSH target {cfg.ssh_target}")
        logger.info(
            f"KeepAlive ServerAliveInterval={cfg.alive_interval}s "
            f"ServerAliveCountMax={cfg.alive_countmax}"
        )

    def _on_signal(self, signum, frame):
        # Outside a blocking wait the child may be half spawned or unrecorded;
        # remember the signal and raise at the next wait instead.
        if self._interruptible:
            raise SupervisorInterrupted(signum)
        self._pending_signal = signum

    @contextmanager
    def _interruptible_wait(self):
        """Let termination signals interrupt the enclosed blocking call."""
        self._interruptible = True
        try:
            if self._pending_signal is not None:
                raise SupervisorInterrupted(self._pending_signal)
            yield
        finally:
            self._interruptible = False

    def _set_signal_handlers(self, handler):
        if not self._install_signals or threading.current_thread() is not threading.main_thread():
            return
        for signum in HANDLED_SIGNALS:
            previous = signal.signal(signum, handler)
            self._previous_handlers.setdefault(signum, previous)

    def _restore_signal_handlers(self):
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}
