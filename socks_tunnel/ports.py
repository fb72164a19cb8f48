"""
Port reconciliation for the SOCKS listener.

Finds out who is LISTENing on the SOCKS port and, when allowed, frees the port
from an orphaned ssh tunnel. Listener data is always read live from psutil and
never cached. Reclaiming is gated by an identity check so that an unrelated
service holding the port is never killed.
"""

import errno
import logging
import os
import socket
from typing import Callable, Iterable, Optional

import psutil

from .config import Config
from .models import Listener

logger = logging.getLogger(__name__)


class TunnelIdentity:
    """Decides whether a listener is a tunnel we are allowed to reclaim.

    A pid we recorded spawning always matches. Otherwise fall back to the
    command line: argv[0] must be the launcher binary (``ssh``). Listeners
    whose command line cannot be read never match.
    """

    def __init__(self, known_pids: Iterable[Optional[int]] = (), launcher: str = "ssh"):
        self.known_pids = {pid for pid in known_pids if pid}
        self.launcher = os.path.basename(launcher)

    def __call__(self, listener: Listener) -> bool:
        if listener.pid in self.known_pids:
            return True
        if not listener.argv:
            return False
        return os.path.basename(listener.argv[0]) == self.launcher


class PortReconciler:
    """Inspects and reclaims the SOCKS port."""

    def __init__(self, config: Config):
        self.config = config

    def is_port_bound(self, host: str, port: int) -> bool:
        """True if any process is LISTENing on port/TCP."""
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            return self._bind_probe(host, port)

        return any(
            conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port
            for conn in connections
        )

    def _bind_probe(self, host: str, port: int) -> bool:
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
            except OSError as e:
                if e.errno == errno.EADDRINUSE:
                    return True
                logger.warning(f"Bind probe on {host}:{port} failed: {e}")
        return False

    def listening_processes(self, port: int) -> list[Listener]:
        """Processes LISTENing on port/TCP. Empty if none or if enumeration fails."""
        try:
            pids = self._listener_pids(port)
        except (psutil.Error, OSError) as e:
            logger.debug(f"Could not enumerate listeners on {port}: {e}")
            return []

        listeners = []
        for pid in sorted(pids):
            listener = self._describe(pid)
            if listener:
                listeners.append(listener)
        return listeners

    def _listener_pids(self, port: int) -> set[int]:
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            return self._scan_processes(port)

        return {
            conn.pid
            for conn in connections
            if conn.pid and conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port
        }

    def _scan_processes(self, port: int) -> set[int]:
        """Per-process fallback where the system-wide socket table is denied (macOS)."""
        pids = set()
        for proc in psutil.process_iter():
            try:
                for conn in proc.net_connections(kind="tcp"):
                    if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
                        pids.add(proc.pid)
                        break
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return pids

    def _describe(self, pid: int) -> Optional[Listener]:
        try:
            argv = psutil.Process(pid).cmdline()
        except psutil.NoSuchProcess:
            return None
        except psutil.AccessDenied:
            return Listener(pid=pid)
        return Listener(pid=pid, command=" ".join(argv), argv=argv)

    def describe_listeners(self, port: int, listeners: Optional[list[Listener]] = None) -> str:
        if listeners is None:
            listeners = self.listening_processes(port)
        lines = [f"Listeners on TCP/{port}:"]
        if listeners:
            lines.extend(f"  {listener}" for listener in listeners)
        else:
            lines.append("  (could not identify the listening process)")
        return "\n".join(lines)

    def terminate(self, pid: Optional[int], timeout: Optional[float] = None):
        """SIGTERM pid, wait up to timeout, then SIGKILL. Silent if already gone."""
        if not pid:
            return
        if timeout is None:
            timeout = self.config.kill_timeout

        try:
            proc = psutil.Process(pid)
            proc.terminate()
            proc.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            return
        except psutil.AccessDenied:
            logger.warning(f"Not permitted to signal PID {pid}")
            return
        except psutil.TimeoutExpired:
            logger.warning(f"PID {pid} did not stop gracefully, forcing kill")
            try:
                proc.kill()
                proc.wait(timeout=timeout)
            except psutil.NoSuchProcess:
                pass
            except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
                logger.error(f"Could not kill PID {pid}: {e}")

    def reclaim(self, port: int, identity: Callable[[Listener], bool]):
        """Terminate listeners on port that pass the identity check.

        Best effort: the caller must re-check is_port_bound afterwards.
        """
        if not self.config.kill_listeners:
            logger.info(f"Listener reclaim disabled; leaving TCP/{port} alone")
            return

        for listener in self.listening_processes(port):
            if listener.pid == os.getpid():
                continue
            if not identity(listener):
                logger.info(f"Not touching foreign listener on TCP/{port}: {listener}")
                continue
            logger.info(f"Killing ssh listener on TCP/{port} ({listener})")
            self.terminate(listener.pid)
