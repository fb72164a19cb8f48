import socket
import subprocess
import sys
import textwrap

import pytest

from socks_tunnel.config import Config
from socks_tunnel.ports import PortReconciler
from socks_tunnel.registry import ProcessRegistry


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port():
    return _free_port()


@pytest.fixture
def config(tmp_path, free_port):
    cfg = Config(
        state_dir=tmp_path / "state",
        socks_host="127.0.0.1",
        socks_port=free_port,
        kill_listeners=True,
        kill_timeout=1.0,
        start_timeout=4.0,
        poll_interval=0.05,
    )
    cfg.ensure_state_dir()
    return cfg


@pytest.fixture
def registry(config):
    return ProcessRegistry(config)


@pytest.fixture
def ports(config):
    return PortReconciler(config)


@pytest.fixture
def listening_socket(config):
    """A listener on the configured SOCKS port owned by the test process."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((config.socks_host, config.socks_port))
    sock.listen()
    yield sock
    sock.close()


@pytest.fixture
def foreign_listener(config):
    """A separate, non-ssh process listening on the configured SOCKS port."""
    code = textwrap.dedent(
        f"""
        import socket, sys, time
        s = socket.socket()
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind(({config.socks_host!r}, {config.socks_port}))
        s.listen()
        print("ready", flush=True)
        time.sleep(60)
        """
    )
    proc = subprocess.Popen([sys.executable, "-c", code], stdout=subprocess.PIPE)
    assert proc.stdout.readline().strip() == b"ready"
    yield proc
    proc.kill()
    proc.wait()
    proc.stdout.close()


@pytest.fixture
def sleeper():
    """Factory for throwaway long-running child processes."""
    procs = []

    def spawn(code: str = "import time; time.sleep(60)") -> subprocess.Popen:
        proc = subprocess.Popen([sys.executable, "-c", code])
        procs.append(proc)
        return proc

    yield spawn

    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        try:
            proc.wait(timeout=5)
        except (subprocess.TimeoutExpired, ChildProcessError):
            pass
