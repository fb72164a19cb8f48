"""
Configuration for the tunnel supervisor.

Loads settings from environment variables with sensible defaults.
All persistent state (pid files, stop flag, log) lives in STATE_DIR,
~/.socks-ssh-tunnel/ unless overridden.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .exceptions import StateDirError

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Tunnel supervisor configuration."""

    # Remote endpoint
    ssh_host: str = os.environ.get("SSH_HOST", "dark-horse")
    ssh_user: str = os.environ.get("SSH_USER", "cowboy")
    ssh_port: int = int(os.environ.get("SSH_PORT", "2222"))
    ssh_binary: str = os.environ.get("SSH_BIN", "ssh")

    # Local SOCKS listener
    socks_host: str = os.environ.get("SOCKS_HOST", "127.0.0.1")
    socks_port: int = int(os.environ.get("SOCKS_PORT", "1080"))

    # Keep-alive
    alive_interval: int = int(os.environ.get("ALIVE_INTERVAL", "60"))
    alive_countmax: int = int(os.environ.get("ALIVE_COUNTMAX", "3"))

    # If set, stop/start also kill orphaned ssh listeners on socks_port
    kill_listeners: bool = _env_flag("KILL_SSH_LISTENERS_ON_PORT", "1")

    # Paths
    state_dir: Path = Path(os.environ.get("STATE_DIR", str(Path.home() / ".socks-ssh-tunnel")))
    pid_file: Path = None
    ssh_pid_file: Path = None
    stop_flag: Path = None
    log_file: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Timing (seconds)
    port_wait: float = 2.0
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    kill_timeout: float = 3.0
    start_timeout: float = 4.0
    poll_interval: float = 0.1

    def __post_init__(self):
        """Initialize derived paths."""
        self.state_dir = Path(self.state_dir).expanduser()
        self.pid_file = self.state_dir / "tunnel.pid"
        self.ssh_pid_file = self.state_dir / "ssh.pid"
        self.stop_flag = self.state_dir / "stop"
        self.log_file = self.state_dir / "tunnel.log"

    @property
    def listen_address(self) -> str:
        return f"{self.socks_host}:{self.socks_port}"

    @property
    def ssh_target(self) -> str:
        return f"{self.ssh_user}@{self.ssh_host}:{self.ssh_port}"

    def ensure_state_dir(self):
        """Create the state directory and touch the log file."""
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self.log_file.touch(exist_ok=True)
        except OSError as e:
            raise StateDirError(f"State directory {self.state_dir} is not writable: {e}") from e

    def to_env(self) -> dict[str, str]:
        """Environment for a detached run loop so it sees the same settings."""
        return {
            "SSH_HOST": self.ssh_host,
            "SSH_USER": self.ssh_user,
            "SSH_PORT": str(self.ssh_port),
            "SSH_BIN": self.ssh_binary,
            "SOCKS_HOST": self.socks_host,
            "SOCKS_PORT": str(self.socks_port),
            "ALIVE_INTERVAL": str(self.alive_interval),
            "ALIVE_COUNTMAX": str(self.alive_countmax),
            "KILL_SSH_LISTENERS_ON_PORT": "1" if self.kill_listeners else "0",
            "STATE_DIR": str(self.state_dir),
            "LOG_MAX_BYTES": str(self.log_max_bytes),
            "LOG_BACKUP_COUNT": str(self.log_backup_count),
        }


config = Config()
