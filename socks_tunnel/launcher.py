"""
Tunnel launcher.

Builds the ssh dynamic-forward command and starts it as a child process with
its output appended to the supervisor log. The tunnel itself is opaque: the
supervisor only spawns it and waits for it to exit.
"""

import logging
import os
import subprocess

from .config import Config

logger = logging.getLogger(__name__)


class TunnelLauncher:
    """Spawns `ssh -N -D host:port ...` for the configured endpoint."""

    def __init__(self, config: Config):
        self.config = config

    def command(self) -> list[str]:
        cfg = self.config
        return [
            cfg.ssh_binary,
            "-N",
            "-D", cfg.listen_address,
            "-p", str(cfg.ssh_port),
            "-o", "ExitOnForwardFailure=yes",
            "-o", f"ServerAliveInterval={cfg.alive_interval}",
            "-o", f"ServerAliveCountMax={cfg.alive_countmax}",
            f"{cfg.ssh_user}@{cfg.ssh_host}",
        ]

    def spawn(self) -> subprocess.Popen:
        """Start the tunnel. Raises OSError if the binary cannot be executed."""
        cmd = self.command()
        logger.debug(f"Launching: {' '.join(cmd)}")

        # The child keeps its own copy of the log fd
        with open(self.config.log_file, "ab") as log_file:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=os.environ.copy(),
                start_new_session=True,
            )
