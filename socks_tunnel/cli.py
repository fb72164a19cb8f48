"""
Command-line interface for the SOCKS5-over-SSH tunnel supervisor.

    socks-tunnel [start|stop|status|restart|logs]

start launches the restart loop as a detached background process; the
internal _run_loop command is that background process and is not meant to be
called by hand.
"""

import argparse
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import NoReturn

from .config import Config, config as default_config
from .control import RUN_LOOP_COMMAND, TunnelController
from .exceptions import PortInUseError, TunnelError
from .models import StatusReport
from .ports import PortReconciler
from .supervisor import Supervisor

logger = logging.getLogger(__name__)

COMMANDS = ("start", "stop", "status", "restart", "logs")

ENV_HELP = """\
Environment overrides (optional):
  SSH_HOST, SSH_USER, SSH_PORT, SSH_BIN
  SOCKS_HOST, SOCKS_PORT
  ALIVE_INTERVAL, ALIVE_COUNTMAX
  STATE_DIR
  KILL_SSH_LISTENERS_ON_PORT (default: 1)

Example:
  SSH_HOST=dark-horse SSH_USER=cowboy SSH_PORT=2222 \\
  SOCKS_PORT=1080 socks-tunnel start
"""

log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")


def setup_logging(cfg: Config, background: bool = False, verbose: bool = False):
    """The run loop logs to the rotating state-dir log, other commands to the console.

    Only the run loop owns tunnel.log, so only one process ever rotates it.
    """
    if background:
        handler = RotatingFileHandler(
            cfg.log_file,
            maxBytes=cfg.log_max_bytes,
            backupCount=cfg.log_backup_count,
        )
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO if verbose else logging.WARNING)
    handler.setFormatter(log_formatter)

    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)


def die(message: str) -> NoReturn:
    print(f"ERROR: {message}", file=sys.stderr)
    sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="socks-tunnel",
        description="SOCKS5 over SSH tunnel with background mode, PID file and auto-restart.",
        epilog=ENV_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="start",
        metavar="{" + ",".join(COMMANDS) + "}",
        help="what to do (default: start)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="also print log messages")
    parser.add_argument("--ready-fd", type=int, default=None, help=argparse.SUPPRESS)
    return parser


def parse_args(argv=None) -> argparse.Namespace:
    """Parse argv; unknown commands print the full help to stderr and exit 2."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command not in COMMANDS and args.command != RUN_LOOP_COMMAND:
        parser.print_help(sys.stderr)
        parser.exit(2, f"\nERROR: unknown command '{args.command}'\n")
    return args


def print_status(report: StatusReport, ports: PortReconciler, port: int):
    if report.running:
        print(f"RUNNING (PID={report.pid}) - SOCKS5 on {report.listen_address}")
        if report.child_pid:
            print(f"ssh PID={report.child_pid}")
    else:
        print("STOPPED")

    for warning in report.warnings:
        print(f"WARNING: {warning}")
    if report.port_bound:
        print(ports.describe_listeners(port, report.listeners))


def _notify_ready(fd: int):
    def notify(pid: int):
        try:
            os.write(fd, f"{pid}\n".encode())
        finally:
            os.close(fd)
    return notify


def cmd_run_loop(cfg: Config, ready_fd: int = None) -> int:
    supervisor = Supervisor(cfg)
    on_ready = _notify_ready(ready_fd) if ready_fd is not None else None
    state = supervisor.run(on_ready=on_ready)
    logger.info(f"supervisor exiting after {state.spawns} ssh launches ({state.restarts} restarts)")
    return 0


def _report_start(controller: TunnelController, result) -> int:
    if result.already_running:
        print(f"Already running (PID={result.pid}). Use: socks-tunnel status | stop | logs")
        return 0
    print(f"Started. Supervisor PID={result.pid}")
    print(f"Logs: {controller.config.log_file}")
    return 0


def cmd_stop(controller: TunnelController) -> int:
    result = controller.stop()
    if result.was_running:
        print(f"Stopped supervisor PID={result.pid}.")
    else:
        print("Not running (no PID file).")
        print("Stopped.")
    return 0


def cmd_status(controller: TunnelController) -> int:
    report = controller.status()
    print_status(report, controller.ports, controller.config.socks_port)
    return 0 if report.running else 1


def cmd_start(controller: TunnelController) -> int:
    return _report_start(controller, controller.start())


def cmd_restart(controller: TunnelController) -> int:
    return _report_start(controller, controller.restart())


def cmd_logs(controller: TunnelController) -> int:
    try:
        controller.follow_logs()
    except KeyboardInterrupt:
        pass
    return 0


HANDLERS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "status": cmd_status,
    "restart": cmd_restart,
    "logs": cmd_logs,
}


def main(argv=None, cfg: Config = None) -> int:
    cfg = cfg or default_config
    args = parse_args(argv)

    try:
        cfg.ensure_state_dir()
        setup_logging(cfg, background=args.command == RUN_LOOP_COMMAND, verbose=args.verbose)

        if args.command == RUN_LOOP_COMMAND:
            return cmd_run_loop(cfg, args.ready_fd)

        controller = TunnelController(cfg)
        return HANDLERS[args.command](controller)

    except PortInUseError as e:
        print(PortReconciler(cfg).describe_listeners(cfg.socks_port, e.listeners))
        die(str(e))
    except TunnelError as e:
        die(str(e))
