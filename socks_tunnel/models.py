"""
Data types shared by the registry, the port reconciler and the run loop.

Records are persisted as small JSON files in the state directory; everything
else here is in-process bookkeeping.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class RecordKind(Enum):
    SUPERVISOR = "supervisor"
    CHILD = "child"


class SupervisorPhase(Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    WAITING = "waiting"
    PORT_WAIT = "port-wait"
    BACKOFF = "backoff"
    TERMINATING = "terminating"


class TunnelStatus(Enum):
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"


@dataclass
class ProcessRecord:
    """A persisted process identity (supervisor or ssh child)."""

    pid: int
    started_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessRecord":
        started_at = data.get("started_at")
        return cls(
            pid=int(data["pid"]),
            started_at=datetime.fromisoformat(started_at) if started_at else None,
        )


@dataclass
class Listener:
    """A process LISTENing on the SOCKS port."""

    pid: int
    command: str = ""
    argv: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"PID={self.pid} cmd='{self.command}'" if self.command else f"PID={self.pid}"


@dataclass
class SupervisorState:
    """In-process state of one run loop invocation."""

    pid: int
    started_at: datetime = field(default_factory=datetime.now)
    phase: SupervisorPhase = SupervisorPhase.IDLE
    backoff: float = 0.0
    spawns: int = 0
    restarts: int = 0
    last_exit_code: Optional[int] = None
    child_pid: Optional[int] = None


@dataclass
class StatusReport:
    """Result of the status command."""

    status: TunnelStatus
    listen_address: str
    pid: Optional[int] = None
    child_pid: Optional[int] = None
    started_at: Optional[datetime] = None
    port_bound: bool = False
    listeners: list[Listener] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.status == TunnelStatus.RUNNING


@dataclass
class StartResult:
    pid: int
    already_running: bool = False


@dataclass
class StopResult:
    pid: Optional[int] = None
    was_running: bool = True
