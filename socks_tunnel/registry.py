"""
Process registry for the tunnel supervisor.

Persists the pids of the supervisor run loop and of its ssh child, plus the
stop flag, as files in the state directory. This is the source of truth for
"is it running" across separate CLI invocations.

Writes go through a temp file and os.replace so a concurrent reader never sees
a partial record. There is no locking; callers re-verify liveness before acting.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import psutil

from .config import Config
from .exceptions import StateDirError
from .models import ProcessRecord, RecordKind

logger = logging.getLogger(__name__)


class ProcessRegistry:
    """Reads and writes supervisor/child records and the stop flag."""

    def __init__(self, config: Config):
        self.config = config

    def _path(self, kind: RecordKind) -> Path:
        if kind == RecordKind.SUPERVISOR:
            return self.config.pid_file
        return self.config.ssh_pid_file

    def read_record(self, kind: RecordKind) -> Optional[ProcessRecord]:
        """Return the stored record for kind, or None if there is none."""
        path = self._path(kind)
        try:
            raw = path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read {path}: {e}")
            return None

        if not raw:
            return None

        # Bare pid, as written by the shell version of this tool
        if raw.isdigit():
            return ProcessRecord(pid=int(raw), started_at=None)

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            return ProcessRecord.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable record {path}: {e}")
            return None

    def read(self, kind: RecordKind) -> Optional[int]:
        record = self.read_record(kind)
        return record.pid if record else None

    def write(self, kind: RecordKind, pid: int) -> ProcessRecord:
        """Persist pid for kind, replacing any previous record atomically."""
        record = ProcessRecord(pid=pid)
        path = self._path(kind)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = tempfile.NamedTemporaryFile(
                "w",
                dir=path.parent,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            )
            try:
                json.dump(record.to_dict(), fd)
                fd.flush()
                os.fsync(fd.fileno())
                fd.close()
                os.replace(fd.name, path)
            except BaseException:
                fd.close()
                try:
                    os.unlink(fd.name)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise StateDirError(f"Could not write {path}: {e}") from e

        return record

    def clear(self, kind: RecordKind):
        """Remove the record for kind. Clearing a missing record is fine."""
        self._path(kind).unlink(missing_ok=True)

    @staticmethod
    def is_alive(pid: Optional[int]) -> bool:
        """True if pid names an existing, non-zombie process."""
        if not pid or pid <= 0:
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, ValueError):
            return False
        except psutil.AccessDenied:
            # Exists but belongs to someone else
            return True

    def live_pid(self, kind: RecordKind) -> Optional[int]:
        """The recorded pid for kind if that process is alive, else None."""
        pid = self.read(kind)
        return pid if self.is_alive(pid) else None

    # Stop flag

    def request_stop(self):
        try:
            self.config.stop_flag.parent.mkdir(parents=True, exist_ok=True)
            self.config.stop_flag.touch()
        except OSError as e:
            raise StateDirError(f"Could not create stop flag {self.config.stop_flag}: {e}") from e

    def stop_requested(self) -> bool:
        return self.config.stop_flag.exists()

    def clear_stop(self):
        self.config.stop_flag.unlink(missing_ok=True)

    def clear_all(self):
        """Remove both records and the stop flag."""
        self.clear(RecordKind.CHILD)
        self.clear(RecordKind.SUPERVISOR)
        self.clear_stop()
