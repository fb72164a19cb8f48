"""Errors that end a command with a fatal, user-visible message."""


class TunnelError(Exception):
    """Base class for fatal tunnel supervisor errors."""


class StateDirError(TunnelError):
    """The state directory or a record file inside it cannot be written."""


class PortInUseError(TunnelError):
    """The SOCKS port is held by a listener we may not or could not reclaim."""

    def __init__(self, message: str, listeners=None):
        super().__init__(message)
        self.listeners = list(listeners or [])


class StartTimeoutError(TunnelError):
    """The detached run loop did not report in within the start timeout."""


class SupervisorInterrupted(BaseException):
    """Raised inside the run loop when a termination signal arrives.

    Derives from BaseException like KeyboardInterrupt so that broad
    ``except Exception`` blocks around spawning do not swallow it.
    """

    def __init__(self, signum: int):
        super().__init__(signum)
        self.signum = signum
