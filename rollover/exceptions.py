"""Exceptions raised by rollover."""


class RolloverError(Exception):
    """Base exception for all rollover errors."""

    pass


class LaunchConfigError(RolloverError):
    """The launch target is missing or cannot be accessed."""

    pass


class RoleError(RolloverError):
    """An operation was called from the wrong side of the hand-off.

    Worker-only operations called from the supervisor, or supervisor-only
    operations called from a worker.
    """

    pass


class HandshakeTimeoutError(RolloverError):
    """The supervisor did not answer the readiness handshake in time."""

    pass


class ChannelClosedError(RolloverError):
    """The control channel is missing or has been closed."""

    pass


class ProtocolError(RolloverError):
    """A control message could not be decoded."""

    pass


class OrchestratorDestroyedError(RolloverError):
    """The orchestrator was destroyed and accepts no further transitions."""

    pass


class InvalidTransitionError(RolloverError):
    """A worker was asked to move backwards through its lifecycle."""

    pass


class WorkerExitedError(RolloverError):
    """A worker exited before completing its hand-off."""

    def __init__(self, pid: int, returncode: int | None):
        self.pid = pid
        self.returncode = returncode
        super().__init__(f"Worker process {pid} exited with code {returncode}")
