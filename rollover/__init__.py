"""Rollover - zero-downtime restarts for long-running Python applications."""

from .client import (
    WorkerClient,
    await_ready,
    get_client,
    is_supervisor,
    request_exit,
    request_restart,
    reset_client,
)
from .exceptions import (
    ChannelClosedError,
    HandshakeTimeoutError,
    InvalidTransitionError,
    LaunchConfigError,
    OrchestratorDestroyedError,
    ProtocolError,
    RoleError,
    RolloverError,
    WorkerExitedError,
)
from .models import (
    OrchestratorEvent,
    OrchestratorState,
    OrchestratorStatus,
    RolloverOptions,
    StdioMode,
    WorkerInfo,
    WorkerRole,
    WorkerState,
)
from .orchestrator import Orchestrator, start
from .protocol import Message

__version__ = "0.1.0"

__all__ = [
    "ChannelClosedError",
    "HandshakeTimeoutError",
    "InvalidTransitionError",
    "LaunchConfigError",
    "Message",
    "Orchestrator",
    "OrchestratorDestroyedError",
    "OrchestratorEvent",
    "OrchestratorState",
    "OrchestratorStatus",
    "ProtocolError",
    "RoleError",
    "RolloverError",
    "RolloverOptions",
    "StdioMode",
    "WorkerClient",
    "WorkerExitedError",
    "WorkerInfo",
    "WorkerRole",
    "WorkerState",
    "await_ready",
    "get_client",
    "is_supervisor",
    "request_exit",
    "request_restart",
    "reset_client",
    "start",
]
