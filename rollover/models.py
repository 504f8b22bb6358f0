"""Pydantic models for launch configuration and orchestrator state."""

import sys
from collections.abc import Mapping
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from .protocol import (
    DEFAULT_IPC_TIMEOUT_MS,
    DEFAULT_RECOVER_ATTEMPTS,
    DEFAULT_RECOVER_TTL_MS,
    INITIAL_WORKER_ENV,
    RECURRING_WORKER_ENV,
)


class WorkerRole(str, Enum):
    """Role of a spawned worker."""

    INITIAL = "initial"
    RECURRING = "recurring"

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "WorkerRole | None":
        """Detect the role from environment markers.

        Returns:
            The worker role, or None when running in the supervisor
        """
        if environ.get(INITIAL_WORKER_ENV):
            return cls.INITIAL
        if environ.get(RECURRING_WORKER_ENV):
            return cls.RECURRING
        return None

    @property
    def env_marker(self) -> str:
        """Environment variable that carries this role."""
        return INITIAL_WORKER_ENV if self is WorkerRole.INITIAL else RECURRING_WORKER_ENV


class WorkerState(str, Enum):
    """Lifecycle of a worker process. States are only ever visited in order."""

    STARTING = "starting"
    ACTIVE = "active"
    RETIRING = "retiring"
    EXITED = "exited"

    @property
    def order(self) -> int:
        return list(WorkerState).index(self)

    def can_advance_to(self, other: "WorkerState") -> bool:
        """Whether moving from this state to `other` goes forward."""
        return other.order > self.order


class OrchestratorState(str, Enum):
    """Coarse state of an orchestrator instance."""

    IDLE = "idle"
    AWAITING_HANDOFF = "awaiting-handoff"
    STEADY = "steady"
    DESTROYED = "destroyed"


class OrchestratorEvent(str, Enum):
    """Notifications emitted by the orchestrator."""

    ACTIVE = "active"
    EXIT = "exit"
    RECOVER = "recover"
    ERROR = "error"


class StdioMode(str, Enum):
    """How worker stdout/stderr are wired."""

    INHERIT = "inherit"
    DEVNULL = "devnull"
    LOG = "log"


class RolloverOptions(BaseModel):
    """Launch configuration for the supervised application."""

    path: Path = Field(..., description="Path to the application's entry script")
    command: str = Field(
        default_factory=lambda: sys.executable,
        description="Command used to start the application (defaults to this interpreter)",
    )
    args: list[str] | None = Field(
        None, description="Arguments passed to the command (defaults to [path])"
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables, merged over the supervisor's environment",
    )
    cwd: Path | None = Field(None, description="Working directory for workers")
    stdio: StdioMode = Field(
        StdioMode.INHERIT, description="Wiring of worker stdout/stderr"
    )
    ipc_timeout_ms: int = Field(
        DEFAULT_IPC_TIMEOUT_MS,
        gt=0,
        description="How long a recurring worker waits for the hand-off to complete",
    )
    recover: bool = Field(
        True, description="Automatically restart after an unexpected worker exit"
    )
    recover_attempts: int = Field(
        DEFAULT_RECOVER_ATTEMPTS,
        ge=0,
        description="Automatic restarts allowed within a crash loop",
    )
    recover_ttl_ms: int | None = Field(
        DEFAULT_RECOVER_TTL_MS,
        ge=0,
        description=(
            "How long a worker must stay active before its exit replenishes the "
            "recovery budget (None disables replenishment)"
        ),
    )
    shutdown_timeout_ms: int = Field(
        5000,
        ge=0,
        description="Grace period on close before workers are killed with SIGKILL",
    )

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        """Reject empty commands."""
        if not v or not v.strip():
            raise ValueError("Command cannot be empty")
        return v

    def argv(self) -> list[str]:
        """Full command line used to launch a worker."""
        args = self.args if self.args is not None else [str(self.path)]
        return [self.command, *args]

    model_config = {"frozen": False}


class WorkerInfo(BaseModel):
    """Snapshot of a single worker process."""

    pid: int = Field(..., description="Operating system process ID")
    role: WorkerRole = Field(..., description="Role the worker was spawned with")
    state: WorkerState = Field(..., description="Current lifecycle state")
    returncode: int | None = Field(None, description="Exit code once exited")

    model_config = {"frozen": True}


class OrchestratorStatus(BaseModel):
    """Snapshot of the orchestrator's state."""

    state: OrchestratorState = Field(..., description="Coarse orchestrator state")
    active: WorkerInfo | None = Field(None, description="Worker currently serving")
    pending: WorkerInfo | None = Field(
        None, description="Worker currently negotiating a hand-off"
    )
    in_flight: bool = Field(False, description="Whether a restart is in progress")
    recover_attempts_remaining: int = Field(
        ..., description="Automatic recoveries left in the budget"
    )

    model_config = {"frozen": False}
