"""Spawning and handling of worker processes."""

import asyncio
import logging
import os
import shlex
import signal
import time
from typing import Any

from .channel import SupervisorChannel, create_channel_pair
from .exceptions import InvalidTransitionError
from .models import RolloverOptions, StdioMode, WorkerInfo, WorkerRole, WorkerState
from .protocol import (
    CONTROL_FD_ENV,
    INITIAL_WORKER_ENV,
    IPC_TIMEOUT_ENV,
    RECURRING_WORKER_ENV,
    Message,
)

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("rollover.worker")


class WorkerProcess:
    """Handle to one spawned worker, owned by the orchestrator.

    Wraps the OS process together with the orchestrator end of its control
    channel and tracks where the worker is in its lifecycle.
    """

    def __init__(
        self,
        process: Any,
        role: WorkerRole,
        channel: Any,
        output_tasks: list[asyncio.Task] | None = None,
    ):
        """Initialize the handle.

        Args:
            process: The spawned process (an asyncio subprocess)
            role: Role the worker was spawned with
            channel: Orchestrator end of the control channel
            output_tasks: Tasks forwarding the worker's output, if any
        """
        self.process = process
        self.role = role
        self.channel = channel
        self.state = WorkerState.STARTING
        self.ready_received = False
        self.spawned_at = time.monotonic()
        self.activated_at: float | None = None
        self._pid = process.pid
        self._output_tasks = output_tasks or []

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def advance(self, state: WorkerState) -> None:
        """Move the worker forward in its lifecycle.

        Raises:
            InvalidTransitionError: If `state` would move the worker backwards
        """
        if state is self.state:
            return
        if not self.state.can_advance_to(state):
            raise InvalidTransitionError(
                f"Worker {self.pid} cannot go from {self.state.value} to {state.value}"
            )
        self.state = state
        if state is WorkerState.ACTIVE:
            self.activated_at = time.monotonic()

    def active_for(self) -> float:
        """Seconds since this worker was promoted, 0.0 if it never was."""
        if self.activated_at is None:
            return 0.0
        return time.monotonic() - self.activated_at

    def uptime(self) -> float:
        """Seconds since this worker was spawned."""
        return time.monotonic() - self.spawned_at

    async def receive(self) -> tuple[Message, str | None] | None:
        return await self.channel.receive()

    def send(self, message: Message) -> bool:
        return self.channel.send(message)

    def kill(self, sig: int = signal.SIGTERM) -> bool:
        """Send a signal without waiting for the worker to exit.

        Returns:
            True if the signal was delivered
        """
        if self.process.returncode is not None:
            return False
        try:
            self.process.send_signal(sig)
            logger.debug(f"Sent {signal.Signals(sig).name} to worker {self.pid}")
            return True
        except ProcessLookupError:
            return False

    async def wait(self) -> int:
        return await self.process.wait()

    def close(self) -> None:
        """Release the control channel and stop forwarding output."""
        self.channel.close()
        for task in self._output_tasks:
            if not task.done():
                task.cancel()

    def info(self) -> WorkerInfo:
        return WorkerInfo(
            pid=self.pid,
            role=self.role,
            state=self.state,
            returncode=self.returncode,
        )

    def __repr__(self) -> str:
        return f"<WorkerProcess pid={self.pid} role={self.role.value} state={self.state.value}>"


def build_worker_env(options: RolloverOptions, role: WorkerRole, control_fd: int) -> dict[str, str]:
    """Compute the environment for a new worker.

    Args:
        options: Launch configuration
        role: Role of the new worker
        control_fd: Descriptor number of the worker's channel end

    Returns:
        Environment with exactly one role marker set
    """
    env = {**os.environ, **options.env}
    env.pop(INITIAL_WORKER_ENV, None)
    env.pop(RECURRING_WORKER_ENV, None)
    env[role.env_marker] = "true"
    env[IPC_TIMEOUT_ENV] = str(options.ipc_timeout_ms)
    env[CONTROL_FD_ENV] = str(control_fd)
    return env


async def _forward_output(fd: int, pid: int, level: int) -> None:
    """Forward one of a worker's output pipes to the worker logger line by line.

    The pipe may outlive the worker when it leaves helper processes behind,
    so the task is cancelled when the worker's handle is closed.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    pipe = os.fdopen(fd, "rb", 0)
    try:
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), pipe
        )
    except BaseException:
        pipe.close()
        raise

    try:
        while True:
            try:
                line = await reader.readline()
            except ValueError:
                # Line longer than the stream limit; it has been dropped
                continue
            except (ConnectionError, OSError) as e:
                worker_logger.debug(f"Output forwarding for worker {pid} stopped: {e}")
                return

            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                worker_logger.log(level, f"[{pid}] {text}")
    finally:
        transport.close()


async def spawn_worker(options: RolloverOptions, role: WorkerRole) -> WorkerProcess:
    """Spawn a worker process with its own control channel.

    In log mode the output pipes are owned by the orchestrator rather than by
    the asyncio process, so `wait()` reports the worker's exit even while a
    helper it started still holds the pipes open.

    Args:
        options: Launch configuration
        role: Role of the new worker

    Returns:
        Handle to the started worker

    Raises:
        OSError: If the process cannot be started (e.g. command not found)
    """
    parent_sock, child_sock = create_channel_pair()
    env = build_worker_env(options, role, child_sock.fileno())
    argv = options.argv()

    read_fds: list[int] = []
    write_fds: list[int] = []
    if options.stdio is StdioMode.DEVNULL:
        stdout = stderr = asyncio.subprocess.DEVNULL
    elif options.stdio is StdioMode.LOG:
        out_r, stdout = os.pipe()
        err_r, stderr = os.pipe()
        read_fds = [out_r, err_r]
        write_fds = [stdout, stderr]
    else:
        stdout = stderr = None

    logger.info(f"Spawning {role.value} worker: {' '.join(shlex.quote(a) for a in argv)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=stdout,
            stderr=stderr,
            env=env,
            cwd=str(options.cwd) if options.cwd else None,
            pass_fds=(child_sock.fileno(),),
        )
    except Exception:
        parent_sock.close()
        for fd in read_fds:
            os.close(fd)
        raise
    finally:
        # The worker holds its own copies now
        child_sock.close()
        for fd in write_fds:
            os.close(fd)

    try:
        channel = await SupervisorChannel.open(parent_sock)
    except Exception:
        process.kill()
        parent_sock.close()
        for fd in read_fds:
            os.close(fd)
        raise

    output_tasks = []
    if read_fds:
        out_r, err_r = read_fds
        output_tasks = [
            asyncio.create_task(_forward_output(out_r, process.pid, logging.INFO)),
            asyncio.create_task(_forward_output(err_r, process.pid, logging.ERROR)),
        ]

    logger.info(f"Worker {process.pid} started ({role.value})")
    return WorkerProcess(process, role, channel, output_tasks)
