"""Orchestrator that hands work over from one worker process to the next.

The orchestrator runs in the supervising process. It spawns workers, waits
for a new worker to report that it is ready, promotes it, retires its
predecessor and restarts the application when a worker dies unexpectedly.

All handlers run on the event loop and never await, so spawning, promotion,
retirement and recovery are serialized against each other.
"""

import asyncio
import logging
import os
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .exceptions import (
    LaunchConfigError,
    OrchestratorDestroyedError,
    RoleError,
    WorkerExitedError,
)
from .models import (
    OrchestratorEvent,
    OrchestratorState,
    OrchestratorStatus,
    RolloverOptions,
    WorkerInfo,
    WorkerRole,
    WorkerState,
)
from .process import WorkerProcess, spawn_worker
from .protocol import Message, parse_exit_code

logger = logging.getLogger(__name__)

# How long to keep reading a worker's channel after it exited
EXIT_DRAIN_SECONDS = 0.1

EventCallback = Callable[..., Any]


class Orchestrator:
    """Zero-downtime restart orchestrator for a single worker lineage.

    Notifications (register with `on`):
        active(worker): a worker was promoted and told to begin serving
        exit(worker, returncode): a worker exited
        recover(remaining): an unexpected exit was handled by the recovery policy.
            Only exits of the active or pending worker count as unexpected; a
            retired worker exiting, or any exit while recovery is disabled,
            emits no recover notification.
        error(exc): a background operation failed
    """

    def __init__(
        self,
        options: RolloverOptions,
        exit_process: Callable[[int], Any] = sys.exit,
    ):
        """Initialize the orchestrator. Nothing is spawned until `restart()`.

        Args:
            options: Launch configuration
            exit_process: Called with the exit code when a worker asks the
                whole application to exit
        """
        self.options = options
        self._exit_process = exit_process

        self._active: WorkerProcess | None = None
        self._pending: WorkerProcess | None = None
        self._transition: asyncio.Future | None = None
        self._background_transition: asyncio.Future | None = None

        self._workers: set[WorkerProcess] = set()
        self._spawning: set[asyncio.Task] = set()
        self._watchers: set[asyncio.Task] = set()

        self._recover = options.recover
        self._recover_attempts = options.recover_attempts
        self._destroyed = False
        self._destroyed_event = asyncio.Event()

        self._listeners: dict[OrchestratorEvent, list[EventCallback]] = {
            event: [] for event in OrchestratorEvent
        }

    # --- Introspection ---

    @property
    def active(self) -> WorkerProcess | None:
        """Worker currently authorized to serve."""
        return self._active

    @property
    def pending(self) -> WorkerProcess | None:
        """Worker currently negotiating a hand-off."""
        return self._pending

    @property
    def in_flight(self) -> bool:
        """Whether a restart is in progress."""
        return self._transition is not None

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def recover_attempts_remaining(self) -> int:
        return self._recover_attempts

    @property
    def state(self) -> OrchestratorState:
        if self._destroyed:
            return OrchestratorState.DESTROYED
        if self._transition is not None:
            return OrchestratorState.AWAITING_HANDOFF
        if self._active is not None:
            return OrchestratorState.STEADY
        return OrchestratorState.IDLE

    def status(self) -> OrchestratorStatus:
        """Snapshot of the orchestrator's state."""
        return OrchestratorStatus(
            state=self.state,
            active=self._active.info() if self._active else None,
            pending=self._pending.info() if self._pending else None,
            in_flight=self.in_flight,
            recover_attempts_remaining=self._recover_attempts,
        )

    # --- Notifications ---

    def on(self, event: OrchestratorEvent | str, callback: EventCallback) -> EventCallback:
        """Register a notification callback.

        Returns:
            The callback, so this can be used as a decorator
        """
        self._listeners[OrchestratorEvent(event)].append(callback)
        return callback

    def off(self, event: OrchestratorEvent | str, callback: EventCallback) -> None:
        """Remove a previously registered callback."""
        listeners = self._listeners[OrchestratorEvent(event)]
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: OrchestratorEvent, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Listener for '{event.value}' failed: {e}", exc_info=True)
                if event is not OrchestratorEvent.ERROR:
                    self._emit(OrchestratorEvent.ERROR, e)

    # --- Transitions ---

    def restart(self) -> asyncio.Future:
        """Start a rolling restart, or join the one already in progress.

        If there is no active worker this is a plain start.

        Returns:
            Future resolving to the new worker's WorkerInfo once it is active.
            It fails with WorkerExitedError if the worker exits first, or with
            the spawn error if the worker cannot be started.

        Raises:
            OrchestratorDestroyedError: If the orchestrator was destroyed
        """
        if self._destroyed:
            raise OrchestratorDestroyedError("The orchestrator has been destroyed")

        if self._transition is not None:
            logger.debug("Restart already in flight, joining it")
            return self._transition

        loop = asyncio.get_running_loop()
        transition = loop.create_future()
        self._transition = transition

        role = WorkerRole.RECURRING if self._active is not None else WorkerRole.INITIAL
        task = loop.create_task(self._spawn(transition, role))
        self._spawning.add(task)
        task.add_done_callback(self._spawning.discard)
        return transition

    def schedule_restart(self) -> asyncio.Future | None:
        """Restart in the background, reporting failures through `error`.

        Returns:
            The transition future, or None if the orchestrator was destroyed
        """
        try:
            transition = self.restart()
        except OrchestratorDestroyedError:
            logger.debug("Not restarting, the orchestrator has been destroyed")
            return None

        if transition is not self._background_transition:
            self._background_transition = transition
            transition.add_done_callback(self._on_background_transition_done)
        return transition

    def _on_background_transition_done(self, transition: asyncio.Future) -> None:
        if transition.cancelled():
            return
        error = transition.exception()
        if error is None or isinstance(error, OrchestratorDestroyedError):
            return
        logger.error(f"Restart failed: {error}")
        self._emit(OrchestratorEvent.ERROR, error)

    def _settle(
        self,
        transition: asyncio.Future,
        result: WorkerInfo | None = None,
        error: BaseException | None = None,
    ) -> None:
        if transition is self._transition:
            self._transition = None
        if transition.done():
            return
        if error is not None:
            transition.set_exception(error)
        else:
            transition.set_result(result)

    async def _spawn(self, transition: asyncio.Future, role: WorkerRole) -> None:
        try:
            worker = await spawn_worker(self.options, role)
        except Exception as e:
            logger.error(f"Failed to spawn {role.value} worker: {e}")
            self._settle(transition, error=e)
            return

        self._workers.add(worker)
        if self._destroyed:
            logger.info(f"Orchestrator destroyed while spawning, retiring worker {worker.pid}")
            worker.advance(WorkerState.RETIRING)
            worker.kill()
        else:
            self._pending = worker

        watcher = asyncio.create_task(self._watch(worker))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

    async def _watch(self, worker: WorkerProcess) -> None:
        reader = asyncio.create_task(self._read_messages(worker))
        try:
            returncode = await worker.wait()
            # Let messages written just before the exit be handled first
            await asyncio.wait({reader}, timeout=EXIT_DRAIN_SECONDS)
        finally:
            if not reader.done():
                reader.cancel()
            worker.close()
        self._handle_exit(worker, returncode)

    async def _read_messages(self, worker: WorkerProcess) -> None:
        while True:
            received = await worker.receive()
            if received is None:
                return
            message, argument = received
            try:
                self._handle_message(worker, message, argument)
            except Exception as e:
                logger.error(
                    f"Failed to handle {message.name} from worker {worker.pid}: {e}",
                    exc_info=True,
                )
                self._emit(OrchestratorEvent.ERROR, e)

    # --- Handlers ---

    def _handle_message(self, worker: WorkerProcess, message: Message, argument: str | None) -> None:
        if message is Message.READY_TO_SERVE:
            self._handle_ready(worker)
        elif message is Message.REQUEST_RESTART:
            self._handle_restart_request(worker)
        elif message is Message.REQUEST_EXIT:
            self._handle_exit_request(worker, argument)
        else:
            logger.warning(f"Unexpected {message.name} from worker {worker.pid}")

    def _handle_ready(self, worker: WorkerProcess) -> None:
        if worker.ready_received:
            logger.debug(f"Ignoring duplicate ready message from worker {worker.pid}")
            return
        worker.ready_received = True

        if worker is not self._pending:
            logger.warning(f"Ignoring ready message from worker {worker.pid}, it is not pending")
            return

        # Promote first, then retire the previous worker without waiting for it
        previous = self._active
        self._active = worker
        self._pending = None
        worker.advance(WorkerState.ACTIVE)

        if previous is not None:
            logger.info(f"Retiring worker {previous.pid}")
            previous.advance(WorkerState.RETIRING)
            previous.kill()

        worker.send(Message.BEGIN_SERVING)
        logger.info(f"Worker {worker.pid} is now active")

        if self._transition is not None:
            self._settle(self._transition, result=worker.info())
        self._emit(OrchestratorEvent.ACTIVE, worker)

    def _handle_restart_request(self, worker: WorkerProcess) -> None:
        if worker is not self._active:
            logger.warning(f"Ignoring restart request from worker {worker.pid}, it is not active")
            return
        logger.info(f"Worker {worker.pid} requested a restart")
        self.schedule_restart()

    def _handle_exit_request(self, worker: WorkerProcess, argument: str | None) -> None:
        if worker is not self._active:
            logger.warning(f"Ignoring exit request from worker {worker.pid}, it is not active")
            return

        code = parse_exit_code(argument)
        logger.info(f"Worker {worker.pid} requested exit with code {code}")
        self._recover = False
        worker.advance(WorkerState.RETIRING)
        worker.kill()
        self.destroy()
        self._exit_process(code)

    def _handle_exit(self, worker: WorkerProcess, returncode: int | None) -> None:
        was_active = worker is self._active
        was_pending = worker is self._pending

        worker.advance(WorkerState.EXITED)
        self._workers.discard(worker)
        if was_active:
            self._active = None
        if was_pending:
            self._pending = None

        uptime = worker.uptime()
        if was_active or was_pending:
            logger.warning(
                f"Worker {worker.pid} exited unexpectedly with code {returncode} after {uptime:.1f}s"
            )
        else:
            logger.info(f"Worker {worker.pid} exited with code {returncode} after {uptime:.1f}s")
        self._emit(OrchestratorEvent.EXIT, worker, returncode)

        if was_pending and self._transition is not None:
            self._settle(self._transition, error=WorkerExitedError(worker.pid, returncode))

        if not self._recover or self._destroyed or not (was_active or was_pending):
            return

        if was_active:
            self._replenish_recover_attempts(worker)

        if self._recover_attempts > 0:
            self._recover_attempts -= 1
            logger.info(f"Recovering, {self._recover_attempts} attempts remaining")
            self.schedule_restart()
        else:
            logger.error("Recovery attempts exhausted, not restarting")
        self._emit(OrchestratorEvent.RECOVER, self._recover_attempts)

    def _replenish_recover_attempts(self, worker: WorkerProcess) -> None:
        """Reset the budget if the worker stayed active long enough to end a crash loop."""
        ttl_ms = self.options.recover_ttl_ms
        if ttl_ms is None or worker.activated_at is None:
            return
        if worker.active_for() * 1000 >= ttl_ms and self._recover_attempts < self.options.recover_attempts:
            logger.info(
                f"Worker {worker.pid} was active for {worker.active_for():.1f}s, "
                f"resetting recovery attempts to {self.options.recover_attempts}"
            )
            self._recover_attempts = self.options.recover_attempts

    # --- Shutdown ---

    def destroy(self) -> None:
        """Terminate all workers and refuse further restarts.

        Sends SIGTERM without waiting; use `aclose()` to wait for the workers.
        """
        if self._destroyed:
            return

        logger.info(f"Destroying orchestrator, terminating {len(self._workers)} workers")
        self._destroyed = True
        self._recover = False
        self._destroyed_event.set()

        if self._transition is not None:
            self._settle(
                self._transition,
                error=OrchestratorDestroyedError("The orchestrator was destroyed during a restart"),
            )

        for worker in list(self._workers):
            if worker.state in (WorkerState.STARTING, WorkerState.ACTIVE):
                worker.advance(WorkerState.RETIRING)
                worker.kill()

    async def aclose(self) -> None:
        """Destroy the orchestrator and wait for every worker to exit.

        Workers still running after `shutdown_timeout_ms` are killed.
        """
        self.destroy()

        if self._spawning:
            await asyncio.gather(*self._spawning, return_exceptions=True)

        workers = [w for w in self._workers if w.returncode is None]
        if workers:
            timeout = self.options.shutdown_timeout_ms / 1000
            waiters = [asyncio.create_task(w.wait()) for w in workers]
            _, still_running = await asyncio.wait(waiters, timeout=timeout)

            if still_running:
                for worker in workers:
                    if worker.returncode is None:
                        logger.warning(f"Worker {worker.pid} did not terminate, force killing")
                        worker.kill(signal.SIGKILL)
                await asyncio.gather(*still_running, return_exceptions=True)

        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)
        logger.info("Orchestrator closed")

    async def wait_destroyed(self) -> None:
        """Block until `destroy()` has been called."""
        await self._destroyed_event.wait()

    async def __aenter__(self) -> "Orchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


async def start(
    options: RolloverOptions | None = None,
    *,
    exit_process: Callable[[int], Any] = sys.exit,
    **kwargs: Any,
) -> Orchestrator:
    """Start an application with zero-downtime restarts.

    The first worker is spawned in the background; register listeners on the
    returned orchestrator to follow its progress.

    Args:
        options: Launch configuration; built from `kwargs` when omitted
        exit_process: Called with the exit code when a worker requests exit
        **kwargs: RolloverOptions fields

    Returns:
        The running orchestrator

    Raises:
        RoleError: If called from inside a worker process
        LaunchConfigError: If the application path cannot be accessed
    """
    if WorkerRole.from_environ(os.environ) is not None:
        raise RoleError(
            "start() can only be called from the supervisor, not from a worker process. "
            "Use is_supervisor() to tell them apart."
        )

    if options is None:
        options = RolloverOptions(**kwargs)

    path = Path(options.path)
    if not path.is_file():
        raise LaunchConfigError(f"Application path not found: {path}")
    if not os.access(path, os.R_OK):
        raise LaunchConfigError(f"Application path is not readable: {path}")

    orchestrator = Orchestrator(options, exit_process=exit_process)
    orchestrator.schedule_restart()
    return orchestrator
