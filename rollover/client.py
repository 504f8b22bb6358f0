"""Worker side of the hand-off.

Code running inside a spawned worker uses this module to tell the
orchestrator that it is ready, to wait until it may begin serving, and to
ask for a restart or for the whole application to exit.

Example:
    from rollover import client

    async def main():
        app = await build_app()
        if not client.is_supervisor():
            await client.await_ready()
        await app.serve()
"""

import asyncio
import logging
import os
from collections.abc import Mapping

from .channel import WorkerChannel
from .exceptions import ChannelClosedError, HandshakeTimeoutError, RoleError
from .models import WorkerRole
from .protocol import DEFAULT_IPC_TIMEOUT_MS, IPC_TIMEOUT_ENV, Message

logger = logging.getLogger(__name__)


class WorkerClient:
    """Protocol endpoint for the current worker process."""

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        channel: WorkerChannel | None = None,
    ):
        """Initialize the client.

        Args:
            environ: Environment to read the markers from (defaults to os.environ)
            channel: Control channel; opened from the environment when omitted
        """
        self._environ = environ if environ is not None else os.environ
        self._channel = channel
        self._channel_opened = channel is not None
        self._ready: asyncio.Future | None = None

    @property
    def role(self) -> WorkerRole | None:
        """Role of this process, None in the supervisor."""
        return WorkerRole.from_environ(self._environ)

    def is_supervisor(self) -> bool:
        """Whether this process was not spawned by an orchestrator."""
        return self.role is None

    @property
    def channel(self) -> WorkerChannel | None:
        if not self._channel_opened:
            self._channel_opened = True
            self._channel = WorkerChannel.from_environ(self._environ)
        return self._channel

    @property
    def ipc_timeout_ms(self) -> int:
        raw = self._environ.get(IPC_TIMEOUT_ENV)
        if not raw:
            return DEFAULT_IPC_TIMEOUT_MS
        try:
            timeout = int(raw)
        except ValueError:
            logger.warning(
                f"Invalid {IPC_TIMEOUT_ENV}={raw!r}, using {DEFAULT_IPC_TIMEOUT_MS}ms"
            )
            return DEFAULT_IPC_TIMEOUT_MS
        return timeout if timeout > 0 else DEFAULT_IPC_TIMEOUT_MS

    def await_ready(self) -> asyncio.Future:
        """Report readiness and wait until this worker may begin serving.

        Repeated calls return the same future and send nothing more.

        Returns:
            Future resolving once serving may begin. It fails with
            HandshakeTimeoutError if the orchestrator does not answer in time,
            or with ChannelClosedError if the channel closes first.

        Raises:
            RoleError: If called from the supervisor
            ChannelClosedError: If a recurring worker has no open channel
        """
        if self._ready is not None:
            return self._ready

        role = self.role
        if role is None:
            raise RoleError(
                "await_ready() can only be called from a worker process, not from the supervisor"
            )

        loop = asyncio.get_running_loop()
        if role is WorkerRole.INITIAL:
            self._ready = self._announce_initial(loop)
        else:
            channel = self.channel
            if channel is None or not channel.connected:
                raise ChannelClosedError(
                    "A recurring worker needs an open control channel to the orchestrator"
                )
            self._ready = self._negotiate(channel, loop)
        return self._ready

    def _announce_initial(self, loop: asyncio.AbstractEventLoop) -> asyncio.Future:
        # There is no previous worker to wait for
        channel = self.channel
        if channel is None:
            logger.warning("No control channel, the orchestrator will not see this worker as ready")
        else:
            try:
                channel.send(Message.READY_TO_SERVE)
            except ChannelClosedError as e:
                logger.warning(f"Could not report readiness: {e}")

        future = loop.create_future()
        future.set_result(None)
        return future

    def _negotiate(self, channel: WorkerChannel, loop: asyncio.AbstractEventLoop) -> asyncio.Future:
        future = loop.create_future()
        timeout_ms = self.ipc_timeout_ms

        def cleanup(_=None):
            timer.cancel()
            channel.remove_listener(on_message)
            channel.remove_close_listener(on_close)

        def finish(error: BaseException | None = None) -> None:
            if future.done():
                return
            # Deregister first so a late message cannot touch a settled wait
            cleanup()
            if error is not None:
                future.set_exception(error)
            else:
                logger.info("Handed over, beginning to serve")
                future.set_result(None)

        def on_timeout() -> None:
            finish(HandshakeTimeoutError(
                f"The orchestrator did not answer within {timeout_ms}ms"
            ))

        # Listeners run on the channel's reader thread
        def on_message(message: Message, argument: str | None) -> None:
            if message is Message.BEGIN_SERVING:
                _call_soon(loop, finish)

        def on_close() -> None:
            _call_soon(loop, finish, ChannelClosedError(
                "The control channel closed before the hand-off completed"
            ))

        timer = loop.call_later(timeout_ms / 1000, on_timeout)
        future.add_done_callback(cleanup)
        channel.add_listener(on_message)
        channel.add_close_listener(on_close)

        logger.info(f"Ready to serve, waiting up to {timeout_ms}ms for the hand-off")
        try:
            channel.send(Message.READY_TO_SERVE)
        except ChannelClosedError as e:
            finish(e)
        return future

    def reset(self) -> None:
        """Forget the memoized readiness wait, cancelling it if still pending."""
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        self._ready = None

    def request_restart(self) -> None:
        """Ask the orchestrator to roll over to a fresh worker.

        Raises:
            RoleError: If called from the supervisor
            ChannelClosedError: If the channel is missing or closed
        """
        self._require_channel("request_restart()").send(Message.REQUEST_RESTART)

    def request_exit(self, code: int | str | None = 0) -> None:
        """Ask the orchestrator to stop every worker and exit with `code`.

        Raises:
            RoleError: If called from the supervisor
            ChannelClosedError: If the channel is missing or closed
            ValueError: If `code` is empty or contains whitespace
        """
        self._require_channel("request_exit()").send(Message.REQUEST_EXIT, code)

    def _require_channel(self, operation: str) -> WorkerChannel:
        if self.is_supervisor():
            raise RoleError(
                f"{operation} can only be called from a worker process, not from the supervisor"
            )
        channel = self.channel
        if channel is None:
            raise ChannelClosedError(f"{operation} needs a control channel to the orchestrator")
        return channel


def _call_soon(loop: asyncio.AbstractEventLoop, callback, *args) -> None:
    try:
        loop.call_soon_threadsafe(callback, *args)
    except RuntimeError:
        # Event loop already closed
        logger.debug("Dropping control message, the event loop is closed")


_default_client: WorkerClient | None = None


def get_client() -> WorkerClient:
    """Get the process-wide client, creating it on first use."""
    global _default_client
    if _default_client is None:
        _default_client = WorkerClient()
    return _default_client


def reset_client() -> None:
    """Invalidate the process-wide readiness wait."""
    if _default_client is not None:
        _default_client.reset()


def is_supervisor() -> bool:
    return get_client().is_supervisor()


def await_ready() -> asyncio.Future:
    return get_client().await_ready()


def request_restart() -> None:
    get_client().request_restart()


def request_exit(code: int | str | None = 0) -> None:
    get_client().request_exit(code)
