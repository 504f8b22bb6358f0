"""Control channel between the orchestrator and a worker.

Each worker gets one end of a Unix socket pair, inherited as a file
descriptor whose number is published in the worker's environment. The
orchestrator reads its end with asyncio; the worker end is served by a
daemon reader thread so that plain synchronous code can use it too.
"""

import asyncio
import logging
import socket
import threading
from collections.abc import Callable, Mapping

from .exceptions import ChannelClosedError, ProtocolError
from .protocol import CONTROL_FD_ENV, Message, decode_message, encode_message

logger = logging.getLogger(__name__)

MessageListener = Callable[[Message, str | None], None]
CloseListener = Callable[[], None]


def create_channel_pair() -> tuple[socket.socket, socket.socket]:
    """Create a connected (parent, child) socket pair.

    The child end is handed to the worker through `pass_fds`, which makes it
    inheritable in the worker only.
    """
    return socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)


class SupervisorChannel:
    """Orchestrator end of a worker's control channel."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer

    @classmethod
    async def open(cls, sock: socket.socket) -> "SupervisorChannel":
        """Wrap a connected socket in asyncio streams."""
        reader, writer = await asyncio.open_unix_connection(sock=sock)
        return cls(reader, writer)

    async def receive(self) -> tuple[Message, str | None] | None:
        """Wait for the next message from the worker.

        Lines that cannot be decoded are logged and skipped.

        Returns:
            Tuple of (message, argument), or None once the channel is closed
        """
        while True:
            try:
                line = await self._reader.readline()
            except ValueError as e:
                logger.warning(f"Discarding oversized control message: {e}")
                continue
            except (ConnectionError, OSError) as e:
                logger.debug(f"Control channel read failed: {e}")
                return None

            if not line:
                return None
            if not line.strip():
                continue

            try:
                return decode_message(line)
            except ProtocolError as e:
                logger.warning(str(e))

    def send(self, message: Message) -> bool:
        """Send a message to the worker, best effort.

        A closed channel is not an error here: the worker's exit event is
        what the orchestrator reacts to.

        Returns:
            True if the message was handed to the transport
        """
        if self._writer.is_closing():
            logger.debug(f"Not sending {message.name}, channel already closed")
            return False
        try:
            self._writer.write(encode_message(message))
            return True
        except (ConnectionError, OSError, RuntimeError) as e:
            logger.debug(f"Failed to send {message.name}: {e}")
            return False

    def close(self) -> None:
        """Close the orchestrator end."""
        if not self._writer.is_closing():
            self._writer.close()


class WorkerChannel:
    """Worker end of the control channel.

    Incoming messages are decoded by a daemon thread and dispatched to the
    registered listeners on that thread. Listeners that need to touch an
    event loop must hop over with `call_soon_threadsafe`.
    """

    def __init__(self, sock: socket.socket):
        self._sock = sock
        self._listeners: list[MessageListener] = []
        self._close_listeners: list[CloseListener] = []
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._closed = False
        self._reader_thread: threading.Thread | None = None

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "WorkerChannel | None":
        """Open the channel advertised in the environment.

        Returns:
            The channel, or None if no usable descriptor was inherited
        """
        raw_fd = environ.get(CONTROL_FD_ENV)
        if not raw_fd:
            return None

        try:
            fd = int(raw_fd)
            sock = socket.socket(fileno=fd)
        except (ValueError, OSError) as e:
            logger.warning(f"Cannot open control channel from {CONTROL_FD_ENV}={raw_fd!r}: {e}")
            return None

        # Keep the descriptor out of anything this worker spawns
        sock.set_inheritable(False)
        return cls(sock)

    @property
    def connected(self) -> bool:
        return not self._closed

    def send(self, message: Message, argument: str | int | None = None) -> None:
        """Send a message to the orchestrator.

        Raises:
            ChannelClosedError: If the channel is closed or the write fails
        """
        if self._closed:
            raise ChannelClosedError(
                f"Cannot send {message.name}: the control channel is closed"
            )
        data = encode_message(message, argument)
        with self._send_lock:
            try:
                self._sock.sendall(data)
            except OSError as e:
                self._mark_closed()
                raise ChannelClosedError(f"Cannot send {message.name}: {e}") from e

    def add_listener(self, listener: MessageListener) -> None:
        with self._lock:
            self._listeners.append(listener)
        self._ensure_reader()

    def remove_listener(self, listener: MessageListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def add_close_listener(self, listener: CloseListener) -> None:
        """Register a callback for channel closure; runs at once if already closed."""
        with self._lock:
            closed = self._closed
            if not closed:
                self._close_listeners.append(listener)
        if closed:
            listener()
            return
        self._ensure_reader()

    def remove_close_listener(self, listener: CloseListener) -> None:
        with self._lock:
            if listener in self._close_listeners:
                self._close_listeners.remove(listener)

    def close(self) -> None:
        """Close the worker end; the orchestrator will see end-of-file."""
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()
        self._mark_closed()

    def _ensure_reader(self) -> None:
        with self._lock:
            if self._reader_thread is not None or self._closed:
                return
            self._reader_thread = threading.Thread(
                target=self._read_loop,
                daemon=True,
                name="RolloverChannelReader",
            )
        self._reader_thread.start()

    def _read_loop(self) -> None:
        try:
            with self._sock.makefile("rb") as stream:
                for line in stream:
                    if not line.strip():
                        continue
                    try:
                        message, argument = decode_message(line)
                    except ProtocolError as e:
                        logger.warning(str(e))
                        continue
                    self._dispatch(message, argument)
        except (OSError, ValueError) as e:
            logger.debug(f"Control channel reader stopped: {e}")
        finally:
            self._mark_closed()

    def _dispatch(self, message: Message, argument: str | None) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(message, argument)
            except Exception as e:
                logger.error(f"Control channel listener failed: {e}", exc_info=True)

    def _mark_closed(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            listeners = list(self._close_listeners)
            self._close_listeners.clear()
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Control channel close listener failed: {e}", exc_info=True)
