"""Handshake protocol shared by the orchestrator and its workers.

Messages are small self-describing tokens written one per line over the
worker's control channel. Only the exit request carries an argument, the
requested exit code, appended after a colon.
"""

import logging
import signal
from enum import Enum

from .exceptions import ProtocolError

logger = logging.getLogger(__name__)

# Environment markers set on every spawned worker
INITIAL_WORKER_ENV = "ROLLOVER_INITIAL_WORKER"
RECURRING_WORKER_ENV = "ROLLOVER_RECURRING_WORKER"
IPC_TIMEOUT_ENV = "ROLLOVER_IPC_TIMEOUT_MS"
CONTROL_FD_ENV = "ROLLOVER_CONTROL_FD"

DEFAULT_IPC_TIMEOUT_MS = 5000
DEFAULT_RECOVER_ATTEMPTS = 100
DEFAULT_RECOVER_TTL_MS = 1000

ARGUMENT_SEPARATOR = ":"


class Message(str, Enum):
    """Control channel message tokens."""

    READY_TO_SERVE = "ROLLOVER_IS_READY_TO_SERVE"
    BEGIN_SERVING = "ROLLOVER_SHOULD_BEGIN_TO_SERVE"
    REQUEST_RESTART = "ROLLOVER_REQUEST_RESTART"
    REQUEST_EXIT = "ROLLOVER_REQUEST_EXIT"


def encode_message(message: Message, argument: str | int | None = None) -> bytes:
    """Encode a message as a newline-terminated line.

    Args:
        message: Message to encode
        argument: Optional argument, only allowed for REQUEST_EXIT

    Returns:
        Encoded line ready to be written to the channel

    Raises:
        ValueError: If an argument is given for a message that takes none, or
            the argument is empty or contains whitespace
    """
    token = message.value
    if argument is not None:
        if message is not Message.REQUEST_EXIT:
            raise ValueError(f"{message.name} does not take an argument")
        text = str(argument)
        # A line break would split the argument into a second message
        if not text or any(c.isspace() for c in text):
            raise ValueError(f"Invalid argument for {message.name}: {text!r}")
        token = f"{token}{ARGUMENT_SEPARATOR}{text}"
    return f"{token}\n".encode("utf-8")


def decode_message(raw: bytes | str) -> tuple[Message, str | None]:
    """Decode a single line received from the channel.

    Args:
        raw: Line as bytes or text, with or without the trailing newline

    Returns:
        Tuple of (message, argument); argument is None when absent

    Raises:
        ProtocolError: If the line is not a known message
    """
    line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    line = line.strip()

    token, separator, argument = line.partition(ARGUMENT_SEPARATOR)
    try:
        message = Message(token)
    except ValueError:
        raise ProtocolError(f"Unknown control message: {line!r}") from None

    if not separator:
        return message, None
    if message is not Message.REQUEST_EXIT:
        raise ProtocolError(f"{message.name} does not take an argument: {line!r}")
    return message, argument


def parse_exit_code(argument: str | None) -> int:
    """Turn the argument of an exit request into a process exit code.

    Integers are used as-is and signal names follow the shell convention of
    128 + signal number. A missing argument means success.

    Examples:
        >>> parse_exit_code(None)
        0
        >>> parse_exit_code("3")
        3
        >>> parse_exit_code("SIGTERM")
        143
    """
    if argument is None:
        return 0
    argument = argument.strip()
    if not argument or argument in ("None", "null", "undefined"):
        return 0

    try:
        return int(argument)
    except ValueError:
        pass

    try:
        return 128 + signal.Signals[argument.upper()].value
    except KeyError:
        logger.warning(f"Unrecognised exit code {argument!r}, exiting with 1")
        return 1
