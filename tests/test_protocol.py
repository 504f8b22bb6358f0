"""Tests for the handshake protocol."""

import pytest

from rollover.exceptions import ProtocolError
from rollover.protocol import Message, decode_message, encode_message, parse_exit_code


class TestEncodeMessage:
    """Test encoding control messages."""

    def test_message_without_argument(self):
        """Test that a plain message is a newline-terminated token."""
        assert encode_message(Message.READY_TO_SERVE) == b"ROLLOVER_IS_READY_TO_SERVE\n"

    def test_exit_with_code(self):
        """Test that the exit code is appended after a colon."""
        assert encode_message(Message.REQUEST_EXIT, 3) == b"ROLLOVER_REQUEST_EXIT:3\n"

    def test_argument_rejected_for_other_messages(self):
        """Test that only the exit request takes an argument."""
        with pytest.raises(ValueError, match="does not take an argument"):
            encode_message(Message.REQUEST_RESTART, 1)

    def test_argument_cannot_inject_a_message(self):
        """Test that a line break in the exit code is rejected."""
        with pytest.raises(ValueError, match="Invalid argument"):
            encode_message(Message.REQUEST_EXIT, "0\nROLLOVER_REQUEST_RESTART")

    @pytest.mark.parametrize("argument", ["", "1 2", "3\t", "\r"])
    def test_argument_with_whitespace_rejected(self, argument):
        """Test that empty or whitespace-containing codes are rejected."""
        with pytest.raises(ValueError, match="Invalid argument"):
            encode_message(Message.REQUEST_EXIT, argument)

    def test_signal_name_argument(self):
        """Test that a signal name is a valid exit argument."""
        assert encode_message(Message.REQUEST_EXIT, "SIGTERM") == b"ROLLOVER_REQUEST_EXIT:SIGTERM\n"


class TestDecodeMessage:
    """Test decoding control messages."""

    def test_decode_bytes(self):
        """Test decoding a raw line."""
        assert decode_message(b"ROLLOVER_SHOULD_BEGIN_TO_SERVE\n") == (Message.BEGIN_SERVING, None)

    def test_decode_text_with_whitespace(self):
        """Test that surrounding whitespace is ignored."""
        assert decode_message("  ROLLOVER_REQUEST_RESTART \r\n") == (Message.REQUEST_RESTART, None)

    def test_decode_exit_argument(self):
        """Test that the exit argument is returned as text."""
        assert decode_message(b"ROLLOVER_REQUEST_EXIT:SIGTERM\n") == (Message.REQUEST_EXIT, "SIGTERM")

    def test_unknown_token(self):
        """Test that unknown tokens are rejected."""
        with pytest.raises(ProtocolError, match="Unknown control message"):
            decode_message(b"HELLO\n")

    def test_argument_on_non_exit_message(self):
        """Test that stray arguments are rejected."""
        with pytest.raises(ProtocolError, match="does not take an argument"):
            decode_message("ROLLOVER_IS_READY_TO_SERVE:1")


class TestParseExitCode:
    """Test turning exit request arguments into exit codes."""

    @pytest.mark.parametrize("argument", [None, "", "  ", "None", "null", "undefined"])
    def test_missing_means_success(self, argument):
        """Test that a missing code exits cleanly."""
        assert parse_exit_code(argument) == 0

    def test_integer(self):
        """Test that integers are used as-is."""
        assert parse_exit_code("42") == 42

    def test_signal_name(self):
        """Test shell convention for signal names."""
        assert parse_exit_code("SIGINT") == 130
        assert parse_exit_code("sigterm") == 143

    def test_garbage(self):
        """Test that unrecognised codes become a generic failure."""
        assert parse_exit_code("not-a-code") == 1
