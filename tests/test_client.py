"""Tests for the worker client."""

import asyncio

import pytest

from rollover import client as client_module
from rollover.client import WorkerClient
from rollover.exceptions import ChannelClosedError, HandshakeTimeoutError, RoleError
from rollover.protocol import (
    INITIAL_WORKER_ENV,
    IPC_TIMEOUT_ENV,
    RECURRING_WORKER_ENV,
    Message,
)


class FakeChannel:
    """In-memory stand-in for the worker end of the control channel."""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.sent = []
        self.listeners = []
        self.close_listeners = []

    def send(self, message, argument=None):
        if not self.connected:
            raise ChannelClosedError("closed")
        self.sent.append((message, argument))

    def add_listener(self, listener):
        self.listeners.append(listener)

    def remove_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def add_close_listener(self, listener):
        if not self.connected:
            listener()
            return
        self.close_listeners.append(listener)

    def remove_close_listener(self, listener):
        if listener in self.close_listeners:
            self.close_listeners.remove(listener)

    def deliver(self, message, argument=None):
        for listener in list(self.listeners):
            listener(message, argument)

    def close(self):
        self.connected = False
        for listener in list(self.close_listeners):
            listener()


def recurring_client(channel, timeout_ms=5000):
    env = {RECURRING_WORKER_ENV: "true", IPC_TIMEOUT_ENV: str(timeout_ms)}
    return WorkerClient(environ=env, channel=channel)


class TestRole:
    """Test role detection on the worker side."""

    def test_supervisor(self):
        """Test that an unmarked process is the supervisor."""
        assert WorkerClient(environ={}).is_supervisor() is True

    def test_worker(self):
        """Test that a marked process is a worker."""
        assert WorkerClient(environ={INITIAL_WORKER_ENV: "true"}).is_supervisor() is False

    def test_ipc_timeout_from_environment(self):
        """Test reading the hand-off timeout."""
        assert recurring_client(FakeChannel(), timeout_ms=250).ipc_timeout_ms == 250

    def test_invalid_ipc_timeout(self):
        """Test that a bad timeout falls back to the default."""
        client = WorkerClient(environ={RECURRING_WORKER_ENV: "true", IPC_TIMEOUT_ENV: "soon"})
        assert client.ipc_timeout_ms == 5000


class TestAwaitReady:
    """Test the readiness handshake."""

    @pytest.mark.asyncio
    async def test_supervisor_rejected(self):
        """Test that the supervisor cannot wait for a hand-off."""
        with pytest.raises(RoleError):
            WorkerClient(environ={}).await_ready()

    @pytest.mark.asyncio
    async def test_initial_resolves_immediately(self):
        """Test that the first worker does not wait for an answer."""
        channel = FakeChannel()
        client = WorkerClient(environ={INITIAL_WORKER_ENV: "true"}, channel=channel)

        future = client.await_ready()

        assert future.done()
        await future
        assert channel.sent == [(Message.READY_TO_SERVE, None)]

    @pytest.mark.asyncio
    async def test_initial_is_memoized(self):
        """Test that readiness is reported only once."""
        channel = FakeChannel()
        client = WorkerClient(environ={INITIAL_WORKER_ENV: "true"}, channel=channel)

        first = client.await_ready()
        second = client.await_ready()

        assert first is second
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_initial_without_channel(self):
        """Test that an initial worker can run without an orchestrator channel."""
        client = WorkerClient(environ={INITIAL_WORKER_ENV: "true"})

        await asyncio.wait_for(client.await_ready(), 1)

    @pytest.mark.asyncio
    async def test_recurring_waits_for_begin_serving(self):
        """Test the full hand-off for a replacement worker."""
        channel = FakeChannel()
        client = recurring_client(channel)

        future = client.await_ready()
        await asyncio.sleep(0)
        assert not future.done()
        assert channel.sent == [(Message.READY_TO_SERVE, None)]

        channel.deliver(Message.BEGIN_SERVING)
        await asyncio.wait_for(future, 1)

        assert channel.listeners == []
        assert channel.close_listeners == []

    @pytest.mark.asyncio
    async def test_recurring_ignores_other_messages(self):
        """Test that only begin-serving completes the wait."""
        channel = FakeChannel()
        future = recurring_client(channel).await_ready()

        channel.deliver(Message.REQUEST_RESTART)
        await asyncio.sleep(0.01)

        assert not future.done()
        future.cancel()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_the_wait(self):
        """Test that concurrent waits send a single ready message."""
        channel = FakeChannel()
        client = recurring_client(channel)

        futures = [client.await_ready() for _ in range(3)]
        channel.deliver(Message.BEGIN_SERVING)
        await asyncio.wait_for(asyncio.gather(*futures), 1)

        assert all(f is futures[0] for f in futures)
        assert channel.sent == [(Message.READY_TO_SERVE, None)]

    @pytest.mark.asyncio
    async def test_recurring_requires_channel(self):
        """Test that a replacement worker cannot wait without a channel."""
        client = WorkerClient(environ={RECURRING_WORKER_ENV: "true"})

        with pytest.raises(ChannelClosedError):
            client.await_ready()

    @pytest.mark.asyncio
    async def test_recurring_requires_open_channel(self):
        """Test that a closed channel fails immediately."""
        client = recurring_client(FakeChannel(connected=False))

        with pytest.raises(ChannelClosedError):
            client.await_ready()

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test that the wait fails after the configured timeout."""
        channel = FakeChannel()
        client = recurring_client(channel, timeout_ms=50)
        loop = asyncio.get_running_loop()

        started = loop.time()
        with pytest.raises(HandshakeTimeoutError, match="50ms"):
            await asyncio.wait_for(client.await_ready(), 2)
        elapsed = loop.time() - started

        assert elapsed >= 0.04
        assert elapsed < 1.0
        assert channel.listeners == []

    @pytest.mark.asyncio
    async def test_late_message_after_timeout(self):
        """Test that a late begin-serving cannot touch a failed wait."""
        channel = FakeChannel()
        client = recurring_client(channel, timeout_ms=20)
        future = client.await_ready()

        with pytest.raises(HandshakeTimeoutError):
            await future

        channel.deliver(Message.BEGIN_SERVING)
        await asyncio.sleep(0.01)
        assert isinstance(future.exception(), HandshakeTimeoutError)

    @pytest.mark.asyncio
    async def test_channel_closed_while_waiting(self):
        """Test that losing the orchestrator fails the wait."""
        channel = FakeChannel()
        future = recurring_client(channel).await_ready()

        channel.close()

        with pytest.raises(ChannelClosedError, match="before the hand-off"):
            await asyncio.wait_for(future, 1)

    @pytest.mark.asyncio
    async def test_reset_cancels_pending_wait(self):
        """Test that reset invalidates the memoized wait."""
        channel = FakeChannel()
        client = recurring_client(channel)

        first = client.await_ready()
        client.reset()
        await asyncio.sleep(0)

        assert first.cancelled()
        assert channel.listeners == []

        second = client.await_ready()
        assert second is not first
        assert len(channel.sent) == 2
        second.cancel()


class TestRequests:
    """Test restart and exit requests."""

    def test_request_restart(self):
        """Test asking for a rolling restart."""
        channel = FakeChannel()
        WorkerClient(environ={INITIAL_WORKER_ENV: "true"}, channel=channel).request_restart()

        assert channel.sent == [(Message.REQUEST_RESTART, None)]

    def test_request_exit(self):
        """Test asking for the application to exit."""
        channel = FakeChannel()
        WorkerClient(environ={RECURRING_WORKER_ENV: "true"}, channel=channel).request_exit(3)

        assert channel.sent == [(Message.REQUEST_EXIT, 3)]

    def test_requests_rejected_in_supervisor(self):
        """Test that the supervisor cannot send worker requests."""
        client = WorkerClient(environ={}, channel=FakeChannel())

        with pytest.raises(RoleError):
            client.request_restart()
        with pytest.raises(RoleError):
            client.request_exit(1)

    def test_request_without_channel(self):
        """Test that requests need a channel."""
        client = WorkerClient(environ={INITIAL_WORKER_ENV: "true"})

        with pytest.raises(ChannelClosedError):
            client.request_restart()


class TestDefaultClient:
    """Test the module level helpers."""

    def test_default_client_is_shared(self, monkeypatch):
        """Test that the process-wide client is created once."""
        monkeypatch.setattr(client_module, "_default_client", None)

        assert client_module.get_client() is client_module.get_client()

    def test_is_supervisor_reads_environment(self, monkeypatch):
        """Test the module level predicate."""
        monkeypatch.setattr(client_module, "_default_client", None)
        monkeypatch.delenv(INITIAL_WORKER_ENV, raising=False)
        monkeypatch.delenv(RECURRING_WORKER_ENV, raising=False)

        assert client_module.is_supervisor() is True

        monkeypatch.setenv(RECURRING_WORKER_ENV, "true")
        assert client_module.is_supervisor() is False

    @pytest.mark.asyncio
    async def test_reset_client(self, monkeypatch):
        """Test invalidating the process-wide wait."""
        channel = FakeChannel()
        client = recurring_client(channel)
        monkeypatch.setattr(client_module, "_default_client", client)

        first = client_module.await_ready()
        client_module.reset_client()
        await asyncio.sleep(0)

        assert first.cancelled()
