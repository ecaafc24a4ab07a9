"""
Shared fixtures: an in-memory transport and a recording event sink.
"""
import asyncio
from typing import List, Optional

import pytest

from cmdserver.config import Settings
from cmdserver.events import MemoryEventSink
from cmdserver.exceptions import ReceiveError, SendError
from cmdserver.engine.transport import ConnectionTransport, ReceiveResult
from cmdserver.models import ConnectionState


class FakeTransport(ConnectionTransport):
    """Transport fed by the test instead of a socket."""

    def __init__(self, peer: Optional[str] = "127.0.0.1:50000"):
        super().__init__()
        self._peer = peer
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._idle = asyncio.Event()
        self.sent: List[bytes] = []
        self.receive_calls: List[tuple] = []
        self.states: List[ConnectionState] = []
        self.cancel_count = 0
        self.cancelled = False
        self.fail_sends = False
        self.start_error: Optional[Exception] = None
        self.wait_closed_calls = 0

    @property
    def peer(self) -> Optional[str]:
        return self._peer

    def _set_state(self, state, error=None):
        self.states.append(state)
        super()._set_state(state, error)

    # Test controls

    def feed(self, data: bytes) -> None:
        self._idle.clear()
        self._inbox.put_nowait(ReceiveResult(data))

    def feed_eof(self, data: bytes = b"") -> None:
        self._idle.clear()
        self._inbox.put_nowait(ReceiveResult(data, is_complete=True))

    def feed_error(self, error: Exception) -> None:
        self._idle.clear()
        self._inbox.put_nowait(ReceiveResult(error=error))

    def report(self, state: ConnectionState, error: Optional[Exception] = None) -> None:
        """Push a state change as the network layer would."""
        self._set_state(state, error)

    async def settle(self, timeout: float = 1.0) -> None:
        """Wait until everything fed so far has been consumed."""
        await asyncio.wait_for(self._idle.wait(), timeout)
        await asyncio.sleep(0)

    @property
    def lines(self) -> List[str]:
        return [data.decode() for data in self.sent]

    # ConnectionTransport

    def start(self, state_handler=None) -> None:
        if self.start_error is None:
            super().start(state_handler)
            return
        self._state_handler = state_handler
        self._set_state(ConnectionState.FAILED, self.start_error)

    async def receive(self, minimum: int = 1, maximum: int = 512) -> ReceiveResult:
        self.receive_calls.append((minimum, maximum))
        if self.cancelled:
            return ReceiveResult(error=ReceiveError("Transport cancelled"))
        if self._inbox.empty():
            self._idle.set()
        result = await self._inbox.get()
        return result

    async def send(self, data: bytes) -> None:
        if self.cancelled:
            raise SendError("Not connected")
        if self.fail_sends:
            raise SendError("Simulated send failure")
        self.sent.append(data)

    def cancel(self) -> None:
        self.cancel_count += 1
        if self.cancelled:
            return
        self.cancelled = True
        self._set_state(ConnectionState.CANCELLED)
        self._state_handler = None
        # wake a pending receive
        self._inbox.put_nowait(ReceiveResult(is_complete=True))

    async def wait_closed(self) -> None:
        self.wait_closed_calls += 1


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sink():
    return MemoryEventSink()


@pytest.fixture
def test_settings(tmp_path):
    return Settings(log_dir=tmp_path / "logs")
