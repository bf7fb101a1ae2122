"""
In-memory transport standing in for a light source.

Everything the host writes is recorded. Bytes "from the unit" come from
three places, all ending up in the same inbound stream:

- ``feed``: pushed at any time (unsolicited frames, late replies)
- ``add_response``: queued ahead of time
- a responder callback, invoked with every written buffer

Example:
    >>> from cvlsconnect.transport import MockTransport
    >>> from cvlsconnect import TextClient
    >>>
    >>> link = MockTransport()
    >>> link.add_response(b"&f1.20 CV-LS\\r\\n")
    >>>
    >>> async with TextClient(link) as client:
    ...     assert await client.firmware_version() == 1.2
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

from cvlsconnect.exceptions import TimeoutError, TransportError
from cvlsconnect.transport.abc import AbstractTransport

Responder = Callable[[bytes], "bytes | None"]


class MockTransport(AbstractTransport):
    """
    Transport backed by an in-memory byte stream.

    Attributes:
        written_data: Buffers passed to ``write``, in order.
    """

    def __init__(self, port_name: str = "mock://cvls", receive_timeout: float = 0.05) -> None:
        """
        Args:
            port_name: Name reported by ``port_name``.
            receive_timeout: Wait used by ``receive`` when no timeout is given.
        """
        self._name = port_name
        self._receive_timeout = receive_timeout
        self._open = False
        self._inbound = bytearray()
        self._sent: list[bytes] = []
        self._responder: Responder | None = None
        self._arrival = asyncio.Event()

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def port_name(self) -> str:
        return self._name

    @property
    def written_data(self) -> list[bytes]:
        return list(self._sent)

    @property
    def last_written(self) -> bytes | None:
        """The most recent buffer written, if any."""
        return self._sent[-1] if self._sent else None

    @property
    def pending(self) -> int:
        """Inbound bytes not yet consumed by a read."""
        return len(self._inbound)

    # ===== Simulating the unit =====

    def feed(self, data: bytes) -> None:
        """Make ``data`` readable immediately."""
        self._inbound += data
        self._arrival.set()

    def add_response(self, response: bytes) -> None:
        """Queue bytes behind everything already pending."""
        self.feed(response)

    def add_responses(self, *responses: bytes) -> None:
        for response in responses:
            self.feed(response)

    def set_response_callback(self, callback: Responder | None) -> None:
        """
        Install a responder called with every written buffer.

        A non-None return value becomes readable right away, so a request
        and its reply complete within one ``write`` call.
        """
        self._responder = callback

    def simulate_disconnect(self) -> None:
        """Behave as if the unit dropped the connection."""
        self._open = False
        self._arrival.set()

    def clear(self) -> None:
        """Forget written buffers and pending inbound bytes."""
        self._sent.clear()
        self._inbound.clear()
        self._arrival.clear()

    # ===== AbstractTransport =====

    async def open(self) -> None:
        if self._open:
            raise TransportError("Mock transport already open")
        self._open = True

    async def close(self) -> None:
        self._open = False
        self._arrival.set()

    async def write(self, data: bytes) -> None:
        self._ensure_open()
        data = bytes(data)
        self._sent.append(data)
        if self._responder is not None:
            reply = self._responder(data)
            if reply is not None:
                self.feed(reply)

    async def read_until(self, terminator: bytes = b"\n", timeout: float | None = None) -> bytes:
        """
        Consume one terminated chunk from the inbound stream.

        Never waits: if no terminator is pending the read times out at once.
        """
        self._ensure_open()
        end = self._inbound.find(terminator)
        if end < 0:
            raise TimeoutError("No terminated data pending", timeout_seconds=timeout)
        return self._take(end + len(terminator))

    async def read(self, size: int, timeout: float | None = None) -> bytes:
        self._ensure_open()
        if len(self._inbound) < size:
            raise TimeoutError(
                f"Wanted {size} bytes, {len(self._inbound)} pending",
                timeout_seconds=timeout,
            )
        return self._take(size)

    async def receive(self, timeout: float | None = None) -> bytes:
        """
        Consume everything pending, waiting for an arrival if nothing is.

        Returns:
            The pending bytes, or b"" once the link is closed.
        """
        wait = self._receive_timeout if timeout is None else timeout
        while not self._inbound:
            if not self._open:
                return b""
            self._arrival.clear()
            try:
                await asyncio.wait_for(self._arrival.wait(), timeout=wait)
            except asyncio.TimeoutError:
                raise TimeoutError("Nothing received", timeout_seconds=wait) from None
        return self._take(len(self._inbound))

    def discard_buffers(self) -> None:
        self._inbound.clear()

    def _take(self, count: int) -> bytes:
        chunk = bytes(self._inbound[:count])
        del self._inbound[:count]
        return chunk

    def _ensure_open(self) -> None:
        if not self._open:
            raise TransportError("Mock transport not open")


@dataclass(frozen=True)
class ScriptStep:
    """One expected write and the unit's answer to it (None matches any write)."""

    response: bytes
    request: bytes | None = None


class ScriptedMockTransport(MockTransport):
    """
    Mock transport answering writes from a fixed script.

    Each write consumes the next step; writes past the end of the script
    get no answer.

    Example:
        >>> link = ScriptedMockTransport()
        >>> link.expect(request=b"&f\\r\\n", response=b"&f1.20\\r\\n")
    """

    def __init__(self, port_name: str = "mock://scripted") -> None:
        super().__init__(port_name)
        self._steps: list[ScriptStep] = []
        self._position = 0
        self.set_response_callback(self._next_step)

    def expect(self, response: bytes, request: bytes | None = None) -> None:
        self._steps.append(ScriptStep(response, request))

    @property
    def script_complete(self) -> bool:
        """True once every step has been consumed."""
        return self._position >= len(self._steps)

    def reset_script(self) -> None:
        """Rewind to the first step and drop unread answers."""
        self._position = 0
        self.discard_buffers()

    def _next_step(self, data: bytes) -> bytes | None:
        if self.script_complete:
            return None
        step = self._steps[self._position]
        if step.request is not None and step.request != data:
            raise AssertionError(
                f"Script step {self._position} expected {step.request!r}, got {data!r}"
            )
        self._position += 1
        return step.response
