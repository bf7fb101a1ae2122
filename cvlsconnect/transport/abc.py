"""
Abstract transport interface for CV-LS communication.

Transports move raw bytes between the host and a light source. They know
nothing about frames, pages or text commands.

Implementations:
- AsyncTcpTransport: binary socket or text (legacy) socket over TCP
- AsyncSerialTransport: pyserial-asyncio based serial port
- MockTransport: for testing without hardware
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType


class AbstractTransport(ABC):
    """
    Abstract base class for CV-LS transports.

    Transports support the async context manager protocol:

        async with AsyncTcpTransport("192.168.0.2", 5000) as transport:
            await transport.write(frame)
            chunk = await transport.receive()

    Attributes:
        is_open: Whether the transport connection is currently open.
        port_name: Identifier for the transport (host:port or serial port).
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """
        Check if the transport connection is currently open.

        Returns:
            True if connected and ready for I/O, False otherwise.
        """
        ...

    @property
    @abstractmethod
    def port_name(self) -> str:
        """
        Get the transport identifier.

        Returns:
            Identifier string (e.g., "192.168.0.2:5000", "/dev/ttyUSB0").
        """
        ...

    @abstractmethod
    async def open(self) -> None:
        """
        Open the transport connection.

        Raises:
            TransportError: If the connection cannot be established.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """
        Close the transport connection.

        Safe to call multiple times. After closing, the transport can be
        reopened with open().
        """
        ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """
        Write raw bytes to the transport.

        Raises:
            TransportError: If the transport is not open or write fails.
        """
        ...

    @abstractmethod
    async def read_until(
        self,
        terminator: bytes = b"\n",
        timeout: float | None = None,
    ) -> bytes:
        """
        Read data until a terminator sequence is received.

        The terminator is included in the returned data.

        Raises:
            TimeoutError: If timeout expires before the terminator arrives.
            TransportError: If the transport is not open or read fails.
        """
        ...

    @abstractmethod
    async def read(self, size: int, timeout: float | None = None) -> bytes:
        """
        Read exactly ``size`` bytes.

        Raises:
            TimeoutError: If timeout expires before all bytes are received.
            TransportError: If the transport is not open or read fails.
        """
        ...

    @abstractmethod
    async def receive(self, timeout: float | None = None) -> bytes:
        """
        Read whatever bytes are available, waiting for at least one.

        Used by read pumps that feed an incremental decoder.

        Returns:
            One or more bytes, or b"" once the peer has closed the connection.

        Raises:
            TimeoutError: If nothing arrives within ``timeout``.
            TransportError: If the transport is not open or read fails.
        """
        ...

    @abstractmethod
    def discard_buffers(self) -> None:
        """Discard any pending received data."""
        ...

    async def __aenter__(self) -> AbstractTransport:
        """Async context manager entry - opens the transport."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Async context manager exit - closes the transport."""
        await self.close()
