"""
Shared asyncio stream handling for socket and serial transports.

Both the TCP and the serial transport end up with an asyncio
``StreamReader``/``StreamWriter`` pair; subclasses only implement how the
pair is opened.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod

from cvlsconnect.exceptions import TimeoutError, TransportError
from cvlsconnect.protocol.constants import ProtocolConstants
from cvlsconnect.transport.abc import AbstractTransport

logger = logging.getLogger(__name__)

_RECEIVE_CHUNK = 4096


class StreamTransport(AbstractTransport):
    """
    Transport over an asyncio stream pair.

    Subclasses implement ``_connect`` to open the reader and writer.
    """

    def __init__(self, default_timeout: float = ProtocolConstants.DEFAULT_RECEIVE_TIMEOUT) -> None:
        self._default_timeout = default_timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @abstractmethod
    async def _connect(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open the underlying stream pair."""
        ...

    @property
    def is_open(self) -> bool:
        """Check if the stream is open and not at EOF."""
        return (
            self._writer is not None
            and not self._writer.is_closing()
            and self._reader is not None
            and not self._reader.at_eof()
        )

    async def open(self) -> None:
        """
        Open the connection.

        Raises:
            TransportError: If the connection cannot be established.
        """
        if self.is_open:
            return

        try:
            self._reader, self._writer = await asyncio.wait_for(
                self._connect(),
                timeout=self._default_timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(f"Timed out opening {self.port_name}") from None
        except OSError as e:
            raise TransportError(f"Failed to open {self.port_name}: {e}") from e

        logger.debug("Opened %s", self.port_name)

    async def close(self) -> None:
        """Close the connection. Safe to call multiple times."""
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is None:
            return

        try:
            writer.close()
            await writer.wait_closed()
        except OSError:
            logger.debug("Error while closing %s", self.port_name, exc_info=True)
        logger.debug("Closed %s", self.port_name)

    async def write(self, data: bytes) -> None:
        """
        Write data to the stream.

        Raises:
            TransportError: If the stream is not open or write fails.
        """
        if not self.is_open:
            raise TransportError(f"{self.port_name} is not open")

        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise TransportError(f"Write failed: {e}") from e

    async def read_until(
        self,
        terminator: bytes = b"\n",
        timeout: float | None = None,
    ) -> bytes:
        """
        Read data until ``terminator`` is received.

        Raises:
            TimeoutError: If timeout expires before the terminator arrives.
            TransportError: If the stream is not open or is closed mid-read.
        """
        reader = self._require_reader()
        effective_timeout = timeout if timeout is not None else self._default_timeout

        try:
            return await asyncio.wait_for(reader.readuntil(terminator), timeout=effective_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Timeout waiting for terminator {terminator!r}",
                timeout_seconds=effective_timeout,
            ) from None
        except asyncio.IncompleteReadError as e:
            if e.partial:
                raise TransportError(
                    f"Connection closed with partial data: {e.partial.hex()}"
                ) from e
            raise TransportError("Connection closed unexpectedly") from e
        except (asyncio.LimitOverrunError, OSError) as e:
            raise TransportError(f"Read failed: {e}") from e

    async def read(self, size: int, timeout: float | None = None) -> bytes:
        """
        Read exactly ``size`` bytes.

        Raises:
            TimeoutError: If timeout expires before all bytes are received.
            TransportError: If the stream is not open or is closed mid-read.
        """
        reader = self._require_reader()
        if size <= 0:
            return b""

        effective_timeout = timeout if timeout is not None else self._default_timeout

        try:
            return await asyncio.wait_for(reader.readexactly(size), timeout=effective_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Timeout waiting for {size} bytes",
                timeout_seconds=effective_timeout,
            ) from None
        except asyncio.IncompleteReadError as e:
            raise TransportError(
                f"Connection closed: expected {size} bytes, got {len(e.partial)}"
            ) from e
        except OSError as e:
            raise TransportError(f"Read failed: {e}") from e

    async def receive(self, timeout: float | None = None) -> bytes:
        """
        Read whatever bytes are available, waiting for at least one.

        Returns:
            Received bytes, or b"" at end of stream.

        Raises:
            TimeoutError: If nothing arrives within ``timeout``.
            TransportError: If the stream is not open or read fails.
        """
        reader = self._require_reader()
        effective_timeout = timeout if timeout is not None else self._default_timeout

        try:
            return await asyncio.wait_for(reader.read(_RECEIVE_CHUNK), timeout=effective_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                "Timeout waiting for data",
                timeout_seconds=effective_timeout,
            ) from None
        except OSError as e:
            raise TransportError(f"Read failed: {e}") from e

    def discard_buffers(self) -> None:
        """
        Discard data already buffered by the stream reader.

        Data still held by the operating system is not affected.
        """
        if self._reader is not None:
            buffered = getattr(self._reader, "_buffer", None)
            if buffered is not None:
                buffered.clear()

    def _require_reader(self) -> asyncio.StreamReader:
        if self._reader is None or self._writer is None or self._writer.is_closing():
            raise TransportError(f"{self.port_name} is not open")
        return self._reader
