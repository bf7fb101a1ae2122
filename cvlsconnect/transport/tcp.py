"""
TCP transport for the binary and the text (legacy) sockets.

The unit listens on two ports: the binary socket (default 5000) carries
framed binary commands, the legacy socket (default 50811) carries the text
protocol.

Example:
    >>> transport = AsyncTcpTransport("192.168.0.2", ProtocolConstants.BINARY_PORT)
    >>> async with transport:
    ...     await transport.write(frame)
"""

from __future__ import annotations

import asyncio

from cvlsconnect.protocol.constants import ProtocolConstants
from cvlsconnect.transport.stream import StreamTransport


class AsyncTcpTransport(StreamTransport):
    """
    Async TCP transport using asyncio streams.

    Attributes:
        host: Unit host name or IP address.
        port: TCP port.
    """

    def __init__(
        self,
        host: str = ProtocolConstants.DEFAULT_HOST,
        port: int = ProtocolConstants.BINARY_PORT,
        default_timeout: float = ProtocolConstants.DEFAULT_RECEIVE_TIMEOUT,
    ) -> None:
        """
        Initialize the TCP transport.

        Args:
            host: Unit host name or IP address (default: 192.168.0.2).
            port: TCP port (default: 5000, the binary socket).
            default_timeout: Default connect and read timeout in seconds.
        """
        super().__init__(default_timeout)
        self.host = host
        self.port = port

    @property
    def port_name(self) -> str:
        """Get the ``host:port`` identifier."""
        return f"{self.host}:{self.port}"

    async def _connect(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_connection(self.host, self.port)

    def __repr__(self) -> str:
        status = "open" if self.is_open else "closed"
        return f"AsyncTcpTransport({self.host!r}, {self.port}, {status})"
