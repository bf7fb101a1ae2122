"""
cvlsconnect - Python library for paginated transfers with SCHOTT CV-LS light sources.

This library provides async communication with CV-LS units over the binary
Ethernet socket and the text protocol (serial port or legacy TCP socket),
supporting firmware upload, configuration (INI) export and import, and
event log download.

Example:
    >>> from cvlsconnect import BinaryClient
    >>> from cvlsconnect.transport import AsyncTcpTransport
    >>>
    >>> async def main():
    ...     async with BinaryClient(AsyncTcpTransport("192.168.0.2")) as client:
    ...         status, ini = await client.export_configuration(timeout=30.0)
    ...         print(status.state.name)
"""

from cvlsconnect.binary_client import BinaryClient
from cvlsconnect.config import TransferTiming
from cvlsconnect.exceptions import (
    ChecksumError,
    ConnectionError,
    CVLSConnectError,
    FrameError,
    ParseError,
    ProtocolError,
    TimeoutError,
    TransferAbort,
    TransportError,
)
from cvlsconnect.models.records import LogEntry, TransferState, TransferStatus
from cvlsconnect.text_client import TextClient
from cvlsconnect.transfer import TransferEngine, TransferStrategy
from cvlsconnect.transport import (
    AbstractTransport,
    AsyncSerialTransport,
    AsyncTcpTransport,
)

__version__ = "0.1.0"
__all__ = [
    # Clients
    "BinaryClient",
    "TextClient",
    # Transfers
    "TransferEngine",
    "TransferStrategy",
    "TransferTiming",
    # Models
    "TransferState",
    "TransferStatus",
    "LogEntry",
    # Exceptions
    "CVLSConnectError",
    "ProtocolError",
    "TimeoutError",
    "ConnectionError",
    "ParseError",
    "ChecksumError",
    "FrameError",
    "TransportError",
    "TransferAbort",
    # Transport
    "AbstractTransport",
    "AsyncSerialTransport",
    "AsyncTcpTransport",
    # Version
    "__version__",
]
