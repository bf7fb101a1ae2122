"""
Transport layer for CV-LS communication.

Available transports:
- AsyncTcpTransport: Binary socket (port 5000) or legacy text socket (port 50811)
- AsyncSerialTransport: Text protocol on the serial port using pyserial-asyncio
- MockTransport: Mock transport for testing without hardware

Example:
    >>> from cvlsconnect.transport import AsyncTcpTransport
    >>> async with AsyncTcpTransport("192.168.0.2", 50811) as transport:
    ...     await transport.write(b"&f\\r\\n")
    ...     response = await transport.read_until(b"\\n")

Testing Example:
    >>> from cvlsconnect.transport import MockTransport
    >>> mock = MockTransport()
    >>> mock.add_response(b"&f1.20\\r\\n")
"""

from cvlsconnect.transport.abc import AbstractTransport
from cvlsconnect.transport.mock import MockTransport, ScriptedMockTransport
from cvlsconnect.transport.serial_async import AsyncSerialTransport
from cvlsconnect.transport.tcp import AsyncTcpTransport

__all__ = [
    "AbstractTransport",
    "AsyncSerialTransport",
    "AsyncTcpTransport",
    "MockTransport",
    "ScriptedMockTransport",
]
