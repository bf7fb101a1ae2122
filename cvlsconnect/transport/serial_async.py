"""
Async serial transport using pyserial-asyncio.

CV-LS units expose the text protocol on their RS-232 / USB serial port.

Serial Configuration (factory defaults):
- Baud rate: 115200
- Data bits: 8
- Parity: None
- Stop bits: 1
- Flow control: None

Example:
    >>> transport = AsyncSerialTransport("/dev/ttyUSB0")
    >>> async with transport:
    ...     await transport.write(b"&f\\r\\n")
    ...     line = await transport.read_until(b"\\n")
"""

from __future__ import annotations

import asyncio

import serial
import serial_asyncio

from cvlsconnect.exceptions import TransportError
from cvlsconnect.protocol.constants import ProtocolConstants
from cvlsconnect.transport.stream import StreamTransport


class AsyncSerialTransport(StreamTransport):
    """
    Async serial transport using pyserial-asyncio.

    Attributes:
        port_name: Serial port path (e.g., "/dev/ttyUSB0", "COM3").
        baudrate: Configured baud rate.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = ProtocolConstants.DEFAULT_BAUD_RATE,
        parity: str = serial.PARITY_NONE,
        stopbits: float = serial.STOPBITS_ONE,
        default_timeout: float = ProtocolConstants.DEFAULT_RECEIVE_TIMEOUT,
    ) -> None:
        """
        Initialize the async serial transport.

        Args:
            port: Serial port path (e.g., "/dev/ttyUSB0", "COM3").
            baudrate: Baud rate (default: 115200).
            parity: pyserial parity constant (default: none).
            stopbits: pyserial stop bits constant (default: one).
            default_timeout: Default read timeout in seconds.
        """
        super().__init__(default_timeout)
        self._port = port
        self._baudrate = baudrate
        self._parity = parity
        self._stopbits = stopbits
        self._serial_instance: serial.Serial | None = None

    @property
    def port_name(self) -> str:
        """Get the serial port path."""
        return self._port

    @property
    def baudrate(self) -> int:
        """Get the configured baud rate."""
        return self._baudrate

    async def _connect(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            reader, writer = await serial_asyncio.open_serial_connection(
                url=self._port,
                baudrate=self._baudrate,
                parity=self._parity,
                stopbits=self._stopbits,
                bytesize=serial.EIGHTBITS,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
        except serial.SerialException as e:
            raise TransportError(f"Failed to open serial port {self._port}: {e}") from e

        transport = writer.transport
        if hasattr(transport, "serial"):
            self._serial_instance = transport.serial
        return reader, writer

    async def close(self) -> None:
        """Close the serial port. Safe to call multiple times."""
        await super().close()
        self._serial_instance = None

    def discard_buffers(self) -> None:
        """
        Discard pending data in the stream reader and the serial port buffers.
        """
        super().discard_buffers()
        if self._serial_instance is not None:
            try:
                self._serial_instance.reset_input_buffer()
                self._serial_instance.reset_output_buffer()
            except serial.SerialException:
                # Port may already be closed
                pass

    def __repr__(self) -> str:
        status = "open" if self.is_open else "closed"
        return f"AsyncSerialTransport({self._port!r}, baudrate={self._baudrate}, {status})"
