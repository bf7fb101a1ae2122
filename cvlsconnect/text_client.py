"""
CV-LS text protocol client.

The text protocol is a line-oriented command/response protocol spoken on
the serial port and on the legacy TCP socket (port 50811). Commands are
ASCII, start with ``&`` and end with CRLF; the unit answers with one line
prefixed by the command, or with several lines closed by a line holding
``MULTILINECOMPLETE``.

Example:
    >>> from cvlsconnect import TextClient
    >>> from cvlsconnect.transport import AsyncSerialTransport
    >>>
    >>> async def main():
    ...     async with TextClient(AsyncSerialTransport("/dev/ttyUSB0")) as client:
    ...         status, text = await client.export_configuration()
    ...         print(status.state.name, len(text))
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from cvlsconnect.config import TransferTiming
from cvlsconnect.exceptions import ConnectionError, TimeoutError
from cvlsconnect.models.records import LogEntry, TransferStatus
from cvlsconnect.protocol.constants import ProtocolConstants, TextCommand
from cvlsconnect.transfer.engine import TransferEngine
from cvlsconnect.transfer.text import (
    TextConfigExport,
    TextConfigImport,
    TextFirmwareUpload,
    TextLogDownload,
)

if TYPE_CHECKING:
    from cvlsconnect.transport.abc import AbstractTransport

logger = logging.getLogger(__name__)

LINE_TERMINATOR = b"\r\n"


class TextClient:
    """
    Client for the CV-LS text protocol.

    Owns one transfer engine per capability. Only one command is on the
    wire at a time; a lock serializes callers.

    Attributes:
        transport: The underlying transport layer.
        firmware_uploader: Engine for firmware uploads.
        config_exporter: Engine for configuration (INI) exports.
        config_importer: Engine for configuration (INI) imports.
        log_downloader: Engine for event log downloads.
    """

    def __init__(
        self,
        transport: AbstractTransport,
        timeout: float = ProtocolConstants.TEXT_REPLY_TIMEOUT,
        timing: TransferTiming | None = None,
    ) -> None:
        """
        Initialize the text client.

        Args:
            transport: Transport layer for communication.
            timeout: Default reply timeout for single commands in seconds.
            timing: Timing and retry policy for transfers (default: text defaults).
        """
        self._transport = transport
        self._timeout = timeout
        self._timing = timing or TransferTiming.text()
        self._lock = asyncio.Lock()

        self._firmware = TextFirmwareUpload(self, self._timing)
        self._export = TextConfigExport(self, self._timing)
        self._import = TextConfigImport(self, self._timing)
        self._logs = TextLogDownload(self, self._timing)

        self.firmware_uploader = TransferEngine(self._firmware, self._connected, self._timing)
        self.config_exporter = TransferEngine(self._export, self._connected, self._timing)
        self.config_importer = TransferEngine(self._import, self._connected, self._timing)
        self.log_downloader = TransferEngine(self._logs, self._connected, self._timing)

    @property
    def transport(self) -> AbstractTransport:
        """Get the underlying transport."""
        return self._transport

    @property
    def is_connected(self) -> bool:
        """Check if the transport is open."""
        return self._transport.is_open

    def _connected(self) -> bool:
        return self._transport.is_open

    # ===== Connection =====

    async def connect(self, verify: bool = False) -> bool:
        """
        Open the transport.

        Args:
            verify: Send the ``&z`` liveness check and require a reply.

        Returns:
            True if connected (and the check was answered, when requested).
        """
        if not self._transport.is_open:
            logger.debug("Opening transport %s", self._transport.port_name)
            await self._transport.open()

        if not verify:
            return True

        lines = await self.send_command("&z")
        if not lines:
            logger.warning("No reply to liveness check on %s", self._transport.port_name)
            return False
        return True

    async def disconnect(self) -> None:
        """Stop running transfers and close the transport. Safe to call twice."""
        for engine in self.engines:
            await engine.stop()
        if self._transport.is_open:
            await self._transport.close()
        logger.debug("Disconnected from %s", self._transport.port_name)

    @property
    def engines(self) -> tuple[TransferEngine, ...]:
        """All transfer engines owned by this client."""
        return (
            self.firmware_uploader,
            self.config_exporter,
            self.config_importer,
            self.log_downloader,
        )

    # ===== Commands =====

    async def send_command(
        self,
        command: str | bytes,
        *,
        multiline: bool = False,
        timeout: float | None = None,
    ) -> list[str]:
        """
        Send a command and collect its reply lines.

        Single-line commands return after the first line. Multi-line
        commands read until a line holding ``MULTILINECOMPLETE``.

        Args:
            command: Command without terminator.
            multiline: Collect lines up to the end prompt.
            timeout: Reply timeout in seconds (default: client timeout).

        Returns:
            Reply lines without line terminators. Lines received before the
            timeout expired are returned; an empty list means no reply.

        Raises:
            ConnectionError: If the transport is not open.
        """
        if not self._transport.is_open:
            raise ConnectionError("Not connected")

        if isinstance(command, str):
            command = command.encode("ascii")
        effective_timeout = timeout if timeout is not None else self._timeout

        async with self._lock:
            self._transport.discard_buffers()
            await self._transport.write(command + LINE_TERMINATOR)
            return await self._read_lines(multiline, effective_timeout)

    async def _read_lines(self, multiline: bool, timeout: float) -> list[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        lines: list[str] = []

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                raw = await self._transport.read_until(b"\n", remaining)
            except TimeoutError:
                break

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            lines.append(line)
            if not multiline or ProtocolConstants.END_PROMPT in line:
                return lines

        if multiline and lines:
            logger.debug("Multi-line reply ended without end prompt after %d lines", len(lines))
        return lines

    async def query(self, command: str, prefix: str | None = None) -> str | None:
        """
        Send a single-line command and strip the expected reply prefix.

        Args:
            command: Command to send.
            prefix: Expected reply prefix (default: the command itself).

        Returns:
            The reply after the prefix, or None if there was no matching reply.
        """
        prefix = command if prefix is None else prefix
        lines = await self.send_command(command)
        if not lines or not lines[0].startswith(prefix):
            return None
        return lines[0][len(prefix) :]

    async def firmware_version(self) -> float:
        """
        Query the unit's firmware version.

        Returns:
            The version number, or 0.0 if it could not be read.
        """
        reply = await self.query(TextCommand.FIRMWARE_VERSION)
        if not reply:
            return 0.0
        try:
            return float(reply.split(" ")[0])
        except ValueError:
            logger.warning("Unparseable firmware version reply: %r", reply)
            return 0.0

    async def _count(self, command: str) -> int:
        reply = await self.query(f"{command}{TextCommand.COUNT_QUERY}", command)
        if reply is None:
            return -1
        try:
            return int(reply.strip())
        except ValueError:
            return -1

    async def ini_page_count(self) -> int:
        """Number of configuration export pages, or -1 if unknown."""
        return await self._count(TextCommand.CONFIG_EXPORT)

    async def log_count(self) -> int:
        """Number of event log entries, or -1 if unknown."""
        return await self._count(TextCommand.LOG_READ)

    async def read_log(self, index: int) -> LogEntry | None:
        """
        Read a single event log entry.

        Returns:
            The entry, or None if the unit has no entry at ``index``.
        """
        reply = await self.query(f"{TextCommand.LOG_READ}{index}", TextCommand.LOG_READ)
        if reply is None:
            return None
        return LogEntry.from_text(reply, index)

    async def clear_logs(self) -> bool:
        """
        Erase the unit's event log.

        Returns:
            True if the unit acknowledged the command.
        """
        return await self.query(TextCommand.CLEAR_LOGS) is not None

    # ===== Transfers =====

    async def upload_firmware(
        self,
        image: bytes,
        timeout: float = ProtocolConstants.DEFAULT_TRANSFER_TIMEOUT,
    ) -> TransferStatus:
        """Upload a firmware image and wait for the result."""
        return await self.firmware_uploader.run(image, timeout)

    async def export_configuration(
        self,
        timeout: float = ProtocolConstants.DEFAULT_TRANSFER_TIMEOUT,
    ) -> tuple[TransferStatus, str]:
        """
        Read the unit's configuration file.

        Returns:
            The final status and the configuration text received.
        """
        status = await self.config_exporter.run(timeout=timeout)
        return status, self._export.text

    async def import_configuration(
        self,
        ini: str | bytes,
        timeout: float = ProtocolConstants.DEFAULT_TRANSFER_TIMEOUT,
    ) -> TransferStatus:
        """Write a configuration file to the unit and wait for the result."""
        if isinstance(ini, str):
            ini = ini.encode("utf-8")
        return await self.config_importer.run(ini, timeout)

    async def download_logs(
        self,
        timeout: float = ProtocolConstants.DEFAULT_TRANSFER_TIMEOUT,
    ) -> tuple[TransferStatus, list[LogEntry]]:
        """
        Read the unit's event log.

        Returns:
            The final status and the entries received.
        """
        status = await self.log_downloader.run(timeout=timeout)
        return status, self._logs.entries

    async def __aenter__(self) -> TextClient:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit - stop transfers and close transport."""
        await self.disconnect()

    def __repr__(self) -> str:
        status = "connected" if self.is_connected else "disconnected"
        return f"TextClient({self._transport.port_name!r}, {status})"
