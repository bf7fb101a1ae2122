"""
CV-LS binary socket client.

The binary socket (TCP port 5000) carries framed commands in both
directions. The unit pushes status reports and echoes transfer pages at any
time, so a read pump task decodes incoming frames and routes them: page
replies to the matching transfer engine, keep-alives to the connection
watchdog, messages to subscribers.

The client implements a small connection state machine:
    DISCONNECTED -> connect() -> CONNECTED
    CONNECTED -> keep-alive lost / unit disconnect -> DISCONNECTED
    CONNECTED -> disconnect() -> DISCONNECTED

Example:
    >>> from cvlsconnect import BinaryClient
    >>> from cvlsconnect.transport import AsyncTcpTransport
    >>>
    >>> async def main():
    ...     async with BinaryClient(AsyncTcpTransport("192.168.0.2")) as client:
    ...         status, entries = await client.download_logs(timeout=30.0)
    ...         for entry in entries:
    ...             print(entry.timestamp, entry.message)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Callable

from cvlsconnect.config import TransferTiming
from cvlsconnect.exceptions import ConnectionError, TimeoutError, TransportError
from cvlsconnect.models.records import LogEntry, TransferStatus
from cvlsconnect.protocol.command_word import CommandWord
from cvlsconnect.protocol.constants import (
    AdminCommand,
    CommandSet,
    ProtocolConstants,
    SystemCommand,
)
from cvlsconnect.protocol.framing import DecodedFrame, FrameDecoder, build_frame
from cvlsconnect.transfer.binary import (
    BinaryConfigExport,
    BinaryConfigImport,
    BinaryFirmwareUpload,
    BinaryLogDownload,
)
from cvlsconnect.transfer.engine import PageReply, TransferEngine

if TYPE_CHECKING:
    from cvlsconnect.transport.abc import AbstractTransport

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str], None]
FrameCallback = Callable[[DecodedFrame], None]

# Poll interval of the read pump while the unit is silent
_PUMP_POLL_INTERVAL = 0.1

_SYSTEM_MESSAGES: dict[int, str] = {
    SystemCommand.LOGIN_REQUEST: "Please Log In!",
    SystemCommand.LOGIN_FAILED: "Login Failed! Incorrect Username or Password.",
}


class BinaryClient:
    """
    Client for the CV-LS binary socket.

    Owns the frame decoder, the read pump, the keep-alive watchdog and one
    transfer engine per capability.

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
        keepalive_interval: float | None = ProtocolConstants.KEEPALIVE_INTERVAL,
        timing: TransferTiming | None = None,
    ) -> None:
        """
        Initialize the binary client.

        Args:
            transport: Transport layer for communication.
            keepalive_interval: Seconds between keep-alives; None disables
                the keep-alive watchdog.
            timing: Timing and retry policy for transfers (default: binary defaults).
        """
        self._transport = transport
        self._keepalive_interval = keepalive_interval
        self._timing = timing or TransferTiming.binary()
        self._decoder = FrameDecoder()

        self._pump_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._keepalive_missed = 0
        self._peer_closed = False
        self._firmware_waiter: asyncio.Future[str] | None = None

        self._message_subscribers: list[MessageCallback] = []
        self._frame_subscribers: list[FrameCallback] = []

        self._firmware = BinaryFirmwareUpload(self)
        self._export = BinaryConfigExport(self)
        self._import = BinaryConfigImport(self)
        self._logs = BinaryLogDownload(self)

        self.firmware_uploader = TransferEngine(self._firmware, self._connected, self._timing)
        self.config_exporter = TransferEngine(self._export, self._connected, self._timing)
        self.config_importer = TransferEngine(self._import, self._connected, self._timing)
        self.log_downloader = TransferEngine(self._logs, self._connected, self._timing)

        self._page_routes: dict[int, TransferEngine] = {
            AdminCommand.FIRMWARE: self.firmware_uploader,
            AdminCommand.CONFIG_EXPORT: self.config_exporter,
            AdminCommand.CONFIG_IMPORT: self.config_importer,
            AdminCommand.CONFIG_IMPORT_COMPLETE: self.config_importer,
            AdminCommand.CONFIG_IMPORT_LOG_READ: self.config_importer,
            AdminCommand.LOGS_READ: self.log_downloader,
        }
        self._count_routes: dict[int, TransferEngine] = {
            AdminCommand.CONFIG_EXPORT_COUNT: self.config_exporter,
            AdminCommand.LOGS_COUNT: self.log_downloader,
        }

    # ===== Public State =====

    @property
    def transport(self) -> AbstractTransport:
        """Get the underlying transport."""
        return self._transport

    @property
    def is_connected(self) -> bool:
        """Check if the client holds an open connection."""
        return self._transport.is_open and not self._peer_closed

    @property
    def dropped_frames(self) -> int:
        """Frames discarded by the decoder for bad length or checksum."""
        return self._decoder.dropped_frames

    @property
    def engines(self) -> tuple[TransferEngine, ...]:
        """All transfer engines owned by this client."""
        return (
            self.firmware_uploader,
            self.config_exporter,
            self.config_importer,
            self.log_downloader,
        )

    def _connected(self) -> bool:
        return self.is_connected

    def subscribe_messages(self, callback: MessageCallback) -> Callable[[], None]:
        """
        Receive text messages from the unit (message strings, login prompts).

        Returns:
            A function that removes the subscription.
        """
        return _subscribe(self._message_subscribers, callback)

    def subscribe_frames(self, callback: FrameCallback) -> Callable[[], None]:
        """
        Receive frames with a command type this client does not handle.

        Returns:
            A function that removes the subscription.
        """
        return _subscribe(self._frame_subscribers, callback)

    # ===== Connection =====

    async def connect(self) -> None:
        """
        Open the transport and start the read pump and keep-alive tasks.

        Raises:
            TransportError: If the transport cannot be opened.
        """
        if self._pump_task is not None and not self._pump_task.done():
            raise ConnectionError("Already connected")

        if not self._transport.is_open:
            logger.debug("Opening transport %s", self._transport.port_name)
            await self._transport.open()

        self._decoder.reset()
        self._peer_closed = False
        self._keepalive_missed = 0

        loop = asyncio.get_running_loop()
        self._pump_task = loop.create_task(self._pump(), name="cvls-read-pump")
        if self._keepalive_interval:
            self._keepalive_task = loop.create_task(self._keepalive(), name="cvls-keepalive")
        logger.info("Connected to %s", self._transport.port_name)

    async def disconnect(self) -> None:
        """
        Stop running transfers and background tasks and close the transport.

        Safe to call even if not connected.
        """
        for engine in self.engines:
            await engine.stop()

        for task in (self._keepalive_task, self._pump_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._keepalive_task = None
        self._pump_task = None

        if self._transport.is_open:
            await self._transport.close()
            logger.info("Disconnected from %s", self._transport.port_name)

    # ===== Commands =====

    async def send_command(self, header: CommandWord, data: bytes = b"") -> None:
        """
        Frame and write one command.

        Args:
            header: Command header; its length field is replaced by ``len(data)``.
            data: Data section.

        Raises:
            ConnectionError: If not connected.
            TransportError: If the write fails.
        """
        if not self.is_connected:
            raise ConnectionError("Not connected")
        logger.debug("TX %r (%d bytes)", header, len(data))
        await self._transport.write(build_frame(header, data))

    async def send(
        self,
        command_set: CommandSet,
        command: int,
        write_access: bool = False,
        data: bytes = b"",
    ) -> None:
        """Send a command given by set and id."""
        await self.send_command(CommandWord(command_set, command, write_access), data)

    async def firmware_version(
        self,
        timeout: float = ProtocolConstants.FIRMWARE_VERSION_TIMEOUT,
    ) -> str:
        """
        Query the unit's firmware version string.

        Returns:
            The version string, or "" if the unit did not answer in time.
        """
        waiter = asyncio.get_running_loop().create_future()
        self._firmware_waiter = waiter
        try:
            await self.send(CommandSet.SYSTEM, SystemCommand.FIRMWARE_VERSION)
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("No firmware version reply within %.2fs", timeout)
            return ""
        finally:
            self._firmware_waiter = None

    async def login(self, username: str, password: str) -> bool:
        """
        Send login credentials.

        The outcome arrives asynchronously as a message (login failed) or
        silently as elevated permissions.

        Returns:
            False if not connected, True once the credentials were sent.
        """
        if not self.is_connected:
            self._publish_message("Please connect to a unit before trying to log in!")
            return False

        await self.send(CommandSet.SYSTEM, SystemCommand.LOGIN_USERNAME, True, username.encode("ascii"))
        await self.send(CommandSet.SYSTEM, SystemCommand.LOGIN_PASSWORD, True, password.encode("ascii"))
        return True

    async def logout(self) -> None:
        """Drop back to guest permissions."""
        await self.send(CommandSet.SYSTEM, SystemCommand.LOGOUT, True)

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

    # ===== Background Tasks =====

    async def _pump(self) -> None:
        while self._transport.is_open and not self._peer_closed:
            try:
                data = await self._transport.receive(_PUMP_POLL_INTERVAL)
            except TimeoutError:
                continue
            except TransportError as e:
                logger.error("Read failed on %s: %s", self._transport.port_name, e)
                break

            if not data:
                logger.warning("Connection closed by %s", self._transport.port_name)
                break

            for frame in self._decoder.feed(data):
                self._route(frame)

        self._peer_closed = True

    async def _keepalive(self) -> None:
        while self.is_connected:
            await asyncio.sleep(self._keepalive_interval)
            try:
                await self.send(CommandSet.SYSTEM, SystemCommand.KEEPALIVE, True)
            except (ConnectionError, TransportError):
                break

            self._keepalive_missed += 1
            if self._keepalive_missed >= ProtocolConstants.KEEPALIVE_MAX_MISSED:
                logger.error(
                    "No keep-alive from %s for %d intervals, disconnecting",
                    self._transport.port_name,
                    self._keepalive_missed,
                )
                self._peer_closed = True
                await self._transport.close()
                break

    # ===== Routing =====

    def _route(self, frame: DecodedFrame) -> None:
        header = frame.header
        if header.command_type != 0:
            for callback in list(self._frame_subscribers):
                _notify(callback, frame)
            return

        if header.command_set == CommandSet.SYSTEM:
            self._route_system(frame)
        elif header.command_set == CommandSet.ADMIN:
            self._route_admin(frame)
        else:
            logger.debug("Unhandled frame %r", header)

    def _route_system(self, frame: DecodedFrame) -> None:
        command = frame.header.command
        if command == SystemCommand.KEEPALIVE:
            self._keepalive_missed = 0
        elif command == SystemCommand.DISCONNECT:
            logger.warning("Unit requested disconnect")
            self._peer_closed = True
            self._publish_message("Client forcefully disconnected!")
        elif command == SystemCommand.MESSAGE_STRING:
            self._publish_message(frame.data.decode("utf-8", errors="replace"))
        elif command in _SYSTEM_MESSAGES:
            self._publish_message(_SYSTEM_MESSAGES[command])
        elif command == SystemCommand.FIRMWARE_VERSION:
            waiter = self._firmware_waiter
            if waiter is not None and not waiter.done():
                waiter.set_result(frame.data.decode("utf-8", errors="replace"))
        else:
            logger.debug("Unhandled system frame %r", frame.header)

    def _route_admin(self, frame: DecodedFrame) -> None:
        command = frame.header.command
        engine = self._page_routes.get(command)
        if engine is not None:
            engine.receive_reply(PageReply(command=command, data=frame.data))
            return

        engine = self._count_routes.get(command)
        if engine is not None:
            if len(frame.data) < 4:
                logger.warning("Short count reply %r", frame.header)
                return
            engine.set_page_count(int.from_bytes(frame.data[:4], "big"))
            return

        logger.debug("Unhandled admin frame %r", frame.header)

    def _publish_message(self, message: str) -> None:
        logger.info("Unit message: %s", message)
        for callback in list(self._message_subscribers):
            _notify(callback, message)

    async def __aenter__(self) -> BinaryClient:
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit - stop tasks and close transport."""
        await self.disconnect()

    def __repr__(self) -> str:
        status = "connected" if self.is_connected else "disconnected"
        return f"BinaryClient({self._transport.port_name!r}, {status})"


def _subscribe(subscribers: list, callback: Callable) -> Callable[[], None]:
    subscribers.append(callback)

    def unsubscribe() -> None:
        if callback in subscribers:
            subscribers.remove(callback)

    return unsubscribe


def _notify(callback: Callable, value: object) -> None:
    try:
        callback(value)
    except Exception:
        logger.exception("Subscriber failed")
