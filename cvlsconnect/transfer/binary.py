"""
Transfer variants for the binary socket.

All four variants use Admin commands with the write flag set. Pages are
sent as ``be16 page index + data`` and the unit echoes the page it handled;
replies are routed to the waiting engine by ``BinaryClient``.

- BinaryFirmwareUpload: AdminFirmware pages of 4 x 256 bytes, then AdminFirmwareLoad
- BinaryConfigExport: AdminConfigExport page reads until an empty page
- BinaryConfigImport: AdminConfigImport pages of 1024 bytes, then AdminConfigImportComplete
- BinaryLogDownload: AdminLogsRead page reads until an empty page
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cvlsconnect.exceptions import TransferAbort
from cvlsconnect.models.records import LogEntry, TransferState
from cvlsconnect.protocol.command_word import CommandWord
from cvlsconnect.protocol.constants import AdminCommand, CommandSet, ProtocolConstants
from cvlsconnect.transfer.engine import (
    OutboundPage,
    PageReply,
    TransferCursor,
    TransferEngine,
    TransferOutcome,
    TransferStrategy,
    pages_for,
)

if TYPE_CHECKING:
    from cvlsconnect.binary_client import BinaryClient

logger = logging.getLogger(__name__)

IMPORT_ERRORS_PREFIX = "INI Upload Failed! The INI file had the following errors:\n"


def admin_command(command: AdminCommand) -> CommandWord:
    """Admin command header with write access."""
    return CommandWord(CommandSet.ADMIN, command, write_access=True)


def page_index(page: int) -> bytes:
    """Encode a page index as sent on the wire."""
    return (page & 0xFFFF).to_bytes(2, "big")


def check_firmware_header(image: bytes) -> None:
    """
    Check the image length recorded in a firmware header.

    Images longer than 16 bytes store their own length as a big-endian u32
    at offset 12.

    Raises:
        TransferAbort: FAILED_INVALID_FILE if the recorded length differs.
    """
    if len(image) <= ProtocolConstants.FIRMWARE_HEADER_MIN_SIZE:
        return
    offset = ProtocolConstants.FIRMWARE_HEADER_LENGTH_OFFSET
    recorded = int.from_bytes(image[offset : offset + 4], "big")
    if recorded != len(image):
        raise TransferAbort(
            TransferState.FAILED_INVALID_FILE,
            f"Firmware file size does not match header ({recorded} != {len(image)}).",
        )


class BinaryFirmwareUpload(TransferStrategy):
    """
    Firmware image upload over the binary socket.

    Each packet carries 4 firmware pages (1024 bytes) and advances the page
    index by 4. Once the unit has echoed every packet the load command hands
    the image to the bootloader; no reply is awaited for it.
    """

    name = "firmware-upload"
    asynchronous = True
    page_step = ProtocolConstants.FIRMWARE_PAGES_PER_SEND

    def __init__(
        self,
        client: BinaryClient,
        write_command: CommandWord | None = None,
        load_command: CommandWord | None = None,
    ) -> None:
        self._client = client
        self.write_command = write_command or admin_command(AdminCommand.FIRMWARE)
        self.load_command = load_command or admin_command(AdminCommand.FIRMWARE_LOAD)

    def change_commands(self, write_command: CommandWord, load_command: CommandWord) -> None:
        """Use different page write and load commands (e.g. for another image type)."""
        self.write_command = write_command
        self.load_command = load_command

    def page_count_for(self, source: bytes) -> int:
        return pages_for(len(source), ProtocolConstants.FIRMWARE_PAGE_SIZE)

    async def prepare(self, cursor: TransferCursor, source: bytes) -> None:
        check_firmware_header(source)

    def encode_page(self, cursor: TransferCursor) -> OutboundPage:
        if cursor.exhausted:
            return OutboundPage(
                index=ProtocolConstants.SENTINEL_PAGE,
                final=True,
                expects_reply=False,
            )
        chunk = cursor.chunk(
            ProtocolConstants.FIRMWARE_PAGE_SIZE * ProtocolConstants.FIRMWARE_PAGES_PER_SEND
        )
        return OutboundPage(
            index=cursor.page,
            payload=page_index(cursor.page) + chunk,
            byte_count=len(chunk),
        )

    async def send_page(self, page: OutboundPage) -> PageReply | None:
        if page.final:
            await self._client.send_command(self.load_command)
        else:
            await self._client.send_command(self.write_command, page.payload)
        return None

    def page_matches_reply(self, page: OutboundPage, reply: PageReply) -> bool:
        return reply.command == self.write_command.command and reply.data == page.payload


class BinaryConfigExport(TransferStrategy):
    """
    Configuration (INI) export over the binary socket.

    The page count starts at 5 until the unit answers the export count
    request sent at start. An empty page marks the end of the file.
    """

    name = "config-export"
    asynchronous = True

    def __init__(self, client: BinaryClient) -> None:
        self._client = client
        self._chunks: list[bytes] = []

    @property
    def text(self) -> str:
        """Configuration text received so far."""
        return b"".join(self._chunks).decode("utf-8", errors="replace")

    def page_count_for(self, source: bytes) -> int:
        return ProtocolConstants.CONFIG_EXPORT_INITIAL_PAGE_COUNT

    async def prepare(self, cursor: TransferCursor, source: bytes) -> None:
        self._chunks = []
        await self._client.send_command(admin_command(AdminCommand.CONFIG_EXPORT_COUNT))

    def encode_page(self, cursor: TransferCursor) -> OutboundPage:
        return OutboundPage(index=cursor.page, payload=page_index(cursor.page))

    async def send_page(self, page: OutboundPage) -> PageReply | None:
        await self._client.send_command(admin_command(AdminCommand.CONFIG_EXPORT), page.payload)
        return None

    def page_matches_reply(self, page: OutboundPage, reply: PageReply) -> bool:
        return reply.command == AdminCommand.CONFIG_EXPORT and reply.page == page.index

    def is_end_of_transfer(self, page: OutboundPage, reply: PageReply) -> bool:
        return not reply.page_data

    def on_page_acknowledged(self, page: OutboundPage, reply: PageReply) -> None:
        self._chunks.append(reply.page_data)


class BinaryConfigImport(TransferStrategy):
    """
    Configuration (INI) import over the binary socket.

    After the last 1024-byte page is echoed the import-complete command is
    sent. A zero status byte in its reply means the unit rejected the file;
    the unit's error log is then read and reported as FAILED_INVALID_FILE.
    """

    name = "config-import"
    asynchronous = True

    def __init__(self, client: BinaryClient) -> None:
        self._client = client

    def page_count_for(self, source: bytes) -> int:
        return pages_for(len(source), ProtocolConstants.CONFIG_IMPORT_PAGE_SIZE)

    def encode_page(self, cursor: TransferCursor) -> OutboundPage:
        if cursor.exhausted:
            return OutboundPage(index=ProtocolConstants.SENTINEL_PAGE, final=True)
        chunk = cursor.chunk(ProtocolConstants.CONFIG_IMPORT_PAGE_SIZE)
        return OutboundPage(
            index=cursor.page,
            payload=page_index(cursor.page) + chunk,
            byte_count=len(chunk),
        )

    async def send_page(self, page: OutboundPage) -> PageReply | None:
        if page.final:
            await self._client.send_command(admin_command(AdminCommand.CONFIG_IMPORT_COMPLETE))
        else:
            await self._client.send_command(admin_command(AdminCommand.CONFIG_IMPORT), page.payload)
        return None

    def page_matches_reply(self, page: OutboundPage, reply: PageReply) -> bool:
        if page.final:
            return reply.command == AdminCommand.CONFIG_IMPORT_COMPLETE and len(reply.data) >= 1
        return reply.command == AdminCommand.CONFIG_IMPORT and reply.data == page.payload

    async def on_terminal_reply(
        self,
        engine: TransferEngine,
        page: OutboundPage,
        reply: PageReply | None,
    ) -> TransferOutcome:
        if reply is not None and reply.data[0] != 0:
            return TransferOutcome(TransferState.SUCCEEDED)

        logger.warning("Configuration import rejected, reading import log")
        await self._client.send_command(admin_command(AdminCommand.CONFIG_IMPORT_LOG_READ))

        log_reply = None
        while log_reply is None or log_reply.command != AdminCommand.CONFIG_IMPORT_LOG_READ:
            log_reply = await engine.next_reply(engine.timing.terminal_timeout)
            if log_reply is None:
                return TransferOutcome(TransferState.FAILED_INVALID_FILE)

        errors = log_reply.data.decode("utf-8", errors="replace")
        return TransferOutcome(TransferState.FAILED_INVALID_FILE, IMPORT_ERRORS_PREFIX + errors)


class BinaryLogDownload(TransferStrategy):
    """
    Event log download over the binary socket.

    The entry count starts at 256 until the unit answers the log count
    request sent at start. An empty page marks the end of the log; a page
    too short to hold an entry is retried like any missed page.
    """

    name = "log-download"
    asynchronous = True

    def __init__(self, client: BinaryClient) -> None:
        self._client = client
        self._entries: list[LogEntry] = []

    @property
    def entries(self) -> list[LogEntry]:
        """Log entries received so far."""
        return list(self._entries)

    def page_count_for(self, source: bytes) -> int:
        return ProtocolConstants.LOG_INITIAL_PAGE_COUNT

    async def prepare(self, cursor: TransferCursor, source: bytes) -> None:
        self._entries = []
        await self._client.send_command(admin_command(AdminCommand.LOGS_COUNT))

    def encode_page(self, cursor: TransferCursor) -> OutboundPage:
        return OutboundPage(index=cursor.page, payload=page_index(cursor.page))

    async def send_page(self, page: OutboundPage) -> PageReply | None:
        await self._client.send_command(admin_command(AdminCommand.LOGS_READ), page.payload)
        return None

    def page_matches_reply(self, page: OutboundPage, reply: PageReply) -> bool:
        if reply.command != AdminCommand.LOGS_READ or reply.page != page.index:
            return False
        # An entry shorter than its fixed header is treated as a corrupted page
        return not reply.page_data or len(reply.page_data) >= LogEntry.BINARY_HEADER_SIZE

    def is_end_of_transfer(self, page: OutboundPage, reply: PageReply) -> bool:
        return not reply.page_data

    def on_page_acknowledged(self, page: OutboundPage, reply: PageReply) -> None:
        self._entries.append(LogEntry.from_bytes(reply.page_data))
