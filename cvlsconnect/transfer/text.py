"""
Transfer variants for the text protocol.

Text transfers are call/response: every page command returns its reply
lines directly, so the engine never waits for out-of-band replies. Upload
pages embed ``be16 page + data + Fletcher-16`` after the command prefix,
escaped for the text parser.

- TextFirmwareUpload: ``&@f`` pages of 4 x 256 bytes, then the 0xFFFF sentinel
- TextConfigExport: ``&@i<page>`` reads until ``&@i<page>,MULTILINECOMPLETE``
- TextConfigImport: ``&@u`` pages of 1024 bytes, then the 0xFFFF sentinel
- TextLogDownload: ``&@e<index>`` reads until an index has no entry

All variants except the import need firmware 1.14 or later.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cvlsconnect.config import TransferTiming
from cvlsconnect.exceptions import TransferAbort
from cvlsconnect.models.records import LogEntry, TransferState
from cvlsconnect.protocol.constants import (
    CONFIG_EXPORT_ERRORS,
    CONFIG_IMPORT_ERRORS,
    FIRMWARE_UPLOAD_ERRORS,
    ProtocolConstants,
    TextCommand,
)
from cvlsconnect.protocol.text_escape import build_text_page
from cvlsconnect.transfer.binary import IMPORT_ERRORS_PREFIX, check_firmware_header
from cvlsconnect.transfer.engine import (
    OutboundPage,
    PageReply,
    TransferCursor,
    TransferEngine,
    TransferOutcome,
    TransferStrategy,
    collect_lines,
    pages_for,
)

if TYPE_CHECKING:
    from cvlsconnect.text_client import TextClient

logger = logging.getLogger(__name__)


async def require_firmware(client: TextClient, minimum: float) -> None:
    """
    Refuse a transfer on units older than ``minimum``.

    Raises:
        TransferAbort: FAILED_INITIALIZE if the unit does not report a
            version, FAILED_INVALID_FIRMWARE if it is too old.
    """
    version = await client.firmware_version()
    if version <= 0:
        raise TransferAbort(
            TransferState.FAILED_INITIALIZE,
            "Unable to read the firmware version of the unit.",
        )
    if version < minimum:
        raise TransferAbort(
            TransferState.FAILED_INVALID_FIRMWARE,
            f"Firmware {version:.2f} does not support this feature, "
            f"version {minimum:.2f} or later is required.",
        )


def body_lines(lines: tuple[str, ...], prefix: str) -> list[str]:
    """Reply lines with ``prefix`` removed and the end prompt dropped."""
    body = [line for line in lines if ProtocolConstants.END_PROMPT not in line]
    if body and body[0].startswith(prefix):
        body[0] = body[0][len(prefix) :]
    while body and not body[-1]:
        body.pop()
    return body


class TextFirmwareUpload(TransferStrategy):
    """
    Firmware image upload over the text protocol.

    A packet is acknowledged by ``&@f<page>,<length>``. The sentinel page is
    sent without waiting for its reply.
    """

    name = "text-firmware-upload"
    page_step = ProtocolConstants.FIRMWARE_PAGES_PER_SEND

    def __init__(self, client: TextClient, timing: TransferTiming | None = None) -> None:
        self._client = client
        self._timing = timing or TransferTiming.text()

    def page_count_for(self, source: bytes) -> int:
        return pages_for(len(source), ProtocolConstants.FIRMWARE_PAGE_SIZE)

    async def prepare(self, cursor: TransferCursor, source: bytes) -> None:
        await require_firmware(self._client, ProtocolConstants.MIN_TEXT_TRANSFER_FIRMWARE)
        check_firmware_header(source)

    def encode_page(self, cursor: TransferCursor) -> OutboundPage:
        if cursor.exhausted:
            return OutboundPage(
                index=ProtocolConstants.SENTINEL_PAGE,
                payload=build_text_page(TextCommand.FIRMWARE_UPLOAD, ProtocolConstants.SENTINEL_PAGE),
                final=True,
                expects_reply=False,
            )
        chunk = cursor.chunk(
            ProtocolConstants.FIRMWARE_PAGE_SIZE * ProtocolConstants.FIRMWARE_PAGES_PER_SEND
        )
        return OutboundPage(
            index=cursor.page,
            payload=build_text_page(TextCommand.FIRMWARE_UPLOAD, cursor.page, chunk),
            byte_count=len(chunk),
        )

    async def send_page(self, page: OutboundPage) -> PageReply | None:
        lines = await self._client.send_command(page.payload, timeout=self._timing.reply_timeout)
        return PageReply(lines=tuple(lines))

    def page_matches_reply(self, page: OutboundPage, reply: PageReply) -> bool:
        return f"{TextCommand.FIRMWARE_UPLOAD}{page.index},{page.byte_count}" in reply.first_line

    def describe_miss(self, page: OutboundPage, reply: PageReply) -> str | None:
        return FIRMWARE_UPLOAD_ERRORS.get(reply.first_line)


class TextConfigExport(TransferStrategy):
    """
    Configuration (INI) export over the text protocol.

    Each page reply starts with ``&@i<page>,`` followed by the page's lines;
    ``&@i<page>,MULTILINECOMPLETE`` marks the end of the file.
    """

    name = "text-config-export"

    def __init__(self, client: TextClient, timing: TransferTiming | None = None) -> None:
        self._client = client
        self._timing = timing or TransferTiming.text()
        self._pages: list[str] = []

    @property
    def text(self) -> str:
        """Configuration text received so far."""
        return collect_lines(self._pages)

    def page_count_for(self, source: bytes) -> int:
        return ProtocolConstants.CONFIG_EXPORT_INITIAL_PAGE_COUNT

    async def prepare(self, cursor: TransferCursor, source: bytes) -> None:
        await require_firmware(self._client, ProtocolConstants.MIN_TEXT_TRANSFER_FIRMWARE)
        self._pages = []
        count = await self._client.ini_page_count()
        if count != -1:
            cursor.page_count = count

    def encode_page(self, cursor: TransferCursor) -> OutboundPage:
        command = f"{TextCommand.CONFIG_EXPORT}{cursor.page}"
        return OutboundPage(index=cursor.page, payload=command.encode("ascii"))

    async def send_page(self, page: OutboundPage) -> PageReply | None:
        lines = await self._client.send_command(
            page.payload,
            multiline=True,
            timeout=self._timing.terminal_timeout,
        )
        return PageReply(lines=tuple(lines))

    def _prefix(self, page: OutboundPage) -> str:
        return f"{TextCommand.CONFIG_EXPORT}{page.index},"

    def page_matches_reply(self, page: OutboundPage, reply: PageReply) -> bool:
        return self._prefix(page) in reply.first_line

    def is_end_of_transfer(self, page: OutboundPage, reply: PageReply) -> bool:
        return f"{self._prefix(page)}{ProtocolConstants.END_PROMPT}" in reply.first_line

    def on_page_acknowledged(self, page: OutboundPage, reply: PageReply) -> None:
        self._pages.append(collect_lines(body_lines(reply.lines, self._prefix(page))))

    def describe_miss(self, page: OutboundPage, reply: PageReply) -> str | None:
        return CONFIG_EXPORT_ERRORS.get(reply.first_line)


class TextConfigImport(TransferStrategy):
    """
    Configuration (INI) import over the text protocol.

    A page is acknowledged by ``&@u<page>,<length>``. The sentinel page is
    answered with ``&@us`` on success or ``&@ue`` followed by the errors the
    unit found in the file.
    """

    name = "text-config-import"

    def __init__(self, client: TextClient, timing: TransferTiming | None = None) -> None:
        self._client = client
        self._timing = timing or TransferTiming.text()

    def page_count_for(self, source: bytes) -> int:
        return pages_for(len(source), ProtocolConstants.CONFIG_IMPORT_PAGE_SIZE)

    def encode_page(self, cursor: TransferCursor) -> OutboundPage:
        if cursor.exhausted:
            return OutboundPage(
                index=ProtocolConstants.SENTINEL_PAGE,
                payload=build_text_page(TextCommand.CONFIG_IMPORT, ProtocolConstants.SENTINEL_PAGE),
                final=True,
            )
        chunk = cursor.chunk(ProtocolConstants.CONFIG_IMPORT_PAGE_SIZE)
        return OutboundPage(
            index=cursor.page,
            payload=build_text_page(TextCommand.CONFIG_IMPORT, cursor.page, chunk),
            byte_count=len(chunk),
        )

    async def send_page(self, page: OutboundPage) -> PageReply | None:
        if page.final:
            lines = await self._client.send_command(
                page.payload,
                multiline=True,
                timeout=self._timing.terminal_timeout,
            )
        else:
            lines = await self._client.send_command(page.payload, timeout=self._timing.reply_timeout)
        return PageReply(lines=tuple(lines))

    def page_matches_reply(self, page: OutboundPage, reply: PageReply) -> bool:
        if page.final:
            return bool(reply.lines)
        return f"{TextCommand.CONFIG_IMPORT}{page.index},{page.byte_count}" in reply.first_line

    def describe_miss(self, page: OutboundPage, reply: PageReply) -> str | None:
        return CONFIG_IMPORT_ERRORS.get(reply.first_line)

    async def on_terminal_reply(
        self,
        engine: TransferEngine,
        page: OutboundPage,
        reply: PageReply | None,
    ) -> TransferOutcome:
        first = reply.first_line if reply is not None else ""
        if f"{TextCommand.CONFIG_IMPORT}s" in first:
            return TransferOutcome(TransferState.SUCCEEDED)

        if f"{TextCommand.CONFIG_IMPORT}e" in first:
            errors = body_lines(reply.lines, f"{TextCommand.CONFIG_IMPORT}e")
            return TransferOutcome(
                TransferState.FAILED_INVALID_FILE,
                IMPORT_ERRORS_PREFIX + collect_lines(errors),
            )

        return TransferOutcome(TransferState.FAILED, "Unable to parse INI file, unknown error!")


class TextLogDownload(TransferStrategy):
    """
    Event log download over the text protocol.

    Entries are requested one index at a time. A reply that carries no
    entry for the requested index ends the download; no reply at all is a
    missed page.
    """

    name = "text-log-download"

    def __init__(self, client: TextClient, timing: TransferTiming | None = None) -> None:
        self._client = client
        self._timing = timing or TransferTiming.text()
        self._entries: list[LogEntry] = []

    @property
    def entries(self) -> list[LogEntry]:
        """Log entries received so far."""
        return list(self._entries)

    def page_count_for(self, source: bytes) -> int:
        return ProtocolConstants.LOG_INITIAL_PAGE_COUNT

    async def prepare(self, cursor: TransferCursor, source: bytes) -> None:
        await require_firmware(self._client, ProtocolConstants.MIN_TEXT_TRANSFER_FIRMWARE)
        self._entries = []
        count = await self._client.log_count()
        if count != -1:
            cursor.page_count = count

    def encode_page(self, cursor: TransferCursor) -> OutboundPage:
        command = f"{TextCommand.LOG_READ}{cursor.page}"
        return OutboundPage(index=cursor.page, payload=command.encode("ascii"))

    async def send_page(self, page: OutboundPage) -> PageReply | None:
        lines = await self._client.send_command(page.payload, timeout=self._timing.reply_timeout)
        return PageReply(lines=tuple(lines))

    def _entry(self, page: OutboundPage, reply: PageReply) -> LogEntry | None:
        return LogEntry.from_text(reply.first_line[len(TextCommand.LOG_READ) :], page.index)

    def page_matches_reply(self, page: OutboundPage, reply: PageReply) -> bool:
        return reply.first_line.startswith(TextCommand.LOG_READ)

    def is_end_of_transfer(self, page: OutboundPage, reply: PageReply) -> bool:
        return self._entry(page, reply) is None

    def on_page_acknowledged(self, page: OutboundPage, reply: PageReply) -> None:
        entry = self._entry(page, reply)
        if entry is not None:
            self._entries.append(entry)
