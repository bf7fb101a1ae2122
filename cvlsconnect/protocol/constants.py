"""
Binary and text protocol constants for CV-LS light sources.

Command sets and command ids mirror the numbering used by the light source
firmware; gaps in the numbering are reserved ranges on the device.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Final


class FrameMarker(IntEnum):
    """Reserved bytes of the binary frame encoding."""

    START = 0x12
    """Start of frame."""

    STOP = 0x13
    """End of frame."""

    ESCAPE = 0x7D
    """Escape prefix; the following byte is XORed with ESCAPE_MASK."""


class CommandSet(IntEnum):
    """Command-set selector, bits [12:11] of the command word."""

    SYSTEM = 0
    GUEST = 1
    OPERATOR = 2
    ADMIN = 3


class SystemCommand(IntEnum):
    """
    Commands in the System command set.

    Report commands (0-22) are pushed by the unit; connection management
    commands start at 50.
    """

    REPORT_STATUS = 0
    REPORT_CONTROLS = 1
    REPORT_BUFFER = 2
    REPORT_FAULT = 3

    DISCONNECT = 50
    """Unit is closing the connection."""

    KEEPALIVE = 51
    """Keep-alive echo, sent by both sides."""

    MESSAGE_STRING = 52
    """Free-form text message from the unit."""

    REBOOT = 53
    LAST_COMMAND = 54
    OPERATIONAL_MODE = 55
    DATE = 56
    MODEL = 57
    SERIAL = 58
    SETTINGS_WRITE_COUNT = 59
    FACTORY_SETTINGS_WRITE_COUNT = 60
    SPI_FLASH_ERASE_COUNT = 61
    ERROR_COUNT = 62

    LOGIN_REQUEST = 63
    """Unit requests credentials before accepting write commands."""

    LOGIN_SUCCESSFUL = 64
    LOGIN_FAILED = 65
    LOGOUT = 66
    LOGIN_USERNAME = 67
    LOGIN_PASSWORD = 68

    FIRMWARE_VERSION = 69
    """Firmware version string query."""


class AdminCommand(IntEnum):
    """Commands in the Admin command set used for settings and transfers."""

    SAVE_SETTINGS = 0
    RESTORE_SETTINGS = 1
    RESTORE_FACTORY_SETTINGS = 2
    RESTORE_FACTORY_SETTINGS_PRESERVE_NETWORK = 3

    FIRMWARE = 4
    """Firmware page write (be16 page + data)."""

    FIRMWARE_LOAD = 5
    """Hand the uploaded image to the bootloader."""

    CONFIG_EXPORT = 6
    """Configuration export page read (be16 page)."""

    CONFIG_IMPORT = 7
    """Configuration import page write (be16 page + data)."""

    CONFIG_IMPORT_COMPLETE = 8
    """Import finished; reply byte is non-zero on success."""

    CONFIG_IMPORT_LOG_READ = 9
    """Read the import error log after a failed import."""

    CONFIG_IMPORT_CANCEL = 10
    SETTINGS_GET = 11

    CONFIG_EXPORT_COUNT = 12
    """Number of pages in the configuration export (be32 reply)."""

    LOGS_CLEAR = 160

    LOGS_READ = 161
    """Event log page read (be16 page)."""

    LOGS_COUNT = 162
    """Number of event log entries (be32 reply)."""


class ProtocolConstants:
    """
    CV-LS protocol constants.

    Contains frame layout sizes, transfer page geometry, timing values and
    connection defaults used throughout the protocol implementation.
    """

    # ===== Frame Layout =====

    ESCAPE_MASK: Final[int] = 0x80
    """XOR mask applied to an escaped byte."""

    COMMAND_WORD_SIZE: Final[int] = 4
    """Command word (2 bytes) plus big-endian data length (2 bytes)."""

    CHECKSUM_SIZE: Final[int] = 2
    """Fletcher-16 trailer size."""

    FRAME_OVERHEAD: Final[int] = 6
    """Header plus checksum bytes carried by every frame."""

    MAX_DATA_LENGTH: Final[int] = 0xFFFF
    """Largest data section the 16-bit length field can describe."""

    MAX_COMMAND_ID: Final[int] = 0x7FF
    """Command id mask (11 bits)."""

    FLETCHER_BLOCK_SIZE: Final[int] = 20
    """Bytes summed between Fletcher-16 reductions."""

    # ===== Paging =====

    SENTINEL_PAGE: Final[int] = 0xFFFF
    """Page index signalling end of transfer."""

    FIRMWARE_PAGE_SIZE: Final[int] = 256
    """Bytes per firmware page."""

    FIRMWARE_PAGES_PER_SEND: Final[int] = 4
    """Firmware pages carried by each transfer packet."""

    CONFIG_IMPORT_PAGE_SIZE: Final[int] = 1024
    """Bytes per configuration import page."""

    CONFIG_EXPORT_INITIAL_PAGE_COUNT: Final[int] = 5
    """Provisional export page count until the unit reports one."""

    LOG_INITIAL_PAGE_COUNT: Final[int] = 256
    """Provisional log entry count until the unit reports one."""

    FIRMWARE_HEADER_LENGTH_OFFSET: Final[int] = 12
    """Offset of the big-endian image length in a firmware header."""

    FIRMWARE_HEADER_MIN_SIZE: Final[int] = 16
    """Images at or below this size skip the header length check."""

    # ===== Transfer Policy =====

    MAX_MISSED_PAGES: Final[int] = 5
    """Consecutive misses of one page tolerated before failing."""

    DEFAULT_TRANSFER_TIMEOUT: Final[float] = 5.0
    """Default global timeout for run-and-wait transfers, in seconds."""

    BINARY_REPLY_TIMEOUT: Final[float] = 0.5
    """Time to wait for an out-of-band page reply, in seconds."""

    TERMINAL_REPLY_TIMEOUT: Final[float] = 0.5
    """Time to wait for a completion confirmation, in seconds."""

    TEXT_REPLY_TIMEOUT: Final[float] = 1.0
    """Time to wait for a text reply line, in seconds."""

    STOP_TIMEOUT: Final[float] = 1.0
    """Time a stopping transfer worker is given to wind down, in seconds."""

    # ===== Connection =====

    DEFAULT_HOST: Final[str] = "192.168.0.2"
    """Factory default IP address of the unit."""

    BINARY_PORT: Final[int] = 5000
    """Default TCP port of the binary socket."""

    LEGACY_PORT: Final[int] = 50811
    """Default TCP port of the text (legacy) socket."""

    DEFAULT_BAUD_RATE: Final[int] = 115200
    """Default serial baud rate."""

    DEFAULT_RECEIVE_TIMEOUT: Final[float] = 5.0
    """Default transport read timeout, in seconds."""

    KEEPALIVE_INTERVAL: Final[float] = 0.1
    """Seconds between binary keep-alive commands."""

    KEEPALIVE_MAX_MISSED: Final[int] = 10
    """Unanswered keep-alives before the client disconnects."""

    FIRMWARE_VERSION_TIMEOUT: Final[float] = 0.1
    """Time to wait for a binary firmware version reply, in seconds."""

    # ===== Text Protocol =====

    END_PROMPT: Final[str] = "MULTILINECOMPLETE"
    """Marker line ending a multi-line text reply."""

    TEXT_ESCAPE: Final[int] = 0xFE
    """Escape prefix for binary data embedded in text commands."""

    TEXT_ESCAPED_BYTES: Final[frozenset[int]] = frozenset({0xFE, ord("&"), ord("\n"), ord("\r")})
    """Bytes that must be preceded by TEXT_ESCAPE."""

    MIN_TEXT_TRANSFER_FIRMWARE: Final[float] = 1.14
    """Oldest firmware supporting the text transfer commands."""


class TextCommand:
    """Text protocol command prefixes used by the transfers."""

    FIRMWARE_VERSION: Final[str] = "&f"
    CLEAR_LOGS: Final[str] = "&o3"
    FIRMWARE_UPLOAD: Final[str] = "&@f"
    CONFIG_EXPORT: Final[str] = "&@i"
    CONFIG_IMPORT: Final[str] = "&@u"
    LOG_READ: Final[str] = "&@e"
    COUNT_QUERY: Final[str] = "?"


# Error tokens returned by the text transfer commands
FIRMWARE_UPLOAD_ERRORS: Final[dict[str, str]] = {
    "&@f!c": "Checksum Error!",
    "&@f!w": "Flash Write Error!",
    "&@f!r": "Unit Rebooting!",
}

CONFIG_IMPORT_ERRORS: Final[dict[str, str]] = {
    "&@u!c": "Checksum Error!",
    "&@u!w": "Data Processing Error",
    "&@u!s": "Upload Complete",
    "&@u!e": "Upload Error",
    "": "Lost Connection",
}

CONFIG_EXPORT_ERRORS: Final[dict[str, str]] = {
    "&@i!o": "Buffer overflow!",
    "&@i!v": "Invalid Page Number!",
}
