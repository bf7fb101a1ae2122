"""
Pydantic models for transfer status and device records.

All models are frozen: consumers only ever receive snapshots, and a new
snapshot is built for every progress tick or state change.
"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar, Final

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cvlsconnect.exceptions import ParseError


class TransferState(Enum):
    """
    Lifecycle of a paginated transfer.

    SUCCEEDED doubles as the idle state of an engine that has never run.
    RUNNING is the only non-terminal state.
    """

    SUCCEEDED = "succeeded"
    """Transfer completed (or nothing has run yet)."""

    RUNNING = "running"
    """Pages are being exchanged."""

    FAILED = "failed"
    """Unspecified failure, or the transfer was stopped by the caller."""

    FAILED_LOST_PACKETS = "failed_lost_packets"
    """One page was missed more times than the retry bound allows."""

    FAILED_TIME_OUT = "failed_time_out"
    """The global transfer timeout expired."""

    FAILED_INVALID_FILE = "failed_invalid_file"
    """The payload was rejected (bad header, import errors)."""

    FAILED_CONNECTION = "failed_connection"
    """The transport was not connected."""

    FAILED_INVALID_FIRMWARE = "failed_invalid_firmware"
    """The unit firmware does not support the transfer."""

    FAILED_INITIALIZE = "failed_initialize"
    """Preparing the transfer failed."""

    FAILED_STOP = "failed_stop"
    """A previous transfer did not stop in time."""

    FAILED_START = "failed_start"
    """The transfer worker could not be started."""

    @property
    def is_terminal(self) -> bool:
        """True for every state except RUNNING."""
        return self is not TransferState.RUNNING

    @property
    def is_failure(self) -> bool:
        """True for every FAILED* state."""
        return self not in (TransferState.RUNNING, TransferState.SUCCEEDED)


DEFAULT_MESSAGES: Final[dict[TransferState, str]] = {
    TransferState.FAILED: "Unknown Failure",
    TransferState.RUNNING: "Currently transfer pages.",
    TransferState.SUCCEEDED: "Transfer successfully completed.",
    TransferState.FAILED_LOST_PACKETS: "Too many missed packets.",
    TransferState.FAILED_TIME_OUT: "Too many packet timeouts.",
    TransferState.FAILED_INVALID_FILE: "File is not the correct format.",
    TransferState.FAILED_CONNECTION: "Unable to connect to unit.",
    TransferState.FAILED_INVALID_FIRMWARE: (
        "Firmware does not support this feature, please upgrade the unit firmware."
    ),
    TransferState.FAILED_INITIALIZE: "Unable to initialize transfer.",
    TransferState.FAILED_STOP: "Unable to stop current transfer.",
    TransferState.FAILED_START: "Unable to start current transfer.",
}


def percent_complete(current_page: int, page_count: int) -> int:
    """
    Integer percent complete, clamped to 0-100.

    Example:
        >>> percent_complete(4, 12)
        33
    """
    if page_count <= 0:
        return 0
    return max(0, min(100, int(current_page * (100 / page_count))))


class TransferStatus(BaseModel):
    """
    Immutable snapshot of a transfer.

    Example:
        >>> status = TransferStatus.create(TransferState.RUNNING, pages_total=12, current_page=3)
        >>> status.percent
        25
        >>> status.message
        'Currently transfer pages.'
    """

    model_config = ConfigDict(frozen=True)

    pages_total: int = Field(ge=0, description="Authoritative or provisional page count")
    current_page: int = Field(ge=0, description="Index of the page being transferred")
    percent: int = Field(ge=0, le=100, description="Derived percent complete")
    state: TransferState = Field(description="Current transfer state")
    message: str = Field(description="Human-readable status message")

    @classmethod
    def create(
        cls,
        state: TransferState,
        *,
        pages_total: int = 0,
        current_page: int = 0,
        message: str | None = None,
    ) -> TransferStatus:
        """Build a snapshot, deriving percent and the default message."""
        return cls(
            pages_total=max(pages_total, 0),
            current_page=max(current_page, 0),
            percent=percent_complete(current_page, pages_total),
            state=state,
            message=message or DEFAULT_MESSAGES[state],
        )

    @property
    def is_running(self) -> bool:
        """Check if the transfer is still in progress."""
        return self.state is TransferState.RUNNING

    @property
    def succeeded(self) -> bool:
        """Check if the transfer completed successfully."""
        return self.state is TransferState.SUCCEEDED

    def __str__(self) -> str:
        return f"{self.state.name} {self.percent}% ({self.current_page}/{self.pages_total}): {self.message}"


class LogEntry(BaseModel):
    """
    One entry of the unit's event log.

    Attributes:
        code: Event (exception) code.
        timestamp: Unit timestamp of the event.
        message: Event description.
    """

    model_config = ConfigDict(frozen=True)

    code: int = Field(ge=0, le=0xFFFFFFFF, description="Event code")
    timestamp: int = Field(ge=0, le=0xFFFFFFFF, description="Unit timestamp")
    message: str = Field(default="", description="Event description")

    BINARY_HEADER_SIZE: ClassVar[int] = 8
    """Little-endian u32 code + u32 timestamp preceding the message."""

    @classmethod
    def from_bytes(cls, data: bytes | bytearray) -> LogEntry:
        """
        Parse a binary log page.

        Layout: u32 LE code, u32 LE timestamp, UTF-8 message.

        Raises:
            ParseError: If the page is shorter than the 8-byte header.
        """
        if len(data) < cls.BINARY_HEADER_SIZE:
            raise ParseError(
                f"Log entry needs at least {cls.BINARY_HEADER_SIZE} bytes, got {len(data)}",
                record_type="LogEntry",
                raw_data=bytes(data),
            )
        return cls(
            code=int.from_bytes(data[0:4], "little"),
            timestamp=int.from_bytes(data[4:8], "little"),
            message=bytes(data[8:]).decode("utf-8", errors="replace"),
        )

    @classmethod
    def from_text(cls, reply: str, index: int) -> LogEntry | None:
        """
        Parse a text log reply ``<index>,<code>,<time>,<message>``.

        Args:
            reply: Reply with the command prefix already removed.
            index: The requested log index.

        Returns:
            The entry, or None if the reply carries no entry for ``index``.
        """
        fields = reply.split(",", 3)
        if len(fields) < 3:
            return None
        try:
            returned_index = int(fields[0])
            code = int(fields[1])
            timestamp = int(fields[2])
        except ValueError:
            return None
        if returned_index != index or code < 0 or timestamp < 0:
            return None
        return cls(code=code, timestamp=timestamp, message=fields[3] if len(fields) > 3 else "")

    @field_validator("message")
    @classmethod
    def strip_terminators(cls, value: str) -> str:
        """Drop trailing NULs and line terminators left by the firmware."""
        return value.rstrip("\x00\r\n")
