"""
Exception hierarchy for cvlsconnect.

All exceptions inherit from CVLSConnectError. The hierarchy separates:

1. Wire-level errors (frame structure, checksum) from connection errors
2. Transport failures (I/O, timeouts) from reply parsing failures
3. Programmer misuse of the codecs from expected transfer failures

Expected transfer failures (lost pages, timeouts, rejected files) are never
raised across the public transfer API; they are reported through
``TransferStatus``. ``TransferAbort`` is the internal signal a transfer
variant uses to end a transfer with a specific state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cvlsconnect.models.records import TransferState


class CVLSConnectError(Exception):
    """
    Base exception for all cvlsconnect errors.

    All library-specific exceptions inherit from this class, allowing
    callers to catch all cvlsconnect errors with a single except clause.
    """

    pass


class ProtocolError(CVLSConnectError):
    """
    Protocol-level error.

    Raised when the protocol is violated, such as:
    - Invalid frame format
    - Unexpected reply to a command
    - Malformed command header
    """

    pass


class ChecksumError(ProtocolError):
    """
    Fletcher-16 validation failure.

    Raised when a buffer's trailing checksum doesn't match the calculated
    value. The decoder itself never raises this; it is used by the explicit
    validation helpers.
    """

    def __init__(
        self,
        message: str = "Checksum validation failed",
        *,
        expected: bytes | None = None,
        received: bytes | None = None,
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.received = received

    def __str__(self) -> str:
        base = super().__str__()
        if self.expected is not None and self.received is not None:
            return f"{base} (expected {self.expected.hex()}, got {self.received.hex()})"
        return base


class FrameError(ProtocolError):
    """
    Frame or command header error.

    Raised when a frame or command word cannot be built or decoded, such as:
    - Command header that is not exactly 4 bytes
    - Payload too large for the 16-bit length field
    """

    pass


class TimeoutError(CVLSConnectError):  # noqa: A001 - intentionally shadows builtin
    """
    Communication timeout.

    Raised when a response is not received within the expected time.
    """

    def __init__(
        self,
        message: str = "Communication timeout",
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds

    def __str__(self) -> str:
        base = super().__str__()
        if self.timeout_seconds is not None:
            return f"{base} (after {self.timeout_seconds:.1f}s)"
        return base


class ConnectionError(CVLSConnectError):  # noqa: A001 - intentionally shadows builtin
    """
    Light source connection error.

    Raised when:
    - A command is sent while the client is not connected
    - The connection cannot be established
    - The connection is unexpectedly lost
    """

    pass


class TransportError(CVLSConnectError):
    """
    Transport-level error.

    Raised for low-level transport issues:
    - Socket or serial port errors
    - I/O errors
    - Writing to a closed transport
    """

    pass


class ParseError(CVLSConnectError):
    """
    Reply parsing error.

    Raised when a device reply cannot be interpreted, typically due to:
    - Truncated binary payloads
    - Unexpected text reply format
    """

    def __init__(
        self,
        message: str,
        *,
        record_type: str | None = None,
        raw_data: bytes | str | None = None,
    ) -> None:
        super().__init__(message)
        self.record_type = record_type
        self.raw_data = raw_data

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.record_type:
            parts.append(f"record_type={self.record_type}")
        if self.raw_data:
            display = self.raw_data.hex() if isinstance(self.raw_data, bytes) else self.raw_data
            if len(display) > 40:
                display = display[:40] + "..."
            parts.append(f"data={display}")
        return " ".join(parts)


class TransferAbort(CVLSConnectError):
    """
    Ends a transfer with a specific terminal state.

    Raised by transfer variants from their preparation and terminal hooks;
    the transfer engine catches it and publishes the state and message.
    It never escapes the engine.
    """

    def __init__(self, state: TransferState, message: str | None = None) -> None:
        super().__init__(message or state.name)
        self.state = state
        self.message = message
