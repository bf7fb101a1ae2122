"""
Binary frame encoding and incremental decoding.

Wire format:

    START(0x12) [escaped payload] STOP(0x13)

The payload is a 4-byte command word, the data section and a Fletcher-16
checksum over command word + data. Any START, STOP or ESCAPE(0x7D) byte in
the payload is sent as ESCAPE followed by the byte XORed with 0x80.

Decoding is incremental: bytes can arrive in any chunking, and a frame is
emitted only once its stop marker arrives, its unescaped length equals
``data_length + 6`` and its checksum matches. Anything else is dropped
silently and the decoder resynchronises on the next start marker.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cvlsconnect.exceptions import FrameError
from cvlsconnect.protocol.checksums import fletcher16
from cvlsconnect.protocol.command_word import CommandWord
from cvlsconnect.protocol.constants import FrameMarker, ProtocolConstants

logger = logging.getLogger(__name__)

_RESERVED = frozenset(int(marker) for marker in FrameMarker)


def escape(payload: bytes | bytearray) -> bytes:
    """
    Byte-stuff a payload without adding frame delimiters.

    Args:
        payload: Raw payload bytes.

    Returns:
        Payload with every reserved byte replaced by ESCAPE, byte ^ 0x80.
    """
    escaped = bytearray()
    for byte in payload:
        if byte in _RESERVED:
            escaped.append(FrameMarker.ESCAPE)
            escaped.append(byte ^ ProtocolConstants.ESCAPE_MASK)
        else:
            escaped.append(byte)
    return bytes(escaped)


def unescape(escaped: bytes | bytearray) -> bytes:
    """
    Reverse ``escape`` for a payload without frame delimiters.

    Raises:
        FrameError: If the payload ends with a dangling escape byte.
    """
    payload = bytearray()
    pending = False
    for byte in escaped:
        if pending:
            payload.append(byte ^ ProtocolConstants.ESCAPE_MASK)
            pending = False
        elif byte == FrameMarker.ESCAPE:
            pending = True
        else:
            payload.append(byte)
    if pending:
        raise FrameError("Payload ends with a dangling escape byte")
    return bytes(payload)


def encode_frame(payload: bytes | bytearray) -> bytes:
    """
    Wrap a payload into a delimited, escaped wire frame.

    Args:
        payload: Command word + data + checksum.

    Returns:
        START + escaped payload + STOP.
    """
    return bytes([FrameMarker.START]) + escape(payload) + bytes([FrameMarker.STOP])


def build_payload(header: CommandWord, data: bytes | bytearray = b"") -> bytes:
    """
    Build a checksummed frame payload.

    The header's data length is replaced by the actual length of ``data``.

    Raises:
        FrameError: If ``data`` does not fit the 16-bit length field.
    """
    if len(data) > ProtocolConstants.MAX_DATA_LENGTH:
        raise FrameError(
            f"Data section too large: {len(data)} > {ProtocolConstants.MAX_DATA_LENGTH}"
        )
    body = header.with_length(len(data)).to_bytes() + bytes(data)
    return body + fletcher16(body)


def build_frame(header: CommandWord, data: bytes | bytearray = b"") -> bytes:
    """
    Build a complete wire frame for a command.

    Example:
        >>> from cvlsconnect.protocol.constants import CommandSet, SystemCommand
        >>> frame = build_frame(CommandWord(CommandSet.SYSTEM, SystemCommand.KEEPALIVE, True))
        >>> frame[0] == FrameMarker.START and frame[-1] == FrameMarker.STOP
        True
    """
    return encode_frame(build_payload(header, data))


@dataclass(frozen=True)
class DecodedFrame:
    """
    A checksum-validated binary frame.

    Attributes:
        header: Decoded command word.
        data: Data section (header and checksum removed).
    """

    header: CommandWord
    data: bytes

    @property
    def payload(self) -> bytes:
        """Header + data + checksum, as it was carried on the wire."""
        return build_payload(self.header, self.data)

    @property
    def page(self) -> int | None:
        """Big-endian page index at the start of the data, if present."""
        if len(self.data) < 2:
            return None
        return int.from_bytes(self.data[:2], "big")

    @property
    def page_data(self) -> bytes:
        """Data following the page index."""
        return self.data[2:]


class FrameDecoder:
    """
    Incremental binary frame decoder.

    Bytes are fed in arbitrary chunks; complete frames are returned in
    arrival order. Decoder state persists between calls so each byte is
    examined once.

    Attributes:
        dropped_frames: Frames discarded for bad length or checksum since
            construction or the last ``reset``.

    Example:
        >>> decoder = FrameDecoder()
        >>> frames = decoder.feed(wire_bytes)
        >>> for frame in frames:
        ...     route(frame.header, frame.data)
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._accumulator = bytearray()
        self._waiting_on_start = True
        self._is_escaped = False
        self.dropped_frames = 0

    @property
    def pending(self) -> int:
        """Bytes received but not yet consumed by a frame or resync."""
        return len(self._buffer)

    def reset(self) -> None:
        """Discard all partial data and return to waiting for a start marker."""
        self._buffer.clear()
        self._accumulator.clear()
        self._waiting_on_start = True
        self._is_escaped = False
        self.dropped_frames = 0

    def feed(self, data: bytes | bytearray) -> list[DecodedFrame]:
        """
        Append received bytes and extract every complete frame.

        Args:
            data: Newly received bytes, in any chunking.

        Returns:
            Frames completed by this chunk, possibly empty.
        """
        frames: list[DecodedFrame] = []
        start = len(self._buffer)
        self._buffer.extend(data)
        consumed = 0

        for offset in range(start, len(self._buffer)):
            byte = self._buffer[offset]

            if self._waiting_on_start and byte != FrameMarker.START:
                consumed = offset + 1
                continue

            if byte == FrameMarker.START:
                self._accumulator.clear()
                self._is_escaped = False
                self._waiting_on_start = False
                consumed = offset
            elif byte == FrameMarker.ESCAPE:
                self._is_escaped = True
            elif byte == FrameMarker.STOP:
                frame = self._complete()
                if frame is not None:
                    frames.append(frame)
                self._accumulator.clear()
                self._is_escaped = False
                self._waiting_on_start = True
                consumed = offset + 1
            elif self._is_escaped:
                self._is_escaped = False
                self._accumulator.append(byte ^ ProtocolConstants.ESCAPE_MASK)
            else:
                self._accumulator.append(byte)

        del self._buffer[:consumed]
        return frames

    def _complete(self) -> DecodedFrame | None:
        size = len(self._accumulator)
        if size < ProtocolConstants.FRAME_OVERHEAD:
            return self._drop("short frame (%d bytes)", size)

        header = CommandWord.from_bytes(self._accumulator[: ProtocolConstants.COMMAND_WORD_SIZE])
        if header.data_length + ProtocolConstants.FRAME_OVERHEAD != size:
            return self._drop(
                "length mismatch (declared %d, have %d)",
                header.data_length,
                size - ProtocolConstants.FRAME_OVERHEAD,
            )

        body_length = size - ProtocolConstants.CHECKSUM_SIZE
        if fletcher16(self._accumulator, body_length) != bytes(self._accumulator[body_length:]):
            return self._drop("checksum mismatch for %r", header)

        data = bytes(self._accumulator[ProtocolConstants.COMMAND_WORD_SIZE : body_length])
        return DecodedFrame(header=header, data=data)

    def _drop(self, reason: str, *args: object) -> None:
        self.dropped_frames += 1
        logger.debug("Dropped frame: " + reason, *args)
        return None
