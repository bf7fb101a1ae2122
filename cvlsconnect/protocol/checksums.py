"""
Fletcher-16 checksum calculation and validation.

The CV-LS firmware uses a Fletcher-16 variant that differs from the textbook
algorithm and must be reproduced exactly:
- Both running sums are seeded with 0xFF
- Input is summed in blocks of at most 20 bytes
- Each sum is folded to 8 bits after every block, then once more at the end
- The checksum is emitted as [sum2, sum1]

Binary frames carry the checksum over the command word and data section.
Text page commands carry it over the page index and page data.
"""

from __future__ import annotations

from cvlsconnect.exceptions import ChecksumError
from cvlsconnect.protocol.constants import ProtocolConstants


def fletcher16(data: bytes | bytearray | memoryview, length: int | None = None) -> bytes:
    """
    Calculate the Fletcher-16 checksum of the first ``length`` bytes.

    Args:
        data: Data to checksum.
        length: Number of leading bytes to include (default: all).

    Returns:
        2-byte checksum, sum2 first.

    Example:
        >>> fletcher16(b"")
        b'\\xff\\xff'
    """
    count = len(data) if length is None else length
    sum1 = 0xFF
    sum2 = 0xFF
    index = 0
    block = ProtocolConstants.FLETCHER_BLOCK_SIZE

    while count > 0:
        run = block if count > block else count
        count -= run
        for byte in data[index : index + run]:
            sum1 = (sum1 + byte) & 0xFFFF
            sum2 = (sum2 + sum1) & 0xFFFF
        index += run
        sum1 = (sum1 & 0xFF) + (sum1 >> 8)
        sum2 = (sum2 & 0xFF) + (sum2 >> 8)

    sum1 = (sum1 & 0xFF) + (sum1 >> 8)
    sum2 = (sum2 & 0xFF) + (sum2 >> 8)

    return bytes([sum2 & 0xFF, sum1 & 0xFF])


def append_checksum(data: bytes | bytearray) -> bytes:
    """
    Calculate the Fletcher-16 checksum and append it to the data.

    Args:
        data: Data to checksum.

    Returns:
        Original data followed by the 2 checksum bytes.
    """
    return bytes(data) + fletcher16(data)


def validate_checksum(data: bytes | bytearray | memoryview) -> bool:
    """
    Check a buffer whose last 2 bytes are its Fletcher-16 checksum.

    Args:
        data: Data followed by its checksum.

    Returns:
        True if the trailing checksum matches, False otherwise (including
        buffers too short to carry a checksum).
    """
    if len(data) < ProtocolConstants.CHECKSUM_SIZE:
        return False
    body_length = len(data) - ProtocolConstants.CHECKSUM_SIZE
    return fletcher16(data, body_length) == bytes(data[body_length:])


def strip_checksum(data: bytes | bytearray) -> bytes:
    """
    Validate and remove a trailing Fletcher-16 checksum.

    Args:
        data: Data followed by its checksum.

    Returns:
        The data without its checksum.

    Raises:
        ChecksumError: If the checksum does not match.
    """
    if not validate_checksum(data):
        body_length = max(len(data) - ProtocolConstants.CHECKSUM_SIZE, 0)
        raise ChecksumError(
            expected=fletcher16(data, body_length),
            received=bytes(data[body_length:]),
        )
    return bytes(data[: -ProtocolConstants.CHECKSUM_SIZE])
