"""
Binary data embedded in text protocol commands.

Text transfer commands carry raw page bytes after the command prefix. Bytes
that the text parser treats specially (``&``, CR, LF and the escape byte
0xFE itself) are preceded by 0xFE.
"""

from __future__ import annotations

from cvlsconnect.protocol.checksums import fletcher16
from cvlsconnect.protocol.constants import ProtocolConstants


def escape_text_payload(data: bytes | bytearray) -> bytes:
    """
    Escape binary data for inclusion in a text command.

    Example:
        >>> escape_text_payload(b"a&b")
        b'a\\xfe&b'
    """
    escaped = bytearray()
    for byte in data:
        if byte in ProtocolConstants.TEXT_ESCAPED_BYTES:
            escaped.append(ProtocolConstants.TEXT_ESCAPE)
        escaped.append(byte)
    return bytes(escaped)


def unescape_text_payload(data: bytes | bytearray) -> bytes:
    """Remove the escape bytes inserted by ``escape_text_payload``."""
    plain = bytearray()
    pending = False
    for byte in data:
        if byte == ProtocolConstants.TEXT_ESCAPE and not pending:
            pending = True
            continue
        pending = False
        plain.append(byte)
    return bytes(plain)


def build_text_page(command: str, page: int, data: bytes | bytearray = b"") -> bytes:
    """
    Build a text transfer page command.

    Layout: ``command`` + escape(be16 page + data + fletcher16(page + data)).

    Args:
        command: Command prefix, e.g. ``&@f``.
        page: Page index (0xFFFF for the end-of-transfer sentinel).
        data: Page data.

    Returns:
        Command bytes, without the line terminator.
    """
    body = (page & 0xFFFF).to_bytes(2, "big") + bytes(data)
    return command.encode("ascii") + escape_text_payload(body + fletcher16(body))
