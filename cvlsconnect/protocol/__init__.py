"""
Protocol layer for CV-LS communication.

This module contains the low-level protocol handling:
- Command sets, command ids and protocol constants
- Fletcher-16 checksum calculation and validation
- Binary command word encoding/decoding
- Binary frame escaping and incremental decoding
- Text protocol payload escaping
"""

from cvlsconnect.protocol.checksums import (
    append_checksum,
    fletcher16,
    strip_checksum,
    validate_checksum,
)
from cvlsconnect.protocol.command_word import CommandWord
from cvlsconnect.protocol.constants import (
    AdminCommand,
    CommandSet,
    FrameMarker,
    ProtocolConstants,
    SystemCommand,
    TextCommand,
)
from cvlsconnect.protocol.framing import (
    DecodedFrame,
    FrameDecoder,
    build_frame,
    build_payload,
    encode_frame,
    escape,
    unescape,
)
from cvlsconnect.protocol.text_escape import (
    build_text_page,
    escape_text_payload,
    unescape_text_payload,
)

__all__ = [
    # Constants
    "AdminCommand",
    "CommandSet",
    "FrameMarker",
    "ProtocolConstants",
    "SystemCommand",
    "TextCommand",
    # Checksums
    "fletcher16",
    "append_checksum",
    "validate_checksum",
    "strip_checksum",
    # Command word
    "CommandWord",
    # Framing
    "escape",
    "unescape",
    "encode_frame",
    "build_payload",
    "build_frame",
    "DecodedFrame",
    "FrameDecoder",
    # Text protocol
    "escape_text_payload",
    "unescape_text_payload",
    "build_text_page",
]
