"""
Binary command word encoding and decoding.

Every binary frame starts with a 4-byte header:

    byte0  bits[7:6] command type
           bit [5]   write-access flag
           bits[4:3] command set (System/Guest/Operator/Admin)
           bits[2:0] command id, high 3 bits
    byte1  command id, low 8 bits
    byte2  data length, high byte
    byte3  data length, low byte

Out-of-range field values are masked to their bit width, never rejected.
"""

from __future__ import annotations

from dataclasses import dataclass

from cvlsconnect.exceptions import FrameError
from cvlsconnect.protocol.constants import CommandSet, ProtocolConstants


@dataclass(frozen=True)
class CommandWord:
    """
    Decoded binary command header.

    Attributes:
        command_set: Command-set selector (0-3).
        command: Command id within the set (0-2047).
        write_access: True if the command modifies unit state.
        command_type: Command type (0-3); 0 for all known command sets.
        data_length: Length of the data section that follows the header.
    """

    command_set: CommandSet | int
    command: int
    write_access: bool = False
    command_type: int = 0
    data_length: int = 0

    @property
    def word(self) -> int:
        """The packed 16-bit command word."""
        return (
            ((self.command_type & 0x3) << 14)
            | (0x2000 if self.write_access else 0)
            | ((int(self.command_set) & 0x3) << 11)
            | (self.command & ProtocolConstants.MAX_COMMAND_ID)
        )

    def to_bytes(self) -> bytes:
        """
        Encode as the 4-byte wire header.

        Example:
            >>> CommandWord(CommandSet.ADMIN, 4, True, data_length=2).to_bytes()
            b'8\\x04\\x00\\x02'
        """
        word = self.word
        length = self.data_length & 0xFFFF
        return bytes([word >> 8, word & 0xFF, length >> 8, length & 0xFF])

    def with_length(self, data_length: int) -> CommandWord:
        """Return a copy describing a data section of ``data_length`` bytes."""
        return CommandWord(
            command_set=self.command_set,
            command=self.command,
            write_access=self.write_access,
            command_type=self.command_type,
            data_length=data_length,
        )

    @classmethod
    def try_decode(cls, data: bytes | bytearray | memoryview) -> CommandWord | None:
        """
        Decode a 4-byte header.

        Args:
            data: Exactly 4 header bytes.

        Returns:
            The decoded command word, or None if ``data`` is not 4 bytes long.
        """
        if len(data) != ProtocolConstants.COMMAND_WORD_SIZE:
            return None

        word = (data[0] << 8) | data[1]
        selector = (word & 0x1FFF) >> 11
        return cls(
            command_set=CommandSet(selector),
            command=word & ProtocolConstants.MAX_COMMAND_ID,
            write_access=bool(word & 0x2000),
            command_type=(word & 0xC000) >> 14,
            data_length=(data[2] << 8) | data[3],
        )

    @classmethod
    def from_bytes(cls, data: bytes | bytearray | memoryview) -> CommandWord:
        """
        Decode a 4-byte header.

        Raises:
            FrameError: If ``data`` is not exactly 4 bytes long.
        """
        decoded = cls.try_decode(data)
        if decoded is None:
            raise FrameError(
                f"Command word must be {ProtocolConstants.COMMAND_WORD_SIZE} bytes, got {len(data)}"
            )
        return decoded

    def matches(self, command_set: CommandSet | int, command: int) -> bool:
        """Check whether this header addresses ``command`` in ``command_set``."""
        return (
            self.command_type == 0
            and int(self.command_set) == int(command_set)
            and self.command == command
        )

    def __repr__(self) -> str:
        try:
            set_name = CommandSet(int(self.command_set)).name
        except ValueError:
            set_name = str(self.command_set)
        flag = "W" if self.write_access else "R"
        return (
            f"CommandWord({set_name}:{self.command} {flag} "
            f"type={self.command_type} len={self.data_length})"
        )
