"""
Transfer timing configuration.

Each transfer engine takes a ``TransferTiming``; the defaults depend on the
transport flavor. Binary-socket transfers receive page replies out of band
and wait up to ``reply_timeout`` for each one. Text transfers get their reply
from the command itself, so the per-step wait only bounds the read.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from cvlsconnect.protocol.constants import ProtocolConstants


class TransferTiming(BaseModel):
    """
    Timing and retry policy of one transfer engine.

    Example:
        >>> timing = TransferTiming(reply_timeout=0.05)
        >>> timing.max_missed_pages
        5
    """

    model_config = ConfigDict(frozen=True)

    reply_timeout: float = Field(
        default=ProtocolConstants.BINARY_REPLY_TIMEOUT,
        gt=0,
        description="Seconds to wait for the reply to one page",
    )
    step_delay: float = Field(
        default=0.0,
        ge=0,
        description="Pause between transfer steps in seconds",
    )
    terminal_timeout: float = Field(
        default=ProtocolConstants.TERMINAL_REPLY_TIMEOUT,
        gt=0,
        description="Seconds to wait for a completion confirmation",
    )
    stop_timeout: float = Field(
        default=ProtocolConstants.STOP_TIMEOUT,
        gt=0,
        description="Seconds a stopping worker is given to finish",
    )
    max_missed_pages: int = Field(
        default=ProtocolConstants.MAX_MISSED_PAGES,
        ge=1,
        description="Consecutive misses of one page tolerated before failing",
    )

    @classmethod
    def binary(cls) -> TransferTiming:
        """Defaults for transfers over the binary socket."""
        return cls()

    @classmethod
    def text(cls) -> TransferTiming:
        """Defaults for transfers over the text protocol."""
        return cls(
            reply_timeout=ProtocolConstants.TEXT_REPLY_TIMEOUT,
            terminal_timeout=ProtocolConstants.DEFAULT_RECEIVE_TIMEOUT,
        )
