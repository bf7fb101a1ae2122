"""
Data models for CV-LS transfers.

This module contains Pydantic models for:

- Transfer states and progress snapshots
- Event log entries
"""

from cvlsconnect.models.records import (
    DEFAULT_MESSAGES,
    LogEntry,
    TransferState,
    TransferStatus,
    percent_complete,
)

__all__ = [
    "TransferState",
    "TransferStatus",
    "DEFAULT_MESSAGES",
    "percent_complete",
    "LogEntry",
]
