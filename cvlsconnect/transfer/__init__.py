"""
Reliable paginated transfers.

The engine holds the shared retry, timeout and progress logic; each
variant supplies page encoding and reply handling for one capability on
one protocol.
"""

from cvlsconnect.transfer.binary import (
    BinaryConfigExport,
    BinaryConfigImport,
    BinaryFirmwareUpload,
    BinaryLogDownload,
)
from cvlsconnect.transfer.engine import (
    OutboundPage,
    PageReply,
    TransferCursor,
    TransferEngine,
    TransferOutcome,
    TransferStrategy,
    pages_for,
)
from cvlsconnect.transfer.text import (
    TextConfigExport,
    TextConfigImport,
    TextFirmwareUpload,
    TextLogDownload,
)

__all__ = [
    # Engine
    "TransferEngine",
    "TransferStrategy",
    "TransferCursor",
    "OutboundPage",
    "PageReply",
    "TransferOutcome",
    "pages_for",
    # Binary socket
    "BinaryFirmwareUpload",
    "BinaryConfigExport",
    "BinaryConfigImport",
    "BinaryLogDownload",
    # Text protocol
    "TextFirmwareUpload",
    "TextConfigExport",
    "TextConfigImport",
    "TextLogDownload",
]
