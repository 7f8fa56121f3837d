"""
Relay transfer contract and implementations.

- channel.py: the TransferChannel protocol and batch result types
- http_channel.py: relay over HTTP (urllib)
- local_channel.py: relay backed by a local directory
"""

from .channel import (
    BatchUploadResult,
    IncomingOffer,
    ProgressCallback,
    TransferChannel,
    TransferRecord,
    UploadOutcome,
)

__all__ = [
    "BatchUploadResult",
    "IncomingOffer",
    "ProgressCallback",
    "TransferChannel",
    "TransferRecord",
    "UploadOutcome",
]
