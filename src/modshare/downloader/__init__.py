"""
Package downloader: streams relay packages into the local cache.
"""

from .downloader import (
    DownloadResult,
    DownloadStatus,
    PackageDownloader,
)

__all__ = [
    "DownloadResult",
    "DownloadStatus",
    "PackageDownloader",
]
