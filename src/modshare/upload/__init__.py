"""
Upload path: package sources, digest deduplication and the batch coordinator.
"""

from .coordinator import UploadBatchReport, UploadCoordinator, UploadProgress
from .dedup import DedupResult, DigestIndex
from .sources import PackageSourceResolver, PreparedPackage, build_package_entry

__all__ = [
    "UploadBatchReport",
    "UploadCoordinator",
    "UploadProgress",
    "DedupResult",
    "DigestIndex",
    "PackageSourceResolver",
    "PreparedPackage",
    "build_package_entry",
]
