"""
Content-addressed package cache.
"""

from .package_cache import CacheRecord, PackageCache

__all__ = [
    "CacheRecord",
    "PackageCache",
]
