from __future__ import annotations

import logging
from typing import Optional

from src.modshare.cancellation import CancellationToken, check_cancelled
from src.modshare.fs.naming import UNKNOWN_MOD_NAME, sanitize_folder_name
from src.modshare.fs.hashing import normalize_digest
from src.modshare.host.capability import ModHost

from .redownload import InstalledSnapshot, MetadataLookup, ResolveRequest, display_name_candidates

logger = logging.getLogger(__name__)


def capture_snapshot(
    host: ModHost,
    request: ResolveRequest,
    *,
    cancel: Optional[CancellationToken] = None,
) -> InstalledSnapshot:
    """
    Query the host for everything `resolve_install_folder` may read for
    `request`. Blocking; run it in a worker thread.

    Host failures degrade to an emptier snapshot rather than raising, since
    the resolver always has a fallback name.
    """
    preferred = request.preferred_name()

    try:
        mods = dict(host.list_mods())
    except Exception as exc:
        logger.debug("Failed to list installed mods: %s", exc)
        mods = {}

    metadata: dict[str, MetadataLookup] = {}
    candidates = display_name_candidates(mods, preferred)
    if len(candidates) > 1:
        for folder in candidates:
            check_cancelled(cancel)
            try:
                metadata[folder] = MetadataLookup(metadata=host.get_metadata(folder))
            except Exception as exc:
                logger.debug("Metadata lookup failed for %s: %s", folder, exc)
                metadata[folder] = MetadataLookup(failed=True)

    sanitized = sanitize_folder_name(preferred) or normalize_digest(request.digest) or UNKNOWN_MOD_NAME

    host_known: set[str] = set()
    try:
        if host.mod_exists(sanitized):
            host_known.add(sanitized)
    except Exception as exc:
        logger.debug("Failed to check whether %s exists: %s", sanitized, exc)

    on_disk: set[str] = set()
    try:
        root = host.get_install_root()
        if root is not None and (root / sanitized).is_dir():
            on_disk.add(sanitized)
    except OSError as exc:
        logger.debug("Failed to probe install root for %s: %s", sanitized, exc)

    return InstalledSnapshot(
        mods=mods,
        metadata=metadata,
        host_known=frozenset(host_known),
        on_disk=frozenset(on_disk),
    )
