"""
TransferChannel over the relay's HTTP API (urllib, blocking).

Endpoints (relative to the relay base URL):
    HEAD   /api/files/{digest}             is the package stored?
    PUT    /api/files/{digest}             upload package bytes
    GET    /api/files/{digest}             download package bytes
    POST   /api/transfers                  offer a stored package to recipients
    GET    /api/transfers/incoming         offers addressed to this account
    POST   /api/transfers/{digest}/ack     acknowledge an offer
    GET    /api/history/{direction}        upload / download history
    GET    /api/backups                    backup summaries
    POST   /api/backups                    create a backup
    GET    /api/backups/{id}               one backup with entries
    DELETE /api/backups/{id}               delete a backup
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Iterator, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request

from ..backup.models import Backup, BackupSummary, PackageEntry
from ..cancellation import CancellationToken, check_cancelled
from ..errors import ForbiddenError, OperationCancelled, TooLargeError, TransportError
from ..fs.hashing import BUFFER_SIZE, normalize_digest
from ..net.proxy import ProxyConfig, build_opener
from ..net.retry import RetryConfig, with_retry
from .channel import BatchUploadResult, IncomingOffer, ProgressCallback, TransferRecord, UploadOutcome

DEFAULT_USER_AGENT = "modshare-relay/0.1"
DEFAULT_TIMEOUT_S = 60.0

logger = logging.getLogger(__name__)


@dataclass
class RelayCredentials:
    account_id: str
    api_token: str = ""

    def headers(self) -> dict[str, str]:
        headers = {"X-Account-Id": self.account_id}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers


def classify_http_error(status: int, body: str) -> Exception:
    """
    Map a relay error response to the error taxonomy.

    413, or 400 mentioning "too large", is a size rejection; 401/403 are
    policy rejections; everything else is a transport failure.
    """
    if status == 413 or (status == 400 and "too large" in body.lower()):
        return TooLargeError(f"relay rejected package size (HTTP {status})")
    if status in (401, 403):
        return ForbiddenError(f"relay refused the request (HTTP {status})")
    return TransportError(f"relay returned HTTP {status}", status_code=status)


class HttpTransferChannel:
    def __init__(
        self,
        base_url: str,
        credentials: RelayCredentials,
        *,
        retry: Optional[RetryConfig] = None,
        proxy: Optional[ProxyConfig] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        if not base_url.strip():
            raise ValueError("relay base URL must not be empty")
        self._base_url = base_url.strip().rstrip("/")
        self._credentials = credentials
        self._retry = retry or RetryConfig()
        self._opener = build_opener(proxy)
        self._timeout_s = timeout_s

    # --- plumbing ---

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Request:
        all_headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"}
        all_headers.update(self._credentials.headers())
        if headers:
            all_headers.update(headers)
        return Request(self._url(path), data=data, headers=all_headers, method=method)

    def _open(self, req: Request):
        try:
            return self._opener.open(req, timeout=self._timeout_s)
        except HTTPError as exc:
            try:
                body = exc.read().decode("utf-8", errors="replace")
            except OSError:
                body = ""
            finally:
                exc.close()
            raise classify_http_error(exc.code, body) from exc
        except URLError as exc:
            raise TransportError(f"relay unreachable: {exc.reason}") from exc
        except OSError as exc:
            raise TransportError(f"relay connection failed: {exc}") from exc

    def _json(self, method: str, path: str, payload: Any = None) -> Any:
        data = None
        headers: dict[str, str] = {}
        if payload is not None:
            data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
            headers["Content-Type"] = "application/json"

        with self._open(self._request(method, path, data=data, headers=headers)) as resp:
            raw = resp.read()
        if not raw:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise TransportError(f"relay returned malformed JSON for {path}") from exc

    def _get_json(self, path: str) -> Any:
        return with_retry(lambda: self._json("GET", path), config=self._retry)

    # --- files ---

    def _is_stored(self, digest: str) -> bool:
        try:
            with self._open(self._request("HEAD", f"/api/files/{quote(digest)}")):
                return True
        except TransportError as exc:
            if exc.status_code == 404:
                return False
            raise

    def _upload_body(
        self,
        package_path: Path,
        total: int,
        progress: Optional[ProgressCallback],
        cancel: Optional[CancellationToken],
    ) -> Iterator[bytes]:
        sent = 0
        with open(package_path, "rb") as f:
            while True:
                check_cancelled(cancel)
                chunk = f.read(BUFFER_SIZE)
                if not chunk:
                    break
                sent += len(chunk)
                yield chunk
                if progress:
                    progress(sent, total)

    def upload(
        self,
        digest: str,
        package_path: Path,
        recipients: Sequence[str],
        metadata: Sequence[PackageEntry],
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> BatchUploadResult:
        key = normalize_digest(digest)
        result = BatchUploadResult()
        package_path = Path(package_path)

        try:
            total = package_path.stat().st_size
        except OSError:
            result.record(UploadOutcome.LOCALLY_MISSING, key)
            return result

        try:
            check_cancelled(cancel)
            if self._is_stored(key):
                logger.debug("Relay already stores %s, skipping byte upload", key)
                if progress:
                    progress(total, total)
            else:
                req = self._request(
                    "PUT",
                    f"/api/files/{quote(key)}",
                    data=self._upload_body(package_path, total, progress, cancel),
                    headers={
                        "Content-Type": "application/octet-stream",
                        "Content-Length": str(total),
                    },
                )
                with self._open(req) as resp:
                    resp.read()

            if recipients:
                self._offer(key, recipients, metadata)
        except OperationCancelled:
            raise
        except TooLargeError as exc:
            logger.info("Package %s skipped: %s", key, exc)
            result.record(UploadOutcome.SKIPPED_TOO_LARGE, key)
        except ForbiddenError as exc:
            logger.warning("Package %s forbidden: %s", key, exc)
            result.record(UploadOutcome.FORBIDDEN, key)
        except TransportError as exc:
            logger.warning("Package %s failed to upload: %s", key, exc)
            result.record(UploadOutcome.FAILED, key)

        return result

    def download(
        self,
        digest: str,
        sink: BinaryIO,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> int:
        key = normalize_digest(digest)
        check_cancelled(cancel)
        req = self._request(
            "GET",
            f"/api/files/{quote(key)}",
            headers={"Accept": "application/octet-stream"},
        )
        resp = with_retry(lambda: self._open(req), config=self._retry)

        received = 0
        with resp:
            total = int(resp.headers.get("Content-Length") or 0)
            while True:
                check_cancelled(cancel)
                try:
                    chunk = resp.read(BUFFER_SIZE)
                except OSError as exc:
                    raise TransportError(f"download of {key} interrupted: {exc}") from exc
                if not chunk:
                    break
                sink.write(chunk)
                received += len(chunk)
                if progress:
                    progress(received, max(total, received))

        if total and received != total:
            raise TransportError(f"download of {key} truncated ({received}/{total} bytes)")
        return received

    # --- transfers ---

    def _offer(self, digest: str, recipients: Sequence[str], metadata: Sequence[PackageEntry]) -> None:
        self._json(
            "POST",
            "/api/transfers",
            {
                "digest": digest,
                "recipients": list(recipients),
                "packages": [entry.to_dict() for entry in metadata],
            },
        )

    def offer(self, digest: str, recipients: Sequence[str], package: PackageEntry) -> None:
        self._offer(normalize_digest(digest), recipients, [package])

    def list_incoming(self) -> list[IncomingOffer]:
        raw = self._get_json("/api/transfers/incoming") or []
        return [IncomingOffer.from_dict(item) for item in raw if isinstance(item, dict)]

    def acknowledge(self, digest: str, sender_id: str) -> None:
        self._json(
            "POST",
            f"/api/transfers/{quote(normalize_digest(digest))}/ack",
            {"sender_id": sender_id},
        )

    def list_history(self, direction: str) -> list[TransferRecord]:
        if direction not in ("upload", "download"):
            raise ValueError(f"unknown history direction: {direction}")
        raw = self._get_json(f"/api/history/{direction}") or []
        return [TransferRecord.from_dict(item) for item in raw if isinstance(item, dict)]

    # --- backups ---

    def list_backups(self) -> list[BackupSummary]:
        raw = self._get_json("/api/backups") or []
        return [BackupSummary.from_dict(item) for item in raw if isinstance(item, dict)]

    def get_backup(self, backup_id: str) -> Optional[Backup]:
        try:
            raw = self._get_json(f"/api/backups/{quote(backup_id)}")
        except TransportError as exc:
            if exc.status_code == 404:
                return None
            raise
        return Backup.from_dict(raw) if isinstance(raw, dict) else None

    def create_backup(self, name: str, entries: Sequence[PackageEntry]) -> BackupSummary:
        raw = self._json(
            "POST",
            "/api/backups",
            {"name": name, "entries": [entry.to_dict() for entry in entries]},
        )
        if not isinstance(raw, dict):
            raise TransportError("relay returned no backup record")
        missing = raw.get("missing_digests") or []
        return BackupSummary.from_dict({**raw, "is_complete": not missing})

    def delete_backup(self, backup_id: str) -> None:
        try:
            self._json("DELETE", f"/api/backups/{quote(backup_id)}")
        except TransportError as exc:
            if exc.status_code != 404:
                raise
