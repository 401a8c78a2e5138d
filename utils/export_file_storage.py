"""
Export File Storage Utility

Holds finished export payloads behind opaque object URLs and delivers them.

- Object URL table: create / get / revoke, one payload per URL
- Download delivery: writes the payload into a download directory when one
  is configured, otherwise the payload stays reachable through its URL only
- File permissions on delivered files
- Storage statistics
"""

import os
import logging
import stat
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

# Configure logging
logger = logging.getLogger(__name__)

OBJECT_URL_PREFIX = "blob:exports/"


@dataclass
class StoredPayload:
    url: str
    content: bytes
    content_type: str
    filename: str
    job_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def size(self) -> int:
        return len(self.content)


class ExportFileStorage:
    """
    Manages finished export payloads.

    Features:
    - In-process object URLs (blob:exports/<uuid>) with explicit revocation
    - Optional delivery into a download directory with owner-only permissions
    - Age based cleanup of forgotten payloads
    """

    def __init__(self, download_dir: str = None):
        """
        Initialize ExportFileStorage.

        Args:
            download_dir: Directory that delivered downloads are written to
                          (default: no file delivery)
        """
        self.download_dir = download_dir
        self._payloads: Dict[str, StoredPayload] = {}

        if self.download_dir:
            self._ensure_download_directory()

        logger.info(f"ExportFileStorage initialized (download dir: {self.download_dir or 'none'})")

    def _ensure_download_directory(self) -> None:
        """Create the download directory restricted to owner and group."""
        try:
            Path(self.download_dir).mkdir(parents=True, exist_ok=True)
            os.chmod(self.download_dir, stat.S_IRWXU | stat.S_IRGRP | stat.S_IXGRP)
            logger.info(f"Export download directory ensured: {self.download_dir}")
        except PermissionError as e:
            logger.error(f"Permission denied creating download directory: {str(e)}")
            raise

    # ===== OBJECT URLS =====

    def create_object_url(
        self,
        content: bytes,
        content_type: str,
        filename: str,
        job_id: str = None
    ) -> str:
        """
        Register a payload and return its object URL.

        Args:
            content: Encoded export payload
            content_type: MIME type of the payload
            filename: Suggested download filename
            job_id: Owning export job, if any

        Returns:
            Object URL of the form blob:exports/<uuid>
        """
        url = f"{OBJECT_URL_PREFIX}{uuid.uuid4()}"
        self._payloads[url] = StoredPayload(
            url=url,
            content=content,
            content_type=content_type,
            filename=filename,
            job_id=job_id,
        )
        logger.debug(f"Object URL created: {url[:40]}... ({len(content)} bytes)")
        return url

    def get(self, url: str) -> Optional[StoredPayload]:
        return self._payloads.get(url)

    def revoke_object_url(self, url: str) -> bool:
        """
        Release the payload behind an object URL.

        Returns:
            True if the URL was live, False otherwise
        """
        payload = self._payloads.pop(url, None)
        if payload is None:
            logger.debug(f"Object URL already revoked: {url[:40]}...")
            return False
        logger.debug(f"Object URL revoked: {url[:40]}...")
        return True

    def revoke_all(self) -> int:
        count = len(self._payloads)
        self._payloads.clear()
        if count:
            logger.info(f"Revoked {count} object URLs")
        return count

    def active_urls(self) -> List[str]:
        return list(self._payloads)

    def cleanup_expired(self, max_age_seconds: float) -> int:
        """
        Revoke payloads older than max_age_seconds.

        Returns:
            Number of URLs revoked
        """
        threshold = time.time() - max_age_seconds
        expired = [url for url, payload in self._payloads.items() if payload.created_at < threshold]
        for url in expired:
            self.revoke_object_url(url)
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired object URLs")
        return len(expired)

    # ===== DOWNLOAD DELIVERY =====

    def get_file_path(self, filename: str) -> str:
        """Path inside the download directory; directory parts of filename are dropped."""
        if not self.download_dir:
            raise ValueError("No download directory configured")
        safe_name = os.path.basename(filename) or f"export_{uuid.uuid4().hex[:8]}"
        return os.path.join(self.download_dir, safe_name)

    def save_download(self, payload: StoredPayload) -> Optional[str]:
        """
        Deliver a payload to the user.

        Writes the file into the download directory when one is configured.

        Returns:
            Path of the written file, or None when only the object URL is kept
        """
        if not self.download_dir:
            logger.info(f"Download ready: {payload.filename} ({payload.size} bytes) at {payload.url[:40]}...")
            return None

        file_path = self.get_file_path(payload.filename)
        with open(file_path, "wb") as f:
            f.write(payload.content)
        self.set_file_permissions(file_path)
        logger.info(f"Download written: {file_path} ({payload.size} bytes)")
        return file_path

    def set_file_permissions(self, file_path: str) -> None:
        """
        Set owner read/write only (0o600) on a delivered file.

        Args:
            file_path: Path to the delivered file
        """
        try:
            os.chmod(file_path, stat.S_IRUSR | stat.S_IWUSR)
            logger.debug(f"Set restrictive permissions on file: {file_path}")
        except PermissionError as e:
            # Don't raise - the file is already delivered
            logger.error(f"Permission denied setting file permissions: {str(e)}")

    # ===== STATS =====

    def get_storage_stats(self) -> Dict[str, float]:
        """
        Get statistics about held payloads.

        Returns:
            Dictionary with payload count and total size
        """
        total_size = sum(payload.size for payload in self._payloads.values())
        return {
            "payload_count": len(self._payloads),
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / (1024 * 1024), 2),
        }
