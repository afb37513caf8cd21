"""
Storage Service - Blob storage for job input and output files.

This module provides a local-filesystem blob store keyed by
`{organization}/{job}/{filename}` together with HMAC-signed, expiring
download URLs.
"""

import hashlib
import hmac
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import quote, urlencode

from services.errors import StorageError

logger = logging.getLogger(__name__)

# Default storage directory
DEFAULT_STORAGE_DIR = 'storage/'

SAFE_NAME_PATTERN = re.compile(r'[^A-Za-z0-9._-]+')


@dataclass
class StoredFile:
    """Reference to an uploaded blob."""
    url: str
    key: str


def sanitize_filename(filename: str) -> str:
    """Reduce a filename to a safe single path component."""
    name = Path(filename or 'file').name
    name = SAFE_NAME_PATTERN.sub('_', name).strip('._')
    return name or 'file'


class StorageService:
    """
    Framework-agnostic local blob store.

    Keys are relative POSIX paths under the storage directory. Download URLs
    carry an expiry and an HMAC signature over `key:expires`.
    """

    def __init__(self, storage_dir: str = DEFAULT_STORAGE_DIR,
                 base_url: str = 'http://localhost:8000/files',
                 signing_key: str = 'change-me'):
        """
        Initialize storage service.

        Args:
            storage_dir: Root directory for stored blobs
            base_url: Public URL prefix that serves blobs
            signing_key: Secret used to sign download URLs
        """
        self.storage_dir = Path(storage_dir)
        self.base_url = base_url.rstrip('/')
        self._signing_key = signing_key.encode('utf-8')
        self._ensure_directory_exists()

    def _ensure_directory_exists(self):
        """Ensure the storage directory exists."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Storage directory ensured: {self.storage_dir}")

    def _path_for(self, key: str) -> Path:
        root = self.storage_dir.resolve()
        path = (root / key).resolve()
        if root != path and root not in path.parents:
            raise StorageError('resolve', key, ValueError('key escapes storage directory'))
        return path

    @staticmethod
    def compute_hash(data: bytes, algorithm: str = 'sha256') -> str:
        """
        Compute hash of a buffer.

        Args:
            data: Bytes to hash
            algorithm: Hash algorithm ('sha256', 'md5', 'sha1')

        Returns:
            Hex digest
        """
        if algorithm not in ('sha256', 'md5', 'sha1'):
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        return hashlib.new(algorithm, data).hexdigest()

    def build_key(self, filename: str, organization_id: str, job_id: str) -> str:
        return f"{sanitize_filename(organization_id)}/{sanitize_filename(job_id)}/{sanitize_filename(filename)}"

    def upload(self, buffer: bytes, filename: str, organization_id: str, job_id: str) -> StoredFile:
        """
        Store a buffer.

        The file is written to a temporary sibling and moved into place so
        readers never observe a partial blob.

        Returns:
            StoredFile with the blob key and its public URL

        Raises:
            StorageError: If the write fails
        """
        key = self.build_key(filename, organization_id, job_id)
        path = self._path_for(key)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix='.upload-')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(buffer)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StorageError('upload', key, e) from e

        logger.info(f"Stored file: {key} ({len(buffer)} bytes, sha256={self.compute_hash(buffer)[:16]}...)")
        return StoredFile(url=f"{self.base_url}/{quote(key)}", key=key)

    def get(self, key: str) -> bytes:
        """
        Read a stored blob.

        Raises:
            StorageError: If the blob is missing or unreadable
        """
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except OSError as e:
            raise StorageError('get', key, e) from e

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def delete(self, key: str) -> bool:
        """
        Delete a stored blob.

        Returns:
            True if the blob was deleted, False if it did not exist
        """
        path = self._path_for(key)
        if not path.exists():
            logger.warning(f"File not found for deletion: {key}")
            return False
        try:
            path.unlink()
        except OSError as e:
            raise StorageError('delete', key, e) from e
        logger.info(f"Deleted file: {key}")
        return True

    def _sign(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode('utf-8')
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def download_url(self, key: str, expires_in: int = 86400) -> Tuple[str, datetime]:
        """
        Build an expiring, signed download URL.

        Args:
            key: Blob key
            expires_in: Lifetime in seconds

        Returns:
            Tuple of (url, expires_at)
        """
        expires = int(time.time()) + expires_in
        query = urlencode({'expires': expires, 'signature': self._sign(key, expires)})
        return f"{self.base_url}/{quote(key)}?{query}", datetime.utcfromtimestamp(expires)

    def verify_download(self, key: str, expires: int, signature: str,
                        now: Optional[float] = None) -> bool:
        """Check a download signature in constant time and reject expired links."""
        if (now if now is not None else time.time()) > expires:
            return False
        return hmac.compare_digest(self._sign(key, expires), signature or '')

    def cleanup_prefix(self, organization_id: str, job_id: str) -> int:
        """
        Delete every blob stored for one job.

        Returns:
            Number of files deleted
        """
        job_dir = self._path_for(f"{sanitize_filename(organization_id)}/{sanitize_filename(job_id)}")
        if not job_dir.is_dir():
            return 0

        deleted = 0
        for file_path in job_dir.glob('*'):
            if file_path.is_file():
                file_path.unlink()
                deleted += 1
        try:
            job_dir.rmdir()
        except OSError:
            logger.debug(f"Job directory not empty after cleanup: {job_dir}")

        if deleted:
            logger.info(f"Cleaned up {deleted} files for job {job_id}")
        return deleted
