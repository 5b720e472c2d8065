import os
import hashlib
import tempfile
from pathlib import Path
from typing import Optional, Callable
from urllib.parse import urlparse

import requests

from cellar.config.constants import (
    DOWNLOAD_CHUNK_SIZE,
    DEFAULT_DOWNLOAD_TIMEOUT,
    HASH_BLOCK_SIZE,
    INCOMPLETE_SUFFIX,
)
from cellar.errors import NetworkError, IntegrityError, InstallIOError
from cellar.utils.logger import log


class DownloadService:
    """
    Handles archive downloads into the local cache and digest verification.
    Failed downloads are not retried; a fresh call starts over.
    """

    def __init__(self, timeout: int = DEFAULT_DOWNLOAD_TIMEOUT, auth_token: Optional[str] = None):
        self.timeout = timeout
        self.auth_token = auth_token

    def _headers_for(self, url: str) -> dict:
        headers = {}
        host = urlparse(url).hostname or ""
        if self.auth_token and (host == "github.com" or host.endswith(".github.com")):
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def download_file(
        self,
        url: str,
        dest_path: Path,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> Path:
        """
        Stream ``url`` to ``dest_path``.

        Data goes to a uniquely named sibling ``.incomplete`` file that is
        renamed into place only after the whole body arrived, so ``dest_path``
        never holds a partial download.

        Raises:
            NetworkError: host unreachable, timeout or non-2xx response
            InstallIOError: the cache directory cannot be written
        """
        dest_path = Path(dest_path)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            # Unique per call so concurrent fetches of one archive never share a partial file
            fd, temp_name = tempfile.mkstemp(
                prefix=f".{dest_path.name}.", suffix=INCOMPLETE_SUFFIX, dir=dest_path.parent
            )
        except OSError as e:
            raise InstallIOError(f"Cache directory {dest_path.parent} is not writable: {e}", stage="fetch") from e
        temp_path = Path(temp_name)

        log.info(f"Downloading {url}")
        try:
            with os.fdopen(fd, "wb") as f:
                with requests.get(url, headers=self._headers_for(url), stream=True, timeout=self.timeout) as r:
                    r.raise_for_status()
                    total_size = int(r.headers.get('content-length', 0))
                    current_size = 0

                    for chunk in r.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                            current_size += len(chunk)
                            if progress_callback:
                                progress_callback(current_size, total_size)

            os.replace(temp_path, dest_path)
        except requests.HTTPError as e:
            self._discard(temp_path)
            status = e.response.status_code if e.response is not None else "unknown"
            raise NetworkError(f"HTTP {status} fetching {url}") from e
        except requests.RequestException as e:
            self._discard(temp_path)
            raise NetworkError(f"Could not download {url}: {e}") from e
        except OSError as e:
            self._discard(temp_path)
            raise InstallIOError(f"Could not write {dest_path}: {e}", stage="fetch") from e

        log.info(f"Downloaded {dest_path.name} ({current_size} bytes)")
        return dest_path

    @staticmethod
    def _discard(path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"Could not remove partial download {path}: {e}")

    @staticmethod
    def compute_hash(file_path: Path) -> str:
        """SHA-256 hex digest of a file."""
        sha256 = hashlib.sha256()
        with open(file_path, "rb") as f:
            for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
                sha256.update(block)
        return sha256.hexdigest()

    @staticmethod
    def verify_hash(file_path: Path, expected_hash: str):
        """
        Verify a file's SHA-256 digest.

        Raises:
            IntegrityError: digest differs from ``expected_hash`` or the file is unreadable
        """
        try:
            actual = DownloadService.compute_hash(file_path)
        except OSError as e:
            raise IntegrityError(f"Cannot read {file_path}: {e}") from e

        if actual != expected_hash.strip().lower():
            raise IntegrityError(
                f"SHA-256 mismatch for {Path(file_path).name}: expected {expected_hash}, got {actual}"
            )
        log.info(f"Verified SHA-256 of {Path(file_path).name}")

    @staticmethod
    def matches_hash(file_path: Path, expected_hash: str) -> bool:
        if not os.path.exists(file_path):
            return False
        try:
            DownloadService.verify_hash(file_path, expected_hash)
            return True
        except IntegrityError:
            return False
