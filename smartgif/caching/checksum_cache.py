"""
Checksum cache: SHA-256 content hashes validated by (size, mtime).
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..logger_setup import get_logger
from .fingerprint_store import CacheStats, FileFingerprint, FingerprintStore

logger = get_logger(__name__)

DEFAULT_CHUNK_BYTES = 1024 * 1024


@dataclass
class ChecksumRecord:
    filepath: str
    size: int
    mtime: float
    checksum: str


def compute_checksum(path: Union[str, Path], chunk_bytes: int = DEFAULT_CHUNK_BYTES) -> str:
    """Hash file content in chunks to handle large files."""
    hasher = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_bytes), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class ChecksumCache:
    """Fingerprint store specialization holding content checksums."""

    def __init__(self, store: FingerprintStore, chunk_bytes: int = DEFAULT_CHUNK_BYTES):
        self.store = store
        self.chunk_bytes = chunk_bytes

    @classmethod
    def open(cls, cache_dir: Union[str, Path], filename: str = 'checksum_cache.txt',
             chunk_bytes: int = DEFAULT_CHUNK_BYTES) -> 'ChecksumCache':
        return cls(FingerprintStore(Path(cache_dir) / filename, path_keys=True), chunk_bytes)

    def get_record(self, path: Union[str, Path], stats: Optional[CacheStats] = None) -> ChecksumRecord:
        """
        Return the checksum record for a file, recomputing on any fingerprint mismatch.

        Raises:
            OSError: The file cannot be stat'ed or read
        """
        key = str(path)
        fingerprint = FileFingerprint.from_path(path)
        payload, found = self.store.get(key, fingerprint, stats)
        if found and payload:
            checksum = payload
        else:
            checksum = compute_checksum(path, self.chunk_bytes)
            # Re-stat so a file modified while hashing is not cached under the old fingerprint
            after = FileFingerprint.from_path(path)
            if after == fingerprint:
                self.store.put(key, fingerprint, checksum, stats)
            else:
                logger.debug(f"{key} changed while hashing; checksum not cached")
            fingerprint = after
        return ChecksumRecord(filepath=key, size=fingerprint.size, mtime=fingerprint.mtime, checksum=checksum)

    def get_checksum(self, path: Union[str, Path], stats: Optional[CacheStats] = None) -> str:
        return self.get_record(path, stats).checksum

    def compact(self, max_age_hours: float) -> int:
        return self.store.compact(max_age=max_age_hours * 3600.0)
