"""
Log-structured fingerprint store.

Maps a key (normally a file path) to the latest (fingerprint, payload) pair
written for it. Writes append a complete record line; lookups are answered
from an in-memory index of the most recent record per key and only count as
hits when the caller's live fingerprint matches the stored one.
"""

import os
import shutil
import threading
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from ..logger_setup import get_logger
from .record_codec import (
    RecordFormatError, decode_record, encode_record, format_header, parse_header, split_lines
)

logger = get_logger(__name__)

STORE_KIND = 'fingerprint-store'
STORE_VERSION = 1
RECORD_FIELDS = 5


class StoreCorruptionError(Exception):
    """Store file failed structural validation."""


class StoreUnavailableError(OSError):
    """The store directory cannot be created or written at all."""


@dataclass(frozen=True)
class FileFingerprint:
    """Cheap identity/freshness proxy for a file: size plus modification time."""
    size: int
    mtime: float

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> 'FileFingerprint':
        st = os.stat(path)
        return cls(size=int(st.st_size), mtime=float(st.st_mtime))

    @classmethod
    def try_from_path(cls, path: Union[str, Path]) -> Optional['FileFingerprint']:
        try:
            return cls.from_path(path)
        except OSError:
            return None


@dataclass
class CacheEntry:
    """One stored record."""
    key: str
    fingerprint: FileFingerprint
    payload: str
    timestamp: float

    def to_line(self) -> str:
        return encode_record([
            self.key,
            str(int(self.fingerprint.size)),
            repr(float(self.fingerprint.mtime)),
            repr(float(self.timestamp)),
            self.payload,
        ])

    @classmethod
    def from_line(cls, line: str) -> 'CacheEntry':
        key, size, mtime, timestamp, payload = decode_record(line, RECORD_FIELDS)
        if not key:
            raise RecordFormatError("empty key")
        try:
            fingerprint = FileFingerprint(size=int(size), mtime=float(mtime))
            stamp = float(timestamp)
        except ValueError as e:
            raise RecordFormatError(f"bad numeric field: {e}") from e
        return cls(key=key, fingerprint=fingerprint, payload=payload, timestamp=stamp)


@dataclass
class CacheStats:
    """Lookup/write counters for one unit of work; merged by the caller."""
    lookups: int = 0
    hits: int = 0
    misses: int = 0
    stale: int = 0
    writes: int = 0
    write_failures: int = 0

    def record_hit(self) -> None:
        self.lookups += 1
        self.hits += 1

    def record_miss(self, stale: bool = False) -> None:
        self.lookups += 1
        self.misses += 1
        if stale:
            self.stale += 1

    def merge(self, other: 'CacheStats') -> 'CacheStats':
        for name in ('lookups', 'hits', 'misses', 'stale', 'writes', 'write_failures'):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        return self

    @property
    def hit_rate(self) -> float:
        return self.hits / self.lookups if self.lookups else 0.0

    def to_dict(self) -> Dict[str, float]:
        data = asdict(self)
        data['hit_rate'] = self.hit_rate
        return data


@dataclass
class ScanReport:
    """Result of a structural scan over a store file."""
    header_ok: bool
    entries: List[CacheEntry]
    malformed_lines: int
    torn_tail: bool

    @property
    def is_valid(self) -> bool:
        return self.header_ok and self.malformed_lines == 0 and not self.torn_tail


class FingerprintStore:
    """Durable, corruption-tolerant key -> (fingerprint, payload) map."""

    def __init__(self, path: Union[str, Path], path_keys: bool = True,
                 max_payload_bytes: Optional[int] = None):
        """
        Args:
            path: Store file location; its directory is created if needed
            path_keys: Keys name files on disk (compaction drops vanished files)
            max_payload_bytes: Refuse payloads larger than this
        """
        self.path = Path(path)
        self.path_keys = path_keys
        self.max_payload_bytes = max_payload_bytes
        self._lock = threading.RLock()
        self._index: Dict[str, CacheEntry] = {}
        self._degraded = False
        # Set when the file failed validation on open and had to be rebuilt
        self.last_corruption: Optional[StoreCorruptionError] = None

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError(f"Cannot create store directory {self.path.parent}: {e}") from e

        self._open()

    @property
    def degraded(self) -> bool:
        """True when the store could not be recovered and serves from memory only."""
        return self._degraded

    def _open(self) -> None:
        with self._lock:
            if not self.path.exists():
                try:
                    self._write_fresh([])
                except OSError as e:
                    raise StoreUnavailableError(f"Cannot write store {self.path}: {e}") from e
                self._index = {}
                return

            try:
                report = self._scan()
            except OSError as e:
                logger.error(f"Cannot read fingerprint store {self.path}: {e}")
                self._degrade()
                return
            if not report.is_valid:
                self.last_corruption = StoreCorruptionError(
                    f"Fingerprint store {self.path} failed validation "
                    f"(header_ok={report.header_ok}, malformed={report.malformed_lines}, "
                    f"torn_tail={report.torn_tail})"
                )
                logger.warning(f"{self.last_corruption}; rebuilding")
                self.rebuild()
                return
            self._index = self._latest_by_key(report.entries)
            logger.debug(f"Loaded {len(self._index)} keys from {self.path}")

    def reload(self) -> None:
        """Re-read the store file, picking up writes made by other processes."""
        self._degraded = False
        self._open()

    def get(self, key: str, fingerprint: Optional[FileFingerprint],
            stats: Optional[CacheStats] = None) -> Tuple[Optional[str], bool]:
        """
        Look up a key against the caller's live fingerprint.

        Returns:
            (payload, True) on an exact fingerprint match, (None, False) otherwise
        """
        with self._lock:
            entry = self._index.get(key)

        if entry is None or fingerprint is None:
            if stats is not None:
                stats.record_miss()
            return None, False

        if entry.fingerprint != fingerprint:
            logger.debug(f"Stale fingerprint for {key}: stored={entry.fingerprint}, live={fingerprint}")
            if stats is not None:
                stats.record_miss(stale=True)
            return None, False

        if stats is not None:
            stats.record_hit()
        return entry.payload, True

    def put(self, key: str, fingerprint: FileFingerprint, payload: str,
            stats: Optional[CacheStats] = None) -> bool:
        """Append a record; the newest record for a key wins. Returns False if not persisted."""
        if self.max_payload_bytes is not None and len(payload.encode('utf-8')) > self.max_payload_bytes:
            logger.warning(f"Refusing oversized payload for {key} ({len(payload)} chars)")
            if stats is not None:
                stats.write_failures += 1
            return False

        entry = CacheEntry(key=key, fingerprint=fingerprint, payload=payload, timestamp=time.time())
        line = entry.to_line()

        with self._lock:
            self._index[key] = entry
            if self._degraded:
                if stats is not None:
                    stats.write_failures += 1
                return False
            try:
                if not self.path.exists():
                    self._write_fresh([])
                # One write call per complete record keeps record boundaries intact
                with open(self.path, 'a', encoding='utf-8', newline='') as handle:
                    handle.write(line)
                    handle.flush()
            except OSError as e:
                logger.warning(f"Failed to append to fingerprint store {self.path}: {e}")
                if stats is not None:
                    stats.write_failures += 1
                return False

        if stats is not None:
            stats.writes += 1
        return True

    def validate(self) -> bool:
        """Structural scan: header present and every record well-formed."""
        with self._lock:
            try:
                return self._scan().is_valid
            except OSError as e:
                logger.warning(f"Cannot read fingerprint store {self.path}: {e}")
                return False

    def rebuild(self) -> int:
        """
        Recover a damaged store.

        Snapshots the current file to a timestamped backup, then rewrites the
        store with every well-formed record in original order.

        Returns:
            Number of records kept
        """
        with self._lock:
            try:
                report = self._scan()
            except OSError as e:
                logger.error(f"Cannot read fingerprint store {self.path} for rebuild: {e}")
                return self._degrade()

            backup = self._backup_damaged()
            try:
                self._write_fresh(report.entries)
            except OSError as e:
                logger.error(f"Rebuild of fingerprint store {self.path} failed: {e}")
                return self._degrade()

            self._degraded = False
            self._index = self._latest_by_key(report.entries)
            logger.warning(
                f"Rebuilt fingerprint store {self.path}: kept {len(report.entries)} records, "
                f"discarded {report.malformed_lines + int(report.torn_tail)} malformed"
                + (f" (backup: {backup})" if backup else "")
            )
            return len(report.entries)

    def compact(self, max_age: Optional[float] = None, now: Optional[float] = None) -> int:
        """
        Rewrite the store with only the newest record per key.

        Args:
            max_age: Drop records older than this many seconds (None keeps all)
            now: Reference time for the age check

        Returns:
            Number of records written
        """
        reference = time.time() if now is None else now
        with self._lock:
            if self._degraded:
                return 0
            try:
                report = self._scan()
            except OSError as e:
                logger.warning(f"Cannot read fingerprint store {self.path} for compaction: {e}")
                return 0
            if not report.is_valid:
                self.rebuild()
                if self._degraded:
                    return 0
                report = self._scan()

            kept: List[CacheEntry] = []
            for key, entry in sorted(self._latest_by_key(report.entries).items()):
                if max_age is not None and reference - entry.timestamp > max_age:
                    continue
                if self.path_keys and not os.path.exists(key):
                    continue
                kept.append(entry)

            try:
                self._write_fresh(kept)
            except OSError as e:
                logger.warning(f"Compaction of {self.path} failed: {e}")
                return 0
            self._index = {entry.key: entry for entry in kept}

        dropped = len(report.entries) - len(kept)
        logger.info(f"Compacted {self.path.name}: {len(kept)} records kept, {dropped} dropped")
        return len(kept)

    def records(self) -> Iterator[CacheEntry]:
        """Iterate over every record in file order, including superseded ones."""
        with self._lock:
            try:
                entries = self._scan().entries
            except OSError:
                entries = list(self._index.values())
        return iter(entries)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._index.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._index

    def _scan(self) -> ScanReport:
        with open(self.path, 'rb') as handle:
            data = handle.read()

        lines, tail = split_lines(data)
        header_ok = False
        if lines:
            try:
                header_ok = parse_header(lines[0].decode('utf-8'), STORE_KIND) is not None
            except UnicodeDecodeError:
                header_ok = False
        record_lines = lines[1:] if header_ok else lines

        entries: List[CacheEntry] = []
        malformed = 0
        for raw in record_lines:
            try:
                line = raw.decode('utf-8').rstrip('\r')
            except UnicodeDecodeError:
                malformed += 1
                continue
            if not line:
                continue
            try:
                entries.append(CacheEntry.from_line(line))
            except RecordFormatError:
                malformed += 1

        return ScanReport(header_ok=header_ok, entries=entries, malformed_lines=malformed,
                          torn_tail=bool(tail.strip()))

    def _write_fresh(self, entries: List[CacheEntry]) -> None:
        temp_path = self.path.with_name(f"{self.path.name}.tmp")
        with open(temp_path, 'w', encoding='utf-8', newline='') as handle:
            handle.write(format_header(STORE_KIND, STORE_VERSION))
            for entry in entries:
                handle.write(entry.to_line())
        os.replace(str(temp_path), str(self.path))

    def _backup_damaged(self) -> Optional[Path]:
        if not self.path.exists():
            return None
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}.bak")
        counter = 1
        while backup.exists():
            backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}-{counter}.bak")
            counter += 1
        try:
            shutil.copy2(self.path, backup)
            return backup
        except OSError as e:
            logger.warning(f"Could not back up damaged store {self.path}: {e}")
            return None

    def _degrade(self) -> int:
        self._index = {}
        self._degraded = True
        logger.error(f"Fingerprint store {self.path} unusable; continuing without persistent cache")
        return 0

    @staticmethod
    def _latest_by_key(entries: List[CacheEntry]) -> Dict[str, CacheEntry]:
        latest: Dict[str, CacheEntry] = {}
        for entry in entries:
            latest[entry.key] = entry
        return latest
