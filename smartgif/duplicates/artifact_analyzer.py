"""
Per-artifact property extraction for duplicate classification.

Each generated GIF is analyzed once: its checksum comes from the checksum
cache and its visual properties from a path-keyed fingerprint store, so a
second sweep over an unchanged directory reads no image data at all.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Union

from PIL import UnidentifiedImageError

from ..caching import CacheStats, ChecksumCache, FileFingerprint, FingerprintStore
from ..logger_setup import get_logger
from .perceptual_hash import DEFAULT_HASH_SIZE, read_gif_properties, representative_frame_hash

logger = get_logger(__name__)

PROPERTY_KEYS = frozenset({'hash_size', 'perceptual_hash', 'frame_count', 'duration', 'width', 'height'})


@dataclass
class ArtifactInfo:
    path: Path
    size: int
    mtime: float
    checksum: str
    perceptual_hash: str
    frame_count: int
    duration: float
    width: int
    height: int

    @property
    def resolution(self):
        return (self.width, self.height)


class ArtifactAnalyzer:
    def __init__(self, checksum_cache: ChecksumCache, properties_store: FingerprintStore,
                 hash_size: int = DEFAULT_HASH_SIZE):
        self.checksum_cache = checksum_cache
        self.properties_store = properties_store
        self.hash_size = hash_size

    @classmethod
    def open(cls, cache_dir: Union[str, Path], checksum_cache: ChecksumCache,
             filename: str = 'artifact_properties.txt', hash_size: int = DEFAULT_HASH_SIZE) -> 'ArtifactAnalyzer':
        return cls(checksum_cache, FingerprintStore(Path(cache_dir) / filename, path_keys=True), hash_size)

    def analyze(self, path: Union[str, Path], stats: Optional[CacheStats] = None) -> ArtifactInfo:
        """
        Raises:
            OSError: The artifact cannot be read
        """
        path = Path(path)
        record = self.checksum_cache.get_record(path, stats)
        fingerprint = FileFingerprint(size=record.size, mtime=record.mtime)

        props = self._cached_properties(path, fingerprint, stats)
        if props is None:
            props = self._compute_properties(path)
            self.properties_store.put(str(path), fingerprint, json.dumps(props, sort_keys=True), stats)

        return ArtifactInfo(
            path=path,
            size=record.size,
            mtime=record.mtime,
            checksum=record.checksum,
            perceptual_hash=props['perceptual_hash'],
            frame_count=int(props['frame_count']),
            duration=float(props['duration']),
            width=int(props['width']),
            height=int(props['height']),
        )

    def analyze_many(self, paths: Iterable[Union[str, Path]],
                     stats: Optional[CacheStats] = None) -> List[ArtifactInfo]:
        """Analyze every readable artifact; unreadable ones are logged and skipped."""
        infos = []
        for path in paths:
            try:
                infos.append(self.analyze(path, stats))
            except OSError as e:
                logger.warning(f"Skipping unreadable artifact {path}: {e}")
        return infos

    def _cached_properties(self, path: Path, fingerprint: FileFingerprint,
                           stats: Optional[CacheStats]) -> Optional[dict]:
        payload, found = self.properties_store.get(str(path), fingerprint, stats)
        if not found:
            return None
        try:
            props = json.loads(payload)
        except ValueError:
            props = None
        if not isinstance(props, dict) or not PROPERTY_KEYS.issubset(props):
            logger.warning(f"Discarding undecodable artifact properties for {path}")
            return None
        if props['hash_size'] != self.hash_size:
            return None
        try:
            if not isinstance(props['perceptual_hash'], str):
                raise TypeError("perceptual_hash is not a string")
            return {
                'hash_size': self.hash_size,
                'perceptual_hash': props['perceptual_hash'],
                'frame_count': int(props['frame_count']),
                'duration': float(props['duration']),
                'width': int(props['width']),
                'height': int(props['height']),
            }
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding artifact properties with bad values for {path}: {e}")
            return None

    def _compute_properties(self, path: Path) -> dict:
        try:
            frame_count, duration, width, height = read_gif_properties(path)
        except (UnidentifiedImageError, ValueError) as e:
            logger.warning(f"Cannot decode {path} as an image: {e}")
            frame_count, duration, width, height = 0, 0.0, 0, 0
        return {
            'hash_size': self.hash_size,
            'perceptual_hash': representative_frame_hash(path, self.hash_size),
            'frame_count': frame_count,
            'duration': duration,
            'width': width,
            'height': height,
        }

