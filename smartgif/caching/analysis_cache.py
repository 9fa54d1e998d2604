"""
Analysis cache: remembers the encode analysis of each input file.

Keyed by file path and validated by (size, mtime), so a lookup costs one stat
instead of a probe plus feature extraction.
"""

import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..logger_setup import get_logger
from .fingerprint_store import CacheStats, FileFingerprint, FingerprintStore

logger = get_logger(__name__)


@dataclass
class CropRegion:
    width: int
    height: int
    x: int = 0
    y: int = 0

    def to_filter(self) -> str:
        return f"crop={self.width}:{self.height}:{self.x}:{self.y}"


@dataclass
class AnalysisResult:
    """Encode-relevant analysis of one input file."""
    frame_rate: float
    dither_mode: str
    max_colors: int
    crop_region: Optional[CropRegion] = None
    content_tags: List[str] = field(default_factory=list)
    scale_width: Optional[int] = None

    def to_payload(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, separators=(',', ':'))

    @classmethod
    def from_payload(cls, payload: str) -> 'AnalysisResult':
        data: Dict[str, Any] = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError(f"analysis payload is {type(data).__name__}, not an object")
        crop = data.pop('crop_region', None)
        return cls(crop_region=CropRegion(**crop) if crop else None, **data)


class AnalysisCache:
    """Fingerprint store specialization holding AnalysisResult payloads."""

    def __init__(self, store: FingerprintStore):
        self.store = store

    @classmethod
    def open(cls, cache_dir: Union[str, Path], filename: str = 'analysis_cache.txt',
             max_payload_bytes: Optional[int] = None) -> 'AnalysisCache':
        return cls(FingerprintStore(Path(cache_dir) / filename, path_keys=True,
                                    max_payload_bytes=max_payload_bytes))

    def lookup(self, path: Union[str, Path], stats: Optional[CacheStats] = None) -> Optional[AnalysisResult]:
        key = str(path)
        payload, found = self.store.get(key, FileFingerprint.try_from_path(path), stats)
        if not found:
            return None
        try:
            return AnalysisResult.from_payload(payload)
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding undecodable analysis entry for {key}: {e}")
            if stats is not None:
                # Reclassify the hit as a miss
                stats.hits -= 1
                stats.misses += 1
            return None

    def store_result(self, path: Union[str, Path], result: AnalysisResult,
                     stats: Optional[CacheStats] = None) -> bool:
        fingerprint = FileFingerprint.try_from_path(path)
        if fingerprint is None:
            logger.debug(f"Not caching analysis for missing file {path}")
            return False
        return self.store.put(str(path), fingerprint, result.to_payload(), stats)

    def get_or_compute(self, path: Union[str, Path], compute: Callable[[Union[str, Path]], AnalysisResult],
                       stats: Optional[CacheStats] = None) -> AnalysisResult:
        """Return the cached analysis or compute it and write it back immediately."""
        cached = self.lookup(path, stats)
        if cached is not None:
            return cached
        result = compute(path)
        self.store_result(path, result, stats)
        return result

    def compact(self, max_age_hours: float) -> int:
        return self.store.compact(max_age=max_age_hours * 3600.0)
