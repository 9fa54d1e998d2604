"""Fingerprint-validated on-disk caches."""

from .fingerprint_store import (  # noqa: F401
    CacheEntry, CacheStats, FileFingerprint, FingerprintStore, StoreCorruptionError, StoreUnavailableError
)
from .analysis_cache import AnalysisCache, AnalysisResult, CropRegion  # noqa: F401
from .checksum_cache import ChecksumCache, ChecksumRecord, compute_checksum  # noqa: F401
