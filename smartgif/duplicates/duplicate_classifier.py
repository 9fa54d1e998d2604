"""
Tiered duplicate classification for generated GIF artifacts.

Pairs are tested against the tiers from most to least certain and receive
the first tier they satisfy:

1. EXACT_BINARY        checksums equal
2. VISUAL_IDENTICAL    representative-frame hashes equal
3. CONTENT_FINGERPRINT resolution, frame count and duration equal; size within 5%
4. NEAR_IDENTICAL      frame count and duration equal; hash distance under 2% of
                       the hash bits; size within 10%
5. NAME_HEURISTIC      frame count, duration and resolution equal; filename
                       prefix similarity at least 50%; size within 15%

Every percentage is configurable through duplicate_detection.yaml.
"""

import itertools
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence

from ..logger_setup import get_logger
from .artifact_analyzer import ArtifactInfo
from .perceptual_hash import hash_bits, hash_distance

logger = get_logger(__name__)


class DuplicateTier(Enum):
    EXACT_BINARY = 1
    VISUAL_IDENTICAL = 2
    CONTENT_FINGERPRINT = 3
    NEAR_IDENTICAL = 4
    NAME_HEURISTIC = 5

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass
class DuplicateCandidate:
    file_a: ArtifactInfo
    file_b: ArtifactInfo
    tier: DuplicateTier
    decision_reason: str


@dataclass
class ClassifierThresholds:
    content_fingerprint_size_ratio: float = 0.05
    near_identical_hash_distance_ratio: float = 0.02
    near_identical_size_ratio: float = 0.10
    name_heuristic_prefix_similarity: float = 0.50
    name_heuristic_size_ratio: float = 0.15
    duration_tolerance_seconds: float = 0.05


def size_difference_ratio(size_a: int, size_b: int) -> float:
    """|a - b| / max(a, b); 0.0 for two empty files"""
    largest = max(size_a, size_b)
    if largest <= 0:
        return 0.0
    return abs(size_a - size_b) / largest


def prefix_similarity(name_a: str, name_b: str) -> float:
    """Shared leading characters of the two stems over the longer stem's length"""
    stem_a = os.path.splitext(name_a)[0].lower()
    stem_b = os.path.splitext(name_b)[0].lower()
    longest = max(len(stem_a), len(stem_b))
    if longest == 0:
        return 0.0
    common = len(os.path.commonprefix([stem_a, stem_b]))
    return common / longest


class DuplicateClassifier:
    def __init__(self, thresholds: Optional[ClassifierThresholds] = None):
        self.thresholds = thresholds or ClassifierThresholds()

    @classmethod
    def from_config(cls, config: Any) -> 'DuplicateClassifier':
        """Build from a ConfigManager (duplicate_detection.* keys)"""
        defaults = ClassifierThresholds()
        tiers = 'duplicate_detection.tiers'
        return cls(ClassifierThresholds(
            content_fingerprint_size_ratio=float(config.get(
                f'{tiers}.content_fingerprint_size_ratio', defaults.content_fingerprint_size_ratio)),
            near_identical_hash_distance_ratio=float(config.get(
                f'{tiers}.near_identical_hash_distance_ratio', defaults.near_identical_hash_distance_ratio)),
            near_identical_size_ratio=float(config.get(
                f'{tiers}.near_identical_size_ratio', defaults.near_identical_size_ratio)),
            name_heuristic_prefix_similarity=float(config.get(
                f'{tiers}.name_heuristic_prefix_similarity', defaults.name_heuristic_prefix_similarity)),
            name_heuristic_size_ratio=float(config.get(
                f'{tiers}.name_heuristic_size_ratio', defaults.name_heuristic_size_ratio)),
            duration_tolerance_seconds=float(config.get(
                'duplicate_detection.duration_tolerance_seconds', defaults.duration_tolerance_seconds)),
        ))

    def classify_pair(self, a: ArtifactInfo, b: ArtifactInfo) -> Optional[DuplicateCandidate]:
        """Return the first tier the pair satisfies, or None when it is not a duplicate."""
        t = self.thresholds

        if a.checksum and a.checksum == b.checksum:
            return DuplicateCandidate(a, b, DuplicateTier.EXACT_BINARY,
                                      f"identical SHA-256 {a.checksum[:12]}")

        if a.perceptual_hash and a.perceptual_hash == b.perceptual_hash:
            return DuplicateCandidate(a, b, DuplicateTier.VISUAL_IDENTICAL,
                                      "identical representative-frame hash")

        # Property tiers need decodable artifacts on both sides
        if a.frame_count <= 0 or b.frame_count <= 0:
            return None

        same_frames = a.frame_count == b.frame_count
        same_duration = abs(a.duration - b.duration) <= t.duration_tolerance_seconds
        same_resolution = a.resolution == b.resolution
        size_ratio = size_difference_ratio(a.size, b.size)

        if same_frames and same_duration and same_resolution and size_ratio < t.content_fingerprint_size_ratio:
            return DuplicateCandidate(
                a, b, DuplicateTier.CONTENT_FINGERPRINT,
                f"{a.width}x{a.height}, {a.frame_count} frames, {a.duration:.2f}s; size differs {size_ratio:.1%}"
            )

        distance = hash_distance(a.perceptual_hash, b.perceptual_hash)
        if same_frames and same_duration and distance is not None:
            distance_ratio = distance / hash_bits(a.perceptual_hash)
            if distance_ratio < t.near_identical_hash_distance_ratio and size_ratio < t.near_identical_size_ratio:
                return DuplicateCandidate(
                    a, b, DuplicateTier.NEAR_IDENTICAL,
                    f"hash distance {distance} bits ({distance_ratio:.1%}); size differs {size_ratio:.1%}"
                )

        if same_frames and same_duration and same_resolution:
            similarity = prefix_similarity(a.path.name, b.path.name)
            if similarity >= t.name_heuristic_prefix_similarity and size_ratio < t.name_heuristic_size_ratio:
                return DuplicateCandidate(
                    a, b, DuplicateTier.NAME_HEURISTIC,
                    f"name prefix similarity {similarity:.0%}, matching properties; size differs {size_ratio:.1%}"
                )

        return None

    def classify(self, artifacts: Sequence[ArtifactInfo]) -> List[DuplicateCandidate]:
        """Classify every unordered pair; results are ordered by (tier, path_a, path_b)."""
        ordered = sorted(artifacts, key=lambda info: str(info.path))
        candidates = []
        for a, b in itertools.combinations(ordered, 2):
            candidate = self.classify_pair(a, b)
            if candidate is not None:
                logger.debug(f"{a.path.name} ~ {b.path.name}: {candidate.tier.label} ({candidate.decision_reason})")
                candidates.append(candidate)
        candidates.sort(key=lambda c: (c.tier.value, str(c.file_a.path), str(c.file_b.path)))
        if candidates:
            logger.info(f"Found {len(candidates)} duplicate pairs among {len(ordered)} artifacts")
        return candidates
