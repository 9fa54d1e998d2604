"""
Discrete feature buckets used as the learning model's key.

A probe result is reduced to five coarse labels so that many similar inputs
share one model entry: content type, resolution class, duration class,
motion level and a complexity bucket derived from bits per pixel.
"""

from dataclasses import dataclass, astuple, fields
from typing import Optional

from ..media_service import MediaInfo

PATTERN_SEPARATOR = ':'

RESOLUTION_CLASSES = (
    (360, '360p'),
    (480, '480p'),
    (720, '720p'),
    (1080, '1080p'),
)

SCREENCAST_HINTS = ('screen', 'capture', 'recording', 'desktop', 'tutorial', 'demo')
ANIMATION_HINTS = ('anim', 'cartoon', 'anime', 'toon', 'sticker', 'emoji')


@dataclass(frozen=True, order=True)
class FeaturePattern:
    content_type: str
    resolution_class: str
    duration_class: str
    motion_level: str
    complexity_bucket: int

    @property
    def key(self) -> str:
        return PATTERN_SEPARATOR.join(str(value) for value in astuple(self))

    @classmethod
    def from_key(cls, key: str) -> 'FeaturePattern':
        parts = key.split(PATTERN_SEPARATOR)
        if len(parts) != len(fields(cls)):
            raise ValueError(f"Malformed pattern key: {key!r}")
        content_type, resolution_class, duration_class, motion_level, complexity = parts
        return cls(content_type, resolution_class, duration_class, motion_level, int(complexity))

    def similarity(self, other: 'FeaturePattern') -> float:
        """Fraction of fields with equal values"""
        mine, theirs = astuple(self), astuple(other)
        return sum(1 for a, b in zip(mine, theirs) if a == b) / len(mine)

    @classmethod
    def from_media_info(cls, info: MediaInfo, filename: Optional[str] = None) -> 'FeaturePattern':
        bpp = bits_per_pixel(info)
        return cls(
            content_type=detect_content_type(info, filename),
            resolution_class=resolution_class(info.width, info.height),
            duration_class=duration_class(info.duration),
            motion_level=motion_level(info.frame_rate, bpp),
            complexity_bucket=complexity_bucket(bpp),
        )


def resolution_class(width: int, height: int) -> str:
    short_side = min(width, height)
    for limit, label in RESOLUTION_CLASSES:
        if short_side <= limit:
            return label
    return '4k'


def duration_class(duration: float) -> str:
    if duration < 10:
        return 'short'
    if duration <= 60:
        return 'medium'
    return 'long'


def bits_per_pixel(info: MediaInfo) -> float:
    """Encoded bits spent per pixel per frame; 0.0 when the probe lacks a rate"""
    fps = info.frame_rate if info.frame_rate > 0 else 30.0
    if info.bit_rate <= 0 or info.pixels <= 0:
        return 0.0
    return info.bit_rate / (info.pixels * fps)


def motion_level(frame_rate: float, bpp: float) -> str:
    # Encoders spend bits on change, so a high bpp at a normal frame rate means motion
    if frame_rate >= 50 or bpp > 0.2:
        return 'high'
    if bpp < 0.05:
        return 'low'
    return 'medium'


def complexity_bucket(bpp: float) -> int:
    """Map bits per pixel onto 0, 20, 40, 60, 80 or 100 (0.3 bpp and above saturates)."""
    score = min(1.0, max(0.0, bpp / 0.3))
    return int(round(score * 5)) * 20


def detect_content_type(info: MediaInfo, filename: Optional[str] = None) -> str:
    """
    Heuristic content class: screencast, animation, movie or clip.

    Filename hints win; otherwise very low bits per pixel at desktop
    resolutions reads as a screencast, small flat-color sources as animation,
    and wide cinematic aspect ratios or long runtimes as movie.
    """
    name = (filename or '').lower()
    if any(hint in name for hint in SCREENCAST_HINTS):
        return 'screencast'
    if any(hint in name for hint in ANIMATION_HINTS):
        return 'animation'

    bpp = bits_per_pixel(info)
    aspect = info.width / info.height if info.height else 0.0
    if info.width >= 1280 and 0 < bpp < 0.03 and info.frame_rate <= 30:
        return 'screencast'
    if info.width <= 640 and 0 < bpp < 0.05:
        return 'animation'
    if aspect >= 2.0 or info.duration >= 600:
        return 'movie'
    return 'clip'
