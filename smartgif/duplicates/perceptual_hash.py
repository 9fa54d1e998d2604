"""
Perceptual hash of a GIF's representative frame.

The middle frame stands in for the whole animation; two artifacts rendered
from the same clip share it even when their palettes or sizes differ.
"""

from pathlib import Path
from typing import Optional, Tuple, Union

import imagehash
from PIL import Image, UnidentifiedImageError

from ..logger_setup import get_logger

logger = get_logger(__name__)

DEFAULT_HASH_SIZE = 16


def read_gif_properties(path: Union[str, Path]) -> Tuple[int, float, int, int]:
    """
    Return (frame_count, duration_seconds, width, height) for an animated image.

    Duration is the sum of per-frame display times as stored in the file.
    """
    with Image.open(path) as img:
        width, height = img.size
        frame_count = getattr(img, 'n_frames', 1)
        total_ms = 0
        for index in range(frame_count):
            img.seek(index)
            total_ms += int(img.info.get('duration', 0) or 0)
    return frame_count, total_ms / 1000.0, width, height


def representative_frame_hash(path: Union[str, Path], hash_size: int = DEFAULT_HASH_SIZE) -> str:
    """
    Average hash of the middle frame as a hex string.

    Returns:
        Hex digest, or '' when the image cannot be decoded
    """
    try:
        with Image.open(path) as img:
            frame_count = getattr(img, 'n_frames', 1)
            img.seek(frame_count // 2)
            frame = img.convert('RGB')
            return str(imagehash.average_hash(frame, hash_size=hash_size))
    except (OSError, UnidentifiedImageError, ValueError) as e:
        logger.warning(f"Failed to compute perceptual hash for {path}: {e}")
        return ''


def hash_distance(hash_a: str, hash_b: str) -> Optional[int]:
    """Hamming distance between two hex hashes; None when either is empty or sizes differ."""
    if not hash_a or not hash_b or len(hash_a) != len(hash_b):
        return None
    try:
        return imagehash.hex_to_hash(hash_a) - imagehash.hex_to_hash(hash_b)
    except (ValueError, TypeError):
        return None


def hash_bits(hex_hash: str) -> int:
    return len(hex_hash) * 4
