"""
GIF Settings Helper
Encode settings, static quality presets and retry reduction steps
"""

import json
import logging
from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, List, Optional

from .caching.analysis_cache import AnalysisResult

logger = logging.getLogger(__name__)

DITHER_MODES = ('none', 'bayer', 'floyd_steinberg', 'sierra2_4a')


@dataclass(frozen=True)
class GifSettings:
    """Parameters handed to the external transcoder."""
    fps: int
    max_colors: int
    dither: str
    scale_width: int
    lossy: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':'))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GifSettings':
        return cls(
            fps=int(data['fps']),
            max_colors=int(data['max_colors']),
            dither=str(data['dither']),
            scale_width=int(data['scale_width']),
            lossy=int(data.get('lossy', 0)),
        )

    @classmethod
    def from_json(cls, text: str) -> 'GifSettings':
        return cls.from_dict(json.loads(text))


QUALITY_PRESETS: Dict[str, GifSettings] = {
    'low': GifSettings(fps=10, max_colors=64, dither='bayer', scale_width=320, lossy=80),
    'medium': GifSettings(fps=12, max_colors=128, dither='bayer', scale_width=480, lossy=40),
    'high': GifSettings(fps=15, max_colors=256, dither='sierra2_4a', scale_width=640, lossy=20),
    'ultra': GifSettings(fps=20, max_colors=256, dither='floyd_steinberg', scale_width=800, lossy=0),
    'max': GifSettings(fps=30, max_colors=256, dither='floyd_steinberg', scale_width=1080, lossy=0),
}

# Floors applied when shrinking settings for a retry
MIN_FPS = 5
MIN_COLORS = 32
MIN_WIDTH = 160


def get_preset(name: str) -> GifSettings:
    """Return a named preset, falling back to 'medium' for unknown names"""
    preset = QUALITY_PRESETS.get((name or '').lower())
    if preset is None:
        logger.warning(f"Unknown quality preset '{name}', using 'medium'")
        return QUALITY_PRESETS['medium']
    return preset


def fallback_settings(preset_name: str = 'medium', source_width: Optional[int] = None,
                      duration: Optional[float] = None) -> GifSettings:
    """
    Static settings used when no learned prediction is available.

    Long clips drop frame rate and palette size; the output is never scaled
    above the source width.
    """
    settings = get_preset(preset_name)
    if duration is not None and duration > 60:
        settings = replace(settings, fps=max(MIN_FPS, settings.fps - 4),
                           max_colors=max(MIN_COLORS, settings.max_colors // 2))
    elif duration is not None and duration > 20:
        settings = replace(settings, fps=max(MIN_FPS, settings.fps - 2))
    if source_width and source_width > 0 and settings.scale_width > source_width:
        settings = replace(settings, scale_width=int(source_width))
    return settings


def reduce_settings(settings: GifSettings, attempt: int = 1) -> GifSettings:
    """Cheaper settings for the next retry after a timeout or encode failure"""
    factor = 0.75 ** attempt
    return replace(
        settings,
        fps=max(MIN_FPS, int(round(settings.fps * factor))),
        max_colors=max(MIN_COLORS, int(settings.max_colors * factor)),
        scale_width=max(MIN_WIDTH, int(settings.scale_width * factor) // 2 * 2),
        dither='bayer' if settings.dither != 'none' else 'none',
    )


def settings_to_analysis(settings: GifSettings, content_tags: Optional[List[str]] = None) -> AnalysisResult:
    """Describe settings as an analysis cache payload; lossy rides along as a tag"""
    tags = list(content_tags or [])
    tags.append(f"lossy={settings.lossy}")
    return AnalysisResult(
        frame_rate=float(settings.fps),
        dither_mode=settings.dither,
        max_colors=settings.max_colors,
        content_tags=tags,
        scale_width=settings.scale_width,
    )


def settings_from_analysis(result: AnalysisResult, default: Optional[GifSettings] = None) -> GifSettings:
    """Rebuild encode settings from a cached analysis"""
    base = default or QUALITY_PRESETS['medium']
    lossy = base.lossy
    for tag in result.content_tags:
        name, _, value = tag.partition('=')
        if name == 'lossy' and value.isdigit():
            lossy = int(value)
    return GifSettings(
        fps=max(MIN_FPS, int(round(result.frame_rate))),
        max_colors=int(result.max_colors),
        dither=result.dither_mode if result.dither_mode in DITHER_MODES else base.dither,
        scale_width=int(result.scale_width or base.scale_width),
        lossy=lossy,
    )
