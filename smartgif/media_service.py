"""
Media probe / transcode adapter.

The actual decoding and GIF encoding is delegated to ffprobe, ffmpeg and
(optionally) gifsicle. Everything else in the package talks to the
MediaService interface so tests can substitute a fake.
"""

import json
import os
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import List, Optional, Union

from .gif_config import GifSettings
from .logger_setup import get_logger

logger = get_logger(__name__)


class ProbeFailure(Exception):
    """Media metadata could not be read."""


class TranscodeError(Exception):
    """The encoder exited with an error or produced no output."""


class TranscodeTimeout(TranscodeError):
    """The encoder did not finish within the allotted time."""


@dataclass
class MediaInfo:
    duration: float
    width: int
    height: int
    frame_rate: float
    bit_rate: int

    @property
    def pixels(self) -> int:
        return self.width * self.height


def parse_fps(rate_str: Optional[str]) -> float:
    """Parse an ffprobe rate such as '30000/1001'; 0.0 when unusable."""
    if not rate_str:
        return 0.0
    try:
        return float(Fraction(rate_str))
    except (ValueError, ZeroDivisionError):
        try:
            return float(rate_str)
        except ValueError:
            return 0.0


class MediaService:
    """Interface of the external probe/transcode collaborator."""

    def probe(self, path: Union[str, Path]) -> MediaInfo:
        raise NotImplementedError

    def transcode(self, src: Union[str, Path], dst: Union[str, Path],
                  settings: GifSettings, timeout: float) -> Path:
        raise NotImplementedError


class FFmpegMediaService(MediaService):
    """MediaService backed by the ffmpeg command line tools."""

    def __init__(self, ffmpeg: str = 'ffmpeg', ffprobe: str = 'ffprobe',
                 gifsicle: Optional[str] = 'gifsicle', probe_timeout: float = 30.0):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        # gifsicle is only used for the lossy pass and may be absent
        self.gifsicle = shutil.which(gifsicle) if gifsicle else None
        self.probe_timeout = probe_timeout

    def probe(self, path: Union[str, Path]) -> MediaInfo:
        cmd = [
            self.ffprobe, '-v', 'quiet', '-print_format', 'json',
            '-show_format', '-show_streams', str(path)
        ]
        try:
            result = subprocess.run(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                text=True, encoding='utf-8', errors='replace', timeout=self.probe_timeout
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeFailure(f"ffprobe timed out after {self.probe_timeout}s on {path}") from e
        except OSError as e:
            raise ProbeFailure(f"Cannot run ffprobe: {e}") from e

        if result.returncode != 0:
            raise ProbeFailure(f"ffprobe failed on {path}: {(result.stderr or '').strip()[:200]}")

        try:
            data = json.loads(result.stdout or '{}')
        except json.JSONDecodeError as e:
            raise ProbeFailure(f"Unreadable ffprobe output for {path}: {e}") from e

        video_stream = next(
            (s for s in data.get('streams', []) if s.get('codec_type') == 'video'), None
        )
        if video_stream is None:
            raise ProbeFailure(f"No video stream in {path}")

        fmt = data.get('format', {})
        try:
            info = MediaInfo(
                duration=float(fmt.get('duration') or video_stream.get('duration') or 0.0),
                width=int(video_stream['width']),
                height=int(video_stream['height']),
                frame_rate=parse_fps(video_stream.get('avg_frame_rate') or video_stream.get('r_frame_rate')),
                bit_rate=int(fmt.get('bit_rate') or video_stream.get('bit_rate') or 0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProbeFailure(f"Incomplete stream metadata for {path}: {e}") from e

        if info.width <= 0 or info.height <= 0:
            raise ProbeFailure(f"Invalid dimensions {info.width}x{info.height} for {path}")
        return info

    def build_palette_command(self, src: str, palette: str, settings: GifSettings) -> List[str]:
        return [
            self.ffmpeg, '-y', '-i', src,
            '-vf', (f'fps={settings.fps},scale={settings.scale_width}:-2:flags=lanczos,'
                    f'palettegen=max_colors={settings.max_colors}:stats_mode=diff'),
            '-frames:v', '1', '-f', 'image2', palette,
        ]

    def build_gif_command(self, src: str, palette: str, dst: str, settings: GifSettings) -> List[str]:
        dither = settings.dither
        if dither == 'bayer':
            dither = 'bayer:bayer_scale=5'
        return [
            self.ffmpeg, '-y', '-i', src, '-i', palette,
            '-lavfi', (f'fps={settings.fps},scale={settings.scale_width}:-2:flags=lanczos [x]; '
                       f'[x][1:v] paletteuse=dither={dither}:diff_mode=rectangle'),
            '-f', 'gif', dst,
        ]

    def transcode(self, src: Union[str, Path], dst: Union[str, Path],
                  settings: GifSettings, timeout: float) -> Path:
        """
        Encode src into a GIF at dst.

        The timeout covers every step of the encode together.

        Raises:
            TranscodeTimeout: The deadline passed before the encode finished
            TranscodeError: Any step failed
        """
        dst = Path(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + timeout

        fd, palette = tempfile.mkstemp(suffix='.png', prefix='smartgif_palette_')
        os.close(fd)
        temp_gif = dst.with_name(f"{dst.stem}.partial.gif")
        try:
            self._run(self.build_palette_command(str(src), palette, settings), deadline, 'palette generation')
            self._run(self.build_gif_command(str(src), palette, str(temp_gif), settings), deadline, 'GIF encode')

            if settings.lossy > 0 and self.gifsicle:
                optimized = dst.with_name(f"{dst.stem}.lossy.gif")
                self._run([
                    self.gifsicle, '--optimize=3', '--colors', str(settings.max_colors),
                    f'--lossy={settings.lossy}', '--careful',
                    str(temp_gif), '-o', str(optimized)
                ], deadline, 'gifsicle pass')
                os.replace(str(optimized), str(temp_gif))

            if not temp_gif.exists() or temp_gif.stat().st_size == 0:
                raise TranscodeError(f"Encoder produced no output for {src}")
            os.replace(str(temp_gif), str(dst))
            return dst
        finally:
            for leftover in (Path(palette), temp_gif, dst.with_name(f"{dst.stem}.lossy.gif")):
                try:
                    leftover.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.debug(f"Could not remove temporary file {leftover}: {e}")

    def _run(self, cmd: List[str], deadline: float, step: str) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TranscodeTimeout(f"No time left for {step}")
        logger.debug(f"Running {step}: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                text=True, encoding='utf-8', errors='replace', timeout=remaining
            )
        except subprocess.TimeoutExpired as e:
            raise TranscodeTimeout(f"{step} exceeded the time limit") from e
        except OSError as e:
            raise TranscodeError(f"Cannot run {cmd[0]}: {e}") from e
        if result.returncode != 0:
            raise TranscodeError(f"{step} failed: {(result.stderr or '').strip()[-300:]}")
