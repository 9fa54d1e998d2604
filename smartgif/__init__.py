"""
smartgif - caching, duplicate handling and settings learning for video to GIF conversion
"""

__version__ = "1.0.0"

from .automated_workflow import AnalysisTracker, BatchOrchestrator, BatchSummary, FileResult  # noqa: F401
from .config_manager import ConfigManager  # noqa: F401
from .error_handler import ErrorCategory, ErrorHandler  # noqa: F401
from .gif_config import GifSettings, QUALITY_PRESETS  # noqa: F401
from .logger_setup import get_logger, setup_logging  # noqa: F401
from .media_service import (  # noqa: F401
    FFmpegMediaService, MediaInfo, MediaService, ProbeFailure, TranscodeError, TranscodeTimeout
)
