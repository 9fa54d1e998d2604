"""Pattern-based settings learning."""

from .feature_pattern import FeaturePattern, detect_content_type  # noqa: F401
from .pattern_model import (  # noqa: F401
    MatchType, ModelEntry, Outcome, PatternLearningModel, Prediction, TrainingDataOverflowError
)
