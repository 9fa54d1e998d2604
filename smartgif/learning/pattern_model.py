"""
Pattern-based settings learning model.

One ModelEntry per FeaturePattern holds the best settings observed for that
bucket and a confidence that moves toward each new outcome score by the
learning rate. There are no hidden parameters: the whole model is a function
of its training log, and rebuild_from_log() reproduces it exactly.

Files under model_dir:
    pattern_model.txt  snapshot, rewritten atomically on save()
    training_log.txt   every accepted training signal, appended as it arrives
"""

import json
import os
import shutil
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..caching.record_codec import (
    RecordFormatError, decode_record, encode_record, format_header, parse_header, split_lines
)
from ..gif_config import GifSettings
from ..logger_setup import get_logger
from .feature_pattern import FeaturePattern

logger = get_logger(__name__)

MODEL_KIND = 'pattern-model'
LOG_KIND = 'training-log'
FORMAT_VERSION = 1
MODEL_FIELDS = 5
LOG_FIELDS = 4

SETTINGS_OVERWRITE_THRESHOLD = 0.7


class Outcome(Enum):
    SUCCESS = 'success'
    PARTIAL = 'partial'
    FAILURE = 'failure'

    @property
    def score(self) -> float:
        return _OUTCOME_SCORES[self]


_OUTCOME_SCORES = {Outcome.SUCCESS: 1.0, Outcome.PARTIAL: 0.6, Outcome.FAILURE: 0.1}


class MatchType(Enum):
    EXACT = 'exact'
    SIMILAR = 'similar'


class TrainingDataOverflowError(ValueError):
    """A training payload exceeds the configured size ceiling."""


@dataclass
class ModelEntry:
    pattern: FeaturePattern
    settings: GifSettings
    confidence: float
    sample_count: int
    last_updated: float

    def to_line(self) -> str:
        return encode_record([
            self.pattern.key,
            str(self.sample_count),
            repr(float(self.confidence)),
            repr(float(self.last_updated)),
            self.settings.to_json(),
        ])

    @classmethod
    def from_line(cls, line: str) -> 'ModelEntry':
        key, samples, confidence, updated, settings = decode_record(line, MODEL_FIELDS)
        try:
            return cls(
                pattern=FeaturePattern.from_key(key),
                settings=GifSettings.from_json(settings),
                confidence=float(confidence),
                sample_count=int(samples),
                last_updated=float(updated),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise RecordFormatError(f"bad model record: {e}") from e


@dataclass
class Prediction:
    settings: GifSettings
    match: MatchType
    confidence: float
    pattern: FeaturePattern


class PatternLearningModel:
    def __init__(self, model_dir: Optional[Union[str, Path]] = None, learning_rate: float = 0.3,
                 min_samples: int = 3, min_confidence: float = 0.6,
                 max_payload_bytes: Optional[int] = 4096):
        """
        Args:
            model_dir: Directory for the snapshot and training log; None keeps the model in memory
            learning_rate: Step toward each new outcome score, in (0, 1]
            min_samples: Samples an entry needs before it is trusted as an exact match
            min_confidence: Confidence floor for any prediction
            max_payload_bytes: Reject training signals whose serialized size exceeds this
        """
        if not 0 < learning_rate <= 1:
            raise ValueError(f"learning_rate must be in (0, 1], got {learning_rate}")
        self.model_dir = Path(model_dir).expanduser() if model_dir is not None else None
        self.learning_rate = learning_rate
        self.min_samples = min_samples
        self.min_confidence = min_confidence
        self.max_payload_bytes = max_payload_bytes
        self.generation = 1
        self._entries: Dict[str, ModelEntry] = {}
        self._log_records = 0
        self._lock = threading.RLock()

        if self.model_dir is not None:
            self.model_dir.mkdir(parents=True, exist_ok=True)
            self.load()

    @classmethod
    def from_config(cls, config: Any) -> 'PatternLearningModel':
        return cls(
            model_dir=config.get('learning.model_dir', '~/.smartgif/model'),
            learning_rate=float(config.get('learning.learning_rate', 0.3)),
            min_samples=int(config.get('learning.min_samples', 3)),
            min_confidence=float(config.get('learning.min_confidence', 0.6)),
            max_payload_bytes=config.get('learning.max_training_payload_bytes', 4096),
        )

    @property
    def snapshot_path(self) -> Optional[Path]:
        return self.model_dir / 'pattern_model.txt' if self.model_dir else None

    @property
    def log_path(self) -> Optional[Path]:
        return self.model_dir / 'training_log.txt' if self.model_dir else None

    def get_entry(self, pattern: FeaturePattern) -> Optional[ModelEntry]:
        with self._lock:
            return self._entries.get(pattern.key)

    def entries(self) -> List[ModelEntry]:
        with self._lock:
            return [self._entries[key] for key in sorted(self._entries)]

    def __len__(self) -> int:
        return len(self._entries)

    def predict(self, pattern: FeaturePattern) -> Optional[Prediction]:
        """Exact entry if trusted, otherwise the best confidence-weighted similar entry, otherwise None."""
        with self._lock:
            exact = self._entries.get(pattern.key)
            if exact is not None and exact.sample_count >= self.min_samples \
                    and exact.confidence >= self.min_confidence:
                return Prediction(exact.settings, MatchType.EXACT, exact.confidence, exact.pattern)

            best: Optional[Tuple[float, ModelEntry]] = None
            # An exact entry below the trust threshold still competes here at similarity 1.0
            for key in sorted(self._entries):
                entry = self._entries[key]
                score = pattern.similarity(entry.pattern) * entry.confidence
                # Strictly greater keeps the first key on ties
                if score >= self.min_confidence and (best is None or score > best[0]):
                    best = (score, entry)

        if best is None:
            return None
        score, entry = best
        return Prediction(entry.settings, MatchType.SIMILAR, score, entry.pattern)

    def train(self, pattern: FeaturePattern, settings: GifSettings, outcome: Outcome,
              timestamp: Optional[float] = None) -> Optional[ModelEntry]:
        """
        Feed one observed outcome back into the model.

        Returns:
            The updated entry, or None when the signal was rejected as oversized
        """
        stamp = time.time() if timestamp is None else timestamp
        log_line = encode_record([repr(float(stamp)), pattern.key, outcome.value, settings.to_json()])
        try:
            self._check_payload(pattern, settings, log_line)
        except TrainingDataOverflowError as e:
            logger.warning(f"Training update rejected: {e}")
            return None

        with self._lock:
            entry = self._apply(pattern, settings, outcome.score, stamp)
            self._append_log(log_line)
        logger.debug(f"Trained {pattern.key} with {outcome.value}: confidence={entry.confidence:.3f}, "
                     f"samples={entry.sample_count}")
        return entry

    def _check_payload(self, pattern: FeaturePattern, settings: GifSettings, log_line: str) -> None:
        if self.max_payload_bytes is None:
            return
        size = len(log_line.encode('utf-8'))
        if size > self.max_payload_bytes:
            raise TrainingDataOverflowError(
                f"payload for {pattern.key} is {size} bytes (limit {self.max_payload_bytes})"
            )

    def _apply(self, pattern: FeaturePattern, settings: GifSettings, score: float,
               timestamp: float) -> ModelEntry:
        entry = self._entries.get(pattern.key)
        if entry is None:
            entry = ModelEntry(pattern=pattern, settings=settings, confidence=score * self.learning_rate,
                               sample_count=1, last_updated=timestamp)
            self._entries[pattern.key] = entry
            return entry

        entry.confidence = min(1.0, max(0.0, entry.confidence + self.learning_rate * (score - entry.confidence)))
        entry.sample_count += 1
        entry.last_updated = timestamp
        if score > SETTINGS_OVERWRITE_THRESHOLD:
            entry.settings = settings
        return entry

    def save(self) -> None:
        """Write the snapshot atomically."""
        if self.snapshot_path is None:
            return
        with self._lock:
            temp_path = self.snapshot_path.with_name(f"{self.snapshot_path.name}.tmp")
            with open(temp_path, 'w', encoding='utf-8', newline='') as handle:
                handle.write(format_header(MODEL_KIND, FORMAT_VERSION,
                                           f"generation={self.generation} log_records={self._log_records}"))
                for key in sorted(self._entries):
                    handle.write(self._entries[key].to_line())
            os.replace(str(temp_path), str(self.snapshot_path))
        logger.debug(f"Saved {len(self._entries)} model entries (generation {self.generation})")

    def load(self) -> None:
        """
        Load the snapshot, then replay any training records logged after it was written.

        A damaged snapshot is backed up and the model is rebuilt from the log.
        """
        with self._lock:
            self._entries = {}
            self.generation = 1
            covered = 0
            snapshot = self.snapshot_path
            if snapshot is not None and snapshot.exists():
                try:
                    covered = self._read_snapshot(snapshot)
                except (OSError, RecordFormatError, UnicodeDecodeError) as e:
                    logger.warning(f"Model snapshot {snapshot} unusable ({e}); rebuilding from training log")
                    self._backup(snapshot)
                    self._entries = {}
                    covered = 0

            log_entries = self._read_log()
            self._log_records = len(log_entries)
            for stamp, pattern, outcome, settings in log_entries[covered:]:
                self._apply(pattern, settings, outcome.score, stamp)
            if len(log_entries) > covered:
                logger.info(f"Replayed {len(log_entries) - covered} training records newer than the snapshot")

    def rebuild_from_log(self) -> int:
        """
        Replace the model with a fresh replay of the full training log and bump the generation.

        Returns:
            Number of training records replayed
        """
        with self._lock:
            log_entries = self._read_log()
            self._entries = {}
            for stamp, pattern, outcome, settings in log_entries:
                self._apply(pattern, settings, outcome.score, stamp)
            self._log_records = len(log_entries)
            self.generation += 1
            self.save()
        logger.info(f"Rebuilt model generation {self.generation} from {len(log_entries)} training records")
        return len(log_entries)

    def _read_snapshot(self, path: Path) -> int:
        with open(path, 'rb') as handle:
            lines, tail = split_lines(handle.read())
        if not lines:
            raise RecordFormatError("empty snapshot")
        header = parse_header(lines[0].decode('utf-8'), MODEL_KIND)
        if header is None:
            raise RecordFormatError("missing model header")
        if tail.strip():
            raise RecordFormatError("torn final record")
        meta = dict(part.split('=', 1) for part in header[1].split() if '=' in part)
        for raw in lines[1:]:
            line = raw.decode('utf-8').rstrip('\r')
            if line:
                entry = ModelEntry.from_line(line)
                self._entries[entry.pattern.key] = entry
        try:
            self.generation = int(meta.get('generation', 1))
            return int(meta.get('log_records', 0))
        except ValueError as e:
            raise RecordFormatError(f"bad snapshot header: {e}") from e

    def _read_log(self) -> List[Tuple[float, FeaturePattern, Outcome, GifSettings]]:
        path = self.log_path
        if path is None or not path.exists():
            return []
        with open(path, 'rb') as handle:
            lines, tail = split_lines(handle.read())

        records = []
        skipped = 0
        start = 1 if lines and parse_header(lines[0].decode('utf-8', errors='replace'), LOG_KIND) else 0
        for raw in lines[start:]:
            try:
                line = raw.decode('utf-8').rstrip('\r')
                if not line:
                    continue
                stamp, key, outcome, settings = decode_record(line, LOG_FIELDS)
                records.append((float(stamp), FeaturePattern.from_key(key), Outcome(outcome),
                                GifSettings.from_json(settings)))
            except (UnicodeDecodeError, ValueError, KeyError, TypeError):
                skipped += 1
        if skipped or tail.strip():
            logger.warning(f"Training log {path}: skipped {skipped} malformed records"
                           + (" and a torn final record" if tail.strip() else ""))
        return records

    def _append_log(self, line: str) -> None:
        path = self.log_path
        if path is None:
            self._log_records += 1
            return
        try:
            with open(path, 'a', encoding='utf-8', newline='') as handle:
                if handle.tell() == 0:
                    handle.write(format_header(LOG_KIND, FORMAT_VERSION))
                handle.write(line)
            self._log_records += 1
        except OSError as e:
            logger.warning(f"Could not append to training log {path}: {e}")

    @staticmethod
    def _backup(path: Path) -> None:
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        try:
            shutil.copy2(path, path.with_name(f"{path.name}.corrupt-{stamp}.bak"))
        except OSError as e:
            logger.warning(f"Could not back up damaged model file {path}: {e}")
