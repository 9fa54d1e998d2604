"""
Automated Workflow Module
Drives a batch of videos through cache lookup, settings prediction, GIF
encoding and model training on a bounded worker pool, then sweeps the
output directory for duplicate artifacts.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from tqdm import tqdm

from .caching import AnalysisCache, CacheStats, ChecksumCache, FingerprintStore
from .config_manager import ConfigManager
from .duplicates import (
    ArtifactAnalyzer, Disposition, DispositionAction, DispositionResolver, DuplicateClassifier,
    DuplicatePropertyMismatch
)
from .error_handler import ErrorHandler
from .gif_config import (
    GifSettings, fallback_settings, get_preset, reduce_settings, settings_from_analysis, settings_to_analysis
)
from .hardware_detector import HardwareDetector
from .learning import FeaturePattern, Outcome, PatternLearningModel
from .logger_setup import get_logger
from .media_service import FFmpegMediaService, MediaInfo, MediaService, ProbeFailure, TranscodeError, TranscodeTimeout

logger = get_logger(__name__)

PATTERN_TAG = 'pattern'

CORE_TRACKER_METRICS = {
    'cache_hits',
    'cache_misses',
    'retries',
    'timeout_events',
    'probe_failures',
    'fallback_settings',
    'predictions',
    'training_updates',
    'training_rejected',
    'writes_skipped',
    'duplicates_found',
    'duplicates_removed',
    'duplicates_flagged',
}


@dataclass
class AnalysisTracker:
    """
    Lightweight tracker for workflow diagnostics (cache hits, retries, fallbacks, etc.).
    Workers share one tracker, so updates go through a lock.
    """
    counts: Dict[str, int] = field(default_factory=dict)
    recent_events: List[str] = field(default_factory=list)
    max_recent_events: int = 20
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _remember(self, message: Optional[str]) -> None:
        if not message:
            return
        self.recent_events.append(message)
        if len(self.recent_events) > self.max_recent_events:
            self.recent_events.pop(0)

    def bump(self, metric: str, amount: int = 1) -> int:
        with self._lock:
            if amount <= 0:
                return self.counts.get(metric, 0)
            self.counts[metric] = self.counts.get(metric, 0) + amount
            return self.counts[metric]

    def _record(self, metric: str, prefix: str, context: str, amount: int = 1) -> None:
        self.bump(metric, amount)
        if context:
            self.bump(f'{prefix}_{context}', amount)
        with self._lock:
            self._remember(f"{prefix}:{context}")

    def record_cache_hit(self, context: str) -> None:
        self._record('cache_hits', 'cache_hit', context)

    def record_cache_miss(self, context: str) -> None:
        self._record('cache_misses', 'cache_miss', context)

    def record_retry(self, context: str) -> None:
        self._record('retries', 'retry', context)

    def record_timeout(self, context: str) -> None:
        self._record('timeout_events', 'timeout', context)

    def record_probe_failure(self, context: str) -> None:
        self._record('probe_failures', 'probe_failure', context)

    def record_fallback(self, context: str) -> None:
        self._record('fallback_settings', 'fallback', context)

    def record_prediction(self, context: str) -> None:
        self._record('predictions', 'prediction', context)

    def record_training(self, context: str, accepted: bool = True) -> None:
        if accepted:
            self._record('training_updates', 'training', context)
        else:
            self._record('training_rejected', 'training_rejected', context)

    def record_skipped_write(self, context: str) -> None:
        self._record('writes_skipped', 'write_skipped', context)

    def record_duplicates(self, found: int, removed: int, flagged: int) -> None:
        self.bump('duplicates_found', found)
        self.bump('duplicates_removed', removed)
        self.bump('duplicates_flagged', flagged)
        with self._lock:
            self._remember(f"duplicates:{found} found/{removed} removed/{flagged} flagged")

    def snapshot(self) -> Dict[str, Any]:
        """Return a shallow copy of counters and recent events for reporting."""
        with self._lock:
            return {
                'counts': dict(self.counts),
                'recent_events': list(self.recent_events[-self.max_recent_events:])
            }

    def top_metrics(self, limit: int = 5) -> List[Tuple[str, int]]:
        """Return the top metrics by count, excluding derived per-context entries."""
        with self._lock:
            base_metrics = [
                (metric, value)
                for metric, value in self.counts.items()
                if metric in CORE_TRACKER_METRICS or '_' not in metric
            ]
        return sorted(base_metrics, key=lambda item: item[1], reverse=True)[:limit]


@dataclass
class FileResult:
    input_path: Path
    output_path: Optional[Path] = None
    outcome: Optional[Outcome] = None
    settings: Optional[GifSettings] = None
    settings_source: str = ''
    attempts: int = 0
    cache_hit: bool = False
    low_confidence: bool = False
    skipped: bool = False
    error: Optional[str] = None
    stats: CacheStats = field(default_factory=CacheStats)

    @property
    def succeeded(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.PARTIAL)


@dataclass
class BatchSummary:
    results: List[FileResult] = field(default_factory=list)
    cache_stats: CacheStats = field(default_factory=CacheStats)
    dispositions: List[Disposition] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    stopped: bool = False

    def add(self, result: FileResult) -> None:
        self.results.append(result)
        self.cache_stats.merge(result.stats)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'success': self.count(Outcome.SUCCESS),
            'partial': self.count(Outcome.PARTIAL),
            'failure': self.count(Outcome.FAILURE),
            'skipped': self.skipped,
            'stopped': self.stopped,
            'elapsed_seconds': round(self.elapsed_seconds, 2),
            'cache': self.cache_stats.to_dict(),
            'duplicates': {
                action.value: sum(1 for d in self.dispositions if d.action == action)
                for action in DispositionAction
            },
        }


def pattern_from_tags(tags: Iterable[str]) -> Optional[FeaturePattern]:
    for tag in tags:
        name, _, value = tag.partition('=')
        if name == PATTERN_TAG:
            try:
                return FeaturePattern.from_key(value)
            except ValueError:
                return None
    return None


class BatchOrchestrator:
    """Runs batches of video -> GIF conversions with caching, prediction and training"""

    def __init__(self, media_service: MediaService, analysis_cache: AnalysisCache,
                 model: Optional[PatternLearningModel] = None, max_workers: int = 4,
                 transcode_timeout: float = 300.0, max_retries: int = 2, fallback_preset: str = 'medium',
                 show_progress: bool = True, error_handler: Optional[ErrorHandler] = None,
                 tracker: Optional[AnalysisTracker] = None,
                 artifact_analyzer: Optional[ArtifactAnalyzer] = None,
                 classifier: Optional[DuplicateClassifier] = None,
                 resolver: Optional[DispositionResolver] = None,
                 maintained_stores: Optional[Dict[str, FingerprintStore]] = None,
                 cache_max_age_hours: float = 720.0, sweep_after_run: bool = True):
        self.media = media_service
        self.analysis_cache = analysis_cache
        self.model = model
        self.max_workers = max(1, int(max_workers))
        self.transcode_timeout = transcode_timeout
        self.max_retries = max(0, int(max_retries))
        self.fallback_preset = fallback_preset
        self.show_progress = show_progress
        self.error_handler = error_handler or ErrorHandler()
        self.tracker = tracker or AnalysisTracker()
        self.artifact_analyzer = artifact_analyzer
        self.classifier = classifier or DuplicateClassifier()
        self.resolver = resolver
        self.maintained_stores = maintained_stores or {'analysis': analysis_cache.store}
        self.cache_max_age_hours = cache_max_age_hours
        self.sweep_after_run = sweep_after_run
        self._stop_event = threading.Event()

    @classmethod
    def from_config(cls, config: ConfigManager, media_service: Optional[MediaService] = None,
                    dry_run: bool = False) -> 'BatchOrchestrator':
        """
        Wire every collaborator from configuration.

        Raises:
            StoreUnavailableError: The cache directory cannot be created
        """
        cache_dir = config.get_path('cache.directory', '~/.smartgif/cache')
        media = media_service or FFmpegMediaService(probe_timeout=float(config.get('workflow.probe_timeout_seconds', 30)))

        analysis_cache = AnalysisCache.open(cache_dir, config.get('cache.analysis_store', 'analysis_cache.txt'),
                                            max_payload_bytes=config.get('cache.max_payload_bytes'))
        checksum_cache = ChecksumCache.open(cache_dir, config.get('cache.checksum_store', 'checksum_cache.txt'),
                                            chunk_bytes=int(config.get('cache.checksum_chunk_bytes', 1024 * 1024)))
        analyzer = ArtifactAnalyzer.open(cache_dir, checksum_cache,
                                         config.get('cache.artifact_store', 'artifact_properties.txt'),
                                         hash_size=int(config.get('duplicate_detection.perceptual_hash_size', 16)))
        stores = {
            'analysis': analysis_cache.store,
            'checksum': checksum_cache.store,
            'artifact': analyzer.properties_store,
        }

        error_handler = ErrorHandler()
        for store in stores.values():
            if store.last_corruption is not None:
                error_handler.handle_error(store.last_corruption, str(store.path), context='store open')

        model = PatternLearningModel.from_config(config) if config.get('learning.enabled', True) else None

        hardware = HardwareDetector(memory_per_worker_mb=int(config.get('workflow.memory_per_worker_mb', 512)))
        workers = hardware.recommended_workers(int(config.get('workflow.max_workers', 4)))

        return cls(
            media_service=media,
            analysis_cache=analysis_cache,
            model=model,
            max_workers=workers,
            transcode_timeout=float(config.get('workflow.transcode_timeout_seconds', 300)),
            max_retries=int(config.get('workflow.max_retries', 2)),
            fallback_preset=str(config.get('learning.fallback_preset', 'medium')),
            show_progress=bool(config.get('workflow.show_progress', True)),
            error_handler=error_handler,
            artifact_analyzer=analyzer,
            classifier=DuplicateClassifier.from_config(config),
            resolver=DispositionResolver.from_config(config, media_service=media, dry_run=dry_run),
            maintained_stores=stores,
            cache_max_age_hours=float(config.get('cache.max_age_hours', 720)),
            sweep_after_run=bool(config.get('workflow.sweep_duplicates', True)),
        )

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        """Stop dispatching new files; files already encoding finish without cache or training writes."""
        if not self._stop_event.is_set():
            logger.info("Stop requested; no new files will be started")
        self._stop_event.set()

    def run(self, inputs: Iterable[Union[str, Path]], output_dir: Union[str, Path]) -> BatchSummary:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        files = [Path(p) for p in inputs]
        summary = BatchSummary()
        started = time.time()

        logger.info(f"Processing {len(files)} files with {self.max_workers} workers")
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor, \
                tqdm(total=len(files), desc="Converting", unit="file", disable=not self.show_progress) as progress:
            futures = {executor.submit(self.process_file, path, output_dir): path for path in files}
            for future in as_completed(futures):
                path = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    # Unexpected failure inside one worker must not end the batch
                    error = self.error_handler.handle_error(e, str(path), context='worker')
                    result = FileResult(input_path=path, outcome=Outcome.FAILURE,
                                        error=error.get_short_description())
                summary.add(result)
                progress.update(1)

        summary.stopped = self.stop_requested
        if self.model is not None and not summary.stopped:
            try:
                self.model.save()
            except OSError as e:
                logger.warning(f"Could not save learning model: {e}")

        if self.sweep_after_run and not summary.stopped and self.artifact_analyzer is not None:
            summary.dispositions = self.sweep_duplicates([output_dir], canonical_dir=output_dir,
                                                         source_dirs=sorted({p.parent for p in files}))

        summary.elapsed_seconds = time.time() - started
        self.error_handler.log_batch_summary(summary.total - summary.skipped, summary.successful)
        logger.info(f"Batch finished: {summary.to_dict()}")
        return summary

    def process_file(self, path: Path, output_dir: Path) -> FileResult:
        """Convert one file end to end inside a single worker."""
        result = FileResult(input_path=path, output_path=output_dir / f"{path.stem}.gif")
        if self.stop_requested:
            result.skipped = True
            return result

        settings, pattern = self._choose_settings(path, result)
        result.settings = settings
        result.outcome, result.settings = self._transcode_with_retries(path, result, settings)

        if self.stop_requested:
            self.tracker.record_skipped_write(path.name)
            logger.debug(f"Stop observed; not recording results for {path.name}")
            return result

        if pattern is not None and self.model is not None:
            entry = self.model.train(pattern, result.settings, result.outcome)
            self.tracker.record_training(pattern.content_type, accepted=entry is not None)

        if result.succeeded and not (result.cache_hit and result.outcome == Outcome.SUCCESS):
            tags = [f"{PATTERN_TAG}={pattern.key}", pattern.content_type] if pattern is not None else []
            self.analysis_cache.store_result(path, settings_to_analysis(result.settings, tags), result.stats)
        return result

    def _choose_settings(self, path: Path, result: FileResult) -> Tuple[GifSettings, Optional[FeaturePattern]]:
        cached = self.analysis_cache.lookup(path, result.stats)
        if cached is not None:
            result.cache_hit = True
            result.settings_source = 'cache'
            self.tracker.record_cache_hit('analysis')
            return (settings_from_analysis(cached, get_preset(self.fallback_preset)),
                    pattern_from_tags(cached.content_tags))
        self.tracker.record_cache_miss('analysis')

        info: Optional[MediaInfo] = None
        pattern: Optional[FeaturePattern] = None
        try:
            info = self.media.probe(path)
            pattern = FeaturePattern.from_media_info(info, path.name)
        except ProbeFailure as e:
            self.tracker.record_probe_failure(path.suffix.lstrip('.') or 'file')
            self.error_handler.handle_error(e, str(path), context='probe')

        prediction = self.model.predict(pattern) if (self.model is not None and pattern is not None) else None
        if prediction is not None:
            result.settings_source = prediction.match.value
            self.tracker.record_prediction(prediction.match.value)
            logger.debug(f"{path.name}: {prediction.match.value} prediction from {prediction.pattern.key} "
                         f"(confidence {prediction.confidence:.2f})")
            return prediction.settings, pattern

        result.settings_source = 'fallback'
        result.low_confidence = info is None
        self.tracker.record_fallback(self.fallback_preset)
        return fallback_settings(self.fallback_preset,
                                 source_width=info.width if info else None,
                                 duration=info.duration if info else None), pattern

    def _transcode_with_retries(self, path: Path, result: FileResult,
                                settings: GifSettings) -> Tuple[Outcome, GifSettings]:
        current = settings
        last_error: Optional[TranscodeError] = None
        for attempt in range(self.max_retries + 1):
            result.attempts = attempt + 1
            if attempt > 0:
                current = reduce_settings(settings, attempt)
                self.tracker.record_retry(path.suffix.lstrip('.') or 'file')
                logger.info(f"Retrying {path.name} with reduced settings (attempt {attempt + 1}): {current}")
            try:
                self.media.transcode(path, result.output_path, current, self.transcode_timeout)
                return (Outcome.SUCCESS if attempt == 0 else Outcome.PARTIAL), current
            except TranscodeError as e:
                if isinstance(e, TranscodeTimeout):
                    self.tracker.record_timeout('transcode')
                logger.warning(f"Transcode attempt {attempt + 1} for {path.name} failed: {e}")
                last_error = e

        error = self.error_handler.handle_error(last_error, str(path),
                                                context=f"after {result.attempts} attempts")
        result.error = error.get_short_description()
        return Outcome.FAILURE, current

    def sweep_duplicates(self, directories: Iterable[Union[str, Path]],
                         canonical_dir: Optional[Union[str, Path]] = None,
                         apply: bool = True,
                         source_dirs: Iterable[Union[str, Path]] = ()) -> List[Disposition]:
        """
        Classify the GIFs under the given directories and resolve every duplicate pair.

        source_dirs are searched for source videos in addition to each artifact's own directory.
        """
        if self.artifact_analyzer is None or self.resolver is None:
            logger.debug("Duplicate sweep not configured")
            return []
        if canonical_dir is not None:
            self.resolver.policy.canonical_dirs = [Path(canonical_dir)]
        locator = self.resolver.source_locator
        for directory in source_dirs:
            directory = Path(directory).expanduser()
            if directory not in locator.extra_dirs:
                locator.extra_dirs.append(directory)

        quarantine = self.resolver.policy.quarantine_dir.expanduser()
        artifacts = sorted({
            gif for directory in directories for gif in Path(directory).rglob('*.gif')
            if gif.is_file() and quarantine not in gif.parents
        })
        stats = CacheStats()
        infos = self.artifact_analyzer.analyze_many(artifacts, stats)
        candidates = self.classifier.classify(infos)
        dispositions = self.resolver.resolve_all(candidates, apply=apply)

        flagged = [d for d in dispositions if d.action == DispositionAction.REVIEW]
        for disposition in flagged:
            self.error_handler.handle_error(DuplicatePropertyMismatch(disposition.remove.path, disposition.flags),
                                            str(disposition.remove.path), context='duplicate sweep')
        removed = sum(1 for d in dispositions if d.applied)
        self.tracker.record_duplicates(len(candidates), removed, len(flagged))
        logger.info(f"Duplicate sweep: {len(infos)} artifacts, {len(candidates)} pairs, "
                    f"{removed} removed, {len(flagged)} flagged (checksum cache hit rate {stats.hit_rate:.0%})")
        return dispositions

    def maintain_caches(self) -> Dict[str, int]:
        """Compact every store; returns the records kept per store."""
        kept = {}
        for name, store in self.maintained_stores.items():
            kept[name] = store.compact(max_age=self.cache_max_age_hours * 3600.0)
        return kept
