"""
Disposition of duplicate artifacts.

For each duplicate pair an ordered list of rules picks the artifact to keep;
the first rule that can tell the two apart wins. Before an artifact with a
traceable source video is removed automatically, a plausibility guard checks
that it really looks like a conversion of that source. A failed check turns
the decision into a review flag instead of a removal.
"""

import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..logger_setup import get_logger
from ..media_service import MediaService, ProbeFailure
from .artifact_analyzer import ArtifactInfo
from .duplicate_classifier import DuplicateCandidate

logger = get_logger(__name__)

DEFAULT_SOURCE_EXTENSIONS = ['.mp4', '.mov', '.mkv', '.webm', '.avi', '.m4v']


class DispositionAction(Enum):
    DELETE = 'delete'
    QUARANTINE = 'quarantine'
    REVIEW = 'review'


class DuplicatePropertyMismatch(Exception):
    """A removal candidate does not look like a conversion of its own source."""

    def __init__(self, artifact: Path, reasons: List[str]):
        self.artifact = artifact
        self.reasons = reasons
        super().__init__(f"{artifact.name}: {'; '.join(reasons)}")


@dataclass
class SourceInfo:
    path: Path
    size: int
    mtime: float
    duration: Optional[float]


class SourceLocator:
    """Finds the video an artifact was converted from: same stem, known video extension."""

    def __init__(self, extensions: Optional[Sequence[str]] = None,
                 extra_dirs: Optional[Sequence[Path]] = None,
                 media_service: Optional[MediaService] = None):
        self.extensions = [ext.lower() for ext in (extensions or DEFAULT_SOURCE_EXTENSIONS)]
        self.extra_dirs = [Path(d).expanduser() for d in (extra_dirs or [])]
        self.media_service = media_service
        self._durations: Dict[Path, Optional[float]] = {}

    def find(self, artifact_path: Path) -> Optional[Path]:
        stem = artifact_path.stem
        for directory in [artifact_path.parent] + self.extra_dirs:
            if not directory.is_dir():
                continue
            for ext in self.extensions:
                for candidate in (directory / f"{stem}{ext}", directory / f"{stem}{ext.upper()}"):
                    if candidate.is_file():
                        return candidate
        return None

    def describe(self, artifact_path: Path) -> Optional[SourceInfo]:
        source = self.find(artifact_path)
        if source is None:
            return None
        try:
            st = source.stat()
        except OSError as e:
            logger.debug(f"Source {source} vanished: {e}")
            return None
        return SourceInfo(path=source, size=int(st.st_size), mtime=float(st.st_mtime),
                          duration=self._duration(source))

    def _duration(self, source: Path) -> Optional[float]:
        if source in self._durations:
            return self._durations[source]
        duration = None
        if self.media_service is not None:
            try:
                duration = self.media_service.probe(source).duration or None
            except ProbeFailure as e:
                logger.warning(f"Cannot read duration of source {source.name}: {e}")
        self._durations[source] = duration
        return duration


@dataclass
class ArtifactContext:
    """An artifact plus the facts the disposition rules look at"""
    info: ArtifactInfo
    source: Optional[SourceInfo]
    canonical: bool
    created: float

    @property
    def path(self) -> Path:
        return self.info.path


@dataclass
class Disposition:
    candidate: DuplicateCandidate
    keep: ArtifactInfo
    remove: ArtifactInfo
    action: DispositionAction
    rule: str
    reason: str
    flags: List[str] = field(default_factory=list)
    applied: bool = False
    destination: Optional[Path] = None


@dataclass
class ResolverPolicy:
    mode: DispositionAction = DispositionAction.QUARANTINE
    quarantine_dir: Path = Path('~/.smartgif/quarantine')
    canonical_dirs: List[Path] = field(default_factory=list)
    creation_time_tolerance: float = 2.0
    size_noise_floor: int = 1024
    source_mtime_tolerance: float = 2.0
    duration_tolerance_ratio: float = 0.20


# A rule returns 0 to keep the first artifact, 1 to keep the second, with a reason,
# or None when it cannot tell them apart.
RuleResult = Optional[Tuple[int, str]]
Rule = Callable[[ArtifactContext, ArtifactContext], RuleResult]


def _creation_time(st: os.stat_result) -> float:
    return float(getattr(st, 'st_birthtime', st.st_ctime))


def _is_within(path: Path, directory: Path) -> bool:
    try:
        path.resolve().relative_to(directory.resolve())
        return True
    except ValueError:
        return False


class DispositionResolver:
    def __init__(self, policy: Optional[ResolverPolicy] = None,
                 source_locator: Optional[SourceLocator] = None, dry_run: bool = False):
        self.policy = policy or ResolverPolicy()
        self.source_locator = source_locator or SourceLocator()
        self.dry_run = dry_run
        self.rules: List[Tuple[str, Rule]] = [
            ('traceable_source', self._rule_traceable_source),
            ('canonical_location', self._rule_canonical_location),
            ('earlier_creation', self._rule_earlier_creation),
            ('larger_size', self._rule_larger_size),
            ('newer_mtime', self._rule_newer_mtime),
            ('lexical_path', self._rule_lexical_path),
        ]

    @classmethod
    def from_config(cls, config: Any, media_service: Optional[MediaService] = None,
                    canonical_dirs: Iterable[Path] = (), dry_run: bool = False) -> 'DispositionResolver':
        base = 'duplicate_detection'
        mode = str(config.get(f'{base}.disposition.mode', 'quarantine')).lower()
        policy = ResolverPolicy(
            mode=DispositionAction.DELETE if mode == 'delete' else DispositionAction.QUARANTINE,
            quarantine_dir=Path(str(config.get(f'{base}.disposition.quarantine_dir',
                                               '~/.smartgif/quarantine'))).expanduser(),
            canonical_dirs=[Path(d) for d in canonical_dirs],
            creation_time_tolerance=float(config.get(f'{base}.disposition.creation_time_tolerance_seconds', 2.0)),
            size_noise_floor=int(config.get(f'{base}.disposition.size_noise_floor_bytes', 1024)),
            source_mtime_tolerance=float(config.get(f'{base}.plausibility.source_mtime_tolerance_seconds', 2.0)),
            duration_tolerance_ratio=float(config.get(f'{base}.plausibility.duration_tolerance_ratio', 0.20)),
        )
        locator = SourceLocator(
            extensions=config.get(f'{base}.source_search.extensions', DEFAULT_SOURCE_EXTENSIONS),
            extra_dirs=[Path(d) for d in (config.get(f'{base}.source_search.extra_dirs', []) or [])],
            media_service=media_service,
        )
        return cls(policy, locator, dry_run=dry_run)

    def context(self, info: ArtifactInfo) -> ArtifactContext:
        try:
            created = _creation_time(info.path.stat())
        except OSError:
            created = info.mtime
        return ArtifactContext(
            info=info,
            source=self.source_locator.describe(info.path),
            canonical=any(_is_within(info.path, d) for d in self.policy.canonical_dirs),
            created=created,
        )

    def decide(self, candidate: DuplicateCandidate) -> Disposition:
        pair = (self.context(candidate.file_a), self.context(candidate.file_b))

        rule_name, keep_index, reason = 'lexical_path', 0, ''
        for name, rule in self.rules:
            result = rule(pair[0], pair[1])
            if result is not None:
                rule_name = name
                keep_index, reason = result
                break

        keep, loser = pair[keep_index], pair[1 - keep_index]
        disposition = Disposition(
            candidate=candidate, keep=keep.info, remove=loser.info,
            action=self.policy.mode, rule=rule_name, reason=reason,
        )

        if loser.source is not None:
            try:
                self.check_plausibility(loser)
            except DuplicatePropertyMismatch as e:
                logger.warning(f"Not removing {loser.path.name} automatically: {e}")
                disposition.action = DispositionAction.REVIEW
                disposition.flags.extend(e.reasons)

        logger.debug(f"{candidate.tier.label}: keep {keep.path.name}, {disposition.action.value} "
                     f"{loser.path.name} [{rule_name}: {reason}]")
        return disposition

    def check_plausibility(self, ctx: ArtifactContext) -> None:
        """
        Raises:
            DuplicatePropertyMismatch: The artifact cannot be a conversion of its source
        """
        source = ctx.source
        if source is None:
            return
        reasons = []
        if ctx.info.mtime < source.mtime - self.policy.source_mtime_tolerance:
            reasons.append(f"older than its source {source.path.name}")
        if ctx.info.size > source.size:
            reasons.append(f"larger than its source ({ctx.info.size} > {source.size} bytes)")
        if source.duration is None:
            reasons.append("source duration unknown")
        elif abs(ctx.info.duration - source.duration) > self.policy.duration_tolerance_ratio * source.duration:
            reasons.append(f"duration {ctx.info.duration:.2f}s does not match source {source.duration:.2f}s")
        if reasons:
            raise DuplicatePropertyMismatch(ctx.path, reasons)

    def apply(self, disposition: Disposition) -> bool:
        """Carry out the removal. Returns True when the artifact left its location (or would, in dry run)."""
        target = disposition.remove.path
        if disposition.action == DispositionAction.REVIEW:
            logger.info(f"Flagged for review: {target} ({'; '.join(disposition.flags)})")
            return False

        if self.dry_run:
            logger.info(f"[dry run] would {disposition.action.value} {target} (keeping {disposition.keep.path.name})")
            return True

        try:
            if disposition.action == DispositionAction.QUARANTINE:
                disposition.destination = self._quarantine(target)
                logger.info(f"Quarantined duplicate {target.name} -> {disposition.destination}")
            else:
                target.unlink()
                logger.info(f"Deleted duplicate {target} (kept {disposition.keep.path.name})")
        except OSError as e:
            logger.warning(f"Failed to {disposition.action.value} {target}: {e}")
            disposition.flags.append(f"apply failed: {e}")
            return False

        disposition.applied = True
        return True

    def resolve_all(self, candidates: Sequence[DuplicateCandidate], apply: bool = True) -> List[Disposition]:
        """Decide (and optionally apply) every candidate, skipping pairs touching an already removed artifact."""
        removed: set = set()
        dispositions = []
        for candidate in candidates:
            if candidate.file_a.path in removed or candidate.file_b.path in removed:
                continue
            disposition = self.decide(candidate)
            dispositions.append(disposition)
            if disposition.action == DispositionAction.REVIEW:
                continue
            if not apply or self.apply(disposition):
                removed.add(disposition.remove.path)
        return dispositions

    def _quarantine(self, target: Path) -> Path:
        quarantine_dir = self.policy.quarantine_dir.expanduser()
        quarantine_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        destination = quarantine_dir / f"{target.stem}.{stamp}{target.suffix}"
        index = 1
        while destination.exists():
            destination = quarantine_dir / f"{target.stem}.{stamp}-{index}{target.suffix}"
            index += 1
        shutil.move(str(target), str(destination))
        return destination

    def _rule_traceable_source(self, a: ArtifactContext, b: ArtifactContext) -> RuleResult:
        if (a.source is None) == (b.source is None):
            return None
        keep = 0 if a.source is not None else 1
        return keep, f"source {(a, b)[keep].source.path.name} present"

    def _rule_canonical_location(self, a: ArtifactContext, b: ArtifactContext) -> RuleResult:
        if a.canonical == b.canonical:
            return None
        return (0 if a.canonical else 1), "in the output directory"

    def _rule_earlier_creation(self, a: ArtifactContext, b: ArtifactContext) -> RuleResult:
        if abs(a.created - b.created) <= self.policy.creation_time_tolerance:
            return None
        return (0 if a.created < b.created else 1), "created earlier"

    def _rule_larger_size(self, a: ArtifactContext, b: ArtifactContext) -> RuleResult:
        if abs(a.info.size - b.info.size) < self.policy.size_noise_floor:
            return None
        return (0 if a.info.size > b.info.size else 1), "larger file"

    def _rule_newer_mtime(self, a: ArtifactContext, b: ArtifactContext) -> RuleResult:
        if a.info.mtime == b.info.mtime:
            return None
        return (0 if a.info.mtime > b.info.mtime else 1), "modified more recently"

    def _rule_lexical_path(self, a: ArtifactContext, b: ArtifactContext) -> RuleResult:
        return (0 if str(a.path) <= str(b.path) else 1), "lexical path order"
