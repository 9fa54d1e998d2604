import os
import time
from pathlib import Path

import pytest

from smartgif.duplicates import (
    ArtifactInfo, DispositionAction, DispositionResolver, DuplicateClassifier, DuplicatePropertyMismatch,
    ResolverPolicy, SourceLocator
)
from smartgif.duplicates.disposition_resolver import ArtifactContext, SourceInfo
from smartgif.media_service import MediaInfo, MediaService, ProbeFailure


class FakeMedia(MediaService):
    def __init__(self, duration=1.0, fail=False):
        self.duration = duration
        self.fail = fail
        self.probed = []

    def probe(self, path):
        self.probed.append(Path(path))
        if self.fail:
            raise ProbeFailure("no metadata")
        return MediaInfo(duration=self.duration, width=640, height=360, frame_rate=24.0, bit_rate=500000)


def _artifact(path: Path, data: bytes = b'GIF89a' + b'\x00' * 994, mtime=None, duration=1.0):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    st = path.stat()
    return ArtifactInfo(path=path, size=st.st_size, mtime=st.st_mtime, checksum='same-checksum',
                        perceptual_hash='0' * 64, frame_count=10, duration=duration, width=320, height=240)


def _source(path: Path, size=100000, mtime=None):
    path.write_bytes(b'\x00' * size)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def _resolver(tmp_path, mode=DispositionAction.QUARANTINE, media=None, canonical=(), dry_run=False):
    policy = ResolverPolicy(mode=mode, quarantine_dir=tmp_path / 'quarantine', canonical_dirs=list(canonical))
    return DispositionResolver(policy, SourceLocator(media_service=media or FakeMedia()), dry_run=dry_run)


def _only_candidate(*infos):
    candidates = DuplicateClassifier().classify(list(infos))
    assert len(candidates) == 1
    return candidates[0]


def test_keeps_artifact_with_traceable_source(tmp_path):
    _source(tmp_path / 'clip.mp4')
    clip = _artifact(tmp_path / 'clip.gif')
    copy = _artifact(tmp_path / 'clip_copy.gif')
    resolver = _resolver(tmp_path)

    dispositions = resolver.resolve_all([_only_candidate(clip, copy)])

    assert len(dispositions) == 1
    decision = dispositions[0]
    assert decision.keep.path.name == 'clip.gif'
    assert decision.remove.path.name == 'clip_copy.gif'
    assert decision.rule == 'traceable_source'
    assert decision.action == DispositionAction.QUARANTINE
    assert decision.applied
    assert (tmp_path / 'clip.gif').exists()
    assert not (tmp_path / 'clip_copy.gif').exists()
    quarantined = list((tmp_path / 'quarantine').iterdir())
    assert len(quarantined) == 1
    assert quarantined[0].name.startswith('clip_copy.')
    assert quarantined[0] == decision.destination


def test_guard_blocks_removal_of_artifact_older_than_source(tmp_path):
    now = time.time()
    _source(tmp_path / 'a.mp4', mtime=now - 100)
    _source(tmp_path / 'b.mp4', mtime=now)
    a = _artifact(tmp_path / 'a.gif', mtime=now - 50)
    b = _artifact(tmp_path / 'b.gif', mtime=now - 3600)
    resolver = _resolver(tmp_path, mode=DispositionAction.DELETE)

    decision = resolver.decide(_only_candidate(a, b))

    assert decision.rule == 'newer_mtime'
    assert decision.remove.path.name == 'b.gif'
    assert decision.action == DispositionAction.REVIEW
    assert any('older than its source' in flag for flag in decision.flags)
    assert not resolver.apply(decision)
    assert (tmp_path / 'b.gif').exists()


def test_guard_passes_plausible_conversion(tmp_path):
    now = time.time()
    _source(tmp_path / 'a.mp4', mtime=now - 100)
    _source(tmp_path / 'b.mp4', mtime=now - 100)
    a = _artifact(tmp_path / 'a.gif', mtime=now)
    b = _artifact(tmp_path / 'b.gif', mtime=now - 10)
    resolver = _resolver(tmp_path, mode=DispositionAction.DELETE, media=FakeMedia(duration=1.1))

    decisions = resolver.resolve_all([_only_candidate(a, b)])

    assert decisions[0].action == DispositionAction.DELETE
    assert decisions[0].applied
    assert not (tmp_path / 'b.gif').exists()


def test_guard_flags_size_and_duration_mismatch(tmp_path):
    source = _source(tmp_path / 'x.mp4', size=10)
    artifact = _artifact(tmp_path / 'x.gif', duration=5.0)
    resolver = _resolver(tmp_path, media=FakeMedia(duration=1.0))
    context = ArtifactContext(info=artifact, source=SourceInfo(source, 10, 0.0, 1.0), canonical=False, created=0.0)

    with pytest.raises(DuplicatePropertyMismatch) as excinfo:
        resolver.check_plausibility(context)

    reasons = excinfo.value.reasons
    assert any('larger than its source' in r for r in reasons)
    assert any('does not match source' in r for r in reasons)


def test_unknown_source_duration_goes_to_review(tmp_path):
    now = time.time()
    _source(tmp_path / 'a.mp4', mtime=now - 100)
    _source(tmp_path / 'b.mp4', mtime=now - 100)
    a = _artifact(tmp_path / 'a.gif', mtime=now)
    b = _artifact(tmp_path / 'b.gif', mtime=now - 10)
    resolver = _resolver(tmp_path, media=FakeMedia(fail=True))

    decision = resolver.decide(_only_candidate(a, b))

    assert decision.action == DispositionAction.REVIEW
    assert 'source duration unknown' in decision.flags


def test_canonical_location_wins_over_working_copy(tmp_path):
    out_dir = tmp_path / 'output'
    work = _artifact(tmp_path / 'work' / 'a.gif')
    final = _artifact(out_dir / 'z.gif')
    resolver = _resolver(tmp_path, canonical=[out_dir])

    decision = resolver.decide(_only_candidate(work, final))

    assert decision.rule == 'canonical_location'
    assert decision.keep.path == final.path


def test_larger_artifact_kept_beyond_noise_floor(tmp_path):
    small = _artifact(tmp_path / 'a.gif', data=b'G' * 1000)
    large = _artifact(tmp_path / 'b.gif', data=b'G' * 9000)
    resolver = _resolver(tmp_path)

    decision = resolver.decide(_only_candidate(small, large))

    assert decision.rule == 'larger_size'
    assert decision.keep.path.name == 'b.gif'


def test_resolve_all_never_acts_twice_on_removed_artifact(tmp_path):
    stamp = time.time() - 60
    infos = [_artifact(tmp_path / f'{name}.gif', mtime=stamp) for name in ('a', 'b', 'c')]
    resolver = _resolver(tmp_path, mode=DispositionAction.DELETE)

    candidates = DuplicateClassifier().classify(infos)
    assert len(candidates) == 3
    decisions = resolver.resolve_all(candidates)

    assert len(decisions) == 2
    assert all(d.rule == 'lexical_path' for d in decisions)
    assert {d.remove.path.name for d in decisions} == {'b.gif', 'c.gif'}
    assert (tmp_path / 'a.gif').exists()
    assert not (tmp_path / 'b.gif').exists()
    assert not (tmp_path / 'c.gif').exists()


def test_dry_run_leaves_files_in_place(tmp_path):
    _source(tmp_path / 'clip.mp4')
    clip = _artifact(tmp_path / 'clip.gif')
    copy = _artifact(tmp_path / 'clip_copy.gif')
    resolver = _resolver(tmp_path, dry_run=True)

    decisions = resolver.resolve_all([_only_candidate(clip, copy)])

    assert decisions[0].remove.path.name == 'clip_copy.gif'
    assert not decisions[0].applied
    assert (tmp_path / 'clip_copy.gif').exists()
    assert not (tmp_path / 'quarantine').exists()


def test_source_locator_searches_extra_dirs(tmp_path):
    sources = tmp_path / 'sources'
    sources.mkdir()
    (sources / 'movie.MOV').write_bytes(b'x')
    locator = SourceLocator(extensions=['.mov'], extra_dirs=[sources])

    assert locator.find(tmp_path / 'out' / 'movie.gif') == sources / 'movie.MOV'
    assert locator.find(tmp_path / 'out' / 'other.gif') is None
