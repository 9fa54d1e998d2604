import os
import shutil
from pathlib import Path

import pytest

from smartgif.caching import CacheStats, ChecksumCache, FileFingerprint
from smartgif.duplicates import ArtifactAnalyzer, ArtifactInfo, ClassifierThresholds, DuplicateClassifier, DuplicateTier
from smartgif.duplicates.duplicate_classifier import prefix_similarity, size_difference_ratio
from smartgif.duplicates.perceptual_hash import hash_distance, read_gif_properties, representative_frame_hash

HASH_ZERO = '0' * 64
HASH_ONE_BIT = '1' + '0' * 63
HASH_FAR = 'f' * 64


def _info(name, **overrides):
    values = dict(path=Path(name), size=10000, mtime=0.0, checksum=f'sha-{name}', perceptual_hash=HASH_FAR,
                  frame_count=10, duration=1.0, width=320, height=240)
    values.update(overrides)
    return ArtifactInfo(**values)


def test_identical_checksums_are_exact_regardless_of_name():
    a = _info('out/clip.gif', checksum='abc', mtime=1.0)
    b = _info('elsewhere/totally_different.gif', checksum='abc', mtime=99999.0, width=10, frame_count=3)

    candidate = DuplicateClassifier().classify_pair(a, b)

    assert candidate.tier == DuplicateTier.EXACT_BINARY


def test_empty_checksums_and_hashes_never_match():
    a = _info('a.gif', checksum='', perceptual_hash='', frame_count=3)
    b = _info('zzz.gif', checksum='', perceptual_hash='', frame_count=4)

    assert DuplicateClassifier().classify_pair(a, b) is None


def test_equal_perceptual_hashes_are_visual_identical():
    a = _info('a.gif', perceptual_hash=HASH_ZERO)
    b = _info('b.gif', perceptual_hash=HASH_ZERO, size=50000)

    assert DuplicateClassifier().classify_pair(a, b).tier == DuplicateTier.VISUAL_IDENTICAL


def test_content_fingerprint_requires_size_within_five_percent():
    classifier = DuplicateClassifier()
    a = _info('a.gif', perceptual_hash=HASH_ZERO)

    close = _info('b.gif', size=10400)
    assert classifier.classify_pair(a, close).tier == DuplicateTier.CONTENT_FINGERPRINT

    far = _info('b.gif', size=10600)
    assert classifier.classify_pair(a, far) is None


def test_near_identical_uses_hash_distance_and_size():
    classifier = DuplicateClassifier()
    a = _info('a.gif', perceptual_hash=HASH_ZERO)
    b = _info('b.gif', perceptual_hash=HASH_ONE_BIT, width=640, height=480, size=10800)

    assert classifier.classify_pair(a, b).tier == DuplicateTier.NEAR_IDENTICAL

    different_frames = _info('b.gif', perceptual_hash=HASH_ONE_BIT, width=640, frame_count=11, size=10800)
    assert classifier.classify_pair(a, different_frames) is None


def test_name_heuristic_needs_shared_prefix():
    classifier = DuplicateClassifier()
    a = _info('holiday_clip.gif', perceptual_hash=HASH_ZERO)
    renamed = _info('holiday_clip_v2.gif', size=11200)

    candidate = classifier.classify_pair(a, renamed)
    assert candidate.tier == DuplicateTier.NAME_HEURISTIC
    assert 'prefix' in candidate.decision_reason

    unrelated = _info('zebra.gif', size=11200)
    assert classifier.classify_pair(a, unrelated) is None


def test_duration_tolerance_applies_to_property_tiers():
    classifier = DuplicateClassifier(ClassifierThresholds(duration_tolerance_seconds=0.05))
    a = _info('a.gif', perceptual_hash=HASH_ZERO)

    assert classifier.classify_pair(a, _info('b.gif', duration=1.04)).tier == DuplicateTier.CONTENT_FINGERPRINT
    assert classifier.classify_pair(a, _info('b.gif', duration=1.2)) is None


def test_classify_returns_pairs_ordered_by_tier():
    artifacts = [
        _info('c.gif', checksum='same'),
        _info('a.gif', perceptual_hash=HASH_ZERO),
        _info('b.gif', checksum='same'),
    ]

    candidates = DuplicateClassifier().classify(artifacts)

    assert [c.tier for c in candidates] == [
        DuplicateTier.EXACT_BINARY,
        DuplicateTier.CONTENT_FINGERPRINT,
        DuplicateTier.CONTENT_FINGERPRINT,
    ]
    assert (candidates[0].file_a.path.name, candidates[0].file_b.path.name) == ('b.gif', 'c.gif')


def test_similarity_helpers():
    assert size_difference_ratio(100, 95) == 0.05
    assert size_difference_ratio(0, 0) == 0.0
    assert prefix_similarity('clip.gif', 'clip_copy.gif') == 4 / 9
    assert prefix_similarity('Clip.GIF', 'clip.gif') == 1.0
    assert hash_distance(HASH_ZERO, HASH_ONE_BIT) == 1
    assert hash_distance(HASH_ZERO, HASH_FAR) == 256
    assert hash_distance('', HASH_ZERO) is None
    assert hash_distance('00', HASH_ZERO) is None


def test_gif_properties_and_representative_hash(tmp_path, make_gif):
    gif = make_gif(tmp_path / 'anim.gif', seed=1, frames=5, size=(64, 48), duration=100)

    assert read_gif_properties(gif) == (5, 0.5, 64, 48)
    digest = representative_frame_hash(gif, hash_size=16)
    assert len(digest) == 64
    assert representative_frame_hash(tmp_path / 'missing.gif') == ''


def test_byte_identical_artifacts_classify_exact_end_to_end(tmp_path, make_gif):
    out_dir = tmp_path / 'out'
    other_dir = tmp_path / 'other'
    out_dir.mkdir()
    other_dir.mkdir()
    original = make_gif(out_dir / 'clip.gif', seed=3)
    copy = other_dir / 'renamed.gif'
    shutil.copyfile(original, copy)
    os.utime(copy, (1000.0, 1000.0))
    make_gif(out_dir / 'unrelated.gif', seed=11, frames=7, size=(40, 40))

    cache_dir = tmp_path / 'cache'
    analyzer = ArtifactAnalyzer.open(cache_dir, ChecksumCache.open(cache_dir))
    paths = [original, copy, out_dir / 'unrelated.gif']
    infos = analyzer.analyze_many(paths)

    candidates = DuplicateClassifier().classify(infos)
    assert len(candidates) == 1
    assert candidates[0].tier == DuplicateTier.EXACT_BINARY
    assert {candidates[0].file_a.path, candidates[0].file_b.path} == {original, copy}

    # A second pass is served entirely from the caches
    stats = CacheStats()
    again = ArtifactAnalyzer.open(cache_dir, ChecksumCache.open(cache_dir)).analyze_many(paths, stats)
    assert [i.perceptual_hash for i in again] == [i.perceptual_hash for i in infos]
    assert stats.misses == 0
    assert stats.hits == 6


@pytest.mark.parametrize('payload', [
    'null',
    '[]',
    '{"hash_size": 16}',
    '{"hash_size": 16, "perceptual_hash": null, "frame_count": 5, "duration": 0.5, "width": 64, "height": 48}',
    '{"hash_size": 16, "perceptual_hash": "00", "frame_count": "many", "duration": 0.5, "width": 64, "height": 48}',
])
def test_damaged_cached_properties_are_recomputed(tmp_path, make_gif, payload):
    gif = make_gif(tmp_path / 'x.gif', seed=4, frames=5, size=(64, 48), duration=100)
    cache_dir = tmp_path / 'cache'
    analyzer = ArtifactAnalyzer.open(cache_dir, ChecksumCache.open(cache_dir))
    analyzer.properties_store.put(str(gif), FileFingerprint.from_path(gif), payload)

    infos = analyzer.analyze_many([gif])

    assert len(infos) == 1
    assert (infos[0].frame_count, infos[0].duration, infos[0].resolution) == (5, 0.5, (64, 48))
    assert infos[0].perceptual_hash == representative_frame_hash(gif, hash_size=16)
