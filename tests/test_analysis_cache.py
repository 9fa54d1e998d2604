import hashlib
import os

import pytest

from smartgif.caching import AnalysisCache, AnalysisResult, CacheStats, ChecksumCache, CropRegion, FileFingerprint


def _video(tmp_path, name='input.mp4', data=b'\x00' * 2048):
    path = tmp_path / name
    path.write_bytes(data)
    os.utime(path, (1700000000.0, 1700000000.0))
    return path


def _result():
    return AnalysisResult(frame_rate=15.0, dither_mode='bayer', max_colors=128,
                          crop_region=CropRegion(640, 360, 0, 60), content_tags=['movie'], scale_width=480)


def test_analysis_lookup_hit_after_store(tmp_path):
    video = _video(tmp_path)
    cache = AnalysisCache.open(tmp_path / 'cache')
    stats = CacheStats()

    assert cache.lookup(video, stats) is None
    assert cache.store_result(video, _result(), stats)
    cached = cache.lookup(video, stats)

    assert cached == _result()
    assert cached.crop_region.to_filter() == 'crop=640:360:0:60'
    assert (stats.hits, stats.misses, stats.writes) == (1, 1, 1)


def test_modified_file_invalidates_entry(tmp_path):
    video = _video(tmp_path)
    cache = AnalysisCache.open(tmp_path / 'cache')
    cache.store_result(video, _result())

    with open(video, 'ab') as handle:
        handle.write(b'more')
    stats = CacheStats()

    assert cache.lookup(video, stats) is None
    assert stats.stale == 1


def test_get_or_compute_computes_once(tmp_path):
    video = _video(tmp_path)
    cache = AnalysisCache.open(tmp_path / 'cache')
    calls = []

    def compute(path):
        calls.append(path)
        return _result()

    first = cache.get_or_compute(video, compute)
    second = AnalysisCache.open(tmp_path / 'cache').get_or_compute(video, compute)

    assert first == second
    assert len(calls) == 1


def test_undecodable_payload_counts_as_miss(tmp_path):
    video = _video(tmp_path)
    cache = AnalysisCache.open(tmp_path / 'cache')
    cache.store.put(str(video), FileFingerprint.from_path(video), 'not json')
    stats = CacheStats()

    assert cache.lookup(video, stats) is None
    assert stats.hits == 0
    assert stats.misses == 1


@pytest.mark.parametrize('payload', ['null', '[]', '12', '{"frame_rate": 12.0}'])
def test_well_formed_record_with_unusable_payload_is_a_miss(tmp_path, payload):
    video = _video(tmp_path)
    cache = AnalysisCache.open(tmp_path / 'cache')
    cache.store.put(str(video), FileFingerprint.from_path(video), payload)
    stats = CacheStats()

    assert cache.lookup(video, stats) is None
    assert (stats.hits, stats.misses) == (0, 1)

    assert cache.get_or_compute(video, lambda path: _result()) == _result()
    assert cache.lookup(video) == _result()


def test_missing_file_is_not_cached(tmp_path):
    cache = AnalysisCache.open(tmp_path / 'cache')
    assert not cache.store_result(tmp_path / 'missing.mp4', _result())
    assert cache.lookup(tmp_path / 'missing.mp4') is None


def test_checksum_is_sha256_and_cached(tmp_path):
    data = os.urandom(3000)
    video = _video(tmp_path, data=data)
    cache = ChecksumCache.open(tmp_path / 'cache', chunk_bytes=1024)
    stats = CacheStats()

    first = cache.get_checksum(video, stats)
    second = cache.get_checksum(video, stats)

    assert first == hashlib.sha256(data).hexdigest()
    assert second == first
    assert stats.hits == 1
    assert stats.misses == 1


def test_checksum_recomputed_after_change(tmp_path):
    video = _video(tmp_path, data=b'one')
    cache = ChecksumCache.open(tmp_path / 'cache')
    cache.get_checksum(video)

    video.write_bytes(b'two!')
    record = cache.get_record(video)

    assert record.checksum == hashlib.sha256(b'two!').hexdigest()
    assert record.size == 4
    assert record.filepath == str(video)
