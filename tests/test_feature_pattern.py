import pytest

from smartgif.learning import FeaturePattern, detect_content_type
from smartgif.learning.feature_pattern import complexity_bucket, duration_class, motion_level, resolution_class
from smartgif.media_service import MediaInfo


def _info(width=1280, height=720, duration=30.0, fps=30.0, bpp=0.1):
    return MediaInfo(duration=duration, width=width, height=height, frame_rate=fps,
                     bit_rate=int(width * height * fps * bpp))


def test_key_round_trip():
    pattern = FeaturePattern('movie', '1080p', 'long', 'medium', 60)
    assert pattern.key == 'movie:1080p:long:medium:60'
    assert FeaturePattern.from_key(pattern.key) == pattern


def test_malformed_key_is_rejected():
    with pytest.raises(ValueError):
        FeaturePattern.from_key('movie:1080p')


def test_similarity_counts_equal_fields():
    a = FeaturePattern('movie', '1080p', 'long', 'medium', 60)
    assert a.similarity(a) == 1.0
    assert a.similarity(FeaturePattern('clip', '1080p', 'long', 'medium', 40)) == pytest.approx(0.6)


def test_cinematic_source_buckets_as_movie():
    info = MediaInfo(duration=90, width=1920, height=800, frame_rate=24,
                     bit_rate=int(1920 * 800 * 24 * 0.18))

    assert FeaturePattern.from_media_info(info, 'film.mp4') == FeaturePattern('movie', '1080p', 'long', 'medium', 60)


@pytest.mark.parametrize('width,height,expected', [
    (640, 360, '360p'),
    (854, 480, '480p'),
    (720, 1280, '720p'),
    (1920, 1080, '1080p'),
    (3840, 2160, '4k'),
])
def test_resolution_class_uses_short_side(width, height, expected):
    assert resolution_class(width, height) == expected


def test_duration_motion_and_complexity_buckets():
    assert duration_class(5) == 'short'
    assert duration_class(60) == 'medium'
    assert duration_class(61) == 'long'
    assert motion_level(60, 0.1) == 'high'
    assert motion_level(24, 0.01) == 'low'
    assert motion_level(24, 0.1) == 'medium'
    assert complexity_bucket(0.0) == 0
    assert complexity_bucket(0.18) == 60
    assert complexity_bucket(5.0) == 100


def test_content_type_detection():
    assert detect_content_type(_info(), 'Screen Recording 2024.mov') == 'screencast'
    assert detect_content_type(_info(), 'cat_animation.mp4') == 'animation'
    assert detect_content_type(_info(width=1920, height=1080, bpp=0.01), 'session.mp4') == 'screencast'
    assert detect_content_type(_info(width=480, height=360, bpp=0.02), 'loop.mp4') == 'animation'
    assert detect_content_type(_info(duration=900), 'lecture.mp4') == 'movie'
    assert detect_content_type(_info(), 'holiday.mp4') == 'clip'
