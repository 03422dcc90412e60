import numpy as np

from attendance_kiosk.recognition.quality import (FaceRegion, assess_face_quality,
                                                  compute_blur_score, estimate_yaw_from_landmarks)

from conftest import make_region, textured_crop


def test_good_face_passes(config):
    result = assess_face_quality(make_region(), config)
    assert result.is_good
    assert 0.6 <= result.score <= 1.0
    assert result.reason == 'Face quality is good'


def test_small_face_asks_to_move_closer(config):
    result = assess_face_quality(make_region(width=40, height=40), config)
    assert not result.is_good
    assert 'closer' in result.reason


def test_large_face_asks_to_move_back(config):
    result = assess_face_quality(make_region(width=500, height=400), config)
    assert not result.is_good
    assert 'back' in result.reason


def test_oblique_face_rejected(config):
    assert not assess_face_quality(make_region(pose=(0.0, 40.0, 0.0)), config).is_good
    assert not assess_face_quality(make_region(pose=(35.0, 0.0, 0.0)), config).is_good


def test_dark_and_bright_crops_rejected(config):
    dark = assess_face_quality(make_region(crop=textured_crop(low=0, high=30)), config)
    bright = assess_face_quality(make_region(crop=textured_crop(low=230, high=255)), config)
    assert not dark.is_good and 'dark' in dark.reason.lower()
    assert not bright.is_good and 'bright' in bright.reason.lower()


def test_blurry_crop_rejected(config):
    flat = np.full((230, 200), 128, dtype=np.uint8)
    result = assess_face_quality(make_region(crop=flat), config)
    assert not result.is_good
    assert result.reason == 'Please hold still'


def test_low_detector_confidence_rejected(config):
    assert not assess_face_quality(make_region(det_score=0.3), config).is_good


def test_turned_face_scores_lower_than_frontal(config):
    frontal = assess_face_quality(make_region(), config)
    turned = assess_face_quality(make_region(pose=(0.0, 20.0, 0.0)), config)
    assert turned.is_good
    assert turned.score < frontal.score


def test_degenerate_region_is_not_good(config):
    region = FaceRegion(bbox=np.array([0, 0, 10, 10]), frame_width=0, frame_height=0)
    assert not assess_face_quality(region, config).is_good


def test_blur_score_higher_for_sharp_image():
    assert compute_blur_score(textured_crop()) > compute_blur_score(np.full((50, 50), 100, dtype=np.uint8))


def test_yaw_from_landmarks():
    frontal = np.array([[30, 40], [70, 40], [50, 60], [35, 80], [65, 80]], dtype=float)
    turned = frontal.copy()
    turned[2, 0] = 65
    assert abs(estimate_yaw_from_landmarks(frontal)) < 1.0
    assert estimate_yaw_from_landmarks(turned) > 25.0
