"""
Tests for the overlay canvas and renderer.
"""

import base64

import numpy as np
import pytest

from exercise_service.models.landmarks import LandmarkGroup, landmark_group
from exercise_service.models.overlay import Canvas, OverlayRenderer, composite, encode_frame

from conftest import make_landmarks

SIZE = (640, 480)


@pytest.fixture
def renderer():
    return OverlayRenderer(visibility_threshold=0.5)


def test_canvas_resizes_only_when_dimensions_change():
    canvas = Canvas()
    assert canvas.resize(640, 480) is True
    assert canvas.resize(640, 480) is False
    assert canvas.resize_count == 1
    assert (canvas.width, canvas.height) == (640, 480)


def test_render_does_not_resize_for_same_dimensions(renderer):
    canvas = Canvas()
    for t in range(3):
        renderer.render(canvas, SIZE, make_landmarks(), float(t))
    assert canvas.resize_count == 1


def test_full_detection_draws_skeleton(renderer):
    canvas = Canvas()
    renderer.render(canvas, SIZE, make_landmarks(), 0.0)

    assert not canvas.is_blank()
    # Nose is drawn at (320, 48) with an opaque fill
    assert canvas.image[48, 320, 3] == 255


@pytest.mark.parametrize("count", [0, 1, 32, 34])
def test_incomplete_detection_clears_and_draws_nothing(renderer, count):
    canvas = Canvas(*SIZE)
    canvas.image[:] = 255

    renderer.render(canvas, SIZE, make_landmarks(count=count), 0.0)

    assert canvas.is_blank()


def test_low_visibility_points_are_skipped(renderer):
    canvas = Canvas()
    renderer.render(canvas, SIZE, make_landmarks(visibility=0.2), 0.0)
    assert canvas.is_blank()


def test_missing_visibility_counts_as_visible(renderer):
    canvas = Canvas()
    renderer.render(canvas, SIZE, make_landmarks(visibility=None), 0.0)
    assert not canvas.is_blank()


def test_points_outside_the_frame_are_skipped(renderer):
    landmarks = make_landmarks()
    for lm in landmarks:
        lm.x = 1.5
    canvas = Canvas()
    renderer.render(canvas, SIZE, landmarks, 0.0)
    assert canvas.is_blank()


def test_synthetic_figure_when_no_detection(renderer):
    canvas = Canvas()
    renderer.render(canvas, SIZE, None, 12.5, rep_count=3)
    assert not canvas.is_blank()


def test_synthetic_figure_moves_with_time():
    first = OverlayRenderer.synthetic_points(640, 480, 0.0)
    later = OverlayRenderer.synthetic_points(640, 480, 3.0)

    assert len(first) == 10
    assert [label for label, _, _ in first][7] == "hip"
    assert first != later
    # Deterministic for a given time
    assert OverlayRenderer.synthetic_points(640, 480, 3.0) == later


def test_synthetic_figure_on_tiny_canvas_does_not_fail(renderer):
    canvas = Canvas()
    renderer.render(canvas, (10, 10), None, 1.0)
    assert (canvas.width, canvas.height) == (10, 10)


@pytest.mark.parametrize("index, group", [
    (0, LandmarkGroup.HEAD),
    (10, LandmarkGroup.HEAD),
    (11, LandmarkGroup.BODY),
    (14, LandmarkGroup.BODY),
    (15, LandmarkGroup.HANDS),
    (22, LandmarkGroup.HANDS),
    (23, LandmarkGroup.HIPS),
    (24, LandmarkGroup.HIPS),
    (25, LandmarkGroup.LEGS),
    (32, LandmarkGroup.LEGS),
])
def test_landmark_groups(index, group):
    assert landmark_group(index) == group


def test_composite_blends_overlay_onto_frame():
    frame = np.zeros((4, 4, 3), dtype=np.uint8)
    canvas = Canvas(4, 4)
    canvas.image[1, 1] = (255, 255, 255, 255)

    result = composite(frame, canvas)

    assert tuple(result[1, 1]) == (255, 255, 255)
    assert tuple(result[0, 0]) == (0, 0, 0)
    assert frame.sum() == 0


def test_composite_with_mismatched_canvas_returns_frame_copy():
    frame = np.full((4, 4, 3), 7, dtype=np.uint8)
    result = composite(frame, Canvas(8, 8))
    assert np.array_equal(result, frame)
    assert result is not frame


def test_encode_frame_produces_base64_jpeg():
    encoded = encode_frame(np.zeros((48, 64, 3), dtype=np.uint8))
    assert base64.b64decode(encoded)[:2] == b"\xff\xd8"
