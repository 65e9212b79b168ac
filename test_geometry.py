import math

import cv2
import numpy as np
import pytest

from nccmatch import geometry


@pytest.mark.parametrize("angle", [0.0, 17.5, 90.0, -135.0, 359.0])
def test_rotate_point_round_trip(angle):
    center = (31.5, 20.0)
    pt = (3.25, 48.0)
    there = geometry.rotate_point(pt, center, angle)
    back = geometry.rotate_point(there, center, -angle)
    assert back == pytest.approx(pt, abs=1e-9)


def test_rotate_point_matches_opencv_matrix():
    center = (10.0, 5.0)
    M = cv2.getRotationMatrix2D(center, 30.0, 1.0)
    pt = (17.0, -2.0)
    expected = M @ np.array([pt[0], pt[1], 1.0])
    assert geometry.rotate_point(pt, center, 30.0) == pytest.approx(tuple(expected))


@pytest.mark.parametrize(
    "angle,expected",
    [(0.0, 0.0), (180.0, 180.0), (-180.0, 180.0), (190.0, -170.0), (-540.0, 180.0), (725.0, 5.0)],
)
def test_normalize_angle(angle, expected):
    assert geometry.normalize_angle(angle) == pytest.approx(expected)


@pytest.mark.parametrize(
    "w,h,angle,expected",
    [
        (100, 50, 0.0, (100, 50)),
        (100, 50, 90.0, (50, 100)),
        (100, 50, 180.0, (100, 50)),
        (10, 10, 45.0, (15, 15)),
    ],
)
def test_rotated_canvas_size(w, h, angle, expected):
    assert geometry.rotated_canvas_size(w, h, angle) == expected


def test_rotate_image_keeps_content_centered():
    img = np.zeros((21, 41), dtype=np.uint8)
    img[10, 20] = 255
    rotated, (tx, ty) = geometry.rotate_image(img, 90.0)
    assert rotated.shape == (41, 21)
    assert (tx, ty) == (-10.0, 10.0)
    y, x = np.unravel_index(rotated.argmax(), rotated.shape)
    assert (x, y) == (10, 20)


def test_rotated_roi_places_origin_at_padding():
    img = np.zeros((60, 80), dtype=np.uint8)
    img[25, 30] = 200
    roi = geometry.rotated_roi(img, (30.0, 25.0), (8, 6), 0.0, 3)
    assert roi.shape == (6 + 6, 8 + 6)
    assert roi[3, 3] == 200


def test_rotated_roi_follows_rotation():
    img = np.zeros((61, 61), dtype=np.uint8)
    img[20, 40] = 255
    angle = 90.0
    roi = geometry.rotated_roi(img, (40.0, 20.0), (5, 5), angle, 2)
    assert roi[2, 2] == 255


def test_box_corners_axis_aligned():
    lt, rt, lb, rb = geometry.box_corners((5.0, 7.0), 10, 4, 0.0)
    assert rt == pytest.approx((15.0, 7.0))
    assert lb == pytest.approx((5.0, 11.0))
    assert rb == pytest.approx((15.0, 11.0))


def test_box_corners_follow_template_rotation():
    """A template rotated by +angle has its top edge along M * (1, 0)."""
    M = cv2.getRotationMatrix2D((0.0, 0.0), 30.0, 1.0)
    lt, rt, lb, _ = geometry.box_corners((0.0, 0.0), 10, 6, 30.0)
    assert rt == pytest.approx((10 * M[0, 0], 10 * M[1, 0]))
    assert lb == pytest.approx((6 * M[0, 1], 6 * M[1, 1]))


def test_box_rotated_rect_matches_corner_form():
    rect = geometry.box_rotated_rect((5.0, 7.0), 10, 4, 25.0)
    pts = cv2.boxPoints(rect)
    corners = geometry.box_corners((5.0, 7.0), 10, 4, 25.0)
    for corner in corners:
        dists = [math.hypot(corner[0] - p[0], corner[1] - p[1]) for p in pts]
        assert min(dists) < 1e-3


def test_turn_about_center_keeps_center():
    lt = (40.0, 25.0)
    turned = geometry.turn_about_center(lt, 64, 48, 10.0, 15.0)
    M_old = cv2.getRotationMatrix2D((0.0, 0.0), 10.0, 1.0)
    M_new = cv2.getRotationMatrix2D((0.0, 0.0), 15.0, 1.0)
    half = np.array([31.5, 23.5])
    center_old = np.array(lt) + M_old[:, :2] @ half
    center_new = np.array(turned) + M_new[:, :2] @ half
    assert tuple(center_new) == pytest.approx(tuple(center_old))
    assert geometry.turn_about_center(lt, 64, 48, 20.0, 20.0) == pytest.approx(lt)
