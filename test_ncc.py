import cv2
import numpy as np
import pytest

from nccmatch import ncc, synthetic, template


@pytest.fixture(scope="module")
def scene():
    return synthetic.textured_pattern(80, 70, seed=11, blur_sigma=2.0)


@pytest.fixture(scope="module")
def level(scene):
    return template.level_statistics(np.ascontiguousarray(scene[20:36, 30:54]))


def test_surface_shape(scene, level):
    surface = ncc.score_surface(scene, level)
    assert surface.shape == (70 - 16 + 1, 80 - 24 + 1)
    assert surface.dtype == np.float32


def test_exact_crop_scores_one_at_its_position(scene, level):
    surface = ncc.score_surface(scene, level)
    _, max_val, _, max_loc = cv2.minMaxLoc(surface)
    assert max_loc == (30, 20)
    assert max_val == pytest.approx(1.0, abs=1e-4)
    assert surface.min() >= ncc.SCORE_MIN
    assert surface.max() <= ncc.SCORE_MAX


def test_matches_opencv_ccoeff_normed(scene, level):
    ours = ncc.score_surface(scene, level)
    ref = cv2.matchTemplate(scene, level.image, cv2.TM_CCOEFF_NORMED)
    assert np.allclose(ours, ref, atol=1e-3)


def test_kernels_agree(scene, level):
    fast = ncc.score_surface(scene, level, kernel="opencv")
    portable = ncc.score_surface(scene, level, kernel="numpy")
    assert np.allclose(fast, portable, atol=1e-4)


def test_raw_correlation_kernels_agree(scene, level):
    fast = ncc.correlate_opencv(scene, level.image)
    portable = ncc.correlate_numpy(scene, level.image)
    assert np.allclose(fast, portable, rtol=1e-4)


def test_inverted_scene_scores_minus_one(scene, level):
    inverted = cv2.bitwise_not(scene)
    surface = ncc.score_surface(inverted, level)
    assert surface[20, 30] == pytest.approx(-1.0, abs=1e-4)


def test_degenerate_level_scores_one_everywhere(scene):
    flat = template.level_statistics(np.full((10, 12), 77, dtype=np.uint8))
    assert flat.degenerate
    surface = ncc.score_surface(scene, flat)
    assert surface.shape == (70 - 10 + 1, 80 - 12 + 1)
    assert np.all(surface == 1.0)


def test_flat_scene_window_scores_zero(level):
    flat_scene = np.full((40, 50), 128, dtype=np.uint8)
    surface = ncc.score_surface(flat_scene, level)
    assert np.all(surface == 0.0)


def test_equal_size_gives_single_cell(level):
    surface = ncc.score_surface(level.image, level)
    assert surface.shape == (1, 1)
    assert surface[0, 0] == pytest.approx(1.0, abs=1e-4)


def test_scene_smaller_than_template_is_rejected(level):
    with pytest.raises(ValueError):
        ncc.score_surface(np.zeros((8, 8), dtype=np.uint8), level)


def test_normalizer_clamps_marginal_overshoot(scene, level):
    surface = ncc.correlate_opencv(scene, level.image).astype(np.float32)
    sums, sq_sums = cv2.integral2(scene, sdepth=cv2.CV_64F, sqdepth=cv2.CV_64F)
    rows, cols = surface.shape
    wnd_sum = ncc._window_sums(sums, level.height, level.width, rows, cols)
    wnd_sq = ncc._window_sums(sq_sums, level.height, level.width, rows, cols)
    denom = np.sqrt(wnd_sq - wnd_sum * wnd_sum * level.inv_area) * level.norm
    # Push the numerator of two windows just past the denominator.
    surface[5, 5] = wnd_sum[5, 5] * level.mean + 1.1 * denom[5, 5]
    surface[6, 6] = wnd_sum[6, 6] * level.mean - 1.1 * denom[6, 6]
    surface[7, 7] = wnd_sum[7, 7] * level.mean + 2.0 * denom[7, 7]

    out = ncc.normalize_surface(surface, scene, level)
    assert out[5, 5] == 1.0
    assert out[6, 6] == -1.0
    assert out[7, 7] == 0.0
