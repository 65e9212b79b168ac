"""
Normalized cross-correlation scoring.

A raw correlation surface (sum of products over every template-sized
window) comes from one of the correlation kernels; it is then normalized in
place with window sums taken from integral images, giving scores in [-1, 1].
"""

from __future__ import annotations

from typing import Callable, Dict, Tuple

import cv2
import numpy as np

from nccmatch.template import TemplateLevel

# ---------- configuration ----------
SCORE_MIN = -1.0
SCORE_MAX = 1.0
CLAMP_MARGIN = 1.125
DENOMINATOR_FLOOR = 0.5
FLT_EPSILON = float(np.finfo(np.float32).eps)


# ---------- correlation kernels ----------
def correlate_opencv(scene: np.ndarray, template: np.ndarray) -> np.ndarray:
    return cv2.matchTemplate(scene, template, cv2.TM_CCORR)


def correlate_numpy(scene: np.ndarray, template: np.ndarray) -> np.ndarray:
    """Portable shift-and-accumulate correlation, one template pixel per pass."""
    th, tw = template.shape[:2]
    rows = scene.shape[0] - th + 1
    cols = scene.shape[1] - tw + 1
    src = scene.astype(np.float64)
    tpl = template.astype(np.float64)
    out = np.zeros((rows, cols), dtype=np.float64)
    for dy in range(th):
        for dx in range(tw):
            weight = tpl[dy, dx]
            if weight:
                out += weight * src[dy : dy + rows, dx : dx + cols]
    return out.astype(np.float32)


KERNELS: Dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    "opencv": correlate_opencv,
    "numpy": correlate_numpy,
}


# ---------- normalization ----------
def _window_sums(
    integral: np.ndarray, th: int, tw: int, rows: int, cols: int
) -> np.ndarray:
    return (
        integral[th : th + rows, tw : tw + cols]
        - integral[0:rows, tw : tw + cols]
        - integral[th : th + rows, 0:cols]
        + integral[0:rows, 0:cols]
    )


def normalize_surface(
    surface: np.ndarray, scene: np.ndarray, level: TemplateLevel
) -> np.ndarray:
    """
    Turn a raw correlation surface into NCC scores, in place.

    Windows whose denominator is numerically meaningless score 0; numerators
    slightly past the denominator (within ``CLAMP_MARGIN``) clamp to +/-1.
    """
    if level.degenerate:
        surface[...] = SCORE_MAX
        return surface

    rows, cols = surface.shape[:2]
    th, tw = level.height, level.width
    sums, sq_sums = cv2.integral2(scene, sdepth=cv2.CV_64F, sqdepth=cv2.CV_64F)
    wnd_sum = _window_sums(sums, th, tw, rows, cols)
    wnd_sq_sum = _window_sums(sq_sums, th, tw, rows, cols)

    num = surface.astype(np.float64) - wnd_sum * level.mean
    wnd_mean2 = wnd_sum * wnd_sum * level.inv_area
    diff2 = np.maximum(wnd_sq_sum - wnd_mean2, 0.0)
    denom = np.sqrt(diff2) * level.norm

    valid = denom > np.maximum(DENOMINATOR_FLOOR, 10.0 * FLT_EPSILON * wnd_sq_sum)
    abs_num = np.abs(num)
    inside = valid & (abs_num < denom)
    clamped = valid & ~inside & (abs_num < denom * CLAMP_MARGIN)

    out = np.zeros_like(num)
    out[inside] = num[inside] / denom[inside]
    out[clamped] = np.sign(num[clamped])
    surface[...] = out
    return surface


def surface_shape(scene_shape: Tuple[int, ...], level: TemplateLevel) -> Tuple[int, int]:
    return scene_shape[0] - level.height + 1, scene_shape[1] - level.width + 1


def score_surface(
    scene: np.ndarray, level: TemplateLevel, kernel: str = "opencv"
) -> np.ndarray:
    """
    NCC score of ``level`` at every placement inside ``scene``.

    Args:
        scene: Grayscale uint8 buffer at least as large as the template.
        level: Template pyramid level to score.
        kernel: Correlation kernel name, a key of ``KERNELS``.

    Returns:
        float32 array of shape ``(sceneH - templH + 1, sceneW - templW + 1)``.
    """
    rows, cols = surface_shape(scene.shape, level)
    if rows <= 0 or cols <= 0:
        raise ValueError(
            f"Scene {scene.shape[1]}x{scene.shape[0]} is smaller than "
            f"template {level.width}x{level.height}"
        )
    if level.degenerate:
        return np.full((rows, cols), SCORE_MAX, dtype=np.float32)
    surface = KERNELS[kernel](scene, level.image)
    return normalize_surface(surface, scene, level)
