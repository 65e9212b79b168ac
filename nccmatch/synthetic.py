"""
Synthetic patterns and scenes with known ground truth, used by the
benchmark and the test-suite.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import cv2
import numpy as np

from nccmatch.geometry import Point, image_center

DEFAULT_BACKGROUND = 90


def textured_pattern(
    width: int, height: int, seed: int = 0, blur_sigma: float = 4.0
) -> np.ndarray:
    """Smooth random texture stretched to the full 0..255 range."""
    rng = np.random.default_rng(seed)
    noise = rng.uniform(0.0, 255.0, size=(height, width)).astype(np.float32)
    smooth = cv2.GaussianBlur(noise, (0, 0), blur_sigma, borderType=cv2.BORDER_REFLECT)
    out = cv2.normalize(smooth, None, 0, 255, cv2.NORM_MINMAX)
    return out.astype(np.uint8)


def gradient_pattern(width: int, height: int) -> np.ndarray:
    """Linear ramp from 0 at the left-top corner to 255 at the right-bottom one."""
    xs = np.arange(width, dtype=np.float64)[None, :]
    ys = np.arange(height, dtype=np.float64)[:, None]
    ramp = (xs + ys) * 255.0 / max(width + height - 2, 1)
    return np.round(ramp).astype(np.uint8)


def blank_scene(
    width: int, height: int, value: int = DEFAULT_BACKGROUND
) -> np.ndarray:
    return np.full((height, width), value, dtype=np.uint8)


def paste_rotated(
    scene: np.ndarray,
    pattern: np.ndarray,
    center: Point,
    angle: float,
) -> Tuple[np.ndarray, Point]:
    """
    Paste ``pattern`` rotated by ``angle`` degrees (``cv2.getRotationMatrix2D``
    sense) with its centre at ``center``.

    Returns:
        A new scene and the exact scene position of the pattern's left-top
        corner.
    """
    src_center = image_center(pattern.shape)
    M = cv2.getRotationMatrix2D(src_center, angle, 1.0)
    M[0, 2] += center[0] - src_center[0]
    M[1, 2] += center[1] - src_center[1]
    h, w = scene.shape[:2]
    warped = cv2.warpAffine(
        pattern, M, (w, h), flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE
    )
    mask = cv2.warpAffine(
        np.full(pattern.shape[:2], 255, dtype=np.uint8),
        M,
        (w, h),
        flags=cv2.INTER_NEAREST,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )
    out = scene.copy()
    out[mask > 0] = warped[mask > 0]
    left_top = (float(M[0, 2]), float(M[1, 2]))
    return out, left_top


def paste_at(scene: np.ndarray, pattern: np.ndarray, left_top: Tuple[int, int]) -> np.ndarray:
    """Axis-aligned paste at an integer position."""
    x, y = left_top
    h, w = pattern.shape[:2]
    out = scene.copy()
    out[y : y + h, x : x + w] = pattern
    return out


def make_scene(
    pattern: np.ndarray,
    scene_size: Tuple[int, int],
    placements: Tuple[Tuple[Point, float], ...],
    background: Optional[int] = None,
) -> Tuple[np.ndarray, List[Point]]:
    """
    Scene of ``scene_size`` (w, h) with one rotated copy of ``pattern`` per
    ``(center, angle)`` placement; returns the scene and the left-top corners.
    """
    value = DEFAULT_BACKGROUND if background is None else background
    scene = blank_scene(scene_size[0], scene_size[1], value)
    corners = []
    for center, angle in placements:
        scene, lt = paste_rotated(scene, pattern, center, angle)
        corners.append(lt)
    return scene, corners
