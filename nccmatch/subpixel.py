"""
Quadratic sub-pixel / sub-angle peak estimation.

The 27 scores around the best refined sample are fitted with

    f(x, y, t) = a*x^2 + b*y^2 + c*t^2 + d*x*y + e*x*t + f*y*t + g*x + h*y + i*t + j

by least squares, and the stationary point of ``f`` is returned as an offset
from the sampled centre.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

OFFSETS = (-1, 0, 1)
SINGULAR_EPS = 1e-12


def design_matrix(angle_step: float) -> np.ndarray:
    """Rows ordered like ``cube[angle, y, x]`` flattened; ``t`` in radians."""
    rows = []
    for k in OFFSETS:
        t = math.radians(k * angle_step)
        for y in OFFSETS:
            for x in OFFSETS:
                rows.append([x * x, y * y, t * t, x * y, x * t, y * t, x, y, t, 1.0])
    return np.array(rows, dtype=np.float64)


def estimate(
    cube: np.ndarray, angle_step: float
) -> Optional[Tuple[float, float, float]]:
    """
    Continuous optimum of a 3x3x3 score neighbourhood.

    Args:
        cube: Scores indexed ``cube[angle, y, x]``; the middle angle slice is
            the sampled angle, its centre pixel the sampled location.
        angle_step: Angle spacing of the three slices, in degrees.

    Returns:
        ``(dx, dy, dangle)`` with pixel offsets and the angle offset in
        degrees, or ``None`` when the fit has no unique stationary point.
    """
    cube = np.asarray(cube, dtype=np.float64)
    if cube.shape != (3, 3, 3):
        raise ValueError(f"Expected a 3x3x3 score cube, got {cube.shape}")

    A = design_matrix(angle_step)
    s = cube.reshape(-1)
    try:
        z = np.linalg.solve(A.T @ A, A.T @ s)
    except np.linalg.LinAlgError:
        logger.debug("Sub-pixel normal equations are singular")
        return None
    hessian = np.array(
        [
            [2 * z[0], z[3], z[4]],
            [z[3], 2 * z[1], z[5]],
            [z[4], z[5], 2 * z[2]],
        ]
    )
    if not abs(np.linalg.det(hessian)) >= SINGULAR_EPS:
        logger.debug("Sub-pixel surface has no unique stationary point")
        return None
    delta = np.linalg.solve(hessian, -z[6:9])
    if not np.all(np.isfinite(delta)):
        return None
    return float(delta[0]), float(delta[1]), math.degrees(float(delta[2]))
