"""
Rotation helpers shared by the coarse search, the refiner and the
deduplicator.

Angles are in degrees and follow ``cv2.getRotationMatrix2D``: a positive
angle turns image content counter-clockwise as displayed (Y axis pointing
down). Rotation centres are pixel-index centres, ``((w - 1) / 2, (h - 1) / 2)``.
"""

from __future__ import annotations

import math
from typing import Tuple

import cv2
import numpy as np

Point = Tuple[float, float]
RotatedRect = Tuple[Point, Tuple[float, float], float]


def image_center(shape: Tuple[int, ...]) -> Point:
    h, w = shape[:2]
    return (w - 1) / 2.0, (h - 1) / 2.0


def rotate_point(pt: Point, center: Point, angle: float) -> Point:
    """
    Map ``pt`` through the same transform as
    ``cv2.getRotationMatrix2D(center, angle, 1.0)``.

    Rotating by ``angle`` and then by ``-angle`` about the same centre
    returns the original point.
    """
    rad = math.radians(angle)
    cos = math.cos(rad)
    sin = math.sin(rad)
    dx = pt[0] - center[0]
    dy = pt[1] - center[1]
    return (
        center[0] + dx * cos + dy * sin,
        center[1] - dx * sin + dy * cos,
    )


def normalize_angle(angle: float) -> float:
    """Wrap an angle into (-180, 180]."""
    while angle <= -180.0:
        angle += 360.0
    while angle > 180.0:
        angle -= 360.0
    return angle


def rotated_canvas_size(width: int, height: int, angle: float) -> Tuple[int, int]:
    """Smallest canvas holding a ``width`` x ``height`` image rotated by ``angle``."""
    rad = math.radians(angle)
    cos = abs(math.cos(rad))
    sin = abs(math.sin(rad))
    nw = int(math.ceil(height * sin + width * cos - 1e-6))
    nh = int(math.ceil(height * cos + width * sin - 1e-6))
    return max(nw, 1), max(nh, 1)


def rotate_image(
    img: np.ndarray,
    angle: float,
    border_value: int = 0,
    interpolation: int = cv2.INTER_LINEAR,
) -> Tuple[np.ndarray, Point]:
    """
    Rotate a whole image about its centre onto an unclipped canvas.

    Args:
        img: Image to rotate.
        angle: Rotation in degrees.
        border_value: Fill for canvas pixels not covered by the image.
        interpolation: OpenCV interpolation flag.

    Returns:
        The rotated canvas and the ``(tx, ty)`` translation that was added
        to the plain rotation-about-centre transform to centre the content.
        Subtracting it from a canvas location gives the rotated point in the
        original image frame.
    """
    h, w = img.shape[:2]
    center = image_center(img.shape)
    M = cv2.getRotationMatrix2D(center, angle, 1.0)
    nw, nh = rotated_canvas_size(w, h, angle)
    tx = (nw - 1) / 2.0 - center[0]
    ty = (nh - 1) / 2.0 - center[1]
    M[0, 2] += tx
    M[1, 2] += ty
    rotated = cv2.warpAffine(
        img,
        M,
        (nw, nh),
        flags=interpolation,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=border_value,
    )
    return rotated, (tx, ty)


def rotated_roi(
    img: np.ndarray,
    top_left: Point,
    size: Tuple[int, int],
    angle: float,
    padding: int,
    border_value: int = 0,
) -> np.ndarray:
    """
    Cut a ``size`` region (plus ``padding`` on every side) out of ``img`` as
    seen after rotating the whole image by ``angle``.

    ``top_left`` is given in the unrotated image frame; it lands on pixel
    ``(padding, padding)`` of the returned patch.
    """
    center = image_center(img.shape)
    rotated_lt = rotate_point(top_left, center, angle)
    M = cv2.getRotationMatrix2D(center, angle, 1.0)
    M[0, 2] -= rotated_lt[0] - padding
    M[1, 2] -= rotated_lt[1] - padding
    w, h = size
    return cv2.warpAffine(
        img,
        M,
        (w + 2 * padding, h + 2 * padding),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=border_value,
    )


def box_corners(
    top_left: Point, width: float, height: float, orientation: float
) -> Tuple[Point, Point, Point, Point]:
    """
    Corners of a ``width`` x ``height`` box whose left-top corner is
    ``top_left`` and whose top edge is turned by ``orientation`` degrees.

    Returns:
        ``(left_top, right_top, left_bottom, right_bottom)``.
    """
    rad = math.radians(orientation)
    cos = math.cos(rad)
    sin = math.sin(rad)
    lt = (float(top_left[0]), float(top_left[1]))
    rt = (lt[0] + width * cos, lt[1] - width * sin)
    lb = (lt[0] + height * sin, lt[1] + height * cos)
    rb = (rt[0] + height * sin, rt[1] + height * cos)
    return lt, rt, lb, rb


def box_rotated_rect(
    top_left: Point, width: float, height: float, orientation: float
) -> RotatedRect:
    """The same box as ``box_corners`` in ``cv2.RotatedRect`` tuple form."""
    lt, _, _, rb = box_corners(top_left, width, height, orientation)
    center = ((lt[0] + rb[0]) / 2.0, (lt[1] + rb[1]) / 2.0)
    # RotatedRect angles turn clockwise as displayed.
    return center, (float(width), float(height)), -orientation


def turn_about_center(
    top_left: Point,
    width: float,
    height: float,
    orientation: float,
    new_orientation: float,
) -> Point:
    """
    Left-top corner of a ``width`` x ``height`` box after turning it about
    its own centre from ``orientation`` to ``new_orientation``.
    """
    half = ((width - 1) / 2.0, (height - 1) / 2.0)
    old = rotate_point(half, (0.0, 0.0), orientation)
    new = rotate_point(half, (0.0, 0.0), new_orientation)
    return (
        top_left[0] + old[0] - new[0],
        top_left[1] + old[1] - new[1],
    )
