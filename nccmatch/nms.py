"""
Rotated-rectangle non-maximum suppression.
"""

from __future__ import annotations

import math
from typing import List, Sequence, TypeVar

import cv2
import numpy as np

from nccmatch.geometry import RotatedRect

T = TypeVar("T")


def sort_around_centroid(points: np.ndarray) -> np.ndarray:
    """Order polygon vertices by angle around their centroid."""
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    cx, cy = pts.mean(axis=0)
    order = sorted(
        range(len(pts)),
        key=lambda k: math.atan2(float(pts[k, 1] - cy), float(pts[k, 0] - cx)),
    )
    return pts[order]


def overlap_ratio(rect_a: RotatedRect, rect_b: RotatedRect) -> float:
    """
    Intersection area of two rotated rects over the area of ``rect_a``.

    Full containment reports 1.0 and disjoint rects 0.0; partial overlaps are
    measured on the intersection polygon.
    """
    kind, region = cv2.rotatedRectangleIntersection(rect_a, rect_b)
    if kind == cv2.INTERSECT_NONE:
        return 0.0
    if kind == cv2.INTERSECT_FULL:
        return 1.0
    if region is None or len(region) < 3:
        return 0.0
    polygon = sort_around_centroid(region)
    area = cv2.contourArea(polygon)
    (_, _), (w, h), _ = rect_a
    return float(area) / (w * h)


def visible_fraction(
    rect: RotatedRect, width: int, height: int, margin: float = 1.0
) -> float:
    """Share of ``rect`` lying inside a ``width`` x ``height`` image grown by ``margin``."""
    bounds = (
        (width / 2.0, height / 2.0),
        (width + 2.0 * margin, height + 2.0 * margin),
        0.0,
    )
    kind, region = cv2.rotatedRectangleIntersection(rect, bounds)
    if kind == cv2.INTERSECT_NONE or region is None or len(region) < 3:
        return 0.0
    area = cv2.contourArea(sort_around_centroid(region))
    (_, _), (w, h), _ = rect
    return min(float(area) / (w * h), 1.0)


def filter_with_rotated_rects(
    items: Sequence[T], max_overlap: float, maximize: bool = True
) -> List[T]:
    """
    Drop detections whose rotated boxes overlap a better one.

    Every item needs ``rect`` (a ``RotatedRect`` tuple) and ``score``.
    Items are ranked best first before any comparison, so the outcome does
    not depend on input order. Contained boxes always compete; partially
    overlapping ones only when the overlap fraction exceeds ``max_overlap``.
    ``maximize`` selects the score polarity (False for difference metrics
    where lower is better). Survivors are returned best first.
    """
    ranked = sorted(items, key=lambda item: item.score, reverse=maximize)
    deleted = [False] * len(ranked)
    for i in range(len(ranked)):
        if deleted[i]:
            continue
        for j in range(i + 1, len(ranked)):
            if deleted[j]:
                continue
            kind, _ = cv2.rotatedRectangleIntersection(ranked[i].rect, ranked[j].rect)
            if kind == cv2.INTERSECT_NONE:
                continue
            if kind != cv2.INTERSECT_FULL:
                if overlap_ratio(ranked[i].rect, ranked[j].rect) <= max_overlap:
                    continue
            deleted[j] = True

    return [item for item, gone in zip(ranked, deleted) if not gone]
