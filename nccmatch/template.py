"""
Template pyramid construction, per-level statistics and persistence.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

# ---------- configuration ----------
BORDER_THRESHOLD = 128
FORMAT_VERSION = 1
DEGENERATE_EPS = np.finfo(np.float64).eps


@dataclass(frozen=True)
class TemplateLevel:
    image: np.ndarray
    mean: float
    std: float
    norm: float
    inv_area: float
    degenerate: bool

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class TemplateData:
    """
    Learned template: one ``TemplateLevel`` per pyramid level (level 0 is the
    full-resolution image) plus the fill colour for rotated canvases.
    """

    levels: Tuple[TemplateLevel, ...]
    border_color: int

    @property
    def top_level(self) -> int:
        return len(self.levels) - 1

    def save(self, path: str) -> None:
        arrays = {
            f"level_{idx}": level.image for idx, level in enumerate(self.levels)
        }
        arrays.update(
            mean=np.array([lv.mean for lv in self.levels], dtype=np.float64),
            std=np.array([lv.std for lv in self.levels], dtype=np.float64),
            norm=np.array([lv.norm for lv in self.levels], dtype=np.float64),
            inv_area=np.array([lv.inv_area for lv in self.levels], dtype=np.float64),
            degenerate=np.array([lv.degenerate for lv in self.levels], dtype=bool),
            border_color=np.array(self.border_color, dtype=np.int32),
            learned=np.array(True),
            format_version=np.array(FORMAT_VERSION, dtype=np.int32),
        )
        # File handle keeps numpy from appending ".npz" to the caller's path.
        with open(path, "wb") as fh:
            np.savez_compressed(fh, **arrays)

    @classmethod
    def load(cls, path: str) -> "TemplateData":
        """
        Read template data written by ``save``.

        Raises:
            OSError: If the file cannot be read.
            ValueError: If the archive is malformed or inconsistent.
            KeyError: If an expected entry is missing.
        """
        with np.load(path, allow_pickle=False) as data:
            version = int(data["format_version"])
            if version != FORMAT_VERSION:
                raise ValueError(f"Unsupported template format version {version}")
            if not bool(data["learned"]):
                raise ValueError("Template file holds no learned pattern")
            mean = data["mean"]
            std = data["std"]
            norm = data["norm"]
            inv_area = data["inv_area"]
            degenerate = data["degenerate"]
            count = len(mean)
            if count == 0:
                raise ValueError("Template file holds an empty pyramid")
            if not (len(std) == len(norm) == len(inv_area) == len(degenerate) == count):
                raise ValueError("Template statistics have inconsistent lengths")
            levels = []
            for idx in range(count):
                image = np.ascontiguousarray(data[f"level_{idx}"])
                if image.ndim != 2 or image.dtype != np.uint8 or image.size == 0:
                    raise ValueError(f"Pyramid level {idx} is not a grayscale image")
                levels.append(
                    TemplateLevel(
                        image=image,
                        mean=float(mean[idx]),
                        std=float(std[idx]),
                        norm=float(norm[idx]),
                        inv_area=float(inv_area[idx]),
                        degenerate=bool(degenerate[idx]),
                    )
                )
            border_color = int(data["border_color"])
        return cls(levels=tuple(levels), border_color=border_color)


# ---------- helpers ----------
def auto_pyramid_depth(shape: Tuple[int, ...], min_area: int) -> int:
    """Number of 4x reductions before the level area drops to ``min_area``."""
    h, w = shape[:2]
    area = w * h
    depth = 0
    while area > min_area:
        area //= 4
        depth += 1
    return depth


def build_pyramid(image: np.ndarray, depth: int) -> List[np.ndarray]:
    """Level 0 is ``image`` itself; each further level is one ``cv2.pyrDown``."""
    pyramid = [image]
    for _ in range(depth):
        pyramid.append(cv2.pyrDown(pyramid[-1]))
    return pyramid


def level_statistics(image: np.ndarray) -> TemplateLevel:
    mean, std = cv2.meanStdDev(image)
    mean = mean.ravel()
    variance = float(np.sum(std.ravel() ** 2))
    inv_area = 1.0 / (image.shape[0] * image.shape[1])
    return TemplateLevel(
        image=image,
        mean=float(mean[0]),
        std=math.sqrt(variance),
        norm=math.sqrt(variance) / math.sqrt(inv_area),
        inv_area=inv_area,
        degenerate=variance < DEGENERATE_EPS,
    )


def border_color_for(image: np.ndarray) -> int:
    return 0 if float(cv2.mean(image)[0]) < BORDER_THRESHOLD else 255


def build_template(
    image: np.ndarray,
    depth: Optional[int] = None,
    min_area: Optional[int] = None,
) -> TemplateData:
    """
    Build the template pyramid and its statistics.

    Exactly one of ``depth`` (number of reductions) or ``min_area`` (auto
    depth) must be given; validation of their ranges is the caller's job.
    """
    if depth is None:
        if min_area is None:
            raise ValueError("Either depth or min_area is required")
        depth = auto_pyramid_depth(image.shape, min_area)
    pyramid = build_pyramid(image, depth)
    levels = tuple(level_statistics(level) for level in pyramid)
    return TemplateData(levels=levels, border_color=border_color_for(image))
