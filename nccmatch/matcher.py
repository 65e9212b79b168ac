"""
Rotation-tolerant template matcher built on normalized cross-correlation.

The pipeline runs coarse-to-fine over an image pyramid: every candidate
angle is scored on the coarsest level, the best peaks are walked down the
pyramid with small rotated ROIs, optionally polished with a quadratic
sub-pixel fit, and finally de-duplicated with rotated-rectangle NMS.
"""

from __future__ import annotations

import logging
import math
import os
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import cv2
import numpy as np

from nccmatch import geometry, ncc, subpixel
from nccmatch.blockmax import BlockMaxIndex, Rect
from nccmatch.errors import InvalidArgumentError
from nccmatch.geometry import Point, RotatedRect
from nccmatch.nms import filter_with_rotated_rects, visible_fraction
from nccmatch.template import TemplateData, TemplateLevel, build_pyramid, build_template

logger = logging.getLogger(__name__)

# ---------- configuration ----------
THRESHOLD_DECAY = 0.9
EXTRA_COARSE_CANDIDATES = 4
ROI_PADDING = 3
BLOCK_AREA_RATIO = 500
BLOCK_MIN_MATCH_COUNT = 10
BLOCK_SUPPRESS_VALUE = -2.0
RESCAN_FILL_VALUE = ncc.SCORE_MIN
MIN_VISIBLE_FRACTION = 0.75
DEFAULT_PYRAMID_DEPTH = 3
DEFAULT_MIN_AREA = 256
PROFILE_ENV = "NCCMATCH_PROFILE"

T = TypeVar("T")
R = TypeVar("R")


# ---------- helper dataclasses ----------
@dataclass
class MatchOptions:
    invert_scene: bool = False
    angle_step: float = 5.0
    auto_angle_step: bool = False
    start_angle: float = 0.0
    angle_range: float = 360.0
    score_threshold: float = 0.8
    max_match_count: int = 100
    max_overlap_fraction: float = 0.5
    sub_pixel: bool = False
    fast_mode: bool = False
    workers: int = 0
    kernel: str = "opencv"
    debug: bool = False

    def validate(self) -> "MatchOptions":
        """
        Check option ranges.

        Raises:
            InvalidArgumentError: On the first out-of-range field.
        """
        if not self.auto_angle_step and not self.angle_step > 0:
            raise InvalidArgumentError(
                f"angle_step must be positive, got {self.angle_step}"
            )
        if not self.angle_range >= 0:
            raise InvalidArgumentError(
                f"angle_range must be non-negative, got {self.angle_range}"
            )
        if not 0.0 <= self.score_threshold <= 1.0:
            raise InvalidArgumentError(
                f"score_threshold must be in [0, 1], got {self.score_threshold}"
            )
        if self.max_match_count < 1:
            raise InvalidArgumentError(
                f"max_match_count must be at least 1, got {self.max_match_count}"
            )
        if not 0.0 <= self.max_overlap_fraction <= 1.0:
            raise InvalidArgumentError(
                "max_overlap_fraction must be in [0, 1], "
                f"got {self.max_overlap_fraction}"
            )
        if self.workers < 0:
            raise InvalidArgumentError(
                f"workers must be non-negative, got {self.workers}"
            )
        if self.kernel not in ncc.KERNELS:
            raise InvalidArgumentError(
                f"Unknown correlation kernel {self.kernel!r}; "
                f"expected one of {sorted(ncc.KERNELS)}"
            )
        return self


@dataclass
class Candidate:
    """
    One hypothesis travelling through the search.

    Coarse candidates hold ``pt`` in the rotated top-level canvas frame
    (canvas translation already removed). After refinement ``pt`` is the
    template's left-top corner in unrotated scene coordinates.
    """

    pt: Point
    score: float
    angle: float
    angle_start: float = 0.0
    angle_end: float = 0.0
    neighborhood: Optional[np.ndarray] = None
    on_border: bool = False
    rect: Optional[RotatedRect] = None


@dataclass(frozen=True)
class MatchResult:
    left_top: Point
    right_top: Point
    left_bottom: Point
    right_bottom: Point
    angle: float
    score: float
    index: int

    @property
    def center(self) -> Point:
        xs = (self.left_top[0], self.right_top[0], self.left_bottom[0], self.right_bottom[0])
        ys = (self.left_top[1], self.right_top[1], self.left_bottom[1], self.right_bottom[1])
        return sum(xs) / 4.0, sum(ys) / 4.0

    @property
    def width(self) -> float:
        return math.hypot(
            self.right_top[0] - self.left_top[0], self.right_top[1] - self.left_top[1]
        )

    @property
    def height(self) -> float:
        return math.hypot(
            self.left_bottom[0] - self.left_top[0],
            self.left_bottom[1] - self.left_top[1],
        )

    def as_dict(self) -> Dict:
        return {
            "index": self.index,
            "score": self.score,
            "angle": self.angle,
            "left_top": self.left_top,
            "right_top": self.right_top,
            "left_bottom": self.left_bottom,
            "right_bottom": self.right_bottom,
            "center": self.center,
            "width": self.width,
            "height": self.height,
        }


# ---------- helpers ----------
def _profile_enabled() -> bool:
    profile_value = os.getenv(PROFILE_ENV, "").strip().lower()
    return profile_value not in ("", "0", "false", "no")


def _to_gray(image: Optional[np.ndarray], name: str) -> np.ndarray:
    if image is None:
        raise InvalidArgumentError(f"{name} image is missing")
    image = np.asarray(image)
    if image.size == 0:
        raise InvalidArgumentError(f"{name} image is empty")
    if image.dtype != np.uint8:
        raise InvalidArgumentError(
            f"{name} image must be 8-bit, got dtype {image.dtype}"
        )
    if image.ndim == 3 and image.shape[2] == 1:
        image = image[:, :, 0]
    elif image.ndim == 3 and image.shape[2] == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    elif image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    elif image.ndim != 2:
        raise InvalidArgumentError(
            f"{name} image must be grayscale or BGR, got shape {image.shape}"
        )
    return np.ascontiguousarray(image)


def _check_fits(scene: np.ndarray, level: TemplateLevel) -> None:
    sh, sw = scene.shape[:2]
    wider = level.width > sw
    taller = level.height > sh
    if wider and taller:
        raise InvalidArgumentError(
            f"Template {level.width}x{level.height} is larger than scene {sw}x{sh}"
        )
    if wider or taller:
        raise InvalidArgumentError(
            f"Template {level.width}x{level.height} cannot fit inside scene "
            f"{sw}x{sh} at any rotation"
        )


def _map(fn: Callable[[T], R], items: Sequence[T], workers: int) -> List[R]:
    """Order-preserving map, threaded when ``workers > 1``."""
    if workers > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(fn, items))
    return [fn(item) for item in items]


def level_thresholds(score_threshold: float, top_level: int) -> List[float]:
    """Acceptance threshold per pyramid level, decayed from the finest."""
    return [score_threshold * THRESHOLD_DECAY**k for k in range(top_level + 1)]


def auto_angle_step(level: TemplateLevel) -> float:
    """Angle at which the far corner of ``level`` moves by about one pixel."""
    return math.degrees(math.atan(2.0 / max(level.width, level.height)))


def generate_angles(start: float, step: float, angle_range: float) -> List[float]:
    if angle_range == 0:
        return [start]
    angles = []
    stop = start + angle_range + step
    k = 0
    while start + k * step < stop:
        angles.append(start + k * step)
        k += 1
    return angles


def suppression_rect(
    loc: Tuple[int, int],
    template_size: Tuple[int, int],
    max_overlap: float,
    surface_shape: Tuple[int, ...],
) -> Rect:
    """
    Window around an accepted peak that later peaks may not reuse, clipped
    to the surface. The peak pixel itself is always inside.
    """
    tw, th = template_size
    rows, cols = surface_shape[:2]
    half_w = tw * (1.0 - max_overlap)
    half_h = th * (1.0 - max_overlap)
    x0 = max(int(math.floor(loc[0] - half_w)), 0)
    y0 = max(int(math.floor(loc[1] - half_h)), 0)
    x1 = min(max(int(math.ceil(loc[0] + half_w)), loc[0] + 1), cols)
    y1 = min(max(int(math.ceil(loc[1] + half_h)), loc[1] + 1), rows)
    return x0, y0, x1 - x0, y1 - y0


def extract_peaks(
    surface: np.ndarray,
    template_size: Tuple[int, int],
    threshold: float,
    max_peaks: int,
    max_overlap: float,
    use_blocks: bool,
) -> List[Tuple[Tuple[int, int], float]]:
    """
    Pull up to ``max_peaks`` maxima scoring at least ``threshold`` out of
    ``surface``, suppressing a window around each accepted one.

    ``surface`` is overwritten in the suppressed windows.
    """
    index = BlockMaxIndex(surface, template_size) if use_blocks else None
    fill = BLOCK_SUPPRESS_VALUE if use_blocks else RESCAN_FILL_VALUE
    peaks: List[Tuple[Tuple[int, int], float]] = []
    for _ in range(max_peaks):
        if index is not None:
            value, loc = index.max_value_loc()
        else:
            _, value, _, loc = cv2.minMaxLoc(surface)
        if value < threshold:
            break
        peaks.append(((int(loc[0]), int(loc[1])), float(value)))
        x, y, w, h = suppression_rect(loc, template_size, max_overlap, surface.shape)
        surface[y : y + h, x : x + w] = fill
        if index is not None:
            index.invalidate((x, y, w, h))
    return peaks


def _on_border(loc: Tuple[int, int], shape: Tuple[int, ...]) -> bool:
    rows, cols = shape[:2]
    return loc[0] in (0, cols - 1) or loc[1] in (0, rows - 1)


# ---------- matcher ----------
class Matcher:
    """
    Learns one template and finds its rotated instances in scenes.

    A learned template is immutable; ``learn`` and ``load`` swap it as a
    whole, so one instance can serve any number of ``match`` calls.
    """

    def __init__(self) -> None:
        self._template: Optional[TemplateData] = None

    @property
    def template(self) -> Optional[TemplateData]:
        return self._template

    @property
    def is_learned(self) -> bool:
        return self._template is not None

    def learn(
        self,
        image: np.ndarray,
        pyramid_depth: int = DEFAULT_PYRAMID_DEPTH,
        min_area: int = DEFAULT_MIN_AREA,
        use_explicit_depth: bool = True,
        debug: bool = False,
    ) -> bool:
        """
        Build and store the template pyramid.

        Args:
            image: Template image, grayscale or BGR, uint8.
            pyramid_depth: Number of 2x reductions when ``use_explicit_depth``.
            min_area: Stop reducing once a level's area would reach this when
                not using an explicit depth.
            use_explicit_depth: Choose between ``pyramid_depth`` and
                ``min_area``.
            debug: Log every level's size and statistics.

        Returns:
            True once the new template is in place.

        Raises:
            InvalidArgumentError: On a missing or empty image or an
                out-of-range depth/area. The previous template is kept.
        """
        gray = _to_gray(image, "Template").copy()
        if use_explicit_depth:
            if pyramid_depth < 1:
                raise InvalidArgumentError(
                    f"pyramid_depth must be at least 1, got {pyramid_depth}"
                )
            data = build_template(gray, depth=int(pyramid_depth))
        else:
            if min_area < 1:
                raise InvalidArgumentError(
                    f"min_area must be at least 1, got {min_area}"
                )
            data = build_template(gray, min_area=int(min_area))

        self._template = data
        logger.info(
            "Learned %dx%d template with %d pyramid levels",
            gray.shape[1],
            gray.shape[0],
            len(data.levels),
        )
        if debug:
            for idx, level in enumerate(data.levels):
                logger.debug(
                    "level %d: %dx%d mean=%.3f std=%.3f degenerate=%s",
                    idx,
                    level.width,
                    level.height,
                    level.mean,
                    level.std,
                    level.degenerate,
                )
        return True

    def save(self, path: str) -> bool:
        if self._template is None:
            logger.warning("No template learned; nothing saved to %s", path)
            return False
        try:
            self._template.save(path)
        except OSError:
            logger.exception("Failed to save template to %s", path)
            return False
        return True

    def load(self, path: str) -> bool:
        """Replace the learned template with one read from ``path``."""
        try:
            data = TemplateData.load(path)
        except (OSError, EOFError, ValueError, KeyError, zipfile.BadZipFile):
            logger.exception("Failed to load template from %s", path)
            return False
        self._template = data
        logger.info("Loaded template with %d pyramid levels from %s", len(data.levels), path)
        return True

    def match(
        self,
        scene: np.ndarray,
        options: Optional[MatchOptions] = None,
        **overrides,
    ) -> List[MatchResult]:
        """
        Find instances of the learned template in ``scene``.

        Args:
            scene: Scene image, grayscale or BGR, uint8.
            options: Match options; defaults to ``MatchOptions()``.
            **overrides: Individual option fields replacing those of
                ``options``.

        Returns:
            Non-overlapping matches, best score first, at most
            ``max_match_count`` of them.

        Raises:
            InvalidArgumentError: If nothing is learned, the scene is missing
                or empty, the template does not fit, or an option is out of
                range.
        """
        opts = options if options is not None else MatchOptions()
        if overrides:
            opts = replace(opts, **overrides)
        opts.validate()

        template = self._template
        if template is None:
            raise InvalidArgumentError("No template has been learned")
        gray = _to_gray(scene, "Scene")
        _check_fits(gray, template.levels[0])

        profile = _profile_enabled()
        if profile:
            t0 = time.perf_counter()
            marks: List[Tuple[str, float]] = []

        if opts.invert_scene:
            gray = cv2.bitwise_not(gray)
        top = template.top_level
        scene_pyramid = build_pyramid(gray, top)
        thresholds = level_thresholds(opts.score_threshold, top)
        if opts.debug:
            for idx, threshold in enumerate(thresholds):
                logger.debug(
                    "level %d: scene %dx%d threshold %.3f",
                    idx,
                    scene_pyramid[idx].shape[1],
                    scene_pyramid[idx].shape[0],
                    threshold,
                )
        if profile:
            marks.append(("pyramid", time.perf_counter()))

        coarse = self._coarse_search(template, scene_pyramid[top], thresholds[top], opts)
        if profile:
            marks.append(("coarse", time.perf_counter()))

        stop_level = 1 if opts.fast_mode else 0
        top_center = geometry.image_center(scene_pyramid[top].shape)

        def refine(candidate: Candidate) -> Optional[Candidate]:
            return self._refine(
                candidate, template, scene_pyramid, thresholds, stop_level, top_center, opts
            )

        refined = [c for c in _map(refine, coarse, opts.workers) if c is not None]
        if profile:
            marks.append(("refine", time.perf_counter()))

        width0 = template.levels[0].width
        height0 = template.levels[0].height
        scene_h, scene_w = gray.shape[:2]
        finalized = []
        for cand in refined:
            if cand.score < opts.score_threshold:
                continue
            orientation = geometry.normalize_angle(-cand.angle)
            cand.rect = geometry.box_rotated_rect(cand.pt, width0, height0, orientation)
            # Boxes straddling the scene edge are scored partly on canvas fill.
            if visible_fraction(cand.rect, scene_w, scene_h) < MIN_VISIBLE_FRACTION:
                continue
            finalized.append(cand)
        kept = filter_with_rotated_rects(finalized, opts.max_overlap_fraction)
        kept = kept[: opts.max_match_count]
        if opts.debug:
            logger.debug(
                "refined %d of %d coarse candidates, %d above threshold, %d kept",
                len(refined),
                len(coarse),
                len(finalized),
                len(kept),
            )

        results = []
        for idx, cand in enumerate(kept):
            orientation = geometry.normalize_angle(-cand.angle)
            lt, rt, lb, rb = geometry.box_corners(cand.pt, width0, height0, orientation)
            results.append(
                MatchResult(
                    left_top=lt,
                    right_top=rt,
                    left_bottom=lb,
                    right_bottom=rb,
                    angle=orientation,
                    score=cand.score,
                    index=idx,
                )
            )
        if profile:
            marks.append(("dedup", time.perf_counter()))
            t_end = time.perf_counter()
            prev = t0
            parts = []
            for label, ts in marks:
                parts.append(f"{label}={((ts - prev) * 1000.0):.2f}ms")
                prev = ts
            parts.append(f"total={((t_end - t0) * 1000.0):.2f}ms")
            logger.info("matcher profile: %s", " ".join(parts))
        return results

    def _coarse_search(
        self,
        template: TemplateData,
        scene_top: np.ndarray,
        threshold: float,
        opts: MatchOptions,
    ) -> List[Candidate]:
        """Score every angle on the top level and pool the peaks, best first."""
        level = template.levels[template.top_level]
        step = auto_angle_step(level) if opts.auto_angle_step else opts.angle_step
        angles = generate_angles(opts.start_angle, step, opts.angle_range)
        max_peaks = opts.max_match_count + EXTRA_COARSE_CANDIDATES
        area_ratio = (scene_top.shape[0] * scene_top.shape[1]) // level.area
        use_blocks = (
            area_ratio > BLOCK_AREA_RATIO
            and opts.max_match_count > BLOCK_MIN_MATCH_COUNT
        )
        if opts.debug:
            logger.debug(
                "coarse search: %d angles, step %.3f, %s extraction (area ratio %d)",
                len(angles),
                step,
                "block-max" if use_blocks else "rescan",
                area_ratio,
            )

        def scan(angle: float) -> List[Candidate]:
            rotated, (tx, ty) = geometry.rotate_image(
                scene_top, angle, border_value=template.border_color
            )
            if rotated.shape[0] < level.height or rotated.shape[1] < level.width:
                return []
            surface = ncc.score_surface(rotated, level, opts.kernel)
            peaks = extract_peaks(
                surface,
                (level.width, level.height),
                threshold,
                max_peaks,
                opts.max_overlap_fraction,
                use_blocks,
            )
            return [
                Candidate(pt=(loc[0] - tx, loc[1] - ty), score=score, angle=angle)
                for loc, score in peaks
            ]

        pooled = [cand for found in _map(scan, angles, opts.workers) for cand in found]
        pooled.sort(key=lambda c: c.score, reverse=True)
        if opts.debug:
            logger.debug("coarse search produced %d candidates", len(pooled))
        return pooled

    def _refine(
        self,
        cand: Candidate,
        template: TemplateData,
        scene_pyramid: List[np.ndarray],
        thresholds: List[float],
        stop_level: int,
        top_center: Point,
        opts: MatchOptions,
    ) -> Optional[Candidate]:
        """
        Walk one coarse candidate down to ``stop_level``.

        Returns None when some level's best trial misses its threshold.
        """
        top = template.top_level
        if opts.auto_angle_step:
            step = auto_angle_step(template.levels[top])
        else:
            step = opts.angle_step
        angle = cand.angle
        pt_lt = geometry.rotate_point(cand.pt, top_center, -angle)
        current = replace(cand, angle_start=angle - step, angle_end=angle + step)

        if top <= stop_level:
            scale = 2**top
            return replace(current, pt=(pt_lt[0] * scale, pt_lt[1] * scale))

        for level_idx in range(top - 1, stop_level - 1, -1):
            level = template.levels[level_idx]
            scene = scene_pyramid[level_idx]
            if opts.auto_angle_step:
                step = auto_angle_step(level)
            if opts.angle_range > 0:
                trials = [angle - step, angle, angle + step]
            else:
                trials = [angle]
            origin = (pt_lt[0] * 2.0, pt_lt[1] * 2.0)

            locs = []
            scores = []
            patches = []
            for trial in trials:
                roi = geometry.rotated_roi(
                    scene,
                    origin,
                    (level.width, level.height),
                    trial,
                    ROI_PADDING,
                    border_value=template.border_color,
                )
                surface = ncc.score_surface(roi, level, opts.kernel)
                if level.degenerate:
                    # Flat surface: stay on the projected position.
                    value, loc = ncc.SCORE_MAX, (ROI_PADDING, ROI_PADDING)
                else:
                    _, value, _, loc = cv2.minMaxLoc(surface)
                x, y = int(loc[0]), int(loc[1])
                if _on_border((x, y), surface.shape):
                    patches.append(None)
                else:
                    patches.append(surface[y - 1 : y + 2, x - 1 : x + 2])
                locs.append((x, y))
                scores.append(float(value))

            best = int(np.argmax(scores))
            best_score = scores[best]
            if best_score < thresholds[level_idx]:
                return None

            bx, by = locs[best]
            on_border = patches[best] is None
            cube = None
            if len(patches) == 3 and all(p is not None for p in patches):
                cube = np.stack(patches)

            best_pt = (float(bx), float(by))
            trial_angle = trials[best]
            best_angle = trial_angle
            if level_idx == 0 and opts.sub_pixel and best == 1 and cube is not None:
                estimate = subpixel.estimate(cube, step)
                if estimate is not None:
                    dx, dy, dangle = estimate
                    best_pt = (bx + dx, by + dy)
                    best_angle = trial_angle + dangle

            center = geometry.image_center(scene.shape)
            rotated_origin = geometry.rotate_point(origin, center, trial_angle)
            pt = (
                best_pt[0] + rotated_origin[0] - ROI_PADDING,
                best_pt[1] + rotated_origin[1] - ROI_PADDING,
            )
            pt_lt = geometry.rotate_point(pt, center, -trial_angle)
            if best_angle != trial_angle:
                pt_lt = geometry.turn_about_center(
                    pt_lt, level.width, level.height, -trial_angle, -best_angle
                )
            angle = best_angle
            current = replace(
                current,
                score=best_score,
                angle=angle,
                angle_start=angle - step / 2.0,
                angle_end=angle + step / 2.0,
                neighborhood=cube,
                on_border=on_border,
            )

        scale = 2**stop_level
        return replace(current, pt=(pt_lt[0] * scale, pt_lt[1] * scale))
