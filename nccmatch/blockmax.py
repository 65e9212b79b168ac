"""
Block-max index over a score surface.

The surface is cut into blocks twice the template size; each block keeps
its own maximum so that, after a small region is suppressed, only the
blocks touching that region have to be rescanned.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

import cv2
import numpy as np

Rect = Tuple[int, int, int, int]


@dataclass
class Block:
    x: int
    y: int
    w: int
    h: int
    max_value: float = 0.0
    max_loc: Tuple[int, int] = (0, 0)

    def intersects(self, rect: Rect) -> bool:
        rx, ry, rw, rh = rect
        return (
            min(self.x + self.w, rx + rw) > max(self.x, rx)
            and min(self.y + self.h, ry + rh) > max(self.y, ry)
        )


class BlockMaxIndex:
    """
    Running per-block maxima of ``surface``.

    The index keeps a reference to ``surface``; callers write suppression
    values into it and then call ``invalidate`` with the written rectangle.
    """

    def __init__(self, surface: np.ndarray, template_size: Tuple[int, int]):
        if surface.size == 0:
            raise ValueError("Score surface is empty")
        self.surface = surface
        tw, th = template_size
        self.block_size = (max(2 * tw, 1), max(2 * th, 1))
        self.blocks = self._partition()
        for block in self.blocks:
            self._scan(block)

    def _partition(self) -> List[Block]:
        rows, cols = self.surface.shape[:2]
        bw, bh = self.block_size
        n_cols = cols // bw
        n_rows = rows // bh
        if n_cols == 0 or n_rows == 0:
            return [Block(0, 0, cols, rows)]

        blocks = [
            Block(c * bw, r * bh, bw, bh)
            for r in range(n_rows)
            for c in range(n_cols)
        ]
        # Right strip spans the full height, bottom strip the full-block width.
        if cols % bw:
            blocks.append(Block(n_cols * bw, 0, cols - n_cols * bw, rows))
        if rows % bh:
            blocks.append(Block(0, n_rows * bh, n_cols * bw, rows - n_rows * bh))
        return blocks

    def _scan(self, block: Block) -> None:
        roi = self.surface[block.y : block.y + block.h, block.x : block.x + block.w]
        _, max_val, _, max_loc = cv2.minMaxLoc(roi)
        block.max_value = float(max_val)
        block.max_loc = (max_loc[0] + block.x, max_loc[1] + block.y)

    def invalidate(self, rect: Rect) -> int:
        """Rescan every block intersecting ``rect`` (x, y, w, h); returns how many."""
        touched = 0
        for block in self.blocks:
            if block.intersects(rect):
                self._scan(block)
                touched += 1
        return touched

    def max_value_loc(self) -> Tuple[float, Tuple[int, int]]:
        """Global maximum; on ties the first block in row-major order wins."""
        best = self.blocks[0]
        for block in self.blocks[1:]:
            if block.max_value > best.max_value:
                best = block
        return best.max_value, best.max_loc
