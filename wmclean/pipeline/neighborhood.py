"""
Neighborhood helpers shared by the detector and the inpainter.

All helpers work on whole arrays at once: a neighbor at offset (dy, dx) is
read by shifting the array, with out-of-bounds positions filled with a
sentinel so they can be excluded.
"""

from functools import lru_cache

import numpy as np

EIGHT_NEIGHBORS: tuple[tuple[int, int], ...] = (
    (-1, -1), (-1, 0), (-1, 1),
    (0, -1),           (0, 1),
    (1, -1),  (1, 0),  (1, 1),
)


@lru_cache(maxsize=8)
def window_offsets(radius: int) -> tuple[tuple[int, int], ...]:
    """All (dy, dx) offsets in a square window, excluding the center."""
    return tuple(
        (dy, dx)
        for dy in range(-radius, radius + 1)
        for dx in range(-radius, radius + 1)
        if (dy, dx) != (0, 0)
    )


def shifted(values: np.ndarray, dy: int, dx: int, fill: float = np.nan) -> np.ndarray:
    """
    Return an array whose [y, x] element is values[y + dy, x + dx].

    Positions whose neighbor falls outside the array hold ``fill``. Works on
    2D arrays and on (H, W, C) arrays.
    """
    h, w = values.shape[:2]
    out = np.full(values.shape, fill, dtype=np.float64)

    src_y0, src_y1 = max(0, dy), min(h, h + dy)
    src_x0, src_x1 = max(0, dx), min(w, w + dx)
    if src_y0 >= src_y1 or src_x0 >= src_x1:
        return out

    dst_y0, dst_x0 = src_y0 - dy, src_x0 - dx
    out[dst_y0:dst_y0 + (src_y1 - src_y0), dst_x0:dst_x0 + (src_x1 - src_x0)] = \
        values[src_y0:src_y1, src_x0:src_x1]
    return out


def brightness(rgba: np.ndarray) -> np.ndarray:
    """Mean of R, G and B per pixel as float64."""
    return rgba[..., :3].astype(np.float64).mean(axis=-1)
