"""
Region Resolver

Turns a user-marked rectangle, or the built-in heuristic watermark
locations, into pixel-space masks for one run.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..errors import RegionError
from .profiles import AlgorithmProfile

logger = logging.getLogger(__name__)

# Confidence assigned to pixels inside an explicit region
PRECOMMIT_CONFIDENCE = 0.98

# Tolerance for float round-off in normalized coordinates
_EPS = 1e-9


@dataclass(frozen=True)
class NormalizedRegion:
    """Rectangle in image-relative [0, 1] coordinates."""
    x: float
    y: float
    w: float
    h: float

    def __post_init__(self):
        values = (self.x, self.y, self.w, self.h)
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
            raise RegionError(f"Region coordinates must be finite numbers: {values}")
        if self.w <= 0 or self.h <= 0:
            raise RegionError(f"Region must have positive size: w={self.w}, h={self.h}")
        if self.x < 0 or self.y < 0:
            raise RegionError(f"Region origin outside image: x={self.x}, y={self.y}")
        if self.x + self.w > 1 + _EPS or self.y + self.h > 1 + _EPS:
            raise RegionError(
                f"Region extends past image bounds: x+w={self.x + self.w}, y+h={self.y + self.h}"
            )

    @classmethod
    def from_dict(cls, data: dict) -> "NormalizedRegion":
        """Build from {x, y, w|width, h|height}."""
        try:
            return cls(
                x=float(data["x"]),
                y=float(data["y"]),
                w=float(data.get("w", data.get("width"))),
                h=float(data.get("h", data.get("height"))),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RegionError(f"Malformed region: {data!r}") from e

    @classmethod
    def parse(cls, text: str) -> "NormalizedRegion":
        """Parse "x,y,w,h"."""
        parts = [p.strip() for p in text.split(",")]
        if len(parts) != 4:
            raise RegionError(f"Region must be 'x,y,w,h', got {text!r}")
        try:
            x, y, w, h = (float(p) for p in parts)
        except ValueError as e:
            raise RegionError(f"Region must be 'x,y,w,h', got {text!r}") from e
        return cls(x, y, w, h)

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}


@dataclass(frozen=True)
class PixelRect:
    """Integer rectangle, right/bottom exclusive."""
    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)


@dataclass(frozen=True)
class RegionMask:
    """Pixel masks for a run: where to look, and what is already decided."""
    candidates: np.ndarray     # bool (H, W): pixels eligible for repair
    precommitted: np.ndarray   # bool (H, W): forced to PRECOMMIT_CONFIDENCE
    rects: tuple[PixelRect, ...]

    @property
    def coverage(self) -> float:
        return float(self.candidates.mean()) if self.candidates.size else 0.0


class RegionResolver:
    """
    Resolves the pixel masks for a run.

    An explicit region overrides detection: every pixel inside it is treated
    as watermark. Without one, common watermark locations are scanned by the
    detector as usual.
    """

    # Common watermark locations as (x, y, w, h) fractions
    HEURISTIC_REGIONS = [
        (0.0, 0.0, 0.3, 0.2),   # Top-left
        (0.7, 0.0, 0.3, 0.2),   # Top-right
        (0.0, 0.8, 0.3, 0.2),   # Bottom-left
        (0.7, 0.8, 0.3, 0.2),   # Bottom-right
        (0.3, 0.4, 0.4, 0.2),   # Center band
    ]

    @staticmethod
    def to_pixel_rect(region: NormalizedRegion, width: int, height: int) -> PixelRect:
        """Floor the normalized corners onto the pixel grid."""
        rect = PixelRect(
            left=int(math.floor(region.x * width + _EPS)),
            top=int(math.floor(region.y * height + _EPS)),
            right=min(width, int(math.floor((region.x + region.w) * width + _EPS))),
            bottom=min(height, int(math.floor((region.y + region.h) * height + _EPS))),
        )
        if rect.area == 0:
            raise RegionError(
                f"Region {region.to_dict()} covers no pixels on a {width}x{height} image"
            )
        return rect

    def heuristic_rects(self, width: int, height: int) -> list[PixelRect]:
        """Default rectangles, skipping any that vanish on tiny images."""
        rects = []
        for fx, fy, fw, fh in self.HEURISTIC_REGIONS:
            rect = PixelRect(
                left=int(fx * width),
                top=int(fy * height),
                right=min(width, int((fx + fw) * width + _EPS)),
                bottom=min(height, int((fy + fh) * height + _EPS)),
            )
            if rect.area > 0:
                rects.append(rect)
        return rects

    def resolve(
        self,
        width: int,
        height: int,
        region: Optional[NormalizedRegion],
        profile: AlgorithmProfile,
    ) -> RegionMask:
        """
        Build the candidate and pre-committed masks.

        Args:
            width: Image width in pixels
            height: Image height in pixels
            region: Optional user-marked region
            profile: Active profile; exact-region profiles only touch the region

        Returns:
            RegionMask for the run
        """
        candidates = np.zeros((height, width), dtype=bool)
        precommitted = np.zeros((height, width), dtype=bool)
        rects: list[PixelRect] = []

        if region is not None:
            rect = self.to_pixel_rect(region, width, height)
            precommitted[rect.top:rect.bottom, rect.left:rect.right] = True
            candidates |= precommitted
            rects.append(rect)
            logger.debug(f"Explicit region resolved to {rect}")
        elif profile.exact_region:
            raise RegionError(f"Profile {profile.name} requires an explicit region")

        if not profile.exact_region:
            for rect in self.heuristic_rects(width, height):
                candidates[rect.top:rect.bottom, rect.left:rect.right] = True
                rects.append(rect)

        mask = RegionMask(candidates=candidates, precommitted=precommitted, rects=tuple(rects))
        logger.debug(f"Region mask: {len(rects)} rects, coverage {mask.coverage:.1%}")
        return mask
