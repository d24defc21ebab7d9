"""
Watermark Detector

Scores pixels for watermark likelihood by fusing independent features:
- Transparency (alpha below a near-opaque cutoff)
- Brightness extremity (very bright or very dark)
- Local contrast against nearby pixels
- Edge strength (3x3 Sobel over brightness)
- Monochrome bright overlay (low channel spread, high brightness)
- Isolated pixels (most neighbors differ sharply)

Each feature adds its weight when its predicate holds; the sum is clamped
to 1.0. Scoring is pure: the same pixels and cutoffs always give the same
confidences.
"""

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from ..errors import InternalAlgorithmError
from .neighborhood import EIGHT_NEIGHBORS, brightness, shifted, window_offsets
from .profiles import DetectorCutoffs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PixelConfidence:
    """Confidence that one pixel belongs to a watermark."""
    x: int
    y: int
    value: float

    def __post_init__(self):
        if not 0.0 <= self.value <= 1.0:
            raise InternalAlgorithmError(
                f"Confidence out of range at ({self.x}, {self.y}): {self.value}"
            )


@dataclass
class FeatureMaps:
    """Boolean predicate per feature, one (H, W) array each."""
    transparent: np.ndarray
    extreme_brightness: np.ndarray
    high_contrast: np.ndarray
    strong_edge: np.ndarray
    monochrome: np.ndarray
    isolated: np.ndarray


class WatermarkDetector:
    """Multi-feature watermark confidence scoring."""

    def __init__(self, cutoffs: DetectorCutoffs | None = None):
        self.cutoffs = cutoffs or DetectorCutoffs()

    @property
    def context(self) -> int:
        """Pixels of surrounding context a score depends on."""
        return max(self.cutoffs.contrast_radius, 1)

    def local_contrast(self, bright: np.ndarray) -> np.ndarray:
        """Max absolute brightness difference to any in-bounds neighbor."""
        contrast = np.zeros_like(bright)
        for dy, dx in window_offsets(self.cutoffs.contrast_radius):
            diff = np.abs(bright - shifted(bright, dy, dx))
            np.fmax(contrast, diff, out=contrast)
        return contrast

    @staticmethod
    def edge_strength(bright: np.ndarray) -> np.ndarray:
        """Sobel gradient magnitude with replicated borders."""
        gx = cv2.Sobel(bright, cv2.CV_64F, 1, 0, ksize=3, borderType=cv2.BORDER_REPLICATE)
        gy = cv2.Sobel(bright, cv2.CV_64F, 0, 1, ksize=3, borderType=cv2.BORDER_REPLICATE)
        return np.sqrt(gx * gx + gy * gy)

    def isolated_ratio(self, bright: np.ndarray) -> np.ndarray:
        """Fraction of in-bounds 8-neighbors whose brightness differs sharply."""
        differing = np.zeros(bright.shape, dtype=np.float64)
        present = np.zeros(bright.shape, dtype=np.float64)
        for dy, dx in EIGHT_NEIGHBORS:
            neighbor = shifted(bright, dy, dx)
            valid = ~np.isnan(neighbor)
            present += valid
            # Comparisons against NaN are False, so missing neighbors never count
            with np.errstate(invalid="ignore"):
                differing += np.abs(bright - neighbor) > self.cutoffs.isolated_diff
        return np.divide(differing, present, out=np.zeros_like(differing), where=present > 0)

    def features(self, rgba: np.ndarray) -> FeatureMaps:
        """
        Evaluate every feature predicate.

        Args:
            rgba: (H, W, 4) uint8 pixels

        Returns:
            FeatureMaps of boolean arrays
        """
        c = self.cutoffs
        rgb = rgba[..., :3].astype(np.int16)
        alpha = rgba[..., 3]
        bright = brightness(rgba)

        spread = np.maximum.reduce([
            np.abs(rgb[..., 0] - rgb[..., 1]),
            np.abs(rgb[..., 1] - rgb[..., 2]),
            np.abs(rgb[..., 0] - rgb[..., 2]),
        ])

        return FeatureMaps(
            transparent=alpha < c.alpha_cutoff,
            extreme_brightness=(bright > c.bright_cutoff) | (bright < c.dark_cutoff),
            high_contrast=self.local_contrast(bright) > c.contrast_cutoff,
            strong_edge=self.edge_strength(bright) > c.edge_cutoff,
            monochrome=(spread < c.spread_cutoff) & (bright > c.mono_brightness),
            isolated=self.isolated_ratio(bright) > c.isolated_fraction,
        )

    def confidence_map(self, rgba: np.ndarray) -> np.ndarray:
        """
        Fused confidence for every pixel.

        Args:
            rgba: (H, W, 4) uint8 pixels

        Returns:
            (H, W) float64 confidences in [0, 1]
        """
        c = self.cutoffs
        f = self.features(rgba)

        confidence = (
            f.transparent * c.transparency_weight
            + f.extreme_brightness * c.brightness_weight
            + f.high_contrast * c.contrast_weight
            + f.strong_edge * c.edge_weight
            + f.monochrome * c.mono_weight
            + f.isolated * c.isolated_weight
        )
        confidence = np.minimum(confidence.astype(np.float64), 1.0)

        if not np.isfinite(confidence).all():
            raise InternalAlgorithmError("Non-finite confidence in detector output")

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                f"Scored {confidence.size} pixels: transparent={int(f.transparent.sum())} "
                f"contrast={int(f.high_contrast.sum())} edge={int(f.strong_edge.sum())} "
                f"isolated={int(f.isolated.sum())} max={confidence.max():.2f}"
            )
        return confidence

    def score_pixel(self, rgba: np.ndarray, x: int, y: int) -> PixelConfidence:
        """Score a single pixel using only the window it depends on."""
        h, w = rgba.shape[:2]
        pad = self.context + 1
        y0, y1 = max(0, y - pad), min(h, y + pad + 1)
        x0, x1 = max(0, x - pad), min(w, x + pad + 1)
        window = self.confidence_map(rgba[y0:y1, x0:x1])
        return PixelConfidence(x=x, y=y, value=float(window[y - y0, x - x0]))
