"""
Inpainter

Computes replacement colors for flagged pixels from weighted samples of
nearby clean pixels.

Samples are gathered on concentric rings around the target at regular
angular steps. Each accepted sample is weighted by inverse squared distance
and by how smooth its own neighborhood is, so repairs borrow from flat
regions rather than from noise. Only the strongest samples are averaged,
and the result is blended with the original pixel.
"""

import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import numpy as np

from .neighborhood import EIGHT_NEIGHBORS, shifted
from .profiles import AlgorithmProfile, FallbackPolicy

logger = logging.getLogger(__name__)

# Added to squared distance in the sample weight
DISTANCE_EPS = 0.1

NEUTRAL_GRAY = 128

# Targets repaired per vectorized batch; bounds (batch, samples, 4) temporaries
BATCH_SIZE = 4096


@dataclass(frozen=True)
class RepairSample:
    """One candidate color for a repair and its weight."""
    color: tuple[int, int, int, int]
    weight: float


@dataclass
class RepairResult:
    """Repaired colors for a batch of targets."""
    colors: np.ndarray       # (N, 4) uint8 blended output
    sampled: np.ndarray      # (N,) bool: at least one valid sample was found


@lru_cache(maxsize=32)
def ring_offsets(radius: int, ring_count: int, angular_steps: int) -> tuple[tuple[int, int], ...]:
    """
    Integer (dy, dx) offsets on concentric sampling rings.

    Ring k (1-based) has radius ``radius * k / ring_count``. Offsets are rounded
    to the pixel grid; the center and duplicates are dropped, keeping the
    first occurrence so the table order is stable.
    """
    seen = set()
    offsets = []
    for ring in range(1, ring_count + 1):
        ring_radius = radius * ring / ring_count
        for step in range(angular_steps):
            angle = 2.0 * math.pi * step / angular_steps
            dx = int(math.floor(math.cos(angle) * ring_radius + 0.5))
            dy = int(math.floor(math.sin(angle) * ring_radius + 0.5))
            if (dy, dx) == (0, 0) or (dy, dx) in seen:
                continue
            seen.add((dy, dx))
            offsets.append((dy, dx))
    return tuple(offsets)


def round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


class Inpainter:
    """Ring-sampling inpainter for one profile."""

    def __init__(
        self,
        profile: AlgorithmProfile,
        rng: Optional[np.random.Generator] = None,
        noise_amplitude: float = 0.0,
    ):
        self.profile = profile
        self.rng = rng
        self.noise_amplitude = noise_amplitude if rng is not None else 0.0

        offsets = ring_offsets(profile.sample_radius, profile.ring_count, profile.angular_steps)
        self._offsets = np.array(offsets, dtype=np.int64).reshape(-1, 2)
        dist2 = (self._offsets ** 2).sum(axis=1).astype(np.float64)
        self._base_weights = 1.0 / (dist2 + DISTANCE_EPS)

    @property
    def offsets(self) -> np.ndarray:
        return self._offsets

    @staticmethod
    def texture_map(rgba: np.ndarray) -> np.ndarray:
        """
        Texture consistency of every pixel's 8-neighborhood.

        Per neighbor the score is max(0, 255 - sum of |channel diff|) / 255 over
        R, G and B; the map holds the mean over in-bounds neighbors.
        """
        rgb = rgba[..., :3].astype(np.float64)
        total = np.zeros(rgba.shape[:2], dtype=np.float64)
        count = np.zeros(rgba.shape[:2], dtype=np.float64)
        for dy, dx in EIGHT_NEIGHBORS:
            neighbor = shifted(rgb, dy, dx)
            valid = ~np.isnan(neighbor[..., 0])
            diff = np.abs(rgb - neighbor).sum(axis=-1)
            score = np.maximum(0.0, 255.0 - diff) / 255.0
            total += np.where(valid, score, 0.0)
            count += valid
        return np.divide(total, count, out=np.zeros_like(total), where=count > 0)

    def _weighted_samples(
        self,
        snapshot: np.ndarray,
        blocked: np.ndarray,
        texture: np.ndarray,
        ys: np.ndarray,
        xs: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Top-K sample colors and weights for each target.

        Returns:
            Tuple of (colors (N, K, 4) float64, weights (N, K) float64) where
            rejected samples carry zero weight
        """
        h, w = snapshot.shape[:2]
        ny = ys[:, None] + self._offsets[None, :, 0]
        nx = xs[:, None] + self._offsets[None, :, 1]

        inside = (ny >= 0) & (ny < h) & (nx >= 0) & (nx < w)
        nyc = np.clip(ny, 0, h - 1)
        nxc = np.clip(nx, 0, w - 1)

        valid = inside & ~blocked[nyc, nxc]
        weights = self._base_weights[None, :] * (1.0 + texture[nyc, nxc])
        weights = np.where(valid, weights, -1.0)

        # Stable sort keeps table order among equal weights
        keep = min(self.profile.sample_limit, weights.shape[1])
        order = np.argsort(-weights, axis=1, kind="stable")[:, :keep]
        top_weights = np.take_along_axis(weights, order, axis=1)
        top_y = np.take_along_axis(nyc, order, axis=1)
        top_x = np.take_along_axis(nxc, order, axis=1)

        top_weights = np.where(top_weights > 0, top_weights, 0.0)
        colors = snapshot[top_y, top_x].astype(np.float64)
        return colors, top_weights

    def repair(
        self,
        snapshot: np.ndarray,
        blocked: np.ndarray,
        ys: np.ndarray,
        xs: np.ndarray,
        confidences: np.ndarray,
        blend_cap: float,
        texture: Optional[np.ndarray] = None,
    ) -> RepairResult:
        """
        Repair a set of target pixels.

        Args:
            snapshot: (H, W, 4) uint8 pixels as of the start of the pass
            blocked: (H, W) bool, pixels that may not be used as samples
            ys: Target rows in snapshot coordinates
            xs: Target columns
            confidences: Target confidences, drive the blend factor
            blend_cap: Upper bound for the blend factor this pass
            texture: Optional precomputed texture_map(snapshot)

        Returns:
            RepairResult with blended output colors
        """
        n = len(ys)
        out = np.empty((n, 4), dtype=np.uint8)
        sampled = np.zeros(n, dtype=bool)
        if n == 0:
            return RepairResult(colors=out, sampled=sampled)

        if texture is None:
            texture = self.texture_map(snapshot)

        for start in range(0, n, BATCH_SIZE):
            sl = slice(start, min(n, start + BATCH_SIZE))
            colors, weights = self._weighted_samples(snapshot, blocked, texture, ys[sl], xs[sl])
            total = weights.sum(axis=1)
            has_samples = total > 0

            original = snapshot[ys[sl], xs[sl]].astype(np.float64)
            safe_total = np.where(has_samples, total, 1.0)
            mean = (colors * weights[..., None]).sum(axis=1) / safe_total[:, None]
            repaired = np.clip(round_half_up(mean), 0, 255)

            if self.profile.fallback is FallbackPolicy.NEUTRAL_GRAY:
                gray = original.copy()
                gray[:, :3] = NEUTRAL_GRAY
                repaired = np.where(has_samples[:, None], repaired, gray)
                apply = np.ones_like(has_samples)
            else:
                apply = has_samples

            if self.noise_amplitude > 0:
                noise = self.rng.normal(0.0, self.noise_amplitude, size=(repaired.shape[0], 3))
                repaired[:, :3] = np.clip(round_half_up(repaired[:, :3] + noise), 0, 255)

            blend = np.minimum(blend_cap, confidences[sl] + self.profile.blend_margin)[:, None]
            blended = np.clip(round_half_up(original * (1.0 - blend) + repaired * blend), 0, 255)
            result = np.where(apply[:, None], blended, original)

            out[sl] = result.astype(np.uint8)
            sampled[sl] = has_samples

        logger.debug(f"Repaired {n} pixels, {n - int(sampled.sum())} without samples")
        return RepairResult(colors=out, sampled=sampled)

    def samples_for(
        self,
        snapshot: np.ndarray,
        blocked: np.ndarray,
        x: int,
        y: int,
    ) -> list[RepairSample]:
        """Accepted top-K samples for one pixel, strongest first."""
        colors, weights = self._weighted_samples(
            snapshot,
            blocked,
            self.texture_map(snapshot),
            np.array([y]),
            np.array([x]),
        )
        return [
            RepairSample(color=tuple(int(v) for v in color), weight=float(weight))
            for color, weight in zip(colors[0], weights[0])
            if weight > 0
        ]
