"""
Pass Controller

Runs repeated detect + repair sweeps over one band of rows. Every pass
lowers the confidence threshold and raises the blend ceiling, so later
passes catch softer residue and correct it more strongly.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from ..errors import InternalAlgorithmError
from .detector import WatermarkDetector
from .inpainter import Inpainter
from .profiles import AlgorithmProfile, DetectorCutoffs
from .region import PRECOMMIT_CONFIDENCE, RegionMask

logger = logging.getLogger(__name__)

# Cutoffs are never tightened below this fraction of the profile value
MIN_CUTOFF_SCALE = 0.5


class PassState(Enum):
    """Lifecycle of a band's pass loop."""
    IDLE = "idle"
    DETECTING = "detecting"
    REPAIRING = "repairing"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass(frozen=True)
class PassParameters:
    """Effective parameters for one pass."""
    index: int
    threshold: float
    blend_cap: float
    cutoffs: DetectorCutoffs


@dataclass
class PassReport:
    """Diagnostics for one pass over one band."""
    index: int
    threshold: float
    flagged: int = 0     # Pixels above threshold
    repaired: int = 0    # Flagged pixels that found samples
    changed: int = 0     # Pixels whose value actually changed


def pass_schedule(profile: AlgorithmProfile) -> list[PassParameters]:
    """Per-pass threshold, blend ceiling and detector cutoffs."""
    schedule = []
    for i in range(profile.pass_count):
        step = i * profile.sensitivity_step
        schedule.append(PassParameters(
            index=i,
            threshold=max(profile.min_threshold, profile.threshold_base - step),
            blend_cap=min(1.0, profile.blend_max + step),
            cutoffs=profile.cutoffs.tightened(max(MIN_CUTOFF_SCALE, 1.0 - step)),
        ))
    return schedule


class PassController:
    """
    Drives the pass loop for one band.

    The controller owns no pixel data: it reads and writes the caller's
    working array and only keeps its state for logging.
    """

    def __init__(
        self,
        profile: AlgorithmProfile,
        rng: Optional[np.random.Generator] = None,
        noise_amplitude: float = 0.0,
    ):
        self.profile = profile
        self.schedule = pass_schedule(profile)
        self.inpainter = Inpainter(profile, rng=rng, noise_amplitude=noise_amplitude)
        self._detectors = [WatermarkDetector(p.cutoffs) for p in self.schedule]
        self.state = PassState.IDLE

    def _transition(self, state: PassState):
        logger.debug(f"Pass state {self.state.value} -> {state.value}")
        self.state = state

    def run_band(
        self,
        pixels: np.ndarray,
        mask: RegionMask,
        row_start: int,
        row_end: int,
    ) -> list[PassReport]:
        """
        Run every pass on rows [row_start, row_end).

        Args:
            pixels: (H, W, 4) uint8 working image, modified in place
            mask: Region masks for the whole image
            row_start: First row of the band
            row_end: One past the last row of the band

        Returns:
            One PassReport per pass that ran
        """
        self.state = PassState.IDLE
        height = pixels.shape[0]
        top = max(0, row_start - self.profile.halo)
        bottom = min(height, row_end + self.profile.halo)
        local = slice(row_start - top, row_end - top)

        candidates = mask.candidates[row_start:row_end]
        precommitted = mask.precommitted[row_start:row_end]
        reports = []

        if not candidates.any():
            self._transition(PassState.DONE)
            return reports

        for params, detector in zip(self.schedule, self._detectors):
            self._transition(PassState.DETECTING)
            report = PassReport(index=params.index, threshold=params.threshold)

            # Detection and sampling read the band as it was when the pass began
            snapshot = pixels[top:bottom].copy()
            confidence = detector.confidence_map(snapshot)
            blocked = confidence > params.threshold

            band_conf = np.where(
                precommitted,
                PRECOMMIT_CONFIDENCE,
                np.where(candidates, confidence[local], 0.0),
            )
            flagged = band_conf > params.threshold
            ys, xs = np.nonzero(flagged)
            report.flagged = len(ys)

            if report.flagged:
                self._transition(PassState.REPAIRING)
                result = self.inpainter.repair(
                    snapshot,
                    blocked,
                    ys + local.start,
                    xs,
                    band_conf[ys, xs],
                    params.blend_cap,
                )
                if result.colors.shape != (len(ys), 4):
                    raise InternalAlgorithmError("Inpainter returned a mismatched batch")

                before = snapshot[ys + local.start, xs]
                report.repaired = int(result.sampled.sum())
                report.changed = int((result.colors != before).any(axis=1).sum())
                pixels[ys + row_start, xs] = result.colors

            reports.append(report)
            logger.debug(
                f"Rows {row_start}-{row_end} pass {params.index + 1}/{self.profile.pass_count}: "
                f"threshold={params.threshold:.2f} flagged={report.flagged} changed={report.changed}"
            )

            if report.changed < self.profile.early_stop_pixels:
                break

        self._transition(PassState.FINALIZING)
        self._transition(PassState.DONE)
        return reports
