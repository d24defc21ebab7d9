"""
Watermark Engine Pipeline

Region resolution, detection, inpainting and the pass loop. Execution
strategies live in ``scheduler`` and are imported from there directly.
"""

from .profiles import PROFILES, AlgorithmProfile, DetectorCutoffs, FallbackPolicy, get_profile
from .region import NormalizedRegion, PixelRect, RegionMask, RegionResolver
from .detector import PixelConfidence, WatermarkDetector
from .inpainter import Inpainter, RepairSample, ring_offsets
from .passes import PassController, PassReport, PassState, pass_schedule

__all__ = [
    # Profiles
    "PROFILES",
    "AlgorithmProfile",
    "DetectorCutoffs",
    "FallbackPolicy",
    "get_profile",
    # Regions
    "NormalizedRegion",
    "PixelRect",
    "RegionMask",
    "RegionResolver",
    # Detection
    "PixelConfidence",
    "WatermarkDetector",
    # Repair
    "Inpainter",
    "RepairSample",
    "ring_offsets",
    # Passes
    "PassController",
    "PassReport",
    "PassState",
    "pass_schedule",
]
