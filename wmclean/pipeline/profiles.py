"""
Algorithm Profiles

Named constant bundles that select how hard the detector looks and how
strongly the inpainter repairs. Profiles are immutable for a run.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum

from ..errors import InputError

logger = logging.getLogger(__name__)


class FallbackPolicy(Enum):
    """What to do with a flagged pixel that has no usable samples."""
    KEEP = "keep"                  # Leave the pixel unchanged
    NEUTRAL_GRAY = "neutral_gray"  # Repair toward mid-gray


@dataclass(frozen=True)
class DetectorCutoffs:
    """Feature predicates and the weight each adds to a pixel's confidence."""
    # Transparency
    alpha_cutoff: int = 250
    transparency_weight: float = 0.4

    # Brightness extremity
    bright_cutoff: float = 200.0
    dark_cutoff: float = 50.0
    brightness_weight: float = 0.3

    # Local contrast
    contrast_radius: int = 1
    contrast_cutoff: float = 40.0
    contrast_weight: float = 0.25

    # Sobel gradient magnitude
    edge_cutoff: float = 120.0
    edge_weight: float = 0.2

    # Monochrome bright overlay
    spread_cutoff: float = 20.0
    mono_brightness: float = 180.0
    mono_weight: float = 0.3

    # Isolated pixel
    isolated_diff: float = 40.0
    isolated_fraction: float = 0.5
    isolated_weight: float = 0.3

    def tightened(self, scale: float) -> "DetectorCutoffs":
        """Lower the neighborhood cutoffs so softer traces are caught."""
        return replace(
            self,
            contrast_cutoff=self.contrast_cutoff * scale,
            edge_cutoff=self.edge_cutoff * scale,
            isolated_diff=self.isolated_diff * scale,
        )


@dataclass(frozen=True)
class AlgorithmProfile:
    """Detection and repair parameters for one processing mode."""
    name: str
    threshold_base: float
    blend_max: float
    sample_radius: int
    pass_count: int
    sensitivity_step: float

    exact_region: bool = False     # Only touch the explicit region
    sample_limit: int = 20         # Top-K samples kept per pixel
    ring_count: int = 3
    angular_steps: int = 16
    blend_margin: float = 0.3
    min_threshold: float = 0.05
    early_stop_pixels: int = 1     # Stop once a pass changes fewer pixels than this
    fallback: FallbackPolicy = FallbackPolicy.KEEP
    cutoffs: DetectorCutoffs = field(default_factory=DetectorCutoffs)

    def __post_init__(self):
        if self.pass_count < 1:
            raise InputError(f"Profile {self.name}: pass_count must be >= 1")
        if self.sample_radius < 1 or self.ring_count < 1 or self.angular_steps < 1:
            raise InputError(f"Profile {self.name}: sampling parameters must be positive")
        if self.sample_limit < 1:
            raise InputError(f"Profile {self.name}: sample_limit must be >= 1")
        if not 0.0 <= self.threshold_base <= 1.0:
            raise InputError(f"Profile {self.name}: threshold_base must be within [0, 1]")
        if not 0.0 <= self.blend_max <= 1.0:
            raise InputError(f"Profile {self.name}: blend_max must be within [0, 1]")

    @property
    def halo(self) -> int:
        """Rows of context a band needs above and below it."""
        return self.sample_radius + max(self.cutoffs.contrast_radius, 1) + 1


# =============================================================================
# Built-in profiles
# =============================================================================

PROFILES: dict[str, AlgorithmProfile] = {
    "conservative": AlgorithmProfile(
        name="conservative",
        threshold_base=0.35,
        blend_max=0.85,
        sample_radius=8,
        pass_count=2,
        sensitivity_step=0.05,
        sample_limit=12,
    ),
    "enhanced": AlgorithmProfile(
        name="enhanced",
        threshold_base=0.2,
        blend_max=0.98,
        sample_radius=10,
        pass_count=3,
        sensitivity_step=0.05,
    ),
    "aggressive": AlgorithmProfile(
        name="aggressive",
        threshold_base=0.12,
        blend_max=0.98,
        sample_radius=12,
        pass_count=5,
        sensitivity_step=0.03,
        cutoffs=DetectorCutoffs(contrast_radius=2, contrast_cutoff=30.0, edge_cutoff=90.0),
    ),
    "region-exact": AlgorithmProfile(
        name="region-exact",
        threshold_base=0.2,
        blend_max=0.98,
        sample_radius=12,
        pass_count=3,
        sensitivity_step=0.05,
        exact_region=True,
        sample_limit=12,
    ),
}

DEFAULT_PROFILE = "enhanced"


def get_profile(name: str, strict: bool = True) -> AlgorithmProfile:
    """
    Look up a built-in profile by name.

    Args:
        name: Profile name (case-insensitive, "_" and "-" are interchangeable)
        strict: Raise InputError for unknown names instead of falling back

    Returns:
        The matching AlgorithmProfile
    """
    key = name.strip().lower().replace("_", "-")
    profile = PROFILES.get(key)
    if profile is not None:
        return profile

    if strict:
        raise InputError(f"Unknown profile: {name!r} (expected one of {sorted(PROFILES)})")

    logger.warning(f"Unknown profile {name!r}, falling back to {DEFAULT_PROFILE}")
    return PROFILES[DEFAULT_PROFILE]
