"""
wmclean

Overlay watermark detection and repair for raster images.
"""

from .buffer import PixelBuffer
from .engine import BatchItem, BatchItemResult, WatermarkEngine, get_engine, run
from .errors import (
    ChannelError,
    EngineBusyError,
    EngineError,
    EngineTimeoutError,
    InputError,
    InternalAlgorithmError,
    RegionError,
    ResourceError,
    RunCancelledError,
)
from .pipeline.profiles import PROFILES, AlgorithmProfile, get_profile
from .pipeline.region import NormalizedRegion
from .pipeline.scheduler import CancelToken, CooperativeScheduler, DelegatedScheduler

__all__ = [
    "PixelBuffer",
    "NormalizedRegion",
    "AlgorithmProfile",
    "PROFILES",
    "get_profile",
    "WatermarkEngine",
    "BatchItem",
    "BatchItemResult",
    "get_engine",
    "run",
    "CancelToken",
    "CooperativeScheduler",
    "DelegatedScheduler",
    # Errors
    "EngineError",
    "InputError",
    "RegionError",
    "ResourceError",
    "EngineTimeoutError",
    "ChannelError",
    "InternalAlgorithmError",
    "RunCancelledError",
    "EngineBusyError",
]
