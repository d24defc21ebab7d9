"""
Worker Protocol

Request/response messages exchanged with an isolated worker, either a
child process or a queue worker. Every message is one JSON document with a
``type`` discriminator:

    process   -> host asks the worker to run the engine on a buffer
    progress  -> 0-100, non-decreasing, zero or more per run
    completed -> the repaired buffer (exactly one of completed/error)
    error     -> failure message and the EngineError kind
"""
from __future__ import annotations

import base64
from typing import Annotated, Literal, Optional, Union

from pydantic import Base64Bytes, BaseModel, Field, TypeAdapter, ValidationError

from .buffer import PixelBuffer
from .errors import ChannelError
from .pipeline.profiles import AlgorithmProfile, DetectorCutoffs, FallbackPolicy, get_profile
from .pipeline.region import NormalizedRegion


# ============================================================================
# Payloads
# ============================================================================

class BufferPayload(BaseModel):
    """RGBA pixels, base64-encoded on the wire."""
    data: Base64Bytes
    width: int = Field(ge=0)
    height: int = Field(ge=0)

    @classmethod
    def from_buffer(cls, buffer: PixelBuffer) -> BufferPayload:
        return cls(data=base64.b64encode(buffer.data), width=buffer.width, height=buffer.height)

    def to_buffer(self) -> PixelBuffer:
        return PixelBuffer(width=self.width, height=self.height, data=self.data)


class RegionPayload(BaseModel):
    x: float
    y: float
    w: float
    h: float

    @classmethod
    def from_region(cls, region: NormalizedRegion) -> RegionPayload:
        return cls(**region.to_dict())

    def to_region(self) -> NormalizedRegion:
        return NormalizedRegion(self.x, self.y, self.w, self.h)


class CutoffsPayload(BaseModel):
    alpha_cutoff: int
    transparency_weight: float
    bright_cutoff: float
    dark_cutoff: float
    brightness_weight: float
    contrast_radius: int
    contrast_cutoff: float
    contrast_weight: float
    edge_cutoff: float
    edge_weight: float
    spread_cutoff: float
    mono_brightness: float
    mono_weight: float
    isolated_diff: float
    isolated_fraction: float
    isolated_weight: float


class ProfilePayload(BaseModel):
    """A full profile, so custom profiles survive the process boundary."""
    name: str
    threshold_base: float
    blend_max: float
    sample_radius: int
    pass_count: int
    sensitivity_step: float
    exact_region: bool
    sample_limit: int
    ring_count: int
    angular_steps: int
    blend_margin: float
    min_threshold: float
    early_stop_pixels: int
    fallback: FallbackPolicy = FallbackPolicy.KEEP
    cutoffs: CutoffsPayload

    @classmethod
    def from_profile(cls, profile: AlgorithmProfile) -> ProfilePayload:
        fields = {k: getattr(profile, k) for k in cls.model_fields if k not in ("fallback", "cutoffs")}
        cutoffs = {k: getattr(profile.cutoffs, k) for k in CutoffsPayload.model_fields}
        return cls(**fields, fallback=profile.fallback, cutoffs=CutoffsPayload(**cutoffs))

    def to_profile(self) -> AlgorithmProfile:
        fields = self.model_dump(exclude={"fallback", "cutoffs"})
        return AlgorithmProfile(
            **fields,
            fallback=self.fallback,
            cutoffs=DetectorCutoffs(**self.cutoffs.model_dump()),
        )


class RunOptions(BaseModel):
    """Everything besides the pixels that determines the output."""
    profile: Union[str, ProfilePayload] = "enhanced"
    region: Optional[RegionPayload] = None
    band_count: int = Field(default=20, ge=1)
    noise_amplitude: float = Field(default=0.0, ge=0.0)
    noise_seed: Optional[int] = None

    def resolve_profile(self) -> AlgorithmProfile:
        if isinstance(self.profile, str):
            return get_profile(self.profile)
        return self.profile.to_profile()

    def resolve_region(self) -> Optional[NormalizedRegion]:
        return self.region.to_region() if self.region is not None else None


# ============================================================================
# Messages
# ============================================================================

class ProcessRequest(BaseModel):
    type: Literal["process"] = "process"
    buffer: BufferPayload
    options: RunOptions = Field(default_factory=RunOptions)


class ProgressMessage(BaseModel):
    type: Literal["progress"] = "progress"
    progress: int = Field(ge=0, le=100)


class CompletedMessage(BaseModel):
    type: Literal["completed"] = "completed"
    result: BufferPayload
    changed_pixels: int = 0


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: str
    kind: str = "EngineError"


Message = Annotated[
    Union[ProcessRequest, ProgressMessage, CompletedMessage, ErrorMessage],
    Field(discriminator="type"),
]

_message_adapter = TypeAdapter(Message)


def encode_message(message: BaseModel) -> bytes:
    """Serialize one message to a JSON document."""
    return message.model_dump_json().encode("utf-8")


def parse_message(raw: bytes | str) -> ProcessRequest | ProgressMessage | CompletedMessage | ErrorMessage:
    """
    Parse and validate one JSON message.

    Raises:
        ChannelError: If the document is not a valid protocol message
    """
    try:
        return _message_adapter.validate_json(raw)
    except ValidationError as e:
        raise ChannelError(f"Malformed worker message: {e.error_count()} validation error(s)") from e
