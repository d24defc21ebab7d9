"""
Pixel Buffer

RGBA raster handed between the host and the engine, plus conversions to
numpy arrays and PIL images at the decode/encode boundary.
"""

from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image

from .errors import InputError

CHANNELS = 4


@dataclass(frozen=True)
class PixelBuffer:
    """
    Row-major RGBA pixels.

    ``data`` holds width * height * 4 bytes, one byte per channel.
    """
    width: int
    height: int
    data: bytes

    def __post_init__(self):
        if isinstance(self.data, (bytearray, memoryview)):
            object.__setattr__(self, "data", bytes(self.data))
        self.validate()

    def validate(self):
        """Raise InputError if the buffer is empty or mis-sized."""
        if not isinstance(self.width, int) or not isinstance(self.height, int):
            raise InputError("Buffer dimensions must be integers")
        if self.width <= 0 or self.height <= 0:
            raise InputError(f"Buffer is empty: {self.width}x{self.height}")
        if not isinstance(self.data, bytes):
            raise InputError(f"Buffer data must be bytes, got {type(self.data).__name__}")
        expected = self.width * self.height * CHANNELS
        if len(self.data) != expected:
            raise InputError(
                f"Buffer length {len(self.data)} does not match {self.width}x{self.height}x4={expected}"
            )

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def to_array(self) -> np.ndarray:
        """Writable (H, W, 4) uint8 copy of the pixels."""
        return np.frombuffer(self.data, dtype=np.uint8).reshape(self.height, self.width, CHANNELS).copy()

    @classmethod
    def from_array(cls, array: np.ndarray) -> "PixelBuffer":
        """Build from an (H, W, 4) array with values in [0, 255]."""
        if array.ndim != 3 or array.shape[2] != CHANNELS:
            raise InputError(f"Expected an (H, W, 4) array, got shape {array.shape}")
        if array.dtype != np.uint8:
            if array.size and (array.min() < 0 or array.max() > 255):
                raise InputError("Array values must be within [0, 255]")
            array = array.astype(np.uint8)
        h, w = array.shape[:2]
        return cls(width=w, height=h, data=np.ascontiguousarray(array).tobytes())

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        """Build from a PIL image (converted to RGBA)."""
        rgba = image.convert("RGBA")
        return cls(width=rgba.width, height=rgba.height, data=rgba.tobytes())

    @classmethod
    def open(cls, path: Path) -> "PixelBuffer":
        """Decode an image file."""
        try:
            with Image.open(path) as image:
                return cls.from_image(image)
        except (OSError, ValueError) as e:
            raise InputError(f"Could not load image: {path}") from e

    def to_image(self) -> Image.Image:
        return Image.frombytes("RGBA", (self.width, self.height), self.data)

    def save(self, path: Path, format: str | None = None):
        """Encode to a file; JPEG output drops the alpha channel."""
        image = self.to_image()
        fmt = (format or Image.registered_extensions().get(Path(path).suffix.lower(), "PNG")).upper()
        if fmt in ("JPEG", "JPG"):
            image = image.convert("RGB")
        image.save(path, format=fmt)
