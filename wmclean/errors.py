"""
Engine Errors

Exception taxonomy for the watermark removal engine.

Input and region errors are raised before any pixel is touched. Resource,
timeout and busy errors are recoverable: the caller may retry with a smaller
image, a longer deadline or after the current run finishes.
"""


class EngineError(Exception):
    """Base class for all engine failures."""

    kind = "EngineError"
    recoverable = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.kind


class InputError(EngineError):
    """Empty or malformed pixel buffer, or an unknown profile."""
    kind = "InputError"


class RegionError(EngineError):
    """Out-of-bounds or degenerate region."""
    kind = "RegionError"


class ResourceError(EngineError):
    """Image too large or allocation failure."""
    kind = "ResourceError"
    recoverable = True


class EngineTimeoutError(EngineError):
    """Caller-imposed deadline exceeded."""
    kind = "TimeoutError"
    recoverable = True


class ChannelError(EngineError):
    """Communication with the isolated worker failed."""
    kind = "ChannelError"
    recoverable = True


class InternalAlgorithmError(EngineError):
    """An algorithm invariant was violated (e.g. NaN confidence)."""
    kind = "InternalAlgorithmError"


class RunCancelledError(EngineError):
    """The run was cancelled at a band boundary."""
    kind = "CancelledError"


class EngineBusyError(EngineError):
    """A run is already active for this buffer."""
    kind = "BusyError"
    recoverable = True


_ERROR_KINDS: dict[str, type[EngineError]] = {
    cls.kind: cls
    for cls in (
        EngineError,
        InputError,
        RegionError,
        ResourceError,
        EngineTimeoutError,
        ChannelError,
        InternalAlgorithmError,
        RunCancelledError,
        EngineBusyError,
    )
}


def error_from_kind(kind: str | None, message: str) -> EngineError:
    """
    Rebuild an engine exception from its wire name.

    Unknown kinds become a plain EngineError so nothing is silently dropped.
    """
    cls = _ERROR_KINDS.get(kind or "", EngineError)
    return cls(message)
