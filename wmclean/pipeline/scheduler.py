"""
Execution Scheduler

Splits the image into row bands and runs the pass controller on each band
in increasing row order, reporting progress after every band.

Two interchangeable strategies:
- CooperativeScheduler runs on the caller's thread and yields between bands
- DelegatedScheduler runs the same loop in an isolated child process and
  talks to it only through protocol messages

Both produce identical output for identical input; they differ only in
where the work happens. Cancellation and deadlines are honored at band
boundaries, never mid-band, and a failed run never returns pixels.
"""

import asyncio
import logging
import math
import multiprocessing as mp
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

import numpy as np

from ..buffer import PixelBuffer
from ..errors import (
    ChannelError,
    EngineError,
    EngineTimeoutError,
    InputError,
    ResourceError,
    RunCancelledError,
    error_from_kind,
)
from ..protocol import (
    BufferPayload,
    CompletedMessage,
    ErrorMessage,
    ProcessRequest,
    ProfilePayload,
    ProgressMessage,
    RegionPayload,
    RunOptions,
    encode_message,
    parse_message,
)
from .passes import PassController, PassReport
from .profiles import PROFILES, AlgorithmProfile
from .region import NormalizedRegion, RegionResolver

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class CancelToken:
    """Cooperative cancellation flag, checked at band boundaries."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class RunPlan:
    """Inputs that, together with the pixels, fully determine the output."""
    profile: AlgorithmProfile
    region: Optional[NormalizedRegion] = None
    band_count: int = 20
    noise_amplitude: float = 0.0
    noise_seed: Optional[int] = None

    def __post_init__(self):
        if self.band_count < 1:
            raise InputError(f"band_count must be >= 1, got {self.band_count}")
        if self.noise_amplitude < 0:
            raise InputError(f"noise_amplitude must be >= 0, got {self.noise_amplitude}")
        # Unseeded noise would make identical runs differ
        if self.noise_amplitude > 0 and self.noise_seed is None:
            raise InputError("noise_amplitude > 0 requires a noise_seed")

    def to_options(self) -> RunOptions:
        # Built-in profiles travel by name, custom ones in full
        if PROFILES.get(self.profile.name) == self.profile:
            profile = self.profile.name
        else:
            profile = ProfilePayload.from_profile(self.profile)
        return RunOptions(
            profile=profile,
            region=RegionPayload.from_region(self.region) if self.region else None,
            band_count=self.band_count,
            noise_amplitude=self.noise_amplitude,
            noise_seed=self.noise_seed,
        )

    @classmethod
    def from_options(cls, options: RunOptions) -> "RunPlan":
        return cls(
            profile=options.resolve_profile(),
            region=options.resolve_region(),
            band_count=options.band_count,
            noise_amplitude=options.noise_amplitude,
            noise_seed=options.noise_seed,
        )


@dataclass
class BandResult:
    """Outcome of one band."""
    index: int
    row_start: int
    row_end: int
    progress: int
    reports: list[PassReport]

    @property
    def changed(self) -> int:
        return sum(r.changed for r in self.reports)


@dataclass
class RunResult:
    """Repaired buffer plus run diagnostics."""
    buffer: PixelBuffer
    strategy: str
    changed_pixels: int = 0
    bands: list[BandResult] = field(default_factory=list)


def band_bounds(height: int, band_count: int) -> list[tuple[int, int]]:
    """Row ranges [start, end) covering the image in at most band_count bands."""
    chunk = max(1, math.ceil(height / max(1, band_count)))
    return [(start, min(height, start + chunk)) for start in range(0, height, chunk)]


def iter_bands(pixels: np.ndarray, plan: RunPlan) -> Iterator[BandResult]:
    """
    Process the image band by band, in place.

    Yields after each band so the caller can report progress, check for
    cancellation or hand control back to its own scheduler.
    """
    height, width = pixels.shape[:2]
    mask = RegionResolver().resolve(width, height, plan.region, plan.profile)

    rng = None
    if plan.noise_amplitude > 0:
        rng = np.random.default_rng(plan.noise_seed)
    controller = PassController(plan.profile, rng=rng, noise_amplitude=plan.noise_amplitude)

    for index, (start, end) in enumerate(band_bounds(height, plan.band_count)):
        reports = controller.run_band(pixels, mask, start, end)
        yield BandResult(
            index=index,
            row_start=start,
            row_end=end,
            progress=end * 100 // height,
            reports=reports,
        )


class ExecutionScheduler(ABC):
    """Runs a plan over a buffer and returns a new buffer."""

    name = "scheduler"

    @abstractmethod
    def run(
        self,
        buffer: PixelBuffer,
        plan: RunPlan,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        deadline: Optional[float] = None,
    ) -> RunResult:
        """
        Process a buffer.

        Args:
            buffer: Input pixels, never modified
            plan: Profile, region and band settings
            on_progress: Called with 0-100 after each band
            cancel: Optional token checked between bands
            deadline: Optional time.monotonic() value after which the run aborts

        Returns:
            RunResult holding the repaired buffer
        """

    @staticmethod
    def _checkpoint(cancel: Optional[CancelToken], deadline: Optional[float]):
        if cancel is not None and cancel.cancelled:
            raise RunCancelledError("Run cancelled")
        if deadline is not None and time.monotonic() >= deadline:
            raise EngineTimeoutError("Run exceeded its deadline")


class CooperativeScheduler(ExecutionScheduler):
    """Runs on the caller's thread, yielding between bands."""

    name = "cooperative"

    def __init__(self, yield_between_bands: bool = True):
        self.yield_between_bands = yield_between_bands

    def run(
        self,
        buffer: PixelBuffer,
        plan: RunPlan,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        deadline: Optional[float] = None,
    ) -> RunResult:
        self._checkpoint(cancel, deadline)
        pixels = buffer.to_array()
        bands = []

        try:
            for band in iter_bands(pixels, plan):
                bands.append(band)
                if on_progress is not None:
                    on_progress(band.progress)
                if self.yield_between_bands:
                    time.sleep(0)
                self._checkpoint(cancel, deadline)
        except MemoryError as e:
            raise ResourceError(f"Out of memory processing {buffer.width}x{buffer.height} image") from e

        return RunResult(
            buffer=PixelBuffer.from_array(pixels),
            strategy=self.name,
            changed_pixels=sum(b.changed for b in bands),
            bands=bands,
        )

    async def run_async(
        self,
        buffer: PixelBuffer,
        plan: RunPlan,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        deadline: Optional[float] = None,
    ) -> RunResult:
        """Same as run(), but hands control to the event loop between bands."""
        self._checkpoint(cancel, deadline)
        pixels = buffer.to_array()
        bands = []

        try:
            for band in iter_bands(pixels, plan):
                bands.append(band)
                if on_progress is not None:
                    on_progress(band.progress)
                await asyncio.sleep(0)
                self._checkpoint(cancel, deadline)
        except MemoryError as e:
            raise ResourceError(f"Out of memory processing {buffer.width}x{buffer.height} image") from e

        return RunResult(
            buffer=PixelBuffer.from_array(pixels),
            strategy=self.name,
            changed_pixels=sum(b.changed for b in bands),
            bands=bands,
        )


class DelegatedScheduler(ExecutionScheduler):
    """
    Runs the band loop in a child process.

    The child shares no memory with the host: it receives one ``process``
    request over a pipe and answers with progress messages followed by
    exactly one ``completed`` or ``error`` message. Any transport failure
    surfaces as ChannelError.

    Args:
        start_method: multiprocessing start method
        poll_interval: Seconds between cancellation/deadline checks while waiting
        target: Child entry point taking the child end of the pipe; defaults
            to ``isolated.serve``
    """

    name = "delegated"

    def __init__(self, start_method: str = "spawn", poll_interval: float = 0.05, target=None):
        self.start_method = start_method
        self.poll_interval = poll_interval
        self.target = target

    def run(
        self,
        buffer: PixelBuffer,
        plan: RunPlan,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        deadline: Optional[float] = None,
    ) -> RunResult:
        target = self.target
        if target is None:
            from .isolated import serve as target

        self._checkpoint(cancel, deadline)
        payload = encode_message(
            ProcessRequest(buffer=BufferPayload.from_buffer(buffer), options=plan.to_options())
        )

        try:
            ctx = mp.get_context(self.start_method)
            parent_conn, child_conn = ctx.Pipe()
            process = ctx.Process(target=target, args=(child_conn,), daemon=True)
            process.start()
        except (OSError, ValueError, RuntimeError) as e:
            raise ChannelError(f"Failed to start worker process: {e}") from e
        child_conn.close()
        logger.debug(f"Started worker process pid={process.pid}")

        # Large requests block until the child reads them, so they are sent
        # from a helper thread while this one keeps watching the deadline
        send_errors: list[BaseException] = []
        sender = threading.Thread(
            target=self._send,
            args=(parent_conn, payload, send_errors),
            name="wmclean-send",
            daemon=True,
        )
        sender.start()

        try:
            while True:
                message = self._receive(parent_conn, process, send_errors, cancel, deadline)

                if isinstance(message, ProgressMessage):
                    if on_progress is not None:
                        on_progress(message.progress)
                elif isinstance(message, CompletedMessage):
                    result = message.result.to_buffer()
                    if (result.width, result.height) != (buffer.width, buffer.height):
                        raise ChannelError(
                            f"Worker returned {result.width}x{result.height}, "
                            f"expected {buffer.width}x{buffer.height}"
                        )
                    return RunResult(
                        buffer=result,
                        strategy=self.name,
                        changed_pixels=message.changed_pixels,
                    )
                elif isinstance(message, ErrorMessage):
                    raise error_from_kind(message.kind, message.error)
                else:
                    raise ChannelError(f"Unexpected message from worker: {message.type}")
        except EngineError:
            raise
        except MemoryError as e:
            raise ResourceError("Out of memory decoding worker result") from e
        finally:
            self._stop(process)
            parent_conn.close()
            sender.join(timeout=1.0)

    @staticmethod
    def _send(conn, payload: bytes, errors: list):
        try:
            conn.send_bytes(payload)
        except (OSError, EOFError, ValueError) as e:
            errors.append(e)

    def _receive(
        self,
        conn,
        process,
        send_errors: list,
        cancel: Optional[CancelToken],
        deadline: Optional[float],
    ):
        """Wait for the next message, watching cancellation and the deadline."""
        while True:
            self._checkpoint(cancel, deadline)
            if send_errors:
                raise ChannelError(f"Failed to send request to worker: {send_errors[0]}")

            wait = self.poll_interval
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))

            try:
                if conn.poll(wait):
                    return parse_message(conn.recv_bytes())
                if not process.is_alive() and not conn.poll():
                    raise ChannelError(f"Worker exited unexpectedly with code {process.exitcode}")
            except (EOFError, OSError) as e:
                raise ChannelError(f"Worker channel closed: {e}") from e

    @staticmethod
    def _stop(process):
        if process.is_alive():
            process.terminate()
            process.join(timeout=1.0)
            if process.is_alive():
                process.kill()
        process.join(timeout=1.0)
