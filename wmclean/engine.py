"""
Watermark Engine

Host-facing entry point. Validates input, picks an execution strategy and
returns a repaired copy of the buffer.

    engine = WatermarkEngine()
    cleaned = engine.run(buffer, region=NormalizedRegion(0.7, 0.8, 0.3, 0.2),
                         profile="region-exact", on_progress=print)

    results = engine.run_batch([BatchItem(a, name="a.png"), BatchItem(b, name="b.png")])

Errors never leave a partially repaired buffer behind: the caller's buffer
is not modified, and a new one is returned only when every band finished.
"""

import functools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Union

from .buffer import PixelBuffer
from .config import Settings, get_settings
from .errors import (
    ChannelError,
    EngineBusyError,
    EngineError,
    InputError,
    InternalAlgorithmError,
    ResourceError,
)
from .metrics import (
    channel_fallbacks_total,
    pixels_repaired_total,
    run_duration_seconds,
    runs_total,
)
from .pipeline.profiles import AlgorithmProfile, get_profile
from .pipeline.region import NormalizedRegion, RegionResolver
from .pipeline.scheduler import (
    CancelToken,
    CooperativeScheduler,
    DelegatedScheduler,
    ExecutionScheduler,
    ProgressCallback,
    RunPlan,
    RunResult,
)

logger = logging.getLogger(__name__)

BatchProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class BatchItem:
    """One image of a batch, with its own optional region."""
    buffer: PixelBuffer
    region: Optional[NormalizedRegion] = None
    name: str = ""


@dataclass
class BatchItemResult:
    """Outcome of one batch item: a result or the error that stopped it."""
    index: int
    name: str
    result: Optional[RunResult] = None
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MonotonicProgress:
    """Forwards progress to the host, dropping values that would go backwards."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback
        self.last = -1

    def __call__(self, progress: int):
        progress = max(0, min(100, int(progress)))
        if progress < self.last:
            return
        self.last = progress
        if self.callback is not None:
            self.callback(progress)

    def finish(self):
        if self.last < 100:
            self(100)


class WatermarkEngine:
    """
    Runs detection and repair over pixel buffers.

    Only one run per buffer may be active at a time; a second concurrent run
    on the same buffer object raises EngineBusyError.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        scheduler: Optional[ExecutionScheduler] = None,
    ):
        self.settings = settings or get_settings()
        self._scheduler = scheduler
        self._fallback = CooperativeScheduler()
        self._active: set[int] = set()
        self._lock = threading.Lock()

    @property
    def scheduler(self) -> ExecutionScheduler:
        if self._scheduler is None:
            if self.settings.execution_mode == "cooperative":
                self._scheduler = CooperativeScheduler()
            else:
                self._scheduler = DelegatedScheduler(start_method=self.settings.worker_start_method)
        return self._scheduler

    def resolve_profile(self, profile: Union[str, AlgorithmProfile, None]) -> AlgorithmProfile:
        if profile is None:
            return get_profile(self.settings.default_profile)
        if isinstance(profile, AlgorithmProfile):
            return profile
        return get_profile(profile)

    def validate(self, buffer: PixelBuffer, region: Optional[NormalizedRegion], profile: AlgorithmProfile):
        """Fail fast on bad input before any work starts."""
        if not isinstance(buffer, PixelBuffer):
            raise InputError(f"Expected a PixelBuffer, got {type(buffer).__name__}")
        buffer.validate()

        if buffer.width > self.settings.max_dimension or buffer.height > self.settings.max_dimension:
            raise ResourceError(
                f"Image {buffer.width}x{buffer.height} exceeds max dimension {self.settings.max_dimension}"
            )
        if buffer.pixel_count > self.settings.max_pixels:
            raise ResourceError(
                f"Image has {buffer.pixel_count} pixels, limit is {self.settings.max_pixels}"
            )

        # Resolving up front surfaces RegionError before any band runs
        if region is not None:
            RegionResolver.to_pixel_rect(region, buffer.width, buffer.height)
        elif profile.exact_region:
            RegionResolver().resolve(buffer.width, buffer.height, region, profile)

    def run_detailed(
        self,
        buffer: PixelBuffer,
        region: Optional[NormalizedRegion] = None,
        profile: Union[str, AlgorithmProfile, None] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> RunResult:
        """
        Process a buffer and return it with run diagnostics.

        Args:
            buffer: Decoded RGBA pixels
            region: Optional user-marked watermark region
            profile: Profile name or instance; settings default if None
            on_progress: Receives non-decreasing percentages, 100 on success
            cancel: Optional token checked between bands
            timeout: Seconds before the run aborts; settings default if None, 0 disables

        Returns:
            RunResult with the repaired buffer
        """
        if isinstance(region, dict):
            region = NormalizedRegion.from_dict(region)

        plan = RunPlan(
            profile=self.resolve_profile(profile),
            region=region,
            band_count=self.settings.band_count,
            noise_amplitude=self.settings.noise_amplitude,
            noise_seed=self.settings.noise_seed,
        )
        return self.run_plan(buffer, plan, on_progress=on_progress, cancel=cancel, timeout=timeout)

    def run_plan(
        self,
        buffer: PixelBuffer,
        plan: RunPlan,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> RunResult:
        """Process a buffer with a fully specified plan."""
        active_profile = plan.profile
        self.validate(buffer, plan.region, active_profile)

        if timeout is None:
            timeout = self.settings.timeout_seconds
        deadline = time.monotonic() + timeout if timeout and timeout > 0 else None
        progress = MonotonicProgress(on_progress)

        key = id(buffer)
        with self._lock:
            if key in self._active:
                raise EngineBusyError("A run is already active for this buffer")
            self._active.add(key)

        scheduler = self.scheduler
        started = time.perf_counter()
        try:
            try:
                result = scheduler.run(buffer, plan, on_progress=progress, cancel=cancel, deadline=deadline)
            except ChannelError as e:
                if scheduler is self._fallback:
                    raise
                logger.warning(f"Isolated worker failed ({e}), falling back to cooperative execution")
                channel_fallbacks_total.inc()
                scheduler = self._fallback
                result = scheduler.run(buffer, plan, on_progress=progress, cancel=cancel, deadline=deadline)
        except EngineError as e:
            runs_total.labels(profile=active_profile.name, strategy=scheduler.name, status=e.kind).inc()
            logger.error(f"Run failed on {buffer.width}x{buffer.height} image: {e.kind}: {e}")
            raise
        finally:
            with self._lock:
                self._active.discard(key)

        elapsed = time.perf_counter() - started
        progress.finish()
        runs_total.labels(profile=active_profile.name, strategy=result.strategy, status="completed").inc()
        run_duration_seconds.labels(strategy=result.strategy).observe(elapsed)
        pixels_repaired_total.labels(profile=active_profile.name).inc(result.changed_pixels)
        logger.info(
            f"Processed {buffer.width}x{buffer.height} image with {active_profile.name} "
            f"({result.strategy}) in {elapsed:.2f}s, {result.changed_pixels} pixel updates"
        )
        return result

    def run(
        self,
        buffer: PixelBuffer,
        region: Optional[NormalizedRegion] = None,
        profile: Union[str, AlgorithmProfile, None] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> PixelBuffer:
        """Process a buffer and return the repaired copy. See run_detailed()."""
        return self.run_detailed(
            buffer,
            region=region,
            profile=profile,
            on_progress=on_progress,
            cancel=cancel,
            timeout=timeout,
        ).buffer

    def run_batch(
        self,
        items: Sequence[Union[PixelBuffer, BatchItem]],
        profile: Union[str, AlgorithmProfile, None] = None,
        on_progress: Optional[BatchProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> list[BatchItemResult]:
        """
        Process several buffers one after another.

        A failing item does not stop the batch; its error is recorded and the
        next item runs. Cancelling the token fails every remaining item.

        Args:
            items: Buffers, or BatchItems carrying a per-image region and name
            profile: Profile name or instance shared by every item
            on_progress: Optional callback(index, progress) per item
            cancel: Optional token checked between bands
            timeout: Per-item timeout, as in run_detailed()

        Returns:
            One BatchItemResult per item, in input order
        """
        results = []
        total = len(items)

        for index, item in enumerate(items):
            if not isinstance(item, BatchItem):
                item = BatchItem(buffer=item)
            name = item.name or f"#{index + 1}"
            logger.info(f"Batch item {index + 1}/{total}: {name}")

            item_progress = None
            if on_progress is not None:
                item_progress = functools.partial(on_progress, index)

            try:
                result = self.run_detailed(
                    item.buffer,
                    region=item.region,
                    profile=profile,
                    on_progress=item_progress,
                    cancel=cancel,
                    timeout=timeout,
                )
                results.append(BatchItemResult(index=index, name=name, result=result))
            except EngineError as e:
                logger.error(f"Batch item {name} failed: {e.kind}: {e}")
                results.append(BatchItemResult(index=index, name=name, error=e))
            except Exception as e:
                logger.exception(f"Batch item {name} failed unexpectedly")
                error = InternalAlgorithmError(f"{type(e).__name__}: {e}")
                results.append(BatchItemResult(index=index, name=name, error=error))

        succeeded = sum(1 for r in results if r.ok)
        logger.info(f"Batch finished: {succeeded} succeeded, {total - succeeded} failed")
        return results


_engine: Optional[WatermarkEngine] = None


def get_engine() -> WatermarkEngine:
    """Get or create the engine singleton."""
    global _engine
    if _engine is None:
        _engine = WatermarkEngine()
    return _engine


def run(
    buffer: PixelBuffer,
    region: Optional[NormalizedRegion] = None,
    profile: Union[str, AlgorithmProfile, None] = None,
    on_progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
    timeout: Optional[float] = None,
) -> PixelBuffer:
    """Process a buffer with the shared engine."""
    return get_engine().run(
        buffer,
        region=region,
        profile=profile,
        on_progress=on_progress,
        cancel=cancel,
        timeout=timeout,
    )
