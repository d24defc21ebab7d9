"""End-to-end tests for WatermarkEngine."""

import dataclasses
import multiprocessing as mp

import numpy as np
import pytest

from wmclean.buffer import PixelBuffer
from wmclean.config import Settings
from wmclean.engine import BatchItem, MonotonicProgress, WatermarkEngine
from wmclean.errors import (
    ChannelError,
    EngineBusyError,
    EngineTimeoutError,
    InputError,
    RegionError,
    ResourceError,
    RunCancelledError,
)
from wmclean.pipeline.profiles import PROFILES
from wmclean.pipeline.region import NormalizedRegion
from wmclean.pipeline.scheduler import (
    CancelToken,
    CooperativeScheduler,
    DelegatedScheduler,
    ExecutionScheduler,
    RunPlan,
)

needs_fork = pytest.mark.skipif(
    "fork" not in mp.get_all_start_methods(),
    reason="worker stand-ins are plain test functions and need the fork start method",
)


def _exit_without_answer(conn):
    conn.close()


def _engine(**overrides):
    settings = Settings(execution_mode="cooperative", timeout_seconds=0, **overrides)
    return WatermarkEngine(settings)


def _solid(h, w, color):
    image = np.zeros((h, w, 4), dtype=np.uint8)
    image[:] = color
    return image


def _random_buffer(size=40, seed=11):
    rng = np.random.default_rng(seed)
    image = rng.integers(0, 256, size=(size, size, 4), dtype=np.uint8)
    return PixelBuffer.from_array(image)


class FailingScheduler(ExecutionScheduler):
    name = "delegated"

    def __init__(self):
        self.calls = 0

    def run(self, buffer, plan, on_progress=None, cancel=None, deadline=None):
        self.calls += 1
        raise ChannelError("worker crashed")


class ReentrantScheduler(CooperativeScheduler):
    """Tries to start a second run on the same buffer mid-run."""

    def __init__(self):
        super().__init__()
        self.engine = None
        self.error = None

    def run(self, buffer, plan, on_progress=None, cancel=None, deadline=None):
        try:
            self.engine.run_plan(buffer, plan)
        except EngineBusyError as e:
            self.error = e
        return super().run(buffer, plan, on_progress=on_progress, cancel=cancel, deadline=deadline)


def test_uniform_image_is_unchanged():
    buffer = PixelBuffer.from_array(_solid(4, 4, (120, 80, 60, 255)))
    result = _engine().run_detailed(buffer)

    assert result.buffer == buffer
    assert result.changed_pixels == 0


def test_transparent_corner_block_is_filled():
    image = _solid(10, 10, (128, 128, 128, 255))
    image[0:2, 0:2] = (0, 0, 0, 0)
    profile = dataclasses.replace(PROFILES["enhanced"], pass_count=1)

    output = _engine().run(PixelBuffer.from_array(image), profile=profile).to_array()

    assert (output[0:2, 0:2, 3] > 0).all()


def test_region_exact_touches_only_the_region():
    image = _solid(50, 50, (128, 128, 128, 255))
    image[5:15, 5:15] = (250, 250, 250, 255)
    buffer = PixelBuffer.from_array(image)

    output = _engine().run(
        buffer,
        region=NormalizedRegion(0.1, 0.1, 0.2, 0.2),
        profile="region-exact",
    ).to_array()

    changed = (output != image).any(axis=-1)
    inside = np.zeros_like(changed)
    inside[5:15, 5:15] = True
    assert not changed[~inside].any()
    assert changed[inside].all()


def test_exact_region_contains_every_write():
    buffer = _random_buffer(size=100)
    before = buffer.to_array()

    after = _engine().run(
        buffer,
        region={"x": 0.5, "y": 0.5, "w": 0.2, "h": 0.2},
        profile="region-exact",
    ).to_array()

    outside = np.ones((100, 100), dtype=bool)
    outside[50:70, 50:70] = False
    assert np.array_equal(after[outside], before[outside])
    assert np.array_equal(after[0, 0], before[0, 0])


def test_runs_are_deterministic():
    buffer = _random_buffer()
    engine = _engine()

    first = engine.run(buffer, profile="aggressive")
    second = engine.run(buffer, profile="aggressive")

    assert first == second


def test_seeded_noise_is_deterministic():
    buffer = _random_buffer()
    engine = _engine(noise_amplitude=5.0, noise_seed=42)

    assert engine.run(buffer) == engine.run(buffer)


def test_later_passes_change_no_more_pixels():
    image = _solid(40, 40, (128, 128, 128, 255))
    image[33:37, 32:38] = (255, 255, 255, 200)
    plan = RunPlan(profile=PROFILES["conservative"], band_count=1)

    result = CooperativeScheduler().run(PixelBuffer.from_array(image), plan)
    reports = result.bands[0].reports

    assert len(reports) == 2
    assert reports[0].changed > 0
    assert reports[1].changed <= reports[0].changed


def test_progress_ends_at_exactly_100():
    seen = []
    _engine().run(_random_buffer(size=30), on_progress=seen.append)

    assert seen == sorted(seen)
    assert seen[-1] == 100
    assert seen.count(100) == 1
    assert all(0 <= p <= 100 for p in seen)


def test_monotonic_progress_drops_regressions():
    seen = []
    progress = MonotonicProgress(seen.append)
    for value in (10, 5, 30, 30, 150):
        progress(value)
    progress.finish()

    assert seen == [10, 30, 30, 100]


def test_invalid_buffers_are_rejected():
    with pytest.raises(InputError):
        PixelBuffer(width=2, height=2, data=b"\x00" * 3)
    with pytest.raises(InputError):
        PixelBuffer(width=0, height=2, data=b"")
    with pytest.raises(InputError):
        _engine().run(b"\x00" * 16)


def test_oversized_image_is_a_resource_error():
    buffer = PixelBuffer.from_array(_solid(4, 4, (0, 0, 0, 255)))
    with pytest.raises(ResourceError):
        _engine(max_pixels=10).run(buffer)
    with pytest.raises(ResourceError):
        _engine(max_dimension=3).run(buffer)


def test_region_errors_surface_before_processing():
    buffer = PixelBuffer.from_array(_solid(10, 10, (0, 0, 0, 255)))
    engine = _engine()

    with pytest.raises(RegionError):
        engine.run(buffer, region=NormalizedRegion(0.5, 0.5, 0.01, 0.01))
    with pytest.raises(RegionError):
        engine.run(buffer, profile="region-exact")
    with pytest.raises(InputError):
        engine.run(buffer, profile="unknown")


def test_cancelled_run_returns_nothing():
    token = CancelToken()
    token.cancel()
    with pytest.raises(RunCancelledError):
        _engine().run(_random_buffer(), cancel=token)


def test_timeout_aborts_run():
    with pytest.raises(EngineTimeoutError):
        _engine().run(_random_buffer(), timeout=1e-9)


def test_channel_failure_falls_back_to_cooperative():
    failing = FailingScheduler()
    engine = WatermarkEngine(Settings(timeout_seconds=0), scheduler=failing)
    buffer = _random_buffer(size=20)

    result = engine.run_detailed(buffer)

    assert failing.calls == 1
    assert result.strategy == "cooperative"
    assert result.buffer == _engine().run(buffer)


def test_concurrent_run_on_same_buffer_is_busy():
    scheduler = ReentrantScheduler()
    engine = WatermarkEngine(Settings(timeout_seconds=0), scheduler=scheduler)
    scheduler.engine = engine
    buffer = _random_buffer(size=10)

    engine.run(buffer)

    assert isinstance(scheduler.error, EngineBusyError)
    # The slot is released once the run finishes
    engine.run(buffer)


def test_noise_without_seed_is_rejected():
    buffer = _random_buffer(size=10)

    with pytest.raises(InputError):
        _engine(noise_amplitude=5.0).run(buffer)
    with pytest.raises(InputError):
        RunPlan(profile=PROFILES["enhanced"], noise_amplitude=5.0)


def test_seeded_noise_matches_across_engines():
    image = _solid(40, 40, (128, 128, 128, 255))
    image[2:6, 2:6] = (255, 255, 255, 255)
    buffer = PixelBuffer.from_array(image)

    outputs = [_engine(noise_amplitude=5.0, noise_seed=3).run(buffer) for _ in range(3)]

    assert outputs[0] == outputs[1] == outputs[2]


def test_batch_isolates_failing_items():
    good = PixelBuffer.from_array(_solid(10, 10, (128, 128, 128, 255)))
    marked = _solid(20, 20, (128, 128, 128, 255))
    marked[2:6, 2:6] = (250, 250, 250, 255)
    items = [
        BatchItem(buffer=PixelBuffer.from_array(marked), region=NormalizedRegion(0.1, 0.1, 0.2, 0.2), name="marked"),
        BatchItem(buffer=b"\x00" * 7, name="broken"),
        BatchItem(buffer=good, region=NormalizedRegion(0.5, 0.5, 0.01, 0.01), name="tiny-region"),
        good,
    ]
    seen = []

    results = _engine().run_batch(items, profile="region-exact", on_progress=lambda i, p: seen.append((i, p)))

    assert [r.ok for r in results] == [True, False, False, False]
    assert isinstance(results[1].error, InputError)
    assert isinstance(results[2].error, RegionError)
    # An exact profile needs a region for every item
    assert isinstance(results[3].error, RegionError)
    assert results[0].result.changed_pixels > 0
    assert [r.name for r in results] == ["marked", "broken", "tiny-region", "#4"]
    assert (0, 100) in seen
    assert {i for i, _ in seen} == {0}


def test_batch_runs_every_item():
    buffers = [_random_buffer(size=12, seed=s) for s in range(3)]
    results = _engine().run_batch(buffers)

    assert all(r.ok for r in results)
    assert [r.result.buffer for r in results] == [_engine().run(b) for b in buffers]


def test_cancelled_batch_fails_remaining_items():
    token = CancelToken()
    token.cancel()
    results = _engine().run_batch([_random_buffer(size=8), _random_buffer(size=8)], cancel=token)

    assert all(isinstance(r.error, RunCancelledError) for r in results)


@needs_fork
def test_worker_crash_falls_back_to_cooperative():
    scheduler = DelegatedScheduler(start_method="fork", target=_exit_without_answer)
    engine = WatermarkEngine(Settings(timeout_seconds=0), scheduler=scheduler)
    buffer = _random_buffer(size=20)

    result = engine.run_detailed(buffer)

    assert result.strategy == "cooperative"
    assert result.buffer == _engine().run(buffer)
    assert mp.active_children() == []
