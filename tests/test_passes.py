"""Tests for the multi-pass band controller."""

import numpy as np
import pytest

from wmclean.errors import InputError
from wmclean.pipeline.passes import PassController, PassState, pass_schedule
from wmclean.pipeline.profiles import PROFILES, AlgorithmProfile, get_profile
from wmclean.pipeline.region import NormalizedRegion, RegionResolver


def _white_block_image():
    image = np.zeros((50, 50, 4), dtype=np.uint8)
    image[:] = (128, 128, 128, 255)
    image[5:15, 5:15] = (240, 240, 240, 255)
    return image


def test_schedule_lowers_threshold_and_raises_blend():
    schedule = pass_schedule(PROFILES["enhanced"])

    assert [p.threshold for p in schedule] == pytest.approx([0.2, 0.15, 0.1])
    assert [p.blend_cap for p in schedule] == pytest.approx([0.98, 1.0, 1.0])
    assert schedule[1].cutoffs.contrast_cutoff < schedule[0].cutoffs.contrast_cutoff


def test_schedule_threshold_has_a_floor():
    schedule = pass_schedule(PROFILES["aggressive"])
    assert len(schedule) == 5
    assert schedule[-1].threshold == pytest.approx(0.05)


def test_profile_lookup_and_validation():
    assert get_profile("Region_Exact").name == "region-exact"
    assert get_profile("nope", strict=False).name == "enhanced"
    with pytest.raises(InputError):
        get_profile("nope")
    with pytest.raises(InputError):
        AlgorithmProfile(
            name="bad",
            threshold_base=1.5,
            blend_max=0.9,
            sample_radius=8,
            pass_count=2,
            sensitivity_step=0.05,
        )


def test_band_outside_candidates_is_left_alone():
    image = _white_block_image()
    profile = PROFILES["region-exact"]
    mask = RegionResolver().resolve(50, 50, NormalizedRegion(0.1, 0.1, 0.2, 0.2), profile)
    controller = PassController(profile)
    before = image.copy()

    reports = controller.run_band(image, mask, 30, 40)

    assert reports == []
    assert controller.state is PassState.DONE
    assert np.array_equal(image, before)


def test_region_exact_repairs_only_inside_region():
    image = _white_block_image()
    profile = PROFILES["region-exact"]
    mask = RegionResolver().resolve(50, 50, NormalizedRegion(0.1, 0.1, 0.2, 0.2), profile)
    before = image.copy()

    reports = PassController(profile).run_band(image, mask, 0, 50)

    changed = (image != before).any(axis=-1)
    expected = np.zeros((50, 50), dtype=bool)
    expected[5:15, 5:15] = True
    assert np.array_equal(changed, expected)
    assert reports[0].flagged == 100
    assert reports[0].changed == 100
    block = image[5:15, 5:15]
    assert (block[..., :3] >= 127).all() and (block[..., :3] <= 131).all()
    assert (block[..., 3] == 255).all()


def test_clean_region_stops_after_first_pass():
    image = np.zeros((20, 20, 4), dtype=np.uint8)
    image[:] = (90, 140, 60, 255)
    profile = PROFILES["region-exact"]
    mask = RegionResolver().resolve(20, 20, NormalizedRegion(0.25, 0.25, 0.5, 0.5), profile)
    before = image.copy()

    reports = PassController(profile).run_band(image, mask, 0, 20)

    assert len(reports) == 1
    assert reports[0].flagged == 100
    assert reports[0].changed == 0
    assert np.array_equal(image, before)


def test_writes_stay_inside_the_band():
    image = _white_block_image()
    profile = PROFILES["region-exact"]
    mask = RegionResolver().resolve(50, 50, NormalizedRegion(0.1, 0.1, 0.2, 0.2), profile)
    before = image.copy()

    PassController(profile).run_band(image, mask, 8, 10)

    changed_rows = np.nonzero((image != before).any(axis=(1, 2)))[0]
    assert changed_rows.tolist() == [8, 9]
