"""Tests for the ring-sampling inpainter."""

import dataclasses
import logging

import numpy as np

from wmclean.pipeline.inpainter import Inpainter, ring_offsets
from wmclean.pipeline.profiles import PROFILES, FallbackPolicy

GRAY = (128, 128, 128, 255)


def _gray_with_hole(size=9):
    image = np.zeros((size, size, 4), dtype=np.uint8)
    image[:] = GRAY
    center = size // 2
    image[center, center] = (0, 0, 0, 255)
    blocked = np.zeros((size, size), dtype=bool)
    blocked[center, center] = True
    return image, blocked, center


def test_ring_offsets_skip_center_and_duplicates():
    offsets = ring_offsets(3, 3, 16)
    assert (0, 0) not in offsets
    assert len(set(offsets)) == len(offsets)
    # First ring has radius 1, so it starts with the right-hand neighbor
    assert offsets[0] == (0, 1)
    assert max(abs(dy) for dy, _ in offsets) == 3


def test_texture_map_is_one_on_flat_color():
    image, _, _ = _gray_with_hole()
    texture = Inpainter.texture_map(image)
    assert texture[0, 0] == 1.0
    # Neighbors of the hole see a 384 channel difference
    assert texture[3, 3] < 1.0


def test_repair_blends_toward_surrounding_color():
    image, blocked, c = _gray_with_hole()
    inpainter = Inpainter(PROFILES["enhanced"])

    result = inpainter.repair(image, blocked, np.array([c]), np.array([c]), np.array([0.7]), 0.98)

    assert result.sampled.tolist() == [True]
    # 0 * 0.02 + 128 * 0.98 = 125.44
    assert result.colors[0].tolist() == [125, 125, 125, 255]


def test_full_blend_reaches_sample_color():
    image, blocked, c = _gray_with_hole()
    inpainter = Inpainter(PROFILES["enhanced"])

    result = inpainter.repair(image, blocked, np.array([c]), np.array([c]), np.array([0.98]), 1.0)

    assert result.colors[0].tolist() == list(GRAY)


def test_no_samples_keeps_original_by_default():
    image, _, c = _gray_with_hole()
    blocked = np.ones(image.shape[:2], dtype=bool)
    inpainter = Inpainter(PROFILES["enhanced"])

    result = inpainter.repair(image, blocked, np.array([c]), np.array([c]), np.array([1.0]), 0.98)

    assert result.sampled.tolist() == [False]
    assert result.colors[0].tolist() == [0, 0, 0, 255]


def test_no_samples_can_fall_back_to_neutral_gray():
    image, _, c = _gray_with_hole()
    blocked = np.ones(image.shape[:2], dtype=bool)
    profile = dataclasses.replace(PROFILES["enhanced"], fallback=FallbackPolicy.NEUTRAL_GRAY)

    result = Inpainter(profile).repair(image, blocked, np.array([c]), np.array([c]), np.array([1.0]), 0.98)

    assert result.sampled.tolist() == [False]
    assert result.colors[0].tolist() == [125, 125, 125, 255]


def test_samples_are_capped_and_strongest_first():
    image, blocked, c = _gray_with_hole(size=25)
    profile = PROFILES["conservative"]

    samples = Inpainter(profile).samples_for(image, blocked, c, c)

    assert 0 < len(samples) <= profile.sample_limit
    weights = [s.weight for s in samples]
    assert weights == sorted(weights, reverse=True)
    assert all(s.color == GRAY for s in samples)


def test_blocked_pixels_are_never_sampled():
    image, blocked, c = _gray_with_hole(size=25)
    image[c, c + 3] = (255, 0, 0, 255)
    blocked[c, c + 3] = True

    samples = Inpainter(PROFILES["enhanced"]).samples_for(image, blocked, c, c)

    assert all(s.color != (255, 0, 0, 255) for s in samples)


def test_seeded_noise_is_reproducible():
    image, blocked, c = _gray_with_hole(size=15)
    ys = np.array([c, c, c])
    xs = np.array([c, c, c])
    conf = np.full(3, 0.9)

    def repaired(seed):
        inpainter = Inpainter(PROFILES["enhanced"], rng=np.random.default_rng(seed), noise_amplitude=10.0)
        return inpainter.repair(image, blocked, ys, xs, conf, 1.0).colors

    plain = Inpainter(PROFILES["enhanced"]).repair(image, blocked, ys, xs, conf, 1.0).colors

    assert np.array_equal(repaired(5), repaired(5))
    assert not np.array_equal(repaired(5), plain)
    # Noise only touches color channels
    assert (repaired(5)[:, 3] == 255).all()


def test_noise_needs_a_generator():
    inpainter = Inpainter(PROFILES["enhanced"], noise_amplitude=10.0)
    assert inpainter.noise_amplitude == 0.0


def test_repair_logs_unsampled_pixels(caplog):
    image, _, c = _gray_with_hole()
    blocked = np.ones(image.shape[:2], dtype=bool)
    inpainter = Inpainter(PROFILES["enhanced"])

    with caplog.at_level(logging.DEBUG, logger="wmclean.pipeline.inpainter"):
        inpainter.repair(image, blocked, np.array([c]), np.array([c]), np.array([1.0]), 0.98)

    assert "Repaired 1 pixels, 1 without samples" in caplog.text
