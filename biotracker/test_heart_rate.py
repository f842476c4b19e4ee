"""Tests for heart_rate.py: rPPG analysis on synthetic signals."""

import math

import numpy as np

from biotracker.heart_rate import (
    HeartRateExtractor,
    estimate_bpm,
    gaussian_smooth,
    history_confidence,
    roi_color_sample,
    weighted_average,
)
from biotracker.landmarks import FaceBox
from biotracker.models import HeartRateReading

SAMPLE_MS = 50  # 20 Hz camera


def pulse(t_ms, bpm=72.0, base=120.0, amp=2.0):
    return base + amp * math.sin(2 * math.pi * (bpm / 60.0) * t_ms / 1000.0)


def test_synthetic_72_bpm_is_recovered():
    hr = HeartRateExtractor(process_interval_ms=500)
    readings = []
    for i in range(400):  # 20 s
        t = i * SAMPLE_MS
        hr.add_sample(100.0, pulse(t), 100.0, t)
        if t % 500 == 0:
            reading = hr.process(t)
            if reading is not None:
                readings.append(reading)

    assert readings
    last = readings[-1]
    assert abs(last.bpm - 72) <= 5
    assert last.confidence > 0.7
    assert hr.last_known() == last


def test_window_is_trimmed_to_fifteen_seconds():
    hr = HeartRateExtractor()
    for i in range(400):
        hr.add_sample(1.0, 1.0, 1.0, i * SAMPLE_MS)
    times = [s[3] for s in hr.buffer.samples]
    assert times[-1] - times[0] <= 15_000


def test_too_few_samples_returns_none():
    hr = HeartRateExtractor()
    for t in (0, 50, 100):
        hr.add_sample(100.0, pulse(t), 100.0, t)
    assert hr.process(100) is None


def test_flat_buffer_returns_none():
    hr = HeartRateExtractor()
    for i in range(200):
        hr.add_sample(100.0, 120.0, 90.0, i * SAMPLE_MS)
    assert hr.process(200 * SAMPLE_MS) is None


def test_analysis_is_rate_limited():
    hr = HeartRateExtractor(process_interval_ms=1000)
    for i in range(100):
        hr.add_sample(100.0, 120.0, 90.0, i * SAMPLE_MS)
    hr.process(5000)
    assert not hr.due(5500)
    assert hr.process(5500) is None
    assert hr.due(6000)


def test_non_finite_samples_are_ignored():
    hr = HeartRateExtractor()
    hr.add_sample(float("nan"), 1.0, 1.0, 0)
    hr.add_sample(1.0, float("inf"), 1.0, 50)
    assert len(hr.buffer.samples) == 0


def test_implausible_rate_is_rejected():
    t = np.arange(300) * SAMPLE_MS
    slow = [pulse(x, bpm=18) for x in t]
    assert estimate_bpm(slow, t) is None


def test_stale_reading_halves_confidence():
    hr = HeartRateExtractor()
    assert hr.stale_reading(0) is None
    hr.buffer.last_reading = HeartRateReading(bpm=70, confidence=0.8, timestamp=0)
    stale = hr.stale_reading(1000)
    assert stale.bpm == 70
    assert math.isclose(stale.confidence, 0.4)
    assert stale.timestamp == 1000


def test_weighted_average_favours_newest():
    assert weighted_average([60, 90]) == 80
    assert weighted_average([]) == 0.0


def test_history_confidence():
    assert history_confidence([72]) == 0.5
    assert history_confidence([72, 72, 72]) == 1.0
    assert history_confidence([40, 120]) == 0.0


def test_gaussian_smooth_keeps_constant_signal():
    out = gaussian_smooth([5.0] * 10)
    assert np.allclose(out, 5.0)
    assert gaussian_smooth([1.0, 2.0]).shape == (2,)


def test_roi_sampling_reads_rgb_from_bgr_frame():
    frame = np.zeros((480, 640, 3), dtype=np.uint8)
    frame[:, :] = (50, 100, 150)  # B, G, R
    r, g, b = roi_color_sample(frame, FaceBox(100, 100, 200, 200))
    assert (round(r), round(g), round(b)) == (150, 100, 50)


def test_roi_outside_frame_gives_no_sample():
    frame = np.full((100, 100, 3), 120, dtype=np.uint8)
    assert roi_color_sample(frame, FaceBox(500, 500, 50, 50)) is None


def test_dark_frames_are_skipped():
    hr = HeartRateExtractor()
    dark = np.full((100, 100, 3), 10, dtype=np.uint8)
    bright = np.full((100, 100, 3), 120, dtype=np.uint8)
    box = FaceBox(10, 10, 80, 80)
    assert hr.sample_frame(dark, box, 0) is False
    assert hr.sample_frame(bright, box, 50) is True
    assert len(hr.buffer.samples) == 1
