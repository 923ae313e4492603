"""
Unit Tests for Synthetic Data Generation
========================================
"""

import numpy as np

from erp_pipeline.fake_data import (DEFAULT_CHANNELS, erp_waveform, synthesize_classifications,
                                    synthesize_recording)


class TestSynthesizeRecording:
    """Tests for the synthetic GO/NOGO recording."""

    def test_shape_and_markers(self):
        recording = synthesize_recording(n_trials=10, srate=250.0)

        assert recording.labels == list(DEFAULT_CHANNELS)
        assert recording.n_samples == int((1 + 10 * 2 + 1) * 250)
        stimuli = [ev for ev in recording.events if ev.type in ("Go-2", "NG-2")]
        assert len(stimuli) == 10
        assert stimuli[0].latency == 250

    def test_responses_follow_go(self):
        recording = synthesize_recording(n_trials=20)
        events = recording.events

        for i, ev in enumerate(events):
            if ev.type == "RESP":
                assert events[i - 1].type == "Go-2"
                rt_ms = (ev.latency - events[i - 1].latency) * 1000.0 / recording.srate
                assert 240.0 <= rt_ms <= 610.0

    def test_reference_flat_and_noisy_channels(self):
        recording = synthesize_recording(n_trials=10, noisy_channels=("E3",), noise_uv=40.0)

        assert np.all(recording.data[recording.channel_index("VREF")] == 0)
        assert np.std(recording.data[recording.channel_index("E3")]) > 30.0

    def test_reproducible(self):
        first = synthesize_recording(n_trials=5, seed=1)
        second = synthesize_recording(n_trials=5, seed=1)
        np.testing.assert_array_equal(first.data, second.data)
        assert first.events == second.events


def test_erp_waveform_peaks():
    times = np.arange(0, 1000, 4.0)
    waveform = erp_waveform(times)

    assert abs(times[np.argmax(waveform)] - 350.0) <= 8.0
    assert 200.0 <= times[np.argmin(waveform)] <= 260.0
    assert np.min(waveform) < 0


def test_classifications_normalised():
    probabilities = synthesize_classifications(5, {3: 2})

    np.testing.assert_allclose(probabilities.sum(axis=1), 1.0)
    assert np.argmax(probabilities[3]) == 2
    assert np.all(np.argmax(probabilities[[0, 1, 2, 4]], axis=1) == 0)
