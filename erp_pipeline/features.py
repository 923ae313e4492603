"""
ERP and spectral feature extraction

This module extracts the P3-like positive and N2-like negative deflection
metrics from averaged epochs, using peak-following envelopes to locate the
deflections, and the FFT band power summary of the averaged epochs.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.interpolate import CubicSpline
from scipy.signal import find_peaks

from .config import PipelineConfig
from .data_types import (BandPowerRecord, MetricRecord, PeakMetric, Recording,
                         SubjectMetadata, SubjectMetrics)


def _spline_through(x: np.ndarray, anchors: np.ndarray) -> np.ndarray:
    anchors = np.unique(np.concatenate(([0], anchors, [len(x) - 1])))
    if len(anchors) < 2:
        return x.copy()
    return CubicSpline(anchors, x[anchors])(np.arange(len(x)))


def peak_envelope(x: np.ndarray, distance: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """
    Upper and lower peak envelopes of a signal

    Cubic splines through the local maxima (upper) and local minima (lower),
    with the first and last samples anchoring both curves. With
    ``distance=1`` every local extremum is used, so the envelopes follow the
    signal at single-sample resolution.

    Args:
        x: Signal [samples]
        distance: Minimum number of samples between neighbouring extrema

    Returns:
        Tuple of (upper, lower) envelopes, same length as x
    """
    x = np.asarray(x, dtype=float)
    if len(x) < 3:
        return x.copy(), x.copy()

    maxima, _ = find_peaks(x, distance=distance)
    minima, _ = find_peaks(-x, distance=distance)
    return _spline_through(x, maxima), _spline_through(x, minima)


def time_window_indices(times: np.ndarray, start_ms: float, end_ms: float) -> Tuple[int, int]:
    """Indices of the samples nearest to start_ms and end_ms"""
    times = np.asarray(times)
    return int(np.argmin(np.abs(times - start_ms))), int(np.argmin(np.abs(times - end_ms)))


def averaging_half_width(width_ms: float, srate: float) -> int:
    """Half width in samples of the window averaged around a located peak"""
    return int(round(width_ms * srate / 1000.0))


def _locate(erp: np.ndarray, envelope: np.ndarray, times: np.ndarray, window: Tuple[int, int],
            half_width: int, positive: bool) -> PeakMetric:
    start, end = window
    segment = envelope[start:end + 1]
    offset = int(np.argmax(segment)) if positive else int(np.argmin(segment))
    peak = start + offset

    avg_start = max(peak - half_width, 0)
    avg_end = min(peak + half_width, len(erp) - 1)

    return PeakMetric(
        amplitude=float(np.mean(erp[avg_start:avg_end + 1])),
        window=(avg_start, avg_end),
        search_start=start,
        peak_offset=offset,
        latency_ms=float(times[peak]),
    )


def compute_peak_dip(
    erp: np.ndarray,
    times: np.ndarray,
    srate: float,
    config: PipelineConfig
) -> Tuple[PeakMetric, PeakMetric]:
    """
    Locate the positive and negative deflections of an averaged ERP

    The positive deflection is the maximum of the upper envelope inside
    ``config.positive_window_ms``, the negative deflection the minimum of the
    lower envelope inside ``config.negative_window_ms``. Each amplitude is
    the mean of the raw ERP over +/- ``averaging_width_ms`` around the
    located sample, clipped to the signal bounds.

    Args:
        erp: Averaged signal of one channel [samples]
        times: Time axis in ms [samples]
        srate: Sampling rate in Hz
        config: Pipeline configuration

    Returns:
        Tuple of (positive, negative) PeakMetric
    """
    erp = np.asarray(erp, dtype=float)
    upper, lower = peak_envelope(erp)
    half_width = averaging_half_width(config.averaging_width_ms, srate)

    positive = _locate(erp, upper, times, time_window_indices(times, *config.positive_window_ms),
                       half_width, positive=True)
    negative = _locate(erp, lower, times, time_window_indices(times, *config.negative_window_ms),
                       half_width, positive=False)
    return positive, negative


def select_pair_electrode(recording: Recording, pair: Sequence[str]) -> Optional[str]:
    """
    Label to use for an electrode pair

    The primary label wins unless it is absent or holds only NaN, in which
    case the alternate is used. When only an all-NaN label is present it is
    still returned, so the caller can report missing values for it.

    Returns:
        Chosen label, or None when neither label is present
    """
    present = [label for label in pair if label in recording.labels]
    if not present:
        return None

    for label in present:
        if not np.all(np.isnan(recording.data[recording.channel_index(label)])):
            return label
    return present[0]


def extract_subject_metrics(
    recording: Recording,
    metadata: SubjectMetadata,
    category: str,
    config: PipelineConfig
) -> SubjectMetrics:
    """
    Positive/negative deflection metrics for every electrode pair

    Args:
        recording: Accepted epochs of one trial type
        metadata: Subject metadata of the recording
        category: Trial type ("GO" or "NOGO")
        config: Pipeline configuration

    Returns:
        SubjectMetrics with one slot per configured electrode pair
    """
    metrics = SubjectMetrics(metadata=metadata, category=category)

    for pair_name, primary, alternate in config.electrode_pairs:
        label = select_pair_electrode(recording, (primary, alternate))
        if label is None:
            logging.info(f"Neither {primary} nor {alternate} present in {recording.name}, skipping {pair_name}")
            metrics.pairs[pair_name] = None
            continue

        channel_data = recording.data[recording.channel_index(label)]
        erp = channel_data.mean(axis=1) if channel_data.ndim == 2 else channel_data
        if np.all(np.isnan(erp)):
            logging.warning(f"Electrode {label} of {recording.name} holds no data")
            metrics.pairs[pair_name] = MetricRecord(electrode=label)
            continue

        positive, negative = compute_peak_dip(erp, recording.times, recording.srate, config)
        metrics.pairs[pair_name] = MetricRecord(electrode=label, positive=positive, negative=negative)
        logging.debug(f"{recording.name} {label}: P3 {positive.amplitude:.2f} uV at {positive.latency_ms:.0f} ms, "
                      f"N2 {negative.amplitude:.2f} uV at {negative.latency_ms:.0f} ms")

    return metrics


def magnitude_spectrum(recording: Recording) -> Tuple[np.ndarray, np.ndarray]:
    """
    FFT magnitude of the epoch-averaged signal, up to Nyquist

    Returns:
        Tuple of (frequencies [bins], magnitudes [channels x bins])
    """
    averaged = recording.data.mean(axis=2) if recording.is_epoched else recording.data
    n = averaged.shape[1]
    magnitudes = np.abs(np.fft.fft(averaged, axis=1))
    freqs = np.arange(n) * recording.srate / n
    half = n // 2
    return freqs[:half], magnitudes[:, :half]


def compute_band_powers(
    recording: Recording,
    bands: Sequence[Tuple[str, float, float]],
    file_name: str = ""
) -> List[BandPowerRecord]:
    """
    Absolute and relative band power for every channel

    Absolute power is the summed FFT magnitude inside the band, bounds
    inclusive; relative power divides by the summed magnitude of the whole
    half spectrum. A channel with zero total power gets NaN relative values.

    Args:
        recording: Epoched (or continuous) recording
        bands: (name, low, high) frequency bands in Hz
        file_name: Name written to each record

    Returns:
        One BandPowerRecord per channel
    """
    freqs, magnitudes = magnitude_spectrum(recording)
    records = []

    for ch, label in enumerate(recording.labels):
        spectrum = magnitudes[ch]
        total = float(np.sum(spectrum))
        absolute: Dict[str, float] = {}
        relative: Dict[str, float] = {}

        if total == 0:
            logging.warning(f"Zero total spectral power for {label} in {file_name or recording.name}, "
                            f"relative band power is NaN")

        for name, low, high in bands:
            mask = (freqs >= low) & (freqs <= high)
            absolute[name] = float(np.sum(spectrum[mask]))
            relative[name] = absolute[name] / total if total > 0 else float('nan')

        records.append(BandPowerRecord(file_name=file_name, channel=label,
                                       absolute=absolute, relative=relative))

    return records
