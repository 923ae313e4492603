"""
Epoching and epoch rejection for the GO / NOGO trial types

This module handles the extraction of stimulus-locked epochs, baseline
correction, automatic rejection of noisy epochs and the reaction-time
filter applied to GO trials. An empty result is returned as None, which
callers treat as "nothing to save" rather than an error.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import PipelineConfig
from .data_types import Event, Recording


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (312.5 -> 313)"""
    return int(np.floor(value + 0.5))


def select_epochs(recording: Recording, keep: np.ndarray) -> Optional[Recording]:
    """Recording holding only the epochs where ``keep`` is True, or None"""
    keep = np.asarray(keep, dtype=bool)
    if not np.any(keep):
        return None

    selected = recording.copy()
    selected.data = recording.data[:, :, keep]
    if recording.epoch_events:
        selected.epoch_events = [ev for ev, k in zip(recording.epoch_events, keep) if k]
    selected.check()
    return selected


def build_epochs(
    recording: Recording,
    markers: Sequence[str],
    tmin_ms: float = -250.0,
    tmax_ms: float = 1000.0
) -> Optional[Recording]:
    """
    Extract epochs around every event whose type is in ``markers``

    The epoch length is (tmax - tmin) * srate rounded half up, so a
    [-250, 1000] ms window at 250 Hz gives 313 samples. The first sample is
    tmin * srate rounded half up from the marker, and the time axis labels
    the samples actually taken: -248 ms to 1000 ms in that case, with the
    marker sample at exactly 0 ms. Events of any type falling inside an
    epoch are kept with the epoch, latencies in ms relative to the locking
    event.

    Args:
        recording: Continuous recording
        markers: Event types that lock epochs
        tmin_ms: Window start relative to the event (ms, negative = before)
        tmax_ms: Window end relative to the event (ms)

    Returns:
        Epoched recording [channels x samples x epochs], or None when no
        epoch could be extracted

    Raises:
        ValueError: If the window is invalid or the recording is epoched
    """
    if tmin_ms >= tmax_ms:
        raise ValueError(f"tmin ({tmin_ms}) must be < tmax ({tmax_ms})")
    if recording.is_epoched:
        raise ValueError("Recording is already epoched")

    srate = recording.srate
    n_samples_epoch = round_half_up((tmax_ms - tmin_ms) * srate / 1000.0)
    start_offset = round_half_up(tmin_ms * srate / 1000.0)
    times = (start_offset + np.arange(n_samples_epoch)) * 1000.0 / srate

    locking = [ev for ev in recording.events if ev.type in markers]
    logging.info(f"Building epochs from {len(locking)} markers {list(markers)}")
    logging.info(f"Epoch window: {tmin_ms:.0f} to {tmax_ms:.0f} ms ({n_samples_epoch} samples)")

    if not locking:
        logging.info(f"No {list(markers)} markers in {recording.name or 'recording'}")
        return None

    segments = []
    epoch_events: List[List[Event]] = []
    for marker in locking:
        start = int(round(marker.latency)) + start_offset
        end = start + n_samples_epoch

        if start < 0:
            logging.warning(f"Epoch starting at sample {start} is before data start, skipping")
            continue
        if end > recording.n_samples:
            logging.warning(f"Epoch ending at sample {end} exceeds data length {recording.n_samples}, skipping")
            continue

        segments.append(recording.data[:, start:end])
        epoch_events.append([
            Event(type=ev.type, latency=(ev.latency - marker.latency) * 1000.0 / srate)
            for ev in recording.events if start <= ev.latency < end
        ])

    if not segments:
        logging.warning("No valid epochs could be extracted")
        return None

    epochs = recording.copy()
    epochs.data = np.stack(segments, axis=2)
    epochs.times = times
    epochs.events = []
    epochs.epoch_events = epoch_events
    epochs.add_history(
        f"Extracted {len(segments)} epochs around {list(markers)} [{tmin_ms:g} {tmax_ms:g}] ms"
    )
    epochs.check()

    logging.info(f"Extracted {len(segments)} valid epochs, shape {epochs.data.shape}")
    return epochs


def baseline_correct(recording: Recording, baseline: Tuple[float, float] = (-250.0, 0.0)) -> Recording:
    """
    Subtract the per-channel, per-epoch mean of the baseline period in place

    Args:
        recording: Epoched recording
        baseline: (start, end) of the baseline period in ms, inclusive

    Returns:
        The same recording, baseline corrected

    Raises:
        ValueError: If the baseline period is invalid or holds no samples
    """
    baseline_start, baseline_end = baseline
    if baseline_start >= baseline_end:
        raise ValueError(f"Baseline start ({baseline_start}) must be < end ({baseline_end})")
    if not recording.is_epoched:
        raise ValueError("Baseline correction expects epoched data")

    mask = (recording.times >= baseline_start) & (recording.times <= baseline_end)
    if not np.any(mask):
        raise ValueError(f"No samples found in baseline period {baseline}")

    logging.info(f"Applying baseline correction using {np.sum(mask)} samples "
                 f"({baseline_start:g} to {baseline_end:g} ms)")
    baseline_mean = recording.data[:, mask, :].mean(axis=1, keepdims=True)
    recording.data = recording.data - baseline_mean
    recording.add_history(f"Removed baseline [{baseline_start:g} {baseline_end:g}] ms")
    return recording


def reject_by_amplitude(data: np.ndarray, threshold_uv: float) -> np.ndarray:
    """Epochs where any channel's absolute amplitude exceeds the threshold"""
    return np.any(np.abs(data) > threshold_uv, axis=(0, 1))


def joint_probability(data: np.ndarray, bins: int = 1000) -> np.ndarray:
    """
    Z-scored joint log-probability of each epoch over the whole channel set

    For every channel the value distribution across all samples of all
    epochs is estimated with a histogram. An epoch's improbability is the
    sum of -log(p) over its samples and channels; unusual epochs get large
    positive or negative z-scores relative to the other epochs.

    Args:
        data: Epochs [channels x samples x epochs]
        bins: Histogram resolution

    Returns:
        Z-scores [epochs]; zeros when all epochs are equally probable
    """
    n_channels, _, n_epochs = data.shape
    improbability = np.zeros((n_channels, n_epochs))

    for ch in range(n_channels):
        values = data[ch]
        low, high = values.min(), values.max()
        if high == low:
            continue
        idx = np.floor((values - low) / (high - low) * (bins - 1)).astype(int)
        density = np.bincount(idx.ravel(), minlength=bins) / idx.size
        improbability[ch] = -np.sum(np.log(density[idx]), axis=0)

    joint = improbability.sum(axis=0)
    spread = joint.std()
    if spread == 0:
        return np.zeros(n_epochs)
    return (joint - joint.mean()) / spread


def auto_reject(
    recording: Recording,
    threshold_uv: float = 100.0,
    prob_threshold: float = 3.0,
    max_reject_pct: float = 5.0,
    max_iterations: int = 50,
    min_epochs: int = 3
) -> Optional[Recording]:
    """
    Reject noisy epochs by absolute amplitude, then by joint probability

    The amplitude check runs once, first. The probability check is then
    repeated on the surviving epochs, recomputing the distribution after
    every removal, until no epoch exceeds ``prob_threshold``. Each iteration
    removes at most ``max_reject_pct`` percent (at least one) of the kept
    epochs, taking the most extreme first, and never goes below
    ``min_epochs``.

    Args:
        recording: Baseline-corrected epochs
        threshold_uv: Absolute amplitude limit in µV
        prob_threshold: Joint-probability limit in standard deviations
        max_reject_pct: Per-iteration rejection cap in percent
        max_iterations: Upper bound on probability iterations
        min_epochs: Epoch count below which probabilities are not evaluated

    Returns:
        Recording with the accepted epochs, or None if none survive
    """
    data = recording.data
    n_epochs = recording.n_epochs
    logging.info(f"Applying automatic epoch rejection (amplitude {threshold_uv} µV, "
                 f"probability {prob_threshold} SD) to {n_epochs} epochs")

    keep = ~reject_by_amplitude(data, threshold_uv)
    n_amplitude = int(n_epochs - keep.sum())
    logging.info(f"Amplitude rejection: {n_amplitude}/{n_epochs} epochs rejected")

    n_probability = 0
    for iteration in range(max_iterations):
        kept_idx = np.where(keep)[0]
        if len(kept_idx) <= min_epochs:
            break

        z = joint_probability(data[:, :, kept_idx])
        candidates = np.where(np.abs(z) > prob_threshold)[0]
        if len(candidates) == 0:
            break

        limit = max(1, int(np.floor(len(kept_idx) * max_reject_pct / 100.0)))
        limit = min(limit, len(kept_idx) - min_epochs)
        if len(candidates) > limit:
            candidates = candidates[np.argsort(-np.abs(z[candidates]), kind='stable')[:limit]]

        keep[kept_idx[candidates]] = False
        n_probability += len(candidates)
        logging.debug(f"Probability iteration {iteration + 1}: rejected {len(candidates)} epochs")

    logging.info(f"Probability rejection: {n_probability}/{n_epochs} epochs rejected")
    logging.info(f"Remaining epochs: {int(keep.sum())}")

    accepted = select_epochs(recording, keep)
    if accepted is None:
        logging.info("All epochs rejected")
        return None

    accepted.add_history(
        f"Automatic epoch rejection: {n_amplitude} by amplitude ({threshold_uv:g} uV), "
        f"{n_probability} by joint probability ({prob_threshold:g} SD)"
    )
    return accepted


def filter_reaction_times(
    recording: Recording,
    response_markers: Sequence[str],
    rt_min_ms: float = 100.0,
    rt_max_ms: float = 1000.0
) -> Optional[Recording]:
    """
    Keep only epochs with a response marker inside [rt_min_ms, rt_max_ms]

    Responses faster than ``rt_min_ms`` are anticipations; epochs without
    any response in the window are misses. Both are dropped.

    Returns:
        Recording with the valid epochs, or None if none remain
    """
    valid = np.array([
        any(ev.type in response_markers and rt_min_ms <= ev.latency <= rt_max_ms for ev in events)
        for events in recording.epoch_events
    ], dtype=bool)

    logging.info(f"Reaction time filter [{rt_min_ms:g}, {rt_max_ms:g}] ms: "
                 f"{int(valid.sum())}/{len(valid)} epochs kept")

    filtered = select_epochs(recording, valid)
    if filtered is not None:
        filtered.add_history(f"Kept epochs with responses in [{rt_min_ms:g} {rt_max_ms:g}] ms")
    return filtered


def extract_condition_epochs(recording: Recording, trial_type: str,
                             config: PipelineConfig) -> Optional[Recording]:
    """
    Epoch, baseline-correct and clean one trial type of a recording

    GO epochs additionally pass the reaction-time filter.

    Args:
        recording: Artifact-cleaned continuous recording
        trial_type: "GO" or "NOGO"
        config: Pipeline configuration

    Returns:
        Accepted epochs, or None when there is nothing to save
    """
    markers = config.markers_for(trial_type)
    tmin_ms, tmax_ms = config.epoch_window_ms

    epochs = build_epochs(recording, markers, tmin_ms, tmax_ms)
    if epochs is None:
        return None

    baseline_correct(epochs, (tmin_ms, 0.0))
    epochs = auto_reject(
        epochs,
        threshold_uv=config.amplitude_threshold_uv,
        prob_threshold=config.probability_threshold,
        max_reject_pct=config.max_reject_pct,
    )

    if epochs is not None and trial_type == "GO":
        epochs = filter_reaction_times(
            epochs, config.response_markers, config.reaction_time_ms, config.reaction_time_max_ms
        )

    if epochs is None:
        logging.info(f"No {trial_type} epochs remained after filtering for {recording.name or 'recording'}")
    return epochs
