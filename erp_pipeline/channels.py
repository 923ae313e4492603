"""
Channel-quality filtering for raw EEG recordings

This module handles the first cleaning stage: zero-phase band-pass filtering,
statistical bad channel detection, average re-referencing that leaves the
ocular and non-scalp channels out, and removal of the recording reference.
Every structural change is written to the recording's processing log.
"""

import logging
from typing import Iterable, List

import numpy as np
from mne.filter import filter_data
from pyprep.find_noisy_channels import NoisyChannels

from .config import PipelineConfig
from .data_io import recording_to_raw
from .data_types import Recording

RANSAC_SEED = 1337


def bandpass_filter(recording: Recording, l_freq: float = 0.5, h_freq: float = 40.0) -> Recording:
    """
    Apply a zero-phase FIR band-pass filter in place

    Zero-phase filtering keeps ERP latencies intact, which matters because the
    feature extractor reports peak latencies in ms.

    Args:
        recording: Continuous recording
        l_freq: High-pass edge in Hz
        h_freq: Low-pass edge in Hz

    Returns:
        The same recording, filtered
    """
    nyquist = recording.srate / 2
    if h_freq >= nyquist:
        raise ValueError(f"Band-pass high ({h_freq}) must be < Nyquist ({nyquist})")

    logging.info(f"Applying band-pass filter {l_freq}-{h_freq} Hz to data shape {recording.data.shape}")
    recording.data = filter_data(
        recording.data.astype(np.float64), recording.srate, l_freq, h_freq,
        method='fir', phase='zero', fir_design='firwin', verbose=False
    )
    recording.add_history(f"Performed FIR [{l_freq:g} {h_freq:g}]")
    return recording


# NoisyChannels attributes, in reporting order
BAD_CHANNEL_CRITERIA = (
    ("bad_by_nan", "contains NaN"),
    ("bad_by_flat", "is flat"),
    ("bad_by_dropout", "drops out"),
    ("bad_by_correlation", "is poorly correlated"),
    ("bad_by_hf_noise", "carries high-frequency noise"),
    ("bad_by_ransac", "is poorly predicted by RANSAC"),
)


def find_bad_channels(recording: Recording, config: PipelineConfig) -> List[str]:
    """
    Identify flat, uncorrelated and line-noise contaminated channels with pyprep

    A channel is bad when it is flat or NaN, when its correlation with the
    other channels is below ``channel_criterion`` in more than
    ``max_broken_time`` of the ``correlation_window_s`` windows, or when its
    high-frequency noise z-score exceeds ``line_noise_criterion``. With
    ``use_ransac`` set and channel positions known, channels that RANSAC
    predicts with a correlation below ``channel_criterion`` are bad as well.

    Args:
        recording: Filtered continuous recording
        config: Pipeline configuration

    Returns:
        Labels of bad channels, in channel order
    """
    labels = recording.labels
    noisy = NoisyChannels(recording_to_raw(recording), random_state=RANSAC_SEED)

    noisy.find_bad_by_nan_flat()
    noisy.find_bad_by_hfnoise(HF_zscore_threshold=config.line_noise_criterion)
    noisy.find_bad_by_correlation(
        correlation_secs=config.correlation_window_s,
        correlation_threshold=config.channel_criterion,
        frac_bad=config.max_broken_time,
    )

    if config.use_ransac:
        if all(ch.position is not None for ch in recording.channels):
            noisy.find_bad_by_ransac(
                corr_thresh=config.channel_criterion,
                frac_bad=config.max_broken_time,
                corr_window_secs=config.correlation_window_s,
            )
        else:
            logging.warning("RANSAC needs channel positions for every channel, skipping it")

    for attribute, description in BAD_CHANNEL_CRITERIA:
        for label in getattr(noisy, attribute, []):
            logging.info(f"Channel {label} {description}")

    bad = set(noisy.get_bads())
    bad_labels = [label for label in labels if label in bad]
    logging.info(f"Bad channels: {len(bad_labels)}/{len(labels)} {bad_labels}")
    return bad_labels


def remove_channels(recording: Recording, labels: Iterable[str], reason: str = "") -> Recording:
    """
    Remove channels by label, keeping descriptors and data in step

    Labels that are not present are ignored. Removed labels are appended to
    ``recording.removed_channels``.
    """
    drop = [label for label in labels if label in recording.labels]
    if not drop:
        return recording

    keep = [i for i, label in enumerate(recording.labels) if label not in drop]
    recording.data = recording.data[keep]
    recording.channels = [recording.channels[i] for i in keep]
    recording.removed_channels.extend(drop)

    comment = f"Removed channel{'s' if len(drop) > 1 else ''}: {', '.join(drop)}"
    if reason:
        comment += f" ({reason})"
    recording.add_history(comment)
    logging.info(comment)
    recording.check()
    return recording


def rereference_average(recording: Recording, exclude: Iterable[str]) -> Recording:
    """
    Re-reference to the common average of the non-excluded channels

    Excluded channels neither contribute to the average nor get re-referenced.

    Args:
        recording: Continuous or epoched recording
        exclude: Channel labels to leave out

    Returns:
        The same recording, re-referenced in place
    """
    excluded = set(exclude)
    included = [i for i, label in enumerate(recording.labels) if label not in excluded]

    if not included:
        logging.warning("No channels left for the average reference, skipping re-referencing")
        return recording

    average = np.mean(recording.data[included], axis=0, keepdims=True)
    recording.data[included] = recording.data[included] - average

    logging.info(f"Average reference over {len(included)} channels "
                 f"({recording.n_channels - len(included)} excluded)")
    recording.add_history("Averaged reference excluding eye channels and VREF")
    return recording


def clean_channels(recording: Recording, config: PipelineConfig) -> Recording:
    """
    Run the complete channel-quality stage

    1. Zero-phase band-pass filter
    2. Remove bad channels (flat, uncorrelated, line noise)
    3. Average reference excluding the exclusion set and the reference channel
    4. Remove the reference channel
    5. Remove the exclusion set, unless it is kept for ICA

    Args:
        recording: Raw continuous recording
        config: Pipeline configuration

    Returns:
        The cleaned recording; ``removed_channels`` lists everything removed
    """
    if recording.is_epoched:
        raise ValueError("Channel cleaning expects continuous data")

    n_initial = recording.n_channels
    logging.info(f"Cleaning channels of {recording.name or 'recording'} ({n_initial} channels)")

    bandpass_filter(recording, *config.bandpass)

    bad_channels = find_bad_channels(recording, config)
    remove_channels(recording, bad_channels, reason="bad channel")
    recording.add_history(
        f"Removed bad channels with channel criterion: {config.channel_criterion:g}, "
        f"lineNoise criterion: {config.line_noise_criterion:g}"
    )

    rereference_average(recording, set(config.exclusion_channels) | {config.reference_channel})
    remove_channels(recording, [config.reference_channel], reason="reference")

    if not config.keep_exclusion_channels_for_ica:
        remove_channels(recording, config.exclusion_channels, reason="excluded channel")

    logging.info(f"Channel cleaning removed {n_initial - recording.n_channels} channels, "
                 f"{recording.n_channels} remain")
    return recording
