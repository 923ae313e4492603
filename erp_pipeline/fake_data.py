"""
Synthetic GO/NOGO EEG data generation

This module creates synthetic recordings for testing the pipeline without
real EEG data. The recordings carry the features the pipeline depends on:
channels that share a common brain signal, a flat reference channel,
GO/NOGO stimulus markers with response markers, and an ERP made of a
negative (N2-like) and a positive (P3-like) deflection after each stimulus.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from .data_types import Channel, Event, Recording, SubjectMetadata

# Subset of the 64-channel net: scalp channels, ocular and non-scalp channels, reference
DEFAULT_CHANNELS = (
    "E3", "E6", "E9", "E11", "E20", "E24", "E34", "E36",
    "E41", "E45", "E52", "E55", "EOG1", "EOG2", "E61", "E62", "VREF",
)

HEAD_RADIUS_M = 0.095


def channel_positions(n_channels: int) -> List[tuple]:
    """Evenly spread positions on the upper half of a head-sized sphere"""
    positions = []
    golden_angle = np.pi * (3 - np.sqrt(5))
    for i in range(n_channels):
        z = 1 - (i + 0.5) / n_channels          # 1 -> 0, upper hemisphere
        r = np.sqrt(1 - z ** 2)
        theta = golden_angle * i
        positions.append(tuple(HEAD_RADIUS_M * np.array([r * np.cos(theta), r * np.sin(theta), z])))
    return positions


def erp_waveform(
    times_ms: np.ndarray,
    p3_amplitude: float = 8.0,
    p3_latency_ms: float = 350.0,
    n2_amplitude: float = -5.0,
    n2_latency_ms: float = 250.0
) -> np.ndarray:
    """
    Stimulus-locked ERP: Gaussian N2 and P3 deflections

    Args:
        times_ms: Time relative to the stimulus in ms
        p3_amplitude: Positive deflection amplitude in µV
        p3_latency_ms: Positive deflection latency in ms
        n2_amplitude: Negative deflection amplitude in µV (negative)
        n2_latency_ms: Negative deflection latency in ms

    Returns:
        Waveform in µV, same shape as times_ms
    """
    p3 = p3_amplitude * np.exp(-0.5 * ((times_ms - p3_latency_ms) / 60.0) ** 2)
    n2 = n2_amplitude * np.exp(-0.5 * ((times_ms - n2_latency_ms) / 30.0) ** 2)
    return p3 + n2


def _background(n_sources: int, n_samples: int, srate: float, rng: np.random.Generator) -> np.ndarray:
    """
    Latent brain sources: pink-ish noise plus one theta and one alpha rhythm

    Rhythms are 1 Hz apart between sources so the sources stay uncorrelated
    over windows of a few seconds.
    """
    t = np.arange(n_samples) / srate
    sources = np.zeros((n_sources, n_samples))
    for k in range(n_sources):
        white = rng.standard_normal(n_samples)
        pink = np.cumsum(white) / np.sqrt(n_samples)
        pink -= np.mean(pink)
        sources[k] = 10.0 * pink

        theta_freq = 4.5 + k
        alpha_freq = 8.5 + k
        sources[k] += rng.uniform(3, 5) * np.sin(2 * np.pi * theta_freq * t + rng.uniform(0, 2 * np.pi))
        sources[k] += rng.uniform(5, 7) * np.sin(2 * np.pi * alpha_freq * t + rng.uniform(0, 2 * np.pi))
    return sources


def synthesize_recording(
    channel_labels: Optional[Sequence[str]] = None,
    srate: float = 250.0,
    n_trials: int = 40,
    trial_interval_s: float = 2.0,
    go_fraction: float = 0.5,
    response_rate: float = 1.0,
    noisy_channels: Sequence[str] = (),
    noise_uv: float = 40.0,
    p3_amplitude: float = 8.0,
    n2_amplitude: float = -5.0,
    reference_channel: str = "VREF",
    seed: int = 42,
    name: str = "HC001_SIT_synthetic",
    metadata: Optional[SubjectMetadata] = None
) -> Recording:
    """
    Generate a synthetic continuous GO/NOGO recording

    Every channel is a positive mixture of a few shared latent sources plus
    a little sensor noise, so the channels correlate strongly. Channels in
    ``noisy_channels`` are replaced by independent broadband noise and the
    reference channel is flat, as on a referenced amplifier.

    Trials start one second in and are ``trial_interval_s`` apart. GO trials
    get a "Go-2" marker and, with probability ``response_rate``, a "RESP"
    marker 250-600 ms later; NOGO trials get an "NG-2" marker. The ERP
    (see ``erp_waveform``) is added after every stimulus.

    Args:
        channel_labels: Channel labels (default: DEFAULT_CHANNELS)
        srate: Sampling rate in Hz
        n_trials: Total number of GO and NOGO trials
        trial_interval_s: Stimulus onset asynchrony in seconds
        go_fraction: Probability of a trial being GO
        response_rate: Probability of a GO trial getting a response
        noisy_channels: Labels to replace with noise
        noise_uv: Standard deviation of the noisy channels in µV
        p3_amplitude: Positive deflection amplitude in µV
        n2_amplitude: Negative deflection amplitude in µV
        reference_channel: Label of the flat reference channel
        seed: Random seed for reproducibility
        name: Recording name
        metadata: Subject metadata (default: HC/001/SIT)

    Returns:
        Continuous Recording in µV
    """
    labels = list(channel_labels) if channel_labels is not None else list(DEFAULT_CHANNELS)
    rng = np.random.default_rng(seed)

    n_channels = len(labels)
    n_samples = int(round((1.0 + n_trials * trial_interval_s + 1.0) * srate))
    logging.info(f"Generating synthetic recording: {n_channels} channels, {n_trials} trials, "
                 f"{n_samples / srate:.1f}s at {srate:g} Hz")

    n_sources = 4
    sources = _background(n_sources, n_samples, srate, rng)
    mixing = rng.uniform(0.5, 1.0, size=(n_channels, n_sources))
    data = mixing @ sources + rng.standard_normal((n_channels, n_samples))

    # Per-channel ERP gain
    erp_gain = rng.uniform(0.6, 1.0, size=n_channels)
    erp_times = np.arange(int(round(1.2 * srate))) * 1000.0 / srate
    waveform = erp_waveform(erp_times, p3_amplitude=p3_amplitude, n2_amplitude=n2_amplitude)

    events: List[Event] = []
    n_go = 0
    for trial in range(n_trials):
        onset = int(round((1.0 + trial * trial_interval_s) * srate))
        is_go = rng.random() < go_fraction
        events.append(Event(type="Go-2" if is_go else "NG-2", latency=onset))

        end = min(onset + len(waveform), n_samples)
        data[:, onset:end] += erp_gain[:, np.newaxis] * waveform[:end - onset]

        if is_go:
            n_go += 1
            if rng.random() < response_rate:
                rt_ms = rng.uniform(250.0, 600.0)
                events.append(Event(type="RESP", latency=onset + int(round(rt_ms * srate / 1000.0))))

    for label in noisy_channels:
        if label in labels:
            data[labels.index(label)] = noise_uv * rng.standard_normal(n_samples)

    if reference_channel in labels:
        data[labels.index(reference_channel)] = 0.0

    positions = channel_positions(n_channels)
    channels = [Channel(label=label, position=pos) for label, pos in zip(labels, positions)]

    logging.info(f"Generated {n_go} GO and {n_trials - n_go} NOGO trials")

    recording = Recording(
        data=data,
        channels=channels,
        srate=float(srate),
        times=np.arange(n_samples) * 1000.0 / srate,
        events=events,
        name=name,
        metadata=metadata or SubjectMetadata(subject_id="001", condition="SIT", subject_type="HC"),
    )
    recording.check()
    return recording


def synthesize_classifications(
    n_components: int,
    artifacts: Optional[dict] = None,
    seed: int = 42
) -> np.ndarray:
    """
    Component classification matrix with chosen artifact components

    Unlisted components are mostly "brain". ``artifacts`` maps a component
    index to the category column that should dominate it.

    Args:
        n_components: Number of components
        artifacts: {component index: category column}
        seed: Random seed

    Returns:
        Probabilities [n_components x 7], rows sum to 1
    """
    rng = np.random.default_rng(seed)
    probabilities = rng.uniform(0.0, 0.02, size=(n_components, 7))
    probabilities[:, 0] = 0.9

    for component, column in (artifacts or {}).items():
        probabilities[component, 0] = 0.02
        probabilities[component, column] = 0.95

    return probabilities / probabilities.sum(axis=1, keepdims=True)
