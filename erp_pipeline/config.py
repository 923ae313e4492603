"""
Configuration settings for the ERP cleaning pipeline

This module defines the immutable configuration passed into every pipeline
stage. All thresholds that used to live as globals at the top of the batch
script (channel rejection criteria, ICA settings, epoch rejection thresholds,
search windows) are fields here, so two runs with equal configs process data
identically.
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# ICLabel category order. Classification matrices use this column order.
IC_CATEGORIES = ("brain", "muscle", "eye", "heart", "line_noise", "channel_noise", "other")

# Ocular and non-scalp channels of the 64-channel net, plus the recording reference
EXCLUSION_CHANNELS = ("EOG1", "EOG2", "EOG3", "EOG4", "E61", "E62", "E63", "E64", "VREF")
REFERENCE_CHANNEL = "VREF"

GO_MARKERS = ("Go-2", "GO-2")
NOGO_MARKERS = ("NG-2", "Ng-2")
RESPONSE_MARKERS = ("RESP", "Resp")

TRIAL_TYPES = ("GO", "NOGO")
CONDITIONS = ("SIT", "WALK")

# (pair name, primary label, alternate label)
ELECTRODE_PAIRS = (
    ("frontal", "E6", "Fz"),
    ("parietal", "E34", "Pz"),
)

FREQUENCY_BANDS = (
    ("delta", 0.1, 4.0),
    ("theta", 4.0, 8.0),
    ("alpha", 8.0, 12.0),
    ("beta", 12.0, 30.0),
    ("gamma", 30.0, 100.0),
)


@dataclass(frozen=True)
class ArtifactBands:
    """
    Per-category probability bands for flagging independent components

    A component is flagged when the probability of ANY category falls inside
    that category's (low, high) band, bounds inclusive. ``None`` means the
    category never flags a component on its own.
    """
    brain: Optional[Tuple[float, float]] = None
    muscle: Optional[Tuple[float, float]] = (0.8, 1.0)
    eye: Optional[Tuple[float, float]] = (0.5, 1.0)
    heart: Optional[Tuple[float, float]] = (0.8, 1.0)
    line_noise: Optional[Tuple[float, float]] = (0.8, 1.0)
    channel_noise: Optional[Tuple[float, float]] = (0.8, 1.0)
    other: Optional[Tuple[float, float]] = None

    def as_list(self) -> List[Optional[Tuple[float, float]]]:
        """Bands in IC_CATEGORIES order"""
        return [getattr(self, name) for name in IC_CATEGORIES]


@dataclass(frozen=True)
class PipelineConfig:
    """
    Configuration for the ERP cleaning pipeline

    Channel-Quality Filter:
    - channel_criterion: minimum correlation with the other channels (and RANSAC prediction)
    - line_noise_criterion: robust z-score limit for high-frequency noise
    - correlation_window_s / max_broken_time: window length and tolerated bad-window fraction
    - bandpass: zero-phase FIR band (Hz)
    - reference_channel / exclusion_channels: kept out of the average reference

    Source Separation:
    - ica_tolerance: Infomax weight-change stopping criterion
    - ica_seed: random initialisation seed, fixed for reproducibility
    - artifact_bands: per-category flagging bands (see ArtifactBands)

    Epochs:
    - epoch_window_ms: window around each marker
    - amplitude_threshold_uv: absolute amplitude limit (µV)
    - probability_threshold: joint-probability limit in standard deviations
    - reaction_time_ms / reaction_time_max_ms: valid response latency (GO)

    Features:
    - positive_window_ms / negative_window_ms: search windows after the event
    - averaging_width_ms: half width of the window averaged around a peak
    """

    # Channel-Quality Filter
    channel_criterion: float = 0.8
    line_noise_criterion: float = 4.0
    bandpass: Tuple[float, float] = (0.5, 40.0)
    reference_channel: str = REFERENCE_CHANNEL
    exclusion_channels: Tuple[str, ...] = EXCLUSION_CHANNELS
    keep_exclusion_channels_for_ica: bool = False
    correlation_window_s: float = 5.0
    max_broken_time: float = 0.4
    use_ransac: bool = False

    # Source Separation & Classification
    ica_tolerance: float = 1e-10
    ica_seed: int = 42
    ica_max_iter: int = 500
    artifact_bands: ArtifactBands = field(default_factory=ArtifactBands)

    # Epoch Extractor & Epoch-Quality Filter
    epoch_window_ms: Tuple[float, float] = (-250.0, 1000.0)
    amplitude_threshold_uv: float = 100.0
    probability_threshold: float = 3.0
    max_reject_pct: float = 5.0
    reaction_time_ms: float = 100.0
    reaction_time_max_ms: float = 1000.0
    go_markers: Tuple[str, ...] = GO_MARKERS
    nogo_markers: Tuple[str, ...] = NOGO_MARKERS
    response_markers: Tuple[str, ...] = RESPONSE_MARKERS

    # Feature Extractor
    positive_window_ms: Tuple[float, float] = (250.0, 500.0)
    negative_window_ms: Tuple[float, float] = (200.0, 350.0)
    averaging_width_ms: float = 100.0
    electrode_pairs: Tuple[Tuple[str, str, str], ...] = ELECTRODE_PAIRS
    frequency_bands: Tuple[Tuple[str, float, float], ...] = FREQUENCY_BANDS

    # Batch execution
    file_pattern: str = r".+\.set$"
    n_jobs: int = 1

    def markers_for(self, trial_type: str) -> Tuple[str, ...]:
        """Event marker names that lock epochs of a trial type"""
        if trial_type == "GO":
            return self.go_markers
        if trial_type == "NOGO":
            return self.nogo_markers
        raise ValueError(f"Trial type must be one of {TRIAL_TYPES}, got '{trial_type}'")


def _as_tuple(value: Any) -> Any:
    """Recursively turn JSON lists into tuples"""
    if isinstance(value, list):
        return tuple(_as_tuple(v) for v in value)
    return value


def load_config(path: Optional[str] = None, **overrides) -> PipelineConfig:
    """
    Build a PipelineConfig from an optional JSON file plus keyword overrides

    Keys of the JSON object are PipelineConfig field names. ``artifact_bands``
    is an object keyed by category name, with ``null`` for "no band".

    Args:
        path: JSON file path, or None for defaults
        **overrides: Field values that take precedence over the file

    Returns:
        Validated PipelineConfig

    Raises:
        FileNotFoundError: If the JSON file doesn't exist
        ValueError: If a key is unknown or a value is invalid
    """
    values: Dict[str, Any] = {}

    if path is not None:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as fh:
            values.update(json.load(fh))
        logging.info(f"Loaded configuration from {path}")

    values.update(overrides)

    known = {f.name for f in dataclasses.fields(PipelineConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {unknown}")

    if isinstance(values.get("artifact_bands"), dict):
        bands = values["artifact_bands"]
        bad_names = sorted(set(bands) - set(IC_CATEGORIES))
        if bad_names:
            raise ValueError(f"Unknown artifact categories: {bad_names}")
        values["artifact_bands"] = ArtifactBands(**{k: _as_tuple(v) for k, v in bands.items()})

    values = {k: (_as_tuple(v) if k != "artifact_bands" else v) for k, v in values.items()}
    config = PipelineConfig(**values)
    validate_config(config)
    return config


def validate_config(config: PipelineConfig) -> None:
    """
    Validate configuration parameters for common mistakes

    Args:
        config: Configuration to validate

    Raises:
        ValueError: If configuration parameters are invalid
    """
    low, high = config.bandpass
    if low <= 0 or low >= high:
        raise ValueError(f"Band-pass low ({low}) must be > 0 and < high ({high})")

    if not 0 < config.channel_criterion <= 1:
        raise ValueError(f"Channel criterion must be in (0, 1], got {config.channel_criterion}")

    if config.line_noise_criterion <= 0:
        raise ValueError(f"Line noise criterion must be positive, got {config.line_noise_criterion}")

    if config.correlation_window_s <= 0:
        raise ValueError(f"Correlation window must be positive, got {config.correlation_window_s}")

    if not 0 <= config.max_broken_time < 1:
        raise ValueError(f"Max broken time must be in [0, 1), got {config.max_broken_time}")

    if config.ica_tolerance <= 0:
        raise ValueError(f"ICA tolerance must be positive, got {config.ica_tolerance}")

    for name, band in zip(IC_CATEGORIES, config.artifact_bands.as_list()):
        if band is None:
            continue
        if len(band) != 2 or not 0 <= band[0] <= band[1] <= 1:
            raise ValueError(f"Artifact band for '{name}' must be 0 <= low <= high <= 1, got {band}")

    tmin, tmax = config.epoch_window_ms
    if tmin >= 0 or tmax <= 0:
        raise ValueError(f"Epoch window must span the event (tmin < 0 < tmax), got {config.epoch_window_ms}")

    if config.amplitude_threshold_uv <= 0:
        raise ValueError(f"Amplitude threshold must be positive, got {config.amplitude_threshold_uv}")

    if config.probability_threshold <= 0:
        raise ValueError(f"Probability threshold must be positive, got {config.probability_threshold}")

    if not 0 < config.max_reject_pct <= 100:
        raise ValueError(f"Max rejection percentage must be in (0, 100], got {config.max_reject_pct}")

    if config.reaction_time_ms >= config.reaction_time_max_ms:
        raise ValueError(
            f"Reaction time window is empty: [{config.reaction_time_ms}, {config.reaction_time_max_ms}] ms"
        )

    for label, (start, end) in (("positive", config.positive_window_ms),
                                ("negative", config.negative_window_ms)):
        if start >= end or start < 0 or end > tmax:
            raise ValueError(f"{label.capitalize()} search window {(start, end)} must lie in [0, {tmax}] ms")

    if config.averaging_width_ms < 0:
        raise ValueError(f"Averaging width must be >= 0, got {config.averaging_width_ms}")

    if config.n_jobs == 0:
        raise ValueError("n_jobs must be non-zero (use -1 for all cores)")

    logging.debug("Configuration validation passed")


def ensure_output_dirs(output_root: str, stage_dirs: Tuple[str, ...]) -> None:
    """
    Create the stage output directories if they don't exist

    Args:
        output_root: Root output directory
        stage_dirs: Stage sub-directory names
    """
    for stage in stage_dirs:
        directory = os.path.join(output_root, stage)
        if not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)
            logging.info(f"Created output directory: {directory}")
