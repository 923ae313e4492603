"""
Core data types for the ERP pipeline

This module defines the data structures passed between pipeline stages:
recordings, channel and event descriptors, the ICA decomposition attached
between the decomposition and removal stages, and the metric records
produced by the feature extractor.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np


class ChannelMismatchError(ValueError):
    """Channel descriptors and the sample buffer disagree"""


class ConditionNotFoundError(ValueError):
    """The experimental condition can't be derived for a recording"""


@dataclass(frozen=True)
class Channel:
    """A scalp or auxiliary electrode"""
    label: str
    position: Optional[Tuple[float, float, float]] = None  # metres, head frame


@dataclass(frozen=True)
class Event:
    """An event marker; latency in samples (continuous) or ms (epoch events)"""
    type: str
    latency: float


@dataclass(frozen=True)
class SubjectMetadata:
    """Explicit per-recording metadata attached at ingestion"""
    subject_id: str = "UNKNOWN"
    condition: str = "UNKNOWN"       # "SIT" / "WALK"
    subject_type: str = "UNKNOWN"    # "HC" / "PDM" / "PD"


@dataclass
class ComponentDecomposition:
    """
    Linear ICA model of a recording

    sources = unmixing @ (data - mean); data = mixing @ sources + mean.
    ``classifications`` is (n_components, 7) in IC_CATEGORIES order, or None
    when classification was skipped.
    """
    unmixing: np.ndarray              # (n_components, n_channels)
    mixing: np.ndarray                # (n_channels, n_components)
    mean: np.ndarray                  # (n_channels,)
    channel_labels: List[str]
    classifications: Optional[np.ndarray] = None

    @property
    def n_components(self) -> int:
        return self.unmixing.shape[0]


@dataclass
class Recording:
    """
    Multi-channel EEG recording, continuous or epoched

    data is (n_channels, n_samples) or (n_channels, n_samples, n_epochs), in µV.
    times holds the time axis in ms: sample offsets from the start for
    continuous data, offsets relative to the locking event for epochs.
    """
    data: np.ndarray
    channels: List[Channel]
    srate: float
    times: np.ndarray
    events: List[Event] = field(default_factory=list)
    history: List[str] = field(default_factory=list)
    name: str = ""
    removed_channels: List[str] = field(default_factory=list)
    components_removed: int = 0
    decomposition: Optional[ComponentDecomposition] = None
    epoch_events: List[List[Event]] = field(default_factory=list)
    metadata: Optional[SubjectMetadata] = None

    @property
    def labels(self) -> List[str]:
        return [ch.label for ch in self.channels]

    @property
    def n_channels(self) -> int:
        return self.data.shape[0]

    @property
    def n_samples(self) -> int:
        return self.data.shape[1]

    @property
    def n_epochs(self) -> int:
        return self.data.shape[2] if self.data.ndim == 3 else 0

    @property
    def is_epoched(self) -> bool:
        return self.data.ndim == 3

    def add_history(self, comment: str) -> None:
        """Append a line to the processing log"""
        self.history.append(comment)

    def check(self) -> None:
        """
        Verify the channel and time invariants

        Raises:
            ChannelMismatchError: If descriptors and buffer disagree
        """
        if self.data.ndim not in (2, 3):
            raise ChannelMismatchError(f"Data must be 2D or 3D, got {self.data.ndim}D")
        if len(self.channels) != self.data.shape[0]:
            raise ChannelMismatchError(
                f"{len(self.channels)} channel descriptors for {self.data.shape[0]} data channels"
            )
        if len(self.times) != self.data.shape[1]:
            raise ChannelMismatchError(
                f"Time axis has {len(self.times)} points for {self.data.shape[1]} samples"
            )
        if self.is_epoched and self.epoch_events and len(self.epoch_events) != self.n_epochs:
            raise ChannelMismatchError(
                f"{len(self.epoch_events)} epoch event lists for {self.n_epochs} epochs"
            )

    def channel_index(self, label: str) -> int:
        return self.labels.index(label)

    def copy(self) -> "Recording":
        """Deep copy of the buffers and logs"""
        return Recording(
            data=self.data.copy(),
            channels=list(self.channels),
            srate=self.srate,
            times=self.times.copy(),
            events=list(self.events),
            history=list(self.history),
            name=self.name,
            removed_channels=list(self.removed_channels),
            components_removed=self.components_removed,
            decomposition=self.decomposition,
            epoch_events=[list(ev) for ev in self.epoch_events],
            metadata=self.metadata,
        )


@dataclass(frozen=True)
class PeakMetric:
    """A located positive or negative deflection"""
    amplitude: float
    window: Tuple[int, int]        # averaging window, inclusive sample indices
    search_start: int              # first sample of the search window
    peak_offset: int               # peak index relative to search_start
    latency_ms: float


@dataclass(frozen=True)
class MetricRecord:
    """Positive (P3) and negative (N2) deflection metrics for one electrode"""
    electrode: str
    positive: Optional[PeakMetric] = None
    negative: Optional[PeakMetric] = None


@dataclass
class SubjectMetrics:
    """One slot per electrode pair; None when neither pair label is present"""
    metadata: SubjectMetadata
    category: str
    pairs: Dict[str, Optional[MetricRecord]] = field(default_factory=dict)


@dataclass
class BandPowerRecord:
    """Absolute and relative spectral band power for one channel"""
    file_name: str
    channel: str
    absolute: Dict[str, float]
    relative: Dict[str, float]
