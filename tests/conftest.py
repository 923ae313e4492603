"""
Pytest Configuration and Fixtures
=================================

Shared fixtures for the ERP pipeline tests: configurations, synthetic
recordings and a stand-in component classifier, so the tests never need
real EEG files or the ICLabel network.
"""

import sys
from pathlib import Path

# Add project root to path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import numpy as np
import pytest

from erp_pipeline.config import PipelineConfig, load_config
from erp_pipeline.data_io import save_recording
from erp_pipeline.data_types import Channel, Event, Recording, SubjectMetadata
from erp_pipeline.fake_data import synthesize_classifications, synthesize_recording

EYE = 2  # column of the "eye" category


class StubClassifier:
    """Component classifier returning a fixed probability matrix"""

    def __init__(self, artifacts=None):
        self.artifacts = artifacts if artifacts is not None else {0: EYE}

    def classify(self, raw, ica):
        return synthesize_classifications(ica.n_components_, self.artifacts)


def make_recording(data, labels=None, srate=250.0, events=None, name="HC001_sit",
                   times=None, epoch_events=None):
    """Recording around a raw array, continuous or epoched"""
    data = np.asarray(data, dtype=float)
    labels = labels if labels is not None else [f"E{i + 1}" for i in range(data.shape[0])]
    if times is None:
        times = np.arange(data.shape[1]) * 1000.0 / srate
    recording = Recording(
        data=data,
        channels=[Channel(label=label) for label in labels],
        srate=srate,
        times=np.asarray(times, dtype=float),
        events=list(events or []),
        name=name,
        epoch_events=list(epoch_events or []),
        metadata=SubjectMetadata(subject_id="001", condition="SIT", subject_type="HC"),
    )
    recording.check()
    return recording


# =============================================================================
# Global Fixtures
# =============================================================================

@pytest.fixture
def config():
    """Default pipeline configuration."""
    return PipelineConfig()


@pytest.fixture
def fast_config():
    """Configuration with a short ICA so decompositions finish quickly."""
    return load_config(ica_max_iter=100, ica_tolerance=1e-7)


@pytest.fixture
def temp_data_dir(tmp_path):
    """Create temporary data directory for tests."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def stub_classifier():
    """Classifier flagging component 0 as eye activity."""
    return StubClassifier()


# =============================================================================
# Synthetic Recordings
# =============================================================================

@pytest.fixture
def synthetic_recording():
    """Continuous GO/NOGO recording on the default 17-channel subset."""
    return synthesize_recording(n_trials=30, seed=7)


@pytest.fixture
def small_recording():
    """Eight correlated channels, no reference or excluded channels."""
    labels = [f"E{i + 1}" for i in range(8)]
    return synthesize_recording(channel_labels=labels, n_trials=20, seed=3,
                                reference_channel="", name="HC002_sit")


@pytest.fixture
def marker_recording():
    """Two channels of slow sine with five 'target-response' markers, 2 s apart."""
    srate = 250.0
    n_samples = int(12 * srate)
    t = np.arange(n_samples) / srate
    data = np.vstack([10 * np.sin(2 * np.pi * 1.0 * t), 5 * np.cos(2 * np.pi * 2.0 * t)])
    events = [Event(type="target-response", latency=int((2 + 2 * k) * srate)) for k in range(5)]
    events.append(Event(type="other", latency=int(3 * srate)))
    return make_recording(data, srate=srate, events=events)


@pytest.fixture
def fake_dataset(temp_data_dir):
    """Two synthetic recordings saved as <CONDITION>/<name>.joblib."""
    input_dir = temp_data_dir / "input"
    for i, condition in enumerate(("SIT", "WALK")):
        name = f"HC00{i + 1}_{condition.lower()}"
        recording = synthesize_recording(
            n_trials=24, seed=10 + i, name=name,
            metadata=SubjectMetadata(subject_id=f"00{i + 1}", condition=condition, subject_type="HC"),
        )
        save_recording(recording, str(input_dir / condition), name)
    return input_dir


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Add custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks integration tests")
