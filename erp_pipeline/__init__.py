"""
ERP Cleaning and Metrics Pipeline

Batch cleaning of GO/NOGO EEG recordings (channel rejection, ICA artifact
removal, epoch rejection) and extraction of P3/N2 metrics and spectral band
power per subject.
"""

__version__ = "1.0.0"

# Main components for easy import
from .config import PipelineConfig, load_config
from .data_io import find_files, load_recording, save_recording
from .data_types import ChannelMismatchError, ConditionNotFoundError, Recording
from .fake_data import synthesize_recording
from .pipeline import process_recording, run_pipeline

__all__ = [
    'PipelineConfig', 'load_config',
    'find_files', 'load_recording', 'save_recording',
    'ChannelMismatchError', 'ConditionNotFoundError', 'Recording',
    'synthesize_recording',
    'process_recording', 'run_pipeline',
]
