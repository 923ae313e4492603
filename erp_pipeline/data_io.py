"""
Data input/output functions for the ERP pipeline

This module handles finding recordings on disk, deriving the experimental
condition and subject metadata, loading raw EEGLAB datasets and saving the
intermediate recordings written between pipeline stages.
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

import joblib
import mne
import numpy as np
import pandas as pd

from .config import CONDITIONS
from .data_types import Channel, ConditionNotFoundError, Event, Recording, SubjectMetadata

mne.set_log_level('WARNING')

SUBJECT_TYPES = ("HC", "PDM", "PD")
SUBJECT_ID_PATTERN = re.compile(r"(HC|PDM_|PDM|PD)\d+")
METADATA_TAIL = 80  # the filename convention keeps metadata in the last 80 characters


def find_files(root: str, pattern: str = r".+\.set$") -> List[str]:
    """
    Recursively list files under a directory whose path matches a pattern

    The regular expression is matched case-insensitively against the full
    path, like the original batch scripts did.

    Args:
        root: Directory to search
        pattern: Regular expression for file paths

    Returns:
        Sorted list of matching file paths

    Raises:
        FileNotFoundError: If the root directory doesn't exist
    """
    if not os.path.isdir(root):
        raise FileNotFoundError(f"Directory not found: {root}")

    regex = re.compile(pattern, re.IGNORECASE)
    matches = sorted(
        str(path) for path in Path(root).rglob("*")
        if path.is_file() and regex.search(str(path))
    )
    logging.info(f"Found {len(matches)} files matching '{pattern}' under {root}")
    return matches


def infer_condition(path: str, mandatory: bool = True) -> Optional[str]:
    """
    Derive the experimental condition (SIT or WALK) from a file path

    Args:
        path: File path containing the condition keyword
        mandatory: Raise when the condition is missing, instead of warning

    Returns:
        "SIT", "WALK", or None when not found and not mandatory

    Raises:
        ConditionNotFoundError: If no keyword is found and mandatory is True
    """
    upper = path.upper()
    for condition in CONDITIONS:
        if condition in upper:
            return condition

    message = f"Condition ({' or '.join(CONDITIONS)}) could not be determined from the file path: {path}"
    if mandatory:
        raise ConditionNotFoundError(message)
    logging.warning(message)
    return None


def parse_filename_metadata(path: str) -> SubjectMetadata:
    """
    Parse condition, subject type and subject ID from a file name

    This is the fallback when no manifest entry exists. It relies on the
    naming convention "<...>HC001_sit_<...>", so unknown parts come back as
    "UNKNOWN" rather than raising.

    Args:
        path: File path or name

    Returns:
        SubjectMetadata with the parsed fields
    """
    condition = infer_condition(path, mandatory=False) or "UNKNOWN"
    tail = os.path.basename(path)[-METADATA_TAIL:]

    subject_type = "UNKNOWN"
    for candidate in SUBJECT_TYPES:
        if candidate in tail:
            subject_type = candidate
            break

    match = SUBJECT_ID_PATTERN.search(tail)
    subject_id = match.group(0)[-3:] if match else "UNKNOWN"

    return SubjectMetadata(subject_id=subject_id, condition=condition, subject_type=subject_type)


def load_manifest(path: str) -> Dict[str, SubjectMetadata]:
    """
    Load explicit subject metadata from a CSV manifest

    Expected columns: file, subject_id, condition, subject_type. The ``file``
    column holds the raw recording's file name; entries are keyed by its stem
    so that later stage outputs (which append suffixes) can still be matched.

    Args:
        path: Manifest CSV path

    Returns:
        Mapping from file stem to SubjectMetadata

    Raises:
        FileNotFoundError: If the manifest doesn't exist
        ValueError: If required columns are missing
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Manifest not found: {path}")

    df = pd.read_csv(path, dtype=str)
    required = ["file", "subject_id", "condition", "subject_type"]
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise ValueError(f"Manifest is missing columns {missing}. Available columns: {list(df.columns)}")

    manifest = {}
    for row in df.itertuples(index=False):
        stem = Path(row.file).stem
        manifest[stem] = SubjectMetadata(
            subject_id=str(row.subject_id).zfill(3),
            condition=str(row.condition).upper(),
            subject_type=str(row.subject_type).upper(),
        )

    logging.info(f"Loaded metadata for {len(manifest)} recordings from {path}")
    return manifest


def resolve_metadata(path: str, manifest: Optional[Dict[str, SubjectMetadata]] = None) -> SubjectMetadata:
    """Manifest entry for a path (longest matching stem prefix), else the parsed file name"""
    if manifest:
        stem = Path(path).stem
        candidates = [key for key in manifest if stem.startswith(key)]
        if candidates:
            return manifest[max(candidates, key=len)]
        logging.warning(f"No manifest entry for {path}, parsing metadata from the file name")
    return parse_filename_metadata(path)


def recording_from_raw(raw: mne.io.BaseRaw, name: str = "") -> Recording:
    """
    Convert an MNE Raw object into a Recording

    MNE stores volts; recordings are kept in µV because every amplitude
    threshold in the pipeline is expressed in µV.
    """
    data = raw.get_data() * 1e6
    srate = float(raw.info['sfreq'])

    channels = []
    for ch in raw.info['chs']:
        loc = np.asarray(ch['loc'][:3], dtype=float)
        position = None if (not np.all(np.isfinite(loc)) or not np.any(loc)) else tuple(loc)
        channels.append(Channel(label=ch['ch_name'], position=position))

    events = [
        Event(type=str(annot['description']), latency=int(round(annot['onset'] * srate)))
        for annot in raw.annotations
    ]

    return Recording(
        data=data,
        channels=channels,
        srate=srate,
        times=np.arange(data.shape[1]) * 1000.0 / srate,
        events=events,
        name=name,
    )


def recording_to_raw(recording: Recording) -> mne.io.RawArray:
    """
    Build an MNE RawArray from a continuous Recording

    Channel positions, when known, are attached as a head-frame montage so
    that position-aware tools (ICLabel) can use them.
    """
    if recording.is_epoched:
        raise ValueError("Only continuous recordings can be converted to Raw")

    info = mne.create_info(recording.labels, recording.srate, ch_types='eeg')
    raw = mne.io.RawArray(recording.data * 1e-6, info, verbose=False)

    positions = {ch.label: np.asarray(ch.position) for ch in recording.channels if ch.position is not None}
    if positions:
        montage = mne.channels.make_dig_montage(ch_pos=positions, coord_frame='head')
        raw.set_montage(montage, on_missing='ignore')

    return raw


def load_recording(path: str) -> Recording:
    """
    Load a recording from an EEGLAB dataset or a pipeline intermediate

    Args:
        path: ``.set`` (raw EEGLAB dataset) or ``.joblib`` (stage output)

    Returns:
        Recording with a "loaded file" entry appended to its history

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file type is not supported
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Recording not found: {path}")

    suffix = Path(path).suffix.lower()
    if suffix == ".set":
        logging.info(f"Loading EEGLAB dataset from: {path}")
        raw = mne.io.read_raw_eeglab(path, preload=True, verbose=False)
        recording = recording_from_raw(raw, name=Path(path).stem)
    elif suffix == ".joblib":
        logging.info(f"Loading intermediate recording from: {path}")
        recording = joblib.load(path)
        if not isinstance(recording, Recording):
            raise ValueError(f"{path} does not contain a Recording")
    else:
        raise ValueError(f"Unsupported recording format '{suffix}': {path}")

    recording.add_history(f"loaded file: {path}")
    recording.check()
    logging.info(f"Recording shape: {recording.data.shape}, srate: {recording.srate} Hz")
    return recording


def save_recording(recording: Recording, directory: str, file_name: str) -> str:
    """
    Save a recording as a joblib intermediate

    The directory is created if absent; concurrent workers writing distinct
    file names into the same directory are safe.

    Args:
        recording: Recording to save
        directory: Output directory
        file_name: File name without extension

    Returns:
        Path of the written file
    """
    recording.check()
    os.makedirs(directory, exist_ok=True)
    out_path = os.path.join(directory, f"{file_name}.joblib")
    joblib.dump(recording, out_path)
    logging.info(f"Saved recording: {out_path}")
    return out_path
