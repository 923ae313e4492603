"""
Utility functions for the ERP pipeline

Logging setup, run metadata persistence and the end-of-run summary.
"""

import dataclasses
import json
import logging
import os
from typing import Any, Dict

import mne
import numpy as np


def setup_logging(debug: bool = False) -> None:
    """
    Configure logging for the pipeline

    INFO reports per-recording progress and counts, DEBUG adds per-channel
    and per-iteration detail. MNE's own logger is kept at WARNING.

    Args:
        debug: If True, enable DEBUG level logging
    """
    log_level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    mne.set_log_level('WARNING')
    logging.getLogger('mne').setLevel(logging.WARNING)

    if debug:
        logging.info("Debug logging enabled")
    else:
        logging.info("Logging configured (INFO level)")


def _to_serializable(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _to_serializable(dataclasses.asdict(obj))
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return None if np.isnan(obj) else float(obj)
    if isinstance(obj, float) and np.isnan(obj):
        return None
    if isinstance(obj, dict):
        return {str(key): _to_serializable(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_serializable(item) for item in obj]
    return obj


def save_metadata(meta: Dict[str, Any], out_path: str) -> None:
    """
    Save run metadata to a JSON file

    The configuration and the per-stage counts are written so a run can be
    audited and repeated. Dataclasses and numpy values are converted; NaN
    becomes null.

    Args:
        meta: Dictionary containing metadata to save
        out_path: Path to save JSON file
    """
    logging.info(f"Saving metadata to: {out_path}")

    directory = os.path.dirname(out_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(out_path, 'w', encoding='utf-8') as f:
        json.dump(_to_serializable(meta), f, indent=2, sort_keys=True)
    logging.info("Metadata saved successfully")


def print_pipeline_summary(summary: Dict[str, Any]) -> None:
    """Print the end-of-run summary to the console"""
    print("\n" + "=" * 60)
    print("ERP PIPELINE SUMMARY")
    print("=" * 60)

    print(f"Recordings found:     {summary.get('n_recordings', 0)}")
    print(f"Recordings processed: {summary.get('n_processed', 0)}")

    failed = summary.get('failed', {})
    if failed:
        print(f"Recordings failed:    {len(failed)}")
        for name, reason in failed.items():
            print(f"  {name}: {reason}")

    for trial_type, count in summary.get('metric_rows', {}).items():
        print(f"{trial_type} metric rows: {count}")

    for trial_type, path in summary.get('exports', {}).items():
        print(f"{trial_type} results: {path}")

    print("=" * 60)
