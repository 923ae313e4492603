"""
Batch orchestration of the ERP pipeline

Two ways to run the stages:

- Stage batches (``run_channel_cleaning``, ``run_ica``, ...) process a list
  of files for one stage and write ``<stage_dir>/<CONDITION>/<name><suffix>``,
  so a run can be resumed from any saved stage.
- ``run_pipeline`` runs the whole chain for every recording as an
  independent task on a joblib worker pool, then aggregates the metrics of
  all recordings and exports the result tables.
"""

import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from joblib import Parallel, delayed

from .channels import clean_channels
from .config import CONDITIONS, TRIAL_TYPES, PipelineConfig, ensure_output_dirs
from .data_io import (find_files, infer_condition, load_manifest, load_recording,
                      resolve_metadata, save_recording)
from .data_types import (BandPowerRecord, ChannelMismatchError, ConditionNotFoundError,
                         SubjectMetadata, SubjectMetrics)
from .epoching import extract_condition_epochs
from .features import compute_band_powers, extract_subject_metrics
from .ica import IclabelClassifier, perform_ica, remove_artifact_components
from .results import band_power_table, export_table, metrics_to_rows, results_table
from .utils import save_metadata

STAGE_DIRS = {
    "chans": "initial_cleaning",
    "ica": "ica_cleaning",
    "processed": "final_clean",
    "GO": "clean_go",
    "NOGO": "clean_nogo",
}
STAGE_SUFFIXES = {
    "chans": "_chans",
    "ica": "_ICA",
    "processed": "_processed",
    "GO": "_GO_filtered",
    "NOGO": "_NOGO_filtered",
}
RESULTS_DIR = "results"
ERP_RESULT_FILES = {"GO": "ERP_GoResults.xlsx", "NOGO": "ERP_NoGoResults.xlsx"}
BAND_POWER_FILES = {"GO": "BandPower_GO.xlsx", "NOGO": "BandPower_NOGO.xlsx"}


def _condition_for(path: str, metadata: Optional[SubjectMetadata], mandatory: bool = True) -> Optional[str]:
    """Condition from explicit metadata when it carries one, else from the path"""
    if metadata is not None and metadata.condition in CONDITIONS:
        return metadata.condition
    return infer_condition(path, mandatory=mandatory)


def _run_files(func, files: List[str], n_jobs: int, *args) -> list:
    if n_jobs == 1:
        return [func(path, *args) for path in files]
    return Parallel(n_jobs=n_jobs)(delayed(func)(path, *args) for path in files)


# =============================================================================
# Stage batches
# =============================================================================

def _clean_channels_file(path: str, output_dir: str, config: PipelineConfig) -> int:
    condition = infer_condition(path)
    recording = load_recording(path)
    n_initial = recording.n_channels

    clean_channels(recording, config)
    save_recording(recording, os.path.join(output_dir, condition), Path(path).stem + STAGE_SUFFIXES["chans"])
    return n_initial - recording.n_channels


def run_channel_cleaning(files: List[str], output_dir: str, config: PipelineConfig) -> Dict[str, int]:
    """
    Channel-quality stage over a list of raw recordings

    The condition is mandatory here: a file without SIT/WALK in its path
    raises ConditionNotFoundError and halts the batch.

    Returns:
        Number of channels removed per file name
    """
    logging.info(f"Channel cleaning of {len(files)} files into {output_dir}")
    removed = _run_files(_clean_channels_file, files, config.n_jobs, output_dir, config)
    summary = {Path(path).name: count for path, count in zip(files, removed)}
    logging.info(f"Processed {len(files)} files. Data saved in {output_dir}")
    return summary


def _ica_file(path: str, output_dir: str, config: PipelineConfig, classifier) -> int:
    condition = infer_condition(path)
    recording = load_recording(path)
    perform_ica(recording, config, classifier)
    save_recording(recording, os.path.join(output_dir, condition), Path(path).stem + STAGE_SUFFIXES["ica"])
    return recording.decomposition.n_components


def run_ica(files: List[str], output_dir: str, config: PipelineConfig,
            classifier: Optional[object] = None, classify: bool = True) -> Dict[str, int]:
    """
    Decomposition and classification stage

    Args:
        files: Channel-cleaned recordings
        output_dir: Stage output directory
        config: Pipeline configuration
        classifier: Component classifier; defaults to ICLabel
        classify: False leaves components unclassified

    Returns:
        Number of components per file name
    """
    if classify and classifier is None:
        classifier = IclabelClassifier()
    if not classify:
        classifier = None

    logging.info(f"ICA of {len(files)} files into {output_dir}")
    counts = _run_files(_ica_file, files, config.n_jobs, output_dir, config, classifier)
    return {Path(path).name: count for path, count in zip(files, counts)}


def _artifact_removal_file(path: str, output_dir: str, config: PipelineConfig) -> int:
    condition = infer_condition(path)
    recording = load_recording(path)
    remove_artifact_components(recording, config)
    save_recording(recording, os.path.join(output_dir, condition), Path(path).stem + STAGE_SUFFIXES["processed"])
    return recording.components_removed


def run_artifact_removal(files: List[str], output_dir: str, config: PipelineConfig) -> Dict[str, int]:
    """
    Artifact component removal stage

    Returns:
        Number of components removed per file name
    """
    logging.info(f"Artifact removal of {len(files)} files into {output_dir}")
    removed = _run_files(_artifact_removal_file, files, config.n_jobs, output_dir, config)
    return {Path(path).name: count for path, count in zip(files, removed)}


def _epoching_file(path: str, output_dir: str, config: PipelineConfig, trial_type: str) -> int:
    condition = infer_condition(path, mandatory=False)
    if condition is None:
        return 0

    recording = load_recording(path)
    epochs = extract_condition_epochs(recording, trial_type, config)
    if epochs is None:
        logging.info(f"No epochs remained after filtering for {Path(path).stem}")
        return 0

    save_recording(epochs, os.path.join(output_dir, condition), Path(path).stem + STAGE_SUFFIXES[trial_type])
    return epochs.n_epochs


def run_epoching(files: List[str], output_dir: str, config: PipelineConfig, trial_type: str) -> Dict[str, int]:
    """
    Epoch extraction and rejection stage for one trial type

    The condition is advisory here: files without one are skipped with a
    warning. Recordings with no surviving epoch write no file.

    Returns:
        Number of accepted epochs per file name (0 when nothing was saved)
    """
    config.markers_for(trial_type)
    logging.info(f"{trial_type} epoching of {len(files)} files into {output_dir}")
    counts = _run_files(_epoching_file, files, config.n_jobs, output_dir, config, trial_type)
    return {Path(path).name: count for path, count in zip(files, counts)}


def _metrics_file(path: str, config: PipelineConfig, trial_type: str,
                  manifest: Optional[Dict[str, SubjectMetadata]]) -> SubjectMetrics:
    recording = load_recording(path)
    metadata = resolve_metadata(path, manifest)
    return extract_subject_metrics(recording, metadata, trial_type, config)


def run_erp_metrics(files: List[str], config: PipelineConfig, trial_type: str,
                    manifest: Optional[Dict[str, SubjectMetadata]] = None) -> List[SubjectMetrics]:
    """
    Peak/dip metrics of saved epoch files of one trial type

    Metadata comes from the manifest when given, else from the file name.
    """
    logging.info(f"{trial_type} ERP metrics of {len(files)} files")
    return _run_files(_metrics_file, files, config.n_jobs, config, trial_type, manifest)


def _band_power_file(path: str, config: PipelineConfig) -> List[BandPowerRecord]:
    recording = load_recording(path)
    return compute_band_powers(recording, config.frequency_bands, file_name=Path(path).name)


def run_band_power(files: List[str], config: PipelineConfig) -> List[BandPowerRecord]:
    """Band power records of saved epoch files, one per (file, channel)"""
    logging.info(f"Band power of {len(files)} files")
    per_file = _run_files(_band_power_file, files, config.n_jobs, config)
    return [record for records in per_file for record in records]


# =============================================================================
# Whole-recording pipeline
# =============================================================================

def process_recording(
    path: str,
    config: PipelineConfig,
    output_root: str,
    metadata: Optional[SubjectMetadata] = None,
    classifier: Optional[object] = None
) -> Dict[str, Any]:
    """
    Run every stage for one recording, saving each stage's output

    Args:
        path: Raw recording path
        config: Pipeline configuration
        output_root: Root of the stage directories
        metadata: Explicit subject metadata; parsed from the file name if None
        classifier: Component classifier, None to skip classification

    Returns:
        Dictionary with the recording name, removed channels, removed
        component count, accepted epochs, metrics and band powers per trial
        type (None where no epoch survived)

    Raises:
        ConditionNotFoundError: If the condition can't be determined
        ChannelMismatchError: If a stage breaks the channel invariant
    """
    metadata = metadata or resolve_metadata(path)
    condition = _condition_for(path, metadata)
    name = Path(path).stem
    logging.info(f"Processing {name} ({condition}, subject {metadata.subject_id}, {metadata.subject_type})")

    recording = load_recording(path)
    recording.metadata = metadata

    clean_channels(recording, config)
    name += STAGE_SUFFIXES["chans"]
    save_recording(recording, os.path.join(output_root, STAGE_DIRS["chans"], condition), name)

    perform_ica(recording, config, classifier)
    name += STAGE_SUFFIXES["ica"]
    save_recording(recording, os.path.join(output_root, STAGE_DIRS["ica"], condition), name)

    remove_artifact_components(recording, config)
    name += STAGE_SUFFIXES["processed"]
    save_recording(recording, os.path.join(output_root, STAGE_DIRS["processed"], condition), name)

    result: Dict[str, Any] = {
        "name": Path(path).stem,
        "removed_channels": list(recording.removed_channels),
        "components_removed": recording.components_removed,
        "n_epochs": {},
        "metrics": {},
        "band_powers": {},
    }

    for trial_type in TRIAL_TYPES:
        epochs = extract_condition_epochs(recording, trial_type, config)
        if epochs is None:
            result["n_epochs"][trial_type] = 0
            result["metrics"][trial_type] = None
            result["band_powers"][trial_type] = []
            continue

        epoch_name = name + STAGE_SUFFIXES[trial_type]
        save_recording(epochs, os.path.join(output_root, STAGE_DIRS[trial_type], condition), epoch_name)

        result["n_epochs"][trial_type] = epochs.n_epochs
        result["metrics"][trial_type] = extract_subject_metrics(epochs, metadata, trial_type, config)
        result["band_powers"][trial_type] = compute_band_powers(
            epochs, config.frequency_bands, file_name=epoch_name
        )

    return result


def _process_or_report(path: str, config: PipelineConfig, output_root: str,
                       metadata: Optional[SubjectMetadata], classifier) -> Dict[str, Any]:
    try:
        return process_recording(path, config, output_root, metadata, classifier)
    except (ConditionNotFoundError, ChannelMismatchError) as e:
        logging.error(f"Processing of {path} stopped: {e}")
        return {"name": Path(path).stem, "error": str(e)}
    except Exception as e:
        logging.exception(f"Processing of {path} failed")
        return {"name": Path(path).stem, "error": f"{type(e).__name__}: {e}"}


def run_pipeline(
    input_root: str,
    output_root: str,
    config: PipelineConfig,
    n_jobs: Optional[int] = None,
    manifest_path: Optional[str] = None,
    classifier: Optional[object] = None,
    classify: bool = True
) -> Dict[str, Any]:
    """
    Process every recording under a directory and export the results

    Recordings run as independent tasks (sequentially when n_jobs is 1). A
    recording that hits a fatal error is reported and left out; the others
    continue. Aggregation starts only after all tasks have finished.

    Args:
        input_root: Directory searched recursively with config.file_pattern
        output_root: Root of the stage and result directories
        config: Pipeline configuration
        n_jobs: Worker count, overrides config.n_jobs (-1 for all cores)
        manifest_path: CSV with explicit subject metadata
        classifier: Component classifier; defaults to ICLabel
        classify: False skips component classification (and thus removal)

    Returns:
        Run summary, also saved as results/run_metadata.json
    """
    start_time = time.time()
    n_jobs = n_jobs if n_jobs is not None else config.n_jobs
    if n_jobs == 0:
        raise ValueError("n_jobs must be non-zero (use -1 for all cores)")

    files = find_files(input_root, config.file_pattern)
    manifest = load_manifest(manifest_path) if manifest_path else None
    if classify and classifier is None:
        classifier = IclabelClassifier()
    if not classify:
        classifier = None

    ensure_output_dirs(output_root, tuple(STAGE_DIRS.values()) + (RESULTS_DIR,))
    logging.info(f"Running pipeline on {len(files)} recordings with n_jobs={n_jobs}")

    jobs = [(path, resolve_metadata(path, manifest)) for path in files]
    if n_jobs == 1:
        outcomes = [_process_or_report(path, config, output_root, meta, classifier) for path, meta in jobs]
    else:
        outcomes = Parallel(n_jobs=n_jobs)(
            delayed(_process_or_report)(path, config, output_root, meta, classifier) for path, meta in jobs
        )

    processed = [outcome for outcome in outcomes if "error" not in outcome]
    failed = {outcome["name"]: outcome["error"] for outcome in outcomes if "error" in outcome}

    summary: Dict[str, Any] = {
        "config": config,
        "input_root": input_root,
        "output_root": output_root,
        "n_recordings": len(files),
        "n_processed": len(processed),
        "failed": failed,
        "recordings": {
            outcome["name"]: {
                "removed_channels": outcome["removed_channels"],
                "components_removed": outcome["components_removed"],
                "n_epochs": outcome["n_epochs"],
            }
            for outcome in processed
        },
        "metric_rows": {},
        "exports": {},
    }

    results_dir = os.path.join(output_root, RESULTS_DIR)
    for trial_type in TRIAL_TYPES:
        rows = metrics_to_rows(outcome["metrics"][trial_type] for outcome in processed)
        erp_path = export_table(results_table(rows), os.path.join(results_dir, ERP_RESULT_FILES[trial_type]))
        summary["metric_rows"][trial_type] = len(rows)
        summary["exports"][trial_type] = erp_path

        band_records = [record for outcome in processed for record in outcome["band_powers"][trial_type]]
        if band_records:
            export_table(band_power_table(band_records), os.path.join(results_dir, BAND_POWER_FILES[trial_type]))

    summary["duration_seconds"] = time.time() - start_time
    save_metadata(summary, os.path.join(results_dir, "run_metadata.json"))

    logging.info(f"Pipeline finished: {len(processed)}/{len(files)} recordings processed "
                 f"in {summary['duration_seconds']:.1f} seconds")
    return summary
