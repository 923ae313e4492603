#!/usr/bin/env python3
"""
Command-line entry point for the ERP pipeline

Usage Examples:
    # Whole pipeline over a directory of EEGLAB datasets
    erp-pipeline --input data/raw --output data/out

    # Synthetic data (for testing), four jobs
    erp-pipeline --fake 4 --input data/fake --output data/out --jobs 4

    # A single stage, resuming from saved intermediates
    erp-pipeline --stage epochs --input data/out/final_clean --output data/out

    # Custom thresholds and explicit subject metadata
    erp-pipeline --input data/raw --output data/out --config thresholds.json --manifest subjects.csv
"""

import argparse
import logging
import os
import sys
import time

from .config import TRIAL_TYPES, load_config
from .data_io import find_files, load_manifest, save_recording
from .data_types import SubjectMetadata
from .fake_data import synthesize_recording
from .pipeline import (BAND_POWER_FILES, ERP_RESULT_FILES, RESULTS_DIR, STAGE_DIRS, STAGE_SUFFIXES,
                       run_artifact_removal, run_band_power, run_channel_cleaning, run_epoching,
                       run_erp_metrics, run_ica, run_pipeline)
from .results import band_power_table, export_table, metrics_to_rows, results_table
from .utils import print_pipeline_summary, save_metadata, setup_logging

STAGES = ("all", "chans", "ica", "artifacts", "epochs", "metrics")


def write_fake_dataset(directory: str, n_recordings: int, seed: int = 42) -> None:
    """Write synthetic recordings as <directory>/<CONDITION>/<HCnnn>_<condition>.joblib"""
    for i in range(n_recordings):
        condition = "SIT" if i % 2 == 0 else "WALK"
        subject_id = f"{i // 2 + 1:03d}"
        name = f"HC{subject_id}_{condition.lower()}"
        recording = synthesize_recording(
            seed=seed + i,
            name=name,
            metadata=SubjectMetadata(subject_id=subject_id, condition=condition, subject_type="HC"),
        )
        save_recording(recording, os.path.join(directory, condition), name)
    logging.info(f"Wrote {n_recordings} synthetic recordings to {directory}")


def run_stage(stage: str, args, config) -> None:
    """Run one stage batch over the files found under --input"""
    files = find_files(args.input, config.file_pattern)

    if stage == "chans":
        run_channel_cleaning(files, os.path.join(args.output, STAGE_DIRS["chans"]), config)
    elif stage == "ica":
        run_ica(files, os.path.join(args.output, STAGE_DIRS["ica"]), config,
                classify=not args.skip_classification)
    elif stage == "artifacts":
        run_artifact_removal(files, os.path.join(args.output, STAGE_DIRS["processed"]), config)
    elif stage == "epochs":
        for trial_type in TRIAL_TYPES:
            run_epoching(files, os.path.join(args.output, STAGE_DIRS[trial_type]), config, trial_type)
    elif stage == "metrics":
        manifest = load_manifest(args.manifest) if args.manifest else None
        results_dir = os.path.join(args.output, RESULTS_DIR)
        for trial_type in TRIAL_TYPES:
            suffix = STAGE_SUFFIXES[trial_type].lower()
            type_files = [path for path in files if suffix in os.path.basename(path).lower()]
            metrics = run_erp_metrics(type_files, config, trial_type, manifest)
            export_table(results_table(metrics_to_rows(metrics)),
                         os.path.join(results_dir, ERP_RESULT_FILES[trial_type]))
            band_records = run_band_power(type_files, config)
            if band_records:
                export_table(band_power_table(band_records),
                             os.path.join(results_dir, BAND_POWER_FILES[trial_type]))
    else:
        raise ValueError(f"Unknown stage: {stage}")


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser"""
    parser = argparse.ArgumentParser(
        prog="erp-pipeline",
        description="Clean GO/NOGO EEG recordings and extract ERP metrics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Stages:
  all        every stage for every recording, then export the results
  chans      band-pass, bad channel removal, average reference
  ica        extended Infomax ICA + ICLabel classification
  artifacts  artifact component removal
  epochs     GO and NOGO epochs with automatic rejection
  metrics    P3/N2 metrics and band power of saved epoch files
        """
    )

    parser.add_argument('--input', type=str, required=True,
                        help='Directory searched recursively for recordings')
    parser.add_argument('--output', type=str, required=True,
                        help='Root directory for stage outputs and results')
    parser.add_argument('--stage', choices=STAGES, default='all',
                        help='Stage to run (default: all)')
    parser.add_argument('--config', type=str,
                        help='JSON file overriding configuration defaults')
    parser.add_argument('--manifest', type=str,
                        help='CSV with columns file, subject_id, condition, subject_type')
    parser.add_argument('--pattern', type=str,
                        help='Regular expression for input files (default: from config)')
    parser.add_argument('--jobs', type=int,
                        help='Parallel recordings, -1 for all cores (default: from config)')
    parser.add_argument('--skip-classification', action='store_true',
                        help='Fit ICA but skip ICLabel (no components are removed)')
    parser.add_argument('--fake', type=int, metavar='N',
                        help='Write N synthetic recordings to --input first')
    parser.add_argument('--seed', type=int, default=42,
                        help='Seed for synthetic data (default: 42)')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')

    return parser


def main(argv=None) -> int:
    """Main pipeline function"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug)
    logging.info(f"Starting ERP pipeline (stage: {args.stage})")

    start_time = time.time()

    try:
        overrides = {}
        if args.jobs is not None:
            overrides['n_jobs'] = args.jobs
        if args.pattern:
            overrides['file_pattern'] = args.pattern
        elif args.fake or args.stage not in ('all', 'chans'):
            overrides['file_pattern'] = r".+\.joblib$"
        config = load_config(args.config, **overrides)

        if args.fake:
            write_fake_dataset(args.input, args.fake, seed=args.seed)

        if args.stage == 'all':
            summary = run_pipeline(
                args.input, args.output, config,
                manifest_path=args.manifest,
                classify=not args.skip_classification,
            )
            print_pipeline_summary(summary)
        else:
            run_stage(args.stage, args, config)
            save_metadata(
                {'stage': args.stage, 'input': args.input, 'config': config},
                os.path.join(args.output, RESULTS_DIR, f"{args.stage}_metadata.json"),
            )

        logging.info(f"Completed successfully in {time.time() - start_time:.1f} seconds")
        return 0

    except KeyboardInterrupt:
        logging.info("Pipeline interrupted by user")
        return 1
    except Exception as e:
        logging.error(f"Pipeline failed: {e}")
        if args.debug:
            raise  # Re-raise with full traceback in debug mode
        return 1


if __name__ == '__main__':
    sys.exit(main())
