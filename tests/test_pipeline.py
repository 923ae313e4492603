"""
Integration Tests for the Batch Pipeline
========================================

Stage batches over saved intermediates, the whole-recording pipeline with
per-recording failure isolation, and the command-line entry point.
"""

import json
import os

import pytest

from erp_pipeline.cli import main
from erp_pipeline.config import load_config
from erp_pipeline.data_io import find_files, load_manifest, load_recording, save_recording
from erp_pipeline.data_types import ConditionNotFoundError, SubjectMetadata
from erp_pipeline.fake_data import synthesize_recording
from erp_pipeline.pipeline import (BAND_POWER_FILES, ERP_RESULT_FILES, RESULTS_DIR, STAGE_DIRS,
                                   process_recording, run_artifact_removal, run_band_power,
                                   run_channel_cleaning, run_epoching, run_erp_metrics, run_ica,
                                   run_pipeline)

from conftest import StubClassifier

JOBLIB_PATTERN = r".+\.joblib$"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def pipeline_config():
    """Short ICA, joblib inputs."""
    return load_config(ica_max_iter=100, ica_tolerance=1e-7, file_pattern=JOBLIB_PATTERN)


@pytest.fixture
def output_dir(tmp_path):
    return tmp_path / "out"


def _write_unlabelled(directory):
    """A recording whose path names no condition"""
    recording = synthesize_recording(n_trials=10, seed=99, name="HC003_rest")
    return save_recording(recording, str(directory), "HC003_rest")


# =============================================================================
# Stage Batches
# =============================================================================

@pytest.mark.slow
@pytest.mark.integration
class TestStageBatches:
    """Tests for running one stage at a time over saved files."""

    def test_stages_in_sequence(self, fake_dataset, output_dir, pipeline_config):
        raw_files = find_files(str(fake_dataset), JOBLIB_PATTERN)

        removed = run_channel_cleaning(raw_files, str(output_dir / STAGE_DIRS["chans"]), pipeline_config)
        assert set(removed) == {"HC001_sit.joblib", "HC002_walk.joblib"}
        assert all(count >= 5 for count in removed.values())  # VREF plus four excluded channels
        assert (output_dir / "initial_cleaning" / "SIT" / "HC001_sit_chans.joblib").exists()
        assert (output_dir / "initial_cleaning" / "WALK" / "HC002_walk_chans.joblib").exists()

        chans_files = find_files(str(output_dir / STAGE_DIRS["chans"]), JOBLIB_PATTERN)
        components = run_ica(chans_files, str(output_dir / STAGE_DIRS["ica"]), pipeline_config,
                             classifier=StubClassifier())
        assert all(count > 0 for count in components.values())

        ica_files = find_files(str(output_dir / STAGE_DIRS["ica"]), JOBLIB_PATTERN)
        removed_components = run_artifact_removal(ica_files, str(output_dir / STAGE_DIRS["processed"]),
                                                  pipeline_config)
        assert list(removed_components.values()) == [1, 1]

        processed = find_files(str(output_dir / STAGE_DIRS["processed"]), JOBLIB_PATTERN)
        assert os.path.basename(processed[0]) == "HC001_sit_chans_ICA_processed.joblib"

        go_counts = run_epoching(processed, str(output_dir / STAGE_DIRS["GO"]), pipeline_config, "GO")
        assert all(count > 0 for count in go_counts.values())

        go_files = find_files(str(output_dir / STAGE_DIRS["GO"]), JOBLIB_PATTERN)
        assert os.path.basename(go_files[0]) == "HC001_sit_chans_ICA_processed_GO_filtered.joblib"

        metrics = run_erp_metrics(go_files, pipeline_config, "GO")
        assert [m.metadata for m in metrics] == [SubjectMetadata("001", "SIT", "HC"),
                                                 SubjectMetadata("002", "WALK", "HC")]

        band_records = run_band_power(go_files, pipeline_config)
        assert len(band_records) == sum(load_recording(f).n_channels for f in go_files)

    def test_channel_stage_requires_condition(self, temp_data_dir, output_dir, pipeline_config):
        path = _write_unlabelled(temp_data_dir)

        with pytest.raises(ConditionNotFoundError):
            run_channel_cleaning([path], str(output_dir), pipeline_config)
        assert not output_dir.exists()

    def test_epoch_stage_skips_missing_condition(self, temp_data_dir, output_dir, pipeline_config, caplog):
        path = _write_unlabelled(temp_data_dir)

        counts = run_epoching([path], str(output_dir), pipeline_config, "NOGO")

        assert counts == {"HC003_rest.joblib": 0}
        assert "could not be determined" in caplog.text
        assert not output_dir.exists()

    def test_unknown_trial_type(self, output_dir, pipeline_config):
        with pytest.raises(ValueError):
            run_epoching([], str(output_dir), pipeline_config, "STOP")


# =============================================================================
# Whole-Recording Pipeline
# =============================================================================

@pytest.mark.slow
@pytest.mark.integration
class TestRunPipeline:
    """Tests for the end-to-end batch run."""

    def test_outputs_and_summary(self, fake_dataset, output_dir, pipeline_config):
        summary = run_pipeline(str(fake_dataset), str(output_dir), pipeline_config,
                               classifier=StubClassifier())

        assert summary["n_recordings"] == 2
        assert summary["n_processed"] == 2
        assert summary["failed"] == {}
        assert summary["metric_rows"]["GO"] > 0
        for trial_type in ("GO", "NOGO"):
            assert (output_dir / RESULTS_DIR / ERP_RESULT_FILES[trial_type]).exists()
            assert (output_dir / RESULTS_DIR / BAND_POWER_FILES[trial_type]).exists()

        assert (output_dir / "ica_cleaning" / "SIT" / "HC001_sit_chans_ICA.joblib").exists()
        assert (output_dir / "clean_nogo" / "WALK" / "HC002_walk_chans_ICA_processed_NOGO_filtered.joblib").exists()

        recording = summary["recordings"]["HC001_sit"]
        assert recording["components_removed"] == 1
        assert "VREF" in recording["removed_channels"]

        with open(output_dir / RESULTS_DIR / "run_metadata.json") as fh:
            metadata = json.load(fh)
        assert metadata["n_processed"] == 2
        assert metadata["config"]["ica_seed"] == 42

    def test_failed_recording_isolated(self, fake_dataset, output_dir, pipeline_config):
        _write_unlabelled(fake_dataset)

        summary = run_pipeline(str(fake_dataset), str(output_dir), pipeline_config,
                               classifier=StubClassifier())

        assert summary["n_recordings"] == 3
        assert summary["n_processed"] == 2
        assert list(summary["failed"]) == ["HC003_rest"]
        assert not any("HC003" in path for path in find_files(str(output_dir), JOBLIB_PATTERN))

    def test_unreadable_recording_isolated(self, fake_dataset, output_dir, pipeline_config):
        (fake_dataset / "SIT" / "HC009_sit.joblib").write_bytes(b"not a pickled recording")

        summary = run_pipeline(str(fake_dataset), str(output_dir), pipeline_config, n_jobs=1,
                               classifier=StubClassifier())

        assert summary["n_recordings"] == 3
        assert summary["n_processed"] == 2
        assert list(summary["failed"]) == ["HC009_sit"]
        assert set(summary["recordings"]) == {"HC001_sit", "HC002_walk"}
        assert (output_dir / RESULTS_DIR / ERP_RESULT_FILES["GO"]).exists()
        assert (output_dir / RESULTS_DIR / "run_metadata.json").exists()

    def test_low_sample_rate_isolated(self, fake_dataset, output_dir, pipeline_config):
        # 40 Hz band-pass edge is above Nyquist at 60 Hz
        recording = synthesize_recording(n_trials=10, srate=60.0, seed=5, name="HC004_sit")
        save_recording(recording, str(fake_dataset / "SIT"), "HC004_sit")

        summary = run_pipeline(str(fake_dataset), str(output_dir), pipeline_config,
                               classifier=StubClassifier())

        assert summary["n_processed"] == 2
        assert "Nyquist" in summary["failed"]["HC004_sit"]

    def test_manifest_metadata(self, fake_dataset, output_dir, pipeline_config, tmp_path):
        manifest = tmp_path / "subjects.csv"
        manifest.write_text("file,subject_id,condition,subject_type\n"
                            "HC001_sit.set,101,SIT,PDM\n"
                            "HC002_walk.set,102,WALK,PD\n")

        summary = run_pipeline(str(fake_dataset), str(output_dir), pipeline_config,
                               manifest_path=str(manifest), classify=False)
        assert summary["n_processed"] == 2

        # Stage outputs carry suffixes; the manifest is matched on the raw stem
        metrics = run_erp_metrics(
            find_files(str(output_dir / STAGE_DIRS["NOGO"]), JOBLIB_PATTERN), pipeline_config, "NOGO",
            manifest=load_manifest(str(manifest)),
        )
        assert [m.metadata for m in metrics] == [SubjectMetadata("101", "SIT", "PDM"),
                                                 SubjectMetadata("102", "WALK", "PD")]

    def test_unclassified_run_removes_nothing(self, fake_dataset, output_dir, pipeline_config):
        summary = run_pipeline(str(fake_dataset), str(output_dir), pipeline_config, classify=False)

        assert all(r["components_removed"] == 0 for r in summary["recordings"].values())

    def test_parallel_matches_sequential(self, fake_dataset, tmp_path, pipeline_config):
        sequential = run_pipeline(str(fake_dataset), str(tmp_path / "seq"), pipeline_config,
                                  n_jobs=1, classify=False)
        parallel = run_pipeline(str(fake_dataset), str(tmp_path / "par"), pipeline_config,
                                n_jobs=2, classify=False)

        assert parallel["recordings"] == sequential["recordings"]
        assert parallel["metric_rows"] == sequential["metric_rows"]

    def test_metadata_condition_preferred(self, temp_data_dir, output_dir, pipeline_config):
        path = _write_unlabelled(temp_data_dir)

        result = process_recording(path, pipeline_config, str(output_dir),
                                   metadata=SubjectMetadata("003", "WALK", "HC"),
                                   classifier=StubClassifier())

        assert (output_dir / "initial_cleaning" / "WALK" / "HC003_rest_chans.joblib").exists()
        assert result["components_removed"] == 1
        assert set(result["n_epochs"]) == {"GO", "NOGO"}


# =============================================================================
# Command Line
# =============================================================================

@pytest.mark.slow
@pytest.mark.integration
class TestCommandLine:
    """Tests for the erp-pipeline entry point."""

    def test_fake_run(self, tmp_path):
        config_path = tmp_path / "thresholds.json"
        config_path.write_text(json.dumps({"ica_max_iter": 50, "ica_tolerance": 1e-7}))

        exit_code = main([
            "--fake", "2",
            "--input", str(tmp_path / "fake"),
            "--output", str(tmp_path / "out"),
            "--config", str(config_path),
            "--skip-classification",
        ])

        assert exit_code == 0
        assert (tmp_path / "fake" / "SIT" / "HC001_sit.joblib").exists()
        assert (tmp_path / "fake" / "WALK" / "HC001_walk.joblib").exists()
        assert (tmp_path / "out" / RESULTS_DIR / "ERP_GoResults.xlsx").exists()

    def test_single_stage(self, fake_dataset, tmp_path):
        exit_code = main([
            "--stage", "chans",
            "--pattern", JOBLIB_PATTERN,
            "--input", str(fake_dataset),
            "--output", str(tmp_path / "out"),
        ])

        assert exit_code == 0
        assert (tmp_path / "out" / "initial_cleaning" / "SIT" / "HC001_sit_chans.joblib").exists()
        assert (tmp_path / "out" / RESULTS_DIR / "chans_metadata.json").exists()

    def test_missing_input(self, tmp_path):
        assert main(["--input", str(tmp_path / "missing"), "--output", str(tmp_path / "out")]) == 1
