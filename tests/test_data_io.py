"""
Unit Tests for Data Input/Output
================================

File discovery, condition and metadata parsing, manifests, MNE conversion
and the joblib intermediates written between stages.
"""

import mne
import numpy as np
import pytest

from erp_pipeline.data_io import (find_files, infer_condition, load_manifest, load_recording,
                                  parse_filename_metadata, recording_from_raw, recording_to_raw,
                                  resolve_metadata, save_recording)
from erp_pipeline.data_types import ChannelMismatchError, ConditionNotFoundError, SubjectMetadata


class TestFindFiles:
    """Tests for recursive file discovery."""

    def test_recursive_case_insensitive(self, temp_data_dir):
        (temp_data_dir / "SIT").mkdir()
        (temp_data_dir / "WALK" / "deep").mkdir(parents=True)
        (temp_data_dir / "SIT" / "HC001_sit.set").write_text("")
        (temp_data_dir / "WALK" / "deep" / "HC001_walk.SET").write_text("")
        (temp_data_dir / "SIT" / "HC001_sit.fdt").write_text("")

        files = find_files(str(temp_data_dir), r".+\.set$")

        assert len(files) == 2
        assert files == sorted(files)
        assert all(f.lower().endswith(".set") for f in files)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_files(str(tmp_path / "nowhere"))


class TestConditions:
    """Tests for condition inference and file name metadata."""

    @pytest.mark.parametrize("path, expected", [
        ("data/SIT/HC001_sit.set", "SIT"),
        ("data/HC001_Walk_chans.set", "WALK"),
        ("/x/pd007_walking.joblib", "WALK"),
    ])
    def test_infer_condition(self, path, expected):
        assert infer_condition(path) == expected

    def test_mandatory_condition_raises(self):
        with pytest.raises(ConditionNotFoundError):
            infer_condition("data/HC001_rest.set")

    def test_advisory_condition_warns(self, caplog):
        assert infer_condition("data/HC001_rest.set", mandatory=False) is None
        assert "could not be determined" in caplog.text

    def test_parse_healthy_control(self):
        meta = parse_filename_metadata("out/SIT/HC001_sit_chans_ICA.joblib")
        assert meta == SubjectMetadata(subject_id="001", condition="SIT", subject_type="HC")

    def test_parse_pdm_before_pd(self):
        meta = parse_filename_metadata("PDM_012_walk.set")
        assert meta.subject_type == "PDM"
        assert meta.subject_id == "012"
        assert meta.condition == "WALK"

    def test_parse_pd(self):
        meta = parse_filename_metadata("PD1007_sit.set")
        assert meta.subject_type == "PD"
        assert meta.subject_id == "007"

    def test_parse_unknown(self):
        meta = parse_filename_metadata("recording.set")
        assert meta == SubjectMetadata()


class TestManifest:
    """Tests for explicit subject metadata."""

    def test_load_and_resolve(self, tmp_path):
        manifest_path = tmp_path / "subjects.csv"
        manifest_path.write_text(
            "file,subject_id,condition,subject_type\n"
            "HC001_sit.set,42,sit,hc\n"
            "PD007_walk.set,007,WALK,PD\n"
        )

        manifest = load_manifest(str(manifest_path))

        assert manifest["HC001_sit"] == SubjectMetadata("042", "SIT", "HC")
        # Stage outputs append suffixes to the raw stem
        resolved = resolve_metadata("out/HC001_sit_chans_ICA_processed_GO_filtered.joblib", manifest)
        assert resolved.subject_id == "042"

    def test_resolve_falls_back_to_file_name(self, tmp_path, caplog):
        manifest_path = tmp_path / "subjects.csv"
        manifest_path.write_text("file,subject_id,condition,subject_type\nHC001_sit.set,001,SIT,HC\n")

        resolved = resolve_metadata("PD003_walk.set", load_manifest(str(manifest_path)))

        assert resolved == SubjectMetadata("003", "WALK", "PD")
        assert "No manifest entry" in caplog.text

    def test_missing_columns(self, tmp_path):
        manifest_path = tmp_path / "subjects.csv"
        manifest_path.write_text("file,subject_id\nHC001_sit.set,001\n")
        with pytest.raises(ValueError, match="missing columns"):
            load_manifest(str(manifest_path))


class TestRecordingIO:
    """Tests for MNE conversion and joblib intermediates."""

    def test_raw_round_trip_keeps_microvolts(self, small_recording):
        raw = recording_to_raw(small_recording)

        assert raw.ch_names == small_recording.labels
        np.testing.assert_allclose(raw.get_data() * 1e6, small_recording.data)

        back = recording_from_raw(raw, name="copy")
        np.testing.assert_allclose(back.data, small_recording.data)
        assert back.srate == small_recording.srate
        assert back.channels[0].position == pytest.approx(small_recording.channels[0].position)

    def test_annotations_become_events(self, small_recording):
        raw = recording_to_raw(small_recording)
        raw.set_annotations(mne.Annotations(onset=[1.0, 2.5], duration=[0, 0], description=["Go-2", "RESP"]))

        recording = recording_from_raw(raw)

        assert [(ev.type, ev.latency) for ev in recording.events] == [("Go-2", 250), ("RESP", 625)]

    def test_epoched_to_raw_rejected(self, small_recording):
        small_recording.data = small_recording.data[:, :, np.newaxis]
        with pytest.raises(ValueError):
            recording_to_raw(small_recording)

    def test_save_load_round_trip(self, small_recording, temp_data_dir):
        path = save_recording(small_recording, str(temp_data_dir / "SIT"), "HC002_sit_chans")

        assert path.endswith("HC002_sit_chans.joblib")
        loaded = load_recording(path)

        np.testing.assert_array_equal(loaded.data, small_recording.data)
        assert loaded.labels == small_recording.labels
        assert loaded.events == small_recording.events
        assert loaded.history[-1] == f"loaded file: {path}"

    def test_save_checks_channel_invariant(self, small_recording, temp_data_dir):
        small_recording.channels = small_recording.channels[:-1]
        with pytest.raises(ChannelMismatchError):
            save_recording(small_recording, str(temp_data_dir), "broken")

    def test_load_unsupported(self, temp_data_dir):
        path = temp_data_dir / "HC001_sit.edf"
        path.write_text("")
        with pytest.raises(ValueError, match="Unsupported"):
            load_recording(str(path))
