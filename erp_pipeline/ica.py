"""
Independent component decomposition and artifact component removal

This module fits an extended Infomax ICA to a channel-cleaned recording,
classifies every component with ICLabel and removes the components whose
category probabilities fall inside the configured artifact bands.

The decomposition is stored on the recording as plain matrices
(ComponentDecomposition), so the removal stage can run later from a saved
intermediate without the MNE ICA object.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np
import mne
from mne.preprocessing import ICA

from .config import IC_CATEGORIES, ArtifactBands, PipelineConfig
from .channels import remove_channels
from .data_io import recording_to_raw
from .data_types import ChannelMismatchError, ComponentDecomposition, Recording

# Optional dependency - only needed when components are classified
try:
    from mne_icalabel.iclabel import iclabel_label_components
    ICALABEL_AVAILABLE = True
except ImportError:
    ICALABEL_AVAILABLE = False

mne.set_log_level('WARNING')


class IclabelClassifier:
    """
    Classify independent components with ICLabel

    Returns probabilities for the seven ICLabel categories (brain, muscle,
    eye, heart, line noise, channel noise, other) per component.
    """

    def classify(self, raw: mne.io.BaseRaw, ica: ICA) -> np.ndarray:
        if not ICALABEL_AVAILABLE:
            raise ImportError(
                "mne-icalabel is required for component classification. "
                "Install with: pip install mne-icalabel onnxruntime"
            )
        return np.asarray(iclabel_label_components(raw, ica))


def fit_ica(recording: Recording, config: PipelineConfig) -> Tuple[mne.io.RawArray, ICA]:
    """
    Fit extended Infomax ICA to a continuous recording

    The random initialisation is seeded with ``config.ica_seed`` so repeated
    runs give the same decomposition. The number of components follows the
    channel count, reduced by MNE to the data rank (an average-referenced
    recording loses one).

    Args:
        recording: Channel-cleaned continuous recording
        config: Pipeline configuration

    Returns:
        Tuple of (raw, fitted ICA)
    """
    raw = recording_to_raw(recording)
    ica = ICA(
        n_components=None,
        method='infomax',
        fit_params=dict(extended=True, w_change=config.ica_tolerance),
        max_iter=config.ica_max_iter,
        random_state=config.ica_seed,
        verbose=False,
    )

    logging.info(f"Fitting extended Infomax ICA on {recording.n_channels} channels "
                 f"(stop {config.ica_tolerance:g}, seed {config.ica_seed})")
    ica.fit(raw, verbose=False)
    logging.info(f"ICA fitted: {ica.n_components_} components in {ica.n_iter_} iterations")
    return raw, ica


def decomposition_from_ica(ica: ICA, channel_labels: List[str]) -> ComponentDecomposition:
    """
    Express a fitted MNE ICA as unmixing/mixing matrices in µV units

    MNE works in volts on pre-whitened, PCA-rotated data. Folding the
    pre-whitener, PCA rotation and volt scaling into the matrices gives
    sources = unmixing @ (data_uv - mean) and the per-source channel
    contribution mixing[:, k] * sources[k].
    """
    n = ica.n_components_
    pre_whitener = np.asarray(ica.pre_whitener_).reshape(-1)
    pca = ica.pca_components_[:n]

    unmixing = (ica.unmixing_matrix_ @ pca) / pre_whitener[np.newaxis, :] * 1e-6
    mixing = pre_whitener[:, np.newaxis] * (pca.T @ ica.mixing_matrix_) * 1e6
    mean = pre_whitener * ica.pca_mean_ * 1e6

    return ComponentDecomposition(
        unmixing=unmixing,
        mixing=mixing,
        mean=mean,
        channel_labels=list(channel_labels),
    )


def perform_ica(recording: Recording, config: PipelineConfig,
                classifier: Optional[object] = None) -> Recording:
    """
    Decompose a recording and attach classified components to it

    Args:
        recording: Channel-cleaned continuous recording
        config: Pipeline configuration
        classifier: Object with ``classify(raw, ica) -> (n_components, 7)``;
            None leaves the components unclassified

    Returns:
        The same recording with ``decomposition`` set
    """
    raw, ica = fit_ica(recording, config)
    decomposition = decomposition_from_ica(ica, recording.labels)

    if classifier is not None:
        classifications = np.asarray(classifier.classify(raw, ica), dtype=float)
        expected = (decomposition.n_components, len(IC_CATEGORIES))
        if classifications.shape != expected:
            raise ValueError(f"Classifier returned shape {classifications.shape}, expected {expected}")
        decomposition.classifications = classifications
        recording.add_history("Labelled ICA components with ICLabel")
    else:
        logging.warning("No component classifier given, components are left unclassified")

    recording.decomposition = decomposition
    recording.add_history(
        f"Extended infomax ICA ({decomposition.n_components} components, "
        f"stop {config.ica_tolerance:g}, seed {config.ica_seed})"
    )
    return recording


def flag_artifact_components(classifications: np.ndarray, bands: ArtifactBands) -> List[int]:
    """
    Indices of components with any category probability inside its band

    Args:
        classifications: Probabilities [n_components x 7], ICLabel order
        bands: Per-category (low, high) bands, inclusive

    Returns:
        Sorted component indices to remove
    """
    classifications = np.asarray(classifications)
    flagged = np.zeros(classifications.shape[0], dtype=bool)

    for column, (name, band) in enumerate(zip(IC_CATEGORIES, bands.as_list())):
        if band is None:
            continue
        low, high = band
        in_band = (classifications[:, column] >= low) & (classifications[:, column] <= high)
        if np.any(in_band):
            logging.debug(f"{name}: components {np.where(in_band)[0].tolist()} in band {band}")
        flagged |= in_band

    return np.where(flagged)[0].tolist()


def project_out_components(recording: Recording, decomposition: ComponentDecomposition,
                           components: List[int]) -> Recording:
    """
    Subtract the contribution of the given components from every channel

    Raises:
        ChannelMismatchError: If the decomposition was fitted on other channels
    """
    if decomposition.channel_labels != recording.labels:
        raise ChannelMismatchError(
            f"Decomposition channels {decomposition.channel_labels} "
            f"do not match recording channels {recording.labels}"
        )
    if not components:
        return recording

    idx = np.asarray(components)
    centred = recording.data - decomposition.mean[:, np.newaxis]
    sources = decomposition.unmixing[idx] @ centred
    recording.data = recording.data - decomposition.mixing[:, idx] @ sources
    return recording


def remove_artifact_components(recording: Recording, config: PipelineConfig) -> Recording:
    """
    Remove artifact components and the excluded channels

    When the recording carries no classification, a warning is logged and
    the signal is left untouched; the excluded channels are still removed.

    Args:
        recording: Recording with an attached decomposition
        config: Pipeline configuration

    Returns:
        The cleaned recording; ``components_removed`` holds the count
    """
    decomposition = recording.decomposition

    if decomposition is None or decomposition.classifications is None:
        logging.warning(f"{recording.name or 'Recording'} does not have ICLabel classifications. "
                        f"Skipping IC artifact removal.")
        recording.components_removed = 0
    else:
        artifacts = flag_artifact_components(decomposition.classifications, config.artifact_bands)
        logging.info(f"Removing {len(artifacts)}/{decomposition.n_components} ICA components: {artifacts}")
        project_out_components(recording, decomposition, artifacts)
        recording.components_removed = len(artifacts)
        recording.decomposition = None
        recording.add_history("ICA + removing components based on ICLabel")

    remove_channels(recording, config.exclusion_channels, reason="excluded channel")
    recording.add_history("Removed specified channels")
    return recording
