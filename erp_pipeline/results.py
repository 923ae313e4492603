"""
Result aggregation and tabular export

Collects SubjectMetrics from all processed recordings of a trial type into
uniform rows, builds DataFrames and writes them as Excel or CSV. Missing
metrics are NaN, never zero, so "no signal" stays distinguishable from a
measured value.
"""

import logging
import os
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from .data_types import BandPowerRecord, PeakMetric, SubjectMetrics

ERP_COLUMNS = [
    "SubjectID", "AssignmentType", "SubjectType", "Electrode",
    "P3_Amplitude", "P3_Latency_Start", "P3_Latency_End", "P3_Latency_ms",
    "N2_Amplitude", "N2_Latency_Start", "N2_Latency_End", "N2_Latency_ms",
]


def _peak_columns(prefix: str, metric: Optional[PeakMetric]) -> Dict[str, Any]:
    if metric is None:
        return {
            f"{prefix}_Amplitude": np.nan,
            f"{prefix}_Latency_Start": np.nan,
            f"{prefix}_Latency_End": np.nan,
            f"{prefix}_Latency_ms": np.nan,
        }
    return {
        f"{prefix}_Amplitude": metric.amplitude,
        f"{prefix}_Latency_Start": metric.window[0],
        f"{prefix}_Latency_End": metric.window[1],
        f"{prefix}_Latency_ms": metric.latency_ms,
    }


def metrics_to_rows(subject_metrics: Iterable[Optional[SubjectMetrics]]) -> List[Dict[str, Any]]:
    """
    Flatten subject metrics into one row per (subject, electrode pair)

    Pairs with no electrode present produce no row. A present electrode
    without data produces a row whose metric columns are NaN.

    Args:
        subject_metrics: Metrics of the recordings; None entries are skipped

    Returns:
        Rows keyed by ERP_COLUMNS
    """
    rows = []
    for metrics in subject_metrics:
        if metrics is None:
            continue
        for record in metrics.pairs.values():
            if record is None:
                continue
            row = {
                "SubjectID": metrics.metadata.subject_id,
                "AssignmentType": metrics.metadata.condition,
                "SubjectType": metrics.metadata.subject_type,
                "Electrode": record.electrode,
            }
            row.update(_peak_columns("P3", record.positive))
            row.update(_peak_columns("N2", record.negative))
            rows.append(row)
    return rows


def results_table(rows: List[Dict[str, Any]]) -> pd.DataFrame:
    """DataFrame of metric rows with the export column order"""
    return pd.DataFrame(rows, columns=ERP_COLUMNS)


def band_power_table(records: Iterable[BandPowerRecord]) -> pd.DataFrame:
    """
    Band power summary with one row per (file, channel)

    Columns: FileName, Channel, then Absolute_<band> and Relative_<band> for
    every band in the order of the records.
    """
    rows = []
    for record in records:
        row = {"FileName": record.file_name, "Channel": record.channel}
        row.update({f"Absolute_{band}": value for band, value in record.absolute.items()})
        row.update({f"Relative_{band}": value for band, value in record.relative.items()})
        rows.append(row)
    return pd.DataFrame(rows)


def export_table(df: pd.DataFrame, path: str, sheet_name: str = "Results") -> str:
    """
    Write a table as .xlsx or .csv, chosen by the file extension

    Args:
        df: Table to write
        path: Output path ending in .xlsx or .csv
        sheet_name: Worksheet name for Excel output

    Returns:
        The written path

    Raises:
        ValueError: If the extension is not supported
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    extension = os.path.splitext(path)[1].lower()
    if extension == ".xlsx":
        with pd.ExcelWriter(path, engine="xlsxwriter") as writer:
            df.to_excel(writer, sheet_name=sheet_name, index=False)
    elif extension == ".csv":
        df.to_csv(path, index=False)
    else:
        raise ValueError(f"Unsupported table format '{extension}': {path}")

    logging.info(f"Results saved to {path} ({len(df)} rows)")
    return path
