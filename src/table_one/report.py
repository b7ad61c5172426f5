"""
Final presentation of the stratum summaries.

Turns the Wald margins into (value - margin, value + margin) bounds, renders the
IQR of the comorbidity count as a single "lower - upper" string and writes the
report as CSV.
"""
from pathlib import Path
from typing import List

import pandas as pd

from .logging_utils import logger

REPORT_COLUMNS: List[str] = [
    "patient_count",
    "patient_percentage",
    "median_morbidity_count",
    "iqr_morbidity_count",
    "percent_multimorbidity",
    "lower_95ci_multimorbidity",
    "upper_95ci_multimorbidity",
    "mean_sofa",
    "sofa_lower_95ci",
    "sofa_upper_95ci",
    "mean_los_icu",
    "los_icu_lower_95ci",
    "los_icu_upper_95ci",
    "mean_los_hospital",
    "los_hospital_lower_95ci",
    "los_hospital_upper_95ci",
    "percent_mortality",
    "lower_95ci_mortality",
    "upper_95ci_mortality",
]


def format_number(value) -> str:
    """
    Render a number the way it appears inside the IQR string.

    Integral values lose their decimals, missing values become empty.

    Example:
        >>> format_number(1.0), format_number(0.75), format_number(float('nan'))
        ('1', '0.75', '')
    """
    if pd.isna(value):
        return ""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def format_iqr(lower, upper) -> str:
    return f"{format_number(lower)} - {format_number(upper)}"


def format_report(summary: pd.DataFrame, stratify_by: str) -> pd.DataFrame:
    """
    Build the report table from the output of aggregate_by_stratum.

    Returns:
        pd.DataFrame: stratify_by column followed by REPORT_COLUMNS, one row
            per stratum, in the order of `summary`
    """
    report = pd.DataFrame({stratify_by: summary[stratify_by]})
    report["patient_count"] = summary["patient_count"]
    report["patient_percentage"] = summary["patient_percentage"]
    report["median_morbidity_count"] = summary["median_morbidity_count"]
    report["iqr_morbidity_count"] = [
        format_iqr(lower, upper) for lower, upper in zip(summary["iqr_lower"], summary["iqr_upper"])
    ]

    report["percent_multimorbidity"] = summary["percent_multimorbidity"]
    report["lower_95ci_multimorbidity"] = summary["percent_multimorbidity"] - summary["multimorbidity_ci"]
    report["upper_95ci_multimorbidity"] = summary["percent_multimorbidity"] + summary["multimorbidity_ci"]

    for column in [
        "mean_sofa", "sofa_lower_95ci", "sofa_upper_95ci",
        "mean_los_icu", "los_icu_lower_95ci", "los_icu_upper_95ci",
        "mean_los_hospital", "los_hospital_lower_95ci", "los_hospital_upper_95ci",
    ]:
        report[column] = summary[column]

    report["percent_mortality"] = summary["percent_mortality"]
    report["lower_95ci_mortality"] = summary["percent_mortality"] - summary["mortality_ci"]
    report["upper_95ci_mortality"] = summary["percent_mortality"] + summary["mortality_ci"]

    return report[[stratify_by] + REPORT_COLUMNS].reset_index(drop=True)


def report_path(output_dir: str, stratify_by: str) -> Path:
    return Path(output_dir) / f"{stratify_by}_statistics.csv"


def write_report(report: pd.DataFrame, output_dir: str, stratify_by: str) -> Path:
    """
    Write the report to <output_dir>/<stratify_by>_statistics.csv.

    Undefined values are written as empty cells. The same report always
    produces the same bytes.
    """
    logger.log_start("write_report")

    path = report_path(output_dir, stratify_by)
    path.parent.mkdir(parents=True, exist_ok=True)
    report.to_csv(path, index=False, lineterminator="\n")

    logger.log_info(f"Report saved to {path}")
    logger.log_end("write_report")
    return path


def render_report(report: pd.DataFrame) -> str:
    """Console rendering of the report, one stratum per row."""
    return report.to_string(index=False)
