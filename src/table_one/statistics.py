"""
Group aggregation and 95% confidence intervals.

Every stratum of the Feature Rows is summarised by the same set of statistics
(median and IQR of the comorbidity count, multimorbidity, SOFA, ICU and
hospital length of stay, mortality). Two shared helpers compute all the
intervals:

- wald_ci: normal-approximation margin of a proportion, in percentage points
- normal_ci: mean +/- z * sample standard deviation / sqrt(n)

Degenerate strata never raise. A single-patient stratum has no sample standard
deviation, so its SOFA and length of stay bounds are NaN; an empty stratum
yields NaN everywhere.
"""
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd

from .constants import MULTIMORBIDITY_THRESHOLD, STRATIFICATION_KEYS, Z_95
from .logging_utils import logger

SUMMARY_COLUMNS: List[str] = [
    "patient_count",
    "patient_percentage",
    "median_morbidity_count",
    "iqr_lower",
    "iqr_upper",
    "percent_multimorbidity",
    "multimorbidity_ci",
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
    "mortality_ci",
]


def wald_ci(proportion: float, n: int) -> float:
    """
    Half-width of the Wald 95% confidence interval of a proportion.

    Args:
        proportion (float): Proportion in [0, 1] (not a percentage)
        n (int): Number of observations the proportion was computed from

    Returns:
        float: Margin in percentage points, z * sqrt(p(1-p)/n) * 100. NaN when
            n is 0 or the proportion is undefined.

    Example:
        >>> round(wald_ci(0.5, 100), 4)
        9.8
    """
    if n <= 0 or pd.isna(proportion):
        return np.nan
    return float(Z_95 * np.sqrt(proportion * (1 - proportion) / n) * 100)


def normal_ci(mean: float, stddev: float, n: int) -> Tuple[float, float]:
    """
    Normal-approximation 95% confidence interval of a mean.

    Args:
        mean (float): Sample mean
        stddev (float): Sample standard deviation (n - 1 denominator)
        n (int): Number of non-missing observations

    Returns:
        Tuple[float, float]: (lower, upper). Both NaN when n is 0 or the
            standard deviation is undefined (n == 1).
    """
    if n <= 0 or pd.isna(mean) or pd.isna(stddev):
        return np.nan, np.nan
    delta = Z_95 * stddev / np.sqrt(n)
    return float(mean - delta), float(mean + delta)


def percentile_cont(values: pd.Series, q: float) -> float:
    """
    Continuous percentile: linear interpolation between order statistics.

    Example:
        >>> percentile_cont(pd.Series([0, 1, 2, 3]), 0.25)
        0.75
    """
    values = values.dropna()
    if values.empty:
        return np.nan
    return float(values.quantile(q, interpolation="linear"))


def _sample_std(values: pd.Series) -> float:
    # Undefined below two observations
    if values.count() < 2:
        return np.nan
    return float(values.std(ddof=1))


def _proportion(mask: pd.Series) -> float:
    if mask.empty:
        return np.nan
    return float(mask.sum()) / len(mask)


def summarize_group(group: pd.DataFrame, total_count: int) -> Dict[str, float]:
    """
    Summary statistics of the Feature Rows of a single stratum.

    Args:
        group (pd.DataFrame): Feature Rows of the stratum
        total_count (int): Number of Feature Rows across all strata

    Returns:
        Dict[str, float]: One value per SUMMARY_COLUMNS entry
    """
    n = len(group)
    disease_count = group["disease_count"]

    multimorbidity = _proportion(disease_count > MULTIMORBIDITY_THRESHOLD)
    mortality = _proportion(group["deathtime"].notna())

    sofa = group["sofa"].dropna()
    mean_sofa = sofa.mean() if len(sofa) else np.nan
    sofa_lower, sofa_upper = normal_ci(mean_sofa, _sample_std(sofa), len(sofa))

    # Length of stay intervals use the stratum size as n
    mean_los_icu = group["los_icu_days"].mean() if n else np.nan
    los_icu_lower, los_icu_upper = normal_ci(mean_los_icu, _sample_std(group["los_icu_days"]), n)

    mean_los_hospital = group["los_hospital_days"].mean() if n else np.nan
    los_hospital_lower, los_hospital_upper = normal_ci(
        mean_los_hospital, _sample_std(group["los_hospital_days"]), n
    )

    return {
        "patient_count": n,
        "patient_percentage": 100.0 * n / total_count if total_count else np.nan,
        "median_morbidity_count": percentile_cont(disease_count, 0.5),
        "iqr_lower": percentile_cont(disease_count, 0.25),
        "iqr_upper": percentile_cont(disease_count, 0.75),
        "percent_multimorbidity": 100.0 * multimorbidity,
        "multimorbidity_ci": wald_ci(multimorbidity, n),
        "mean_sofa": float(mean_sofa),
        "sofa_lower_95ci": sofa_lower,
        "sofa_upper_95ci": sofa_upper,
        "mean_los_icu": float(mean_los_icu),
        "los_icu_lower_95ci": los_icu_lower,
        "los_icu_upper_95ci": los_icu_upper,
        "mean_los_hospital": float(mean_los_hospital),
        "los_hospital_lower_95ci": los_hospital_lower,
        "los_hospital_upper_95ci": los_hospital_upper,
        "percent_mortality": 100.0 * mortality,
        "mortality_ci": wald_ci(mortality, n),
    }


def aggregate_by_stratum(features: pd.DataFrame, stratify_by: str) -> pd.DataFrame:
    """
    Partition the Feature Rows by `stratify_by` and summarise every stratum.

    Args:
        features (pd.DataFrame): Output of get_features
        stratify_by (str): "admission_type" or "gender"

    Returns:
        pd.DataFrame: One row per stratum, ordered by label, with the
            stratify_by column followed by SUMMARY_COLUMNS
    """
    if stratify_by not in STRATIFICATION_KEYS:
        raise ValueError(f"Cannot stratify by '{stratify_by}'. Use one of {STRATIFICATION_KEYS}")

    logger.log_start("aggregate_by_stratum")

    total_count = len(features)
    rows = []
    for label in sorted(features[stratify_by].unique(), key=str):
        group = features[features[stratify_by] == label]
        rows.append({stratify_by: label, **summarize_group(group, total_count)})
        logger.log_info(f"{stratify_by}={label}: {len(group)} patients")

    summary = pd.DataFrame(rows, columns=[stratify_by] + SUMMARY_COLUMNS)
    summary["patient_count"] = summary["patient_count"].astype("int64")

    logger.log_end("aggregate_by_stratum")
    return summary
