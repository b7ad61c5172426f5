"""
Per-patient feature derivation.

Joins each cohort row to its Elixhauser comorbidity flags (by hadm_id) and its
SOFA score (by icustay_id), then derives the ICU and hospital length of stay in
days and the number of comorbidities.

Both joins are inner joins: a patient without a comorbidity record or without a
SOFA record is dropped from every downstream statistic. The number of patients
dropped by each join is reported as a warning.
"""
import logging

import pandas as pd

from .constants import COMORBIDITY_CATEGORIES, SECONDS_PER_DAY
from .logging_utils import logger

log = logging.getLogger(__name__)


def get_day_difference(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Calculate the difference between two datetime series in fractional days.

    Example:
        >>> end = pd.Series([pd.Timestamp('2100-01-02 12:00:00')])
        >>> start = pd.Series([pd.Timestamp('2100-01-01 00:00:00')])
        >>> get_day_difference(end, start)
        0    1.5
        dtype: float64
    """
    return (end - start).dt.total_seconds() / SECONDS_PER_DAY


def count_diseases(comorbidities: pd.DataFrame) -> pd.Series:
    """
    Number of comorbidity categories flagged for each admission.

    Missing flags count as absent.
    """
    return comorbidities[COMORBIDITY_CATEGORIES].fillna(0).sum(axis=1).astype("int64")


def _report_dropped(before: int, after: int, source: str):
    dropped = before - after
    if dropped:
        log.warning("%d of %d cohort rows have no %s record and are excluded", dropped, before, source)


def get_features(cohort: pd.DataFrame, comorbidities: pd.DataFrame, sofa: pd.DataFrame) -> pd.DataFrame:
    """
    Derive the Feature Rows used by the aggregation stage.

    Args:
        cohort (pd.DataFrame): Output of get_cohort
        comorbidities (pd.DataFrame): hadm_id plus one column per COMORBIDITY_CATEGORIES
        sofa (pd.DataFrame): icustay_id, sofa

    Returns:
        pd.DataFrame: Cohort columns plus los_icu_days, los_hospital_days,
            disease_count and sofa
    """
    logger.log_start("get_features")

    counts = pd.DataFrame({
        "hadm_id": comorbidities["hadm_id"],
        "disease_count": count_diseases(comorbidities),
    })

    df = cohort.merge(counts, on="hadm_id", how="inner")
    _report_dropped(len(cohort), len(df), "comorbidity")

    with_comorbidities = len(df)
    df = df.merge(sofa[["icustay_id", "sofa"]], on="icustay_id", how="inner")
    _report_dropped(with_comorbidities, len(df), "SOFA")

    df["los_icu_days"] = get_day_difference(df["icu_outtime"], df["icu_intime"])
    df["los_hospital_days"] = get_day_difference(df["dischtime"], df["admittime"])

    df = df.sort_values(["subject_id", "icustay_id"], kind="mergesort").reset_index(drop=True)

    logger.log_info(f"Feature rows: {len(df)}")
    logger.log_end("get_features")
    return df
