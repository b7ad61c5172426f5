"""
Cohort Selection for the ICU Table One Statistics

This module selects the study population from the MIMIC-III patients, icustays
and admissions tables and attaches the stratification label of each patient.

The cohort selection follows these inclusion criteria:
- First ICU stay only for each patient (earliest intime among all the
  patient's ICU stays)
- Age at ICU admission between 16 and 95 full years, inclusive

Stratification labels:
- admission_type: "Elective" for ELECTIVE admissions, "Non-Elective" for
  everything else (missing values included)
- gender: the raw value, with missing values labelled "Unknown"
"""
import logging

import numpy as np
import pandas as pd

from .constants import (
    ADMISSION_TYPE,
    ELECTIVE_LABEL,
    ELECTIVE_RAW,
    EXPECTED_GENDERS,
    GENDER,
    MAX_AGE,
    MIN_AGE,
    NON_ELECTIVE_LABEL,
    STRATIFICATION_KEYS,
    UNKNOWN_GENDER_LABEL,
)
from .exceptions import TiedFirstStayError
from .logging_utils import logger

log = logging.getLogger(__name__)

COHORT_COLUMNS = [
    "subject_id",
    "hadm_id",
    "icustay_id",
    "deathtime",
    "icu_intime",
    "icu_outtime",
    "admittime",
    "dischtime",
    "admission_age",
]


def get_age_in_years(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Calculate the number of full years elapsed between two datetime series.

    A year only counts once its anniversary (month, day and time of day) has
    been reached, so a patient born on 2100-06-15 is 15 on 2116-06-14 and 16 on
    2116-06-15.

    Args:
        end (pd.Series): Later datetime series
        start (pd.Series): Earlier datetime series

    Returns:
        pd.Series: Full years elapsed (NaN where either side is missing)

    Example:
        >>> end = pd.Series([pd.Timestamp('2116-06-14'), pd.Timestamp('2116-06-15')])
        >>> start = pd.Series([pd.Timestamp('2100-06-15'), pd.Timestamp('2100-06-15')])
        >>> get_age_in_years(end, start).tolist()
        [15.0, 16.0]
    """
    years = end.dt.year - start.dt.year

    same_month = end.dt.month == start.dt.month
    same_day = same_month & (end.dt.day == start.dt.day)
    before_anniversary = (
        (end.dt.month < start.dt.month)
        | (same_month & (end.dt.day < start.dt.day))
        | (same_day & ((end - end.dt.normalize()) < (start - start.dt.normalize())))
    )
    return (years - before_anniversary.astype(int)).astype("float64")


def select_first_icu_stays(icustays: pd.DataFrame) -> pd.DataFrame:
    """
    Keep, for every patient, the ICU stay(s) with the earliest intime.

    Stays are grouped by subject_id and compared to the group minimum, so two
    stays sharing the earliest intime are both kept. Use find_tied_first_stays
    to detect them.
    """
    first_intime = icustays.groupby("subject_id")["intime"].transform("min")
    return icustays[icustays["intime"] == first_intime]


def find_tied_first_stays(stays: pd.DataFrame) -> list:
    """Return the subject_ids that have more than one row in `stays`."""
    counts = stays["subject_id"].value_counts()
    return sorted(counts[counts > 1].index.tolist())


def label_admission_type(admission_type: pd.Series) -> pd.Series:
    """Map raw admission types onto Elective / Non-Elective."""
    is_elective = admission_type.eq(ELECTIVE_RAW)
    return pd.Series(
        np.where(is_elective, ELECTIVE_LABEL, NON_ELECTIVE_LABEL),
        index=admission_type.index,
        dtype=object,
    )


def label_gender(gender: pd.Series) -> pd.Series:
    """Keep raw gender values, labelling missing ones explicitly."""
    labels = gender.astype(object).where(gender.notna(), UNKNOWN_GENDER_LABEL)

    unexpected = sorted(set(labels) - set(EXPECTED_GENDERS))
    if unexpected:
        log.warning(
            "Unexpected gender values %s form their own strata (%d patients)",
            unexpected, int((~labels.isin(EXPECTED_GENDERS)).sum()),
        )
    return labels


def get_cohort(
    patients: pd.DataFrame,
    icustays: pd.DataFrame,
    admissions: pd.DataFrame,
    stratify_by: str,
    tie_policy: str = "keep",
) -> pd.DataFrame:
    """
    Build one Cohort Row per qualifying patient.

    Args:
        patients (pd.DataFrame): subject_id, gender, dob
        icustays (pd.DataFrame): icustay_id, subject_id, hadm_id, intime, outtime
        admissions (pd.DataFrame): hadm_id, admittime, dischtime, admission_type, deathtime
        stratify_by (str): "admission_type" or "gender"
        tie_policy (str): "keep" to keep every stay tied on the earliest intime
            (logged as a warning), "raise" to reject them

    Returns:
        pd.DataFrame: Cohort rows with COHORT_COLUMNS plus the stratify_by
            column, sorted by subject_id and icustay_id

    Raises:
        ValueError: If stratify_by is not a known stratification key
        TiedFirstStayError: If tie_policy is "raise" and ties are present
    """
    if stratify_by not in STRATIFICATION_KEYS:
        raise ValueError(f"Cannot stratify by '{stratify_by}'. Use one of {STRATIFICATION_KEYS}")

    logger.log_start("get_cohort")

    # The earliest stay is taken over all of the patient's stays, before any
    # other criterion is applied
    first_stays = select_first_icu_stays(icustays)
    logger.log_info(f"{len(icustays)} ICU stays, {len(first_stays)} first stays")

    df = first_stays.merge(patients, on="subject_id", how="inner")
    df = df.merge(admissions, on="hadm_id", how="inner")

    df["admission_age"] = get_age_in_years(df["intime"], df["dob"])
    df = df[df["admission_age"].between(MIN_AGE, MAX_AGE)]

    tied = find_tied_first_stays(df)
    if tied:
        if tie_policy == "raise":
            raise TiedFirstStayError(tied)
        log.warning(
            "%d patient(s) have several ICU stays sharing the earliest intime; "
            "all of them are kept: %s", len(tied), tied[:10],
        )

    df = df.rename(columns={"intime": "icu_intime", "outtime": "icu_outtime"})
    if stratify_by == ADMISSION_TYPE:
        labels = label_admission_type(df[ADMISSION_TYPE])
    else:
        labels = label_gender(df[GENDER])

    cohort = df[COHORT_COLUMNS].copy()
    cohort[stratify_by] = labels.values
    cohort = cohort.sort_values(["subject_id", "icustay_id"]).reset_index(drop=True)

    logger.log_info(f"Cohort size: {len(cohort)} rows, {cohort['subject_id'].nunique()} patients")
    logger.log_end("get_cohort")
    return cohort
