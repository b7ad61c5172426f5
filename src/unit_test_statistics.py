"""
Unit tests for the aggregation stage and the report formatting.

Covers:
- Wald and normal-approximation confidence intervals
- Continuous percentiles of the comorbidity count
- Per-stratum summaries, including single-patient and empty strata
- Partition properties of aggregate_by_stratum
- Final report layout and CSV output
"""

import math

import numpy as np
import pandas as pd
import pytest

from table_one.constants import Z_95
from table_one.report import (
    REPORT_COLUMNS,
    format_iqr,
    format_number,
    format_report,
    write_report,
)
from table_one.statistics import (
    SUMMARY_COLUMNS,
    aggregate_by_stratum,
    normal_ci,
    percentile_cont,
    summarize_group,
    wald_ci,
)


def _features(labels, disease_counts, died=None, sofa=None, los_icu=None, los_hospital=None, key="admission_type"):
    """Helper to build Feature Rows directly."""
    n = len(labels)
    died = died if died is not None else [False] * n
    return pd.DataFrame({
        "subject_id": pd.Series(range(1, n + 1), dtype="int64"),
        key: pd.Series(labels, dtype=object),
        "disease_count": pd.Series(disease_counts, dtype="int64"),
        "deathtime": pd.to_datetime([pd.Timestamp("2150-01-05") if d else pd.NaT for d in died]),
        "sofa": pd.Series(sofa if sofa is not None else [4.0] * n, dtype="float64"),
        "los_icu_days": pd.Series(los_icu if los_icu is not None else [2.0] * n, dtype="float64"),
        "los_hospital_days": pd.Series(los_hospital if los_hospital is not None else [7.0] * n, dtype="float64"),
    })


def _random_features(n=400, seed=0):
    rng = np.random.RandomState(seed)
    return _features(
        labels=rng.choice(["Elective", "Non-Elective"], size=n).tolist(),
        disease_counts=rng.randint(0, 8, size=n).tolist(),
        died=(rng.rand(n) < 0.15).tolist(),
        sofa=rng.randint(0, 20, size=n).astype(float).tolist(),
        los_icu=(rng.gamma(2.0, 2.0, size=n)).tolist(),
        los_hospital=(rng.gamma(4.0, 3.0, size=n)).tolist(),
    )


class TestConfidenceIntervals:
    """Shared interval helpers."""

    def test_wald_ci_matches_formula(self):
        p, n = 0.3, 50
        expected = Z_95 * math.sqrt(p * (1 - p) / n) * 100
        assert wald_ci(p, n) == pytest.approx(expected)

    def test_wald_ci_is_zero_for_certain_outcomes(self):
        assert wald_ci(1.0, 1) == 0.0
        assert wald_ci(0.0, 10) == 0.0

    def test_wald_ci_undefined_for_empty_group(self):
        assert math.isnan(wald_ci(0.5, 0))
        assert math.isnan(wald_ci(float("nan"), 0))

    def test_normal_ci_matches_formula(self):
        lower, upper = normal_ci(10.0, 4.0, 16)
        assert lower == pytest.approx(10.0 - 1.96)
        assert upper == pytest.approx(10.0 + 1.96)

    def test_normal_ci_undefined_without_stddev(self):
        lower, upper = normal_ci(3.0, float("nan"), 1)
        assert math.isnan(lower) and math.isnan(upper)

    def test_normal_ci_undefined_for_empty_group(self):
        lower, upper = normal_ci(float("nan"), float("nan"), 0)
        assert math.isnan(lower) and math.isnan(upper)


class TestPercentiles:

    def test_continuous_interpolation(self):
        values = pd.Series([0, 1, 2, 3])
        assert percentile_cont(values, 0.5) == 1.5
        assert percentile_cont(values, 0.25) == 0.75
        assert percentile_cont(values, 0.75) == 2.25

    def test_order_of_values_does_not_matter(self):
        assert percentile_cont(pd.Series([3, 0, 2, 1]), 0.25) == 0.75

    def test_single_value(self):
        assert percentile_cont(pd.Series([4]), 0.25) == 4.0

    def test_empty_series(self):
        assert math.isnan(percentile_cont(pd.Series([], dtype="int64"), 0.5))


class TestSummarizeGroup:

    def test_disease_counts_zero_to_three(self):
        group = _features(["Elective"] * 4, [0, 1, 2, 3])
        summary = summarize_group(group, total_count=4)

        assert summary["patient_count"] == 4
        assert summary["patient_percentage"] == 100.0
        assert summary["median_morbidity_count"] == 1.5
        assert summary["iqr_lower"] == 0.75
        assert summary["iqr_upper"] == 2.25
        assert summary["percent_multimorbidity"] == 50.0
        assert summary["multimorbidity_ci"] == pytest.approx(1.96 * math.sqrt(0.25 / 4) * 100)

    def test_single_deceased_patient(self):
        group = _features(["Non-Elective"], [2], died=[True], sofa=[11.0], los_icu=[3.5], los_hospital=[9.0])
        summary = summarize_group(group, total_count=1)

        assert summary["percent_mortality"] == 100.0
        assert summary["mortality_ci"] == 0.0
        assert summary["mean_sofa"] == 11.0
        assert summary["mean_los_icu"] == 3.5
        # No sample standard deviation for a single patient
        for column in ["sofa_lower_95ci", "sofa_upper_95ci", "los_icu_lower_95ci",
                       "los_icu_upper_95ci", "los_hospital_lower_95ci", "los_hospital_upper_95ci"]:
            assert math.isnan(summary[column]), column

    def test_sofa_interval_uses_non_missing_scores_only(self):
        group = _features(["Elective"] * 4, [1, 1, 1, 1], sofa=[2.0, 4.0, np.nan, np.nan])
        summary = summarize_group(group, total_count=4)

        stddev = pd.Series([2.0, 4.0]).std(ddof=1)
        assert summary["mean_sofa"] == 3.0
        assert summary["sofa_lower_95ci"] == pytest.approx(3.0 - 1.96 * stddev / math.sqrt(2))
        assert summary["sofa_upper_95ci"] == pytest.approx(3.0 + 1.96 * stddev / math.sqrt(2))

    def test_los_interval_uses_sample_stddev(self):
        los = [1.0, 2.0, 3.0, 6.0]
        group = _features(["Elective"] * 4, [0, 0, 0, 0], los_icu=los)
        summary = summarize_group(group, total_count=8)

        stddev = np.std(los, ddof=1)
        assert summary["patient_percentage"] == 50.0
        assert summary["mean_los_icu"] == 3.0
        assert summary["los_icu_upper_95ci"] == pytest.approx(3.0 + 1.96 * stddev / 2)

    def test_all_sofa_missing(self):
        group = _features(["Elective"] * 2, [0, 1], sofa=[np.nan, np.nan])
        summary = summarize_group(group, total_count=2)
        assert math.isnan(summary["mean_sofa"])
        assert math.isnan(summary["sofa_lower_95ci"])

    def test_empty_group_is_all_nan(self):
        group = _features([], [])
        summary = summarize_group(group, total_count=0)

        assert summary["patient_count"] == 0
        for column in SUMMARY_COLUMNS[1:]:
            assert math.isnan(summary[column]), column


class TestAggregateByStratum:

    def test_strata_partition_the_feature_rows(self):
        features = _random_features()
        summary = aggregate_by_stratum(features, "admission_type")

        assert summary["admission_type"].tolist() == ["Elective", "Non-Elective"]
        assert summary["patient_count"].sum() == len(features)
        assert summary["patient_percentage"].sum() == pytest.approx(100.0)

    def test_median_lies_within_iqr(self):
        summary = aggregate_by_stratum(_random_features(seed=3), "admission_type")
        assert (summary["iqr_lower"] <= summary["median_morbidity_count"]).all()
        assert (summary["median_morbidity_count"] <= summary["iqr_upper"]).all()

    def test_multimorbidity_bounds(self):
        report = format_report(aggregate_by_stratum(_random_features(seed=5), "admission_type"), "admission_type")
        assert (report["lower_95ci_multimorbidity"] <= report["percent_multimorbidity"]).all()
        assert (report["percent_multimorbidity"] <= report["upper_95ci_multimorbidity"]).all()
        assert (report["lower_95ci_multimorbidity"] >= 0).all()
        assert (report["upper_95ci_multimorbidity"] <= 100).all()

    def test_unexpected_labels_form_their_own_stratum(self):
        features = _features(["M", "F", "Unknown", "F"], [0, 1, 2, 3], key="gender")
        summary = aggregate_by_stratum(features, "gender")

        assert summary["gender"].tolist() == ["F", "M", "Unknown"]
        assert summary["patient_count"].tolist() == [2, 1, 1]

    def test_empty_features(self):
        summary = aggregate_by_stratum(_features([], []), "admission_type")
        assert summary.empty
        assert list(summary.columns) == ["admission_type"] + SUMMARY_COLUMNS

    def test_unknown_stratification_key(self):
        with pytest.raises(ValueError):
            aggregate_by_stratum(_features(["x"], [0]), "ethnicity")


class TestReport:

    def test_format_number(self):
        assert format_number(1.0) == "1"
        assert format_number(0.75) == "0.75"
        assert format_number(np.nan) == ""

    def test_format_iqr(self):
        assert format_iqr(0.75, 2.25) == "0.75 - 2.25"
        assert format_iqr(1.0, 3.0) == "1 - 3"

    def test_report_columns_and_bounds(self):
        features = _features(["Elective"] * 4 + ["Non-Elective"], [0, 1, 2, 3, 5],
                             died=[False, False, True, False, True])
        report = format_report(aggregate_by_stratum(features, "admission_type"), "admission_type")

        assert list(report.columns) == ["admission_type"] + REPORT_COLUMNS
        elective = report.iloc[0]
        assert elective["iqr_morbidity_count"] == "0.75 - 2.25"
        margin = 1.96 * math.sqrt(0.25 * 0.75 / 4) * 100
        assert elective["percent_mortality"] == 25.0
        assert elective["lower_95ci_mortality"] == pytest.approx(25.0 - margin)
        assert elective["upper_95ci_mortality"] == pytest.approx(25.0 + margin)

        non_elective = report.iloc[1]
        assert non_elective["percent_mortality"] == 100.0
        assert non_elective["lower_95ci_mortality"] == 100.0
        assert non_elective["upper_95ci_mortality"] == 100.0

    def test_write_report_is_deterministic(self, tmp_path):
        features = _random_features(seed=7)
        report = format_report(aggregate_by_stratum(features, "admission_type"), "admission_type")

        first = write_report(report, str(tmp_path / "a"), "admission_type")
        second = write_report(report, str(tmp_path / "b"), "admission_type")

        assert first.name == "admission_type_statistics.csv"
        assert first.read_bytes() == second.read_bytes()
