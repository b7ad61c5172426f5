"""
Unit tests for cohort selection and per-patient feature derivation.

Covers:
- Age in full years at ICU admission and the 16-95 inclusion window
- First ICU stay selection, including tied earliest stays
- Admission type and gender labelling
- Length of stay and comorbidity count derivation
- Rows dropped by the comorbidity and SOFA inner joins
"""

import logging

import numpy as np
import pandas as pd
import pytest

from table_one.cohort_data import (
    find_tied_first_stays,
    get_age_in_years,
    get_cohort,
    label_admission_type,
    label_gender,
    select_first_icu_stays,
)
from table_one.constants import COMORBIDITY_CATEGORIES, MAX_AGE, MIN_AGE
from table_one.exceptions import TiedFirstStayError
from table_one.feature_data import count_diseases, get_day_difference, get_features


def _ts(s: str) -> pd.Timestamp:
    """Helper to create timestamps."""
    return pd.Timestamp(s)


class TestCohortSelection:
    """Cohort selection on small in-memory tables."""

    def setup_method(self):
        """Seed patients, ICU stays and admissions covering the edge cases."""
        self.base_time = _ts("2150-03-10 08:00:00")
        self.patients = []
        self.icustays = []
        self.admissions = []

        # Subject 1: valid, two ICU stays in two admissions
        self._add_patient(1, age_years=65, gender="M")
        self._add_admission(1, 101, "ELECTIVE", days=10)
        self._add_stay(1, 101, 1001, offset=pd.Timedelta(hours=2), days=2)
        self._add_admission(1, 102, "EMERGENCY", days=5, offset=pd.Timedelta(days=40))
        self._add_stay(1, 102, 1002, offset=pd.Timedelta(days=40, hours=1), days=1)

        # Subject 2: exactly 15 at ICU admission - excluded
        self._add_patient(2, age_years=15, gender="F")
        self._add_admission(2, 201, "EMERGENCY", days=3)
        self._add_stay(2, 201, 2001, days=1)

        # Subject 3: exactly 96 at ICU admission - excluded
        self._add_patient(3, age_years=96, gender="F")
        self._add_admission(3, 301, "URGENT", days=3)
        self._add_stay(3, 301, 3001, days=1)

        # Subject 4: exactly 16 - included
        self._add_patient(4, age_years=16, gender="F")
        self._add_admission(4, 401, "EMERGENCY", days=3, died=True)
        self._add_stay(4, 401, 4001, days=1)

        # Subject 5: 95 and one day short of 96 - included
        self._add_patient(5, age_years=96, gender="M", dob_shift=pd.Timedelta(days=1))
        self._add_admission(5, 501, "URGENT", days=3)
        self._add_stay(5, 501, 5001, days=1)

        # Subject 6: one day short of 16 - excluded
        self._add_patient(6, age_years=16, gender=None, dob_shift=pd.Timedelta(days=1))
        self._add_admission(6, 601, None, days=3)
        self._add_stay(6, 601, 6001, days=1)

        # Subject 7: earliest stay while 15, later stay while 16 - excluded
        self._add_patient(7, age_years=16, gender="M", dob_shift=pd.Timedelta(days=100))
        self._add_admission(7, 701, "EMERGENCY", days=3)
        self._add_stay(7, 701, 7001, days=1)
        self._add_admission(7, 702, "ELECTIVE", days=3, offset=pd.Timedelta(days=200))
        self._add_stay(7, 702, 7002, offset=pd.Timedelta(days=200), days=1)

    def _add_patient(self, subject_id, age_years, gender, dob_shift=pd.Timedelta(0)):
        # Age is measured against the ICU intime; stays start at base_time
        dob = self.base_time - pd.DateOffset(years=age_years) + dob_shift
        self.patients.append({"subject_id": subject_id, "gender": gender, "dob": dob})

    def _add_admission(self, subject_id, hadm_id, admission_type, days, offset=pd.Timedelta(0), died=False):
        admittime = self.base_time - pd.Timedelta(hours=6) + offset
        dischtime = admittime + pd.Timedelta(days=days)
        self.admissions.append({
            "hadm_id": hadm_id,
            "admittime": admittime,
            "dischtime": dischtime,
            "admission_type": admission_type,
            "deathtime": dischtime if died else pd.NaT,
        })

    def _add_stay(self, subject_id, hadm_id, icustay_id, days, offset=pd.Timedelta(0)):
        intime = self.base_time + offset
        self.icustays.append({
            "icustay_id": icustay_id,
            "subject_id": subject_id,
            "hadm_id": hadm_id,
            "intime": intime,
            "outtime": intime + pd.Timedelta(days=days),
        })

    def _frames(self):
        return pd.DataFrame(self.patients), pd.DataFrame(self.icustays), pd.DataFrame(self.admissions)

    def test_constants_are_correct(self):
        assert MIN_AGE == 16, "Minimum age should be 16"
        assert MAX_AGE == 95, "Maximum age should be 95"
        assert len(COMORBIDITY_CATEGORIES) == 30
        assert len(set(COMORBIDITY_CATEGORIES)) == len(COMORBIDITY_CATEGORIES)

    def test_age_in_full_years(self):
        end = pd.Series([_ts("2116-06-14 23:59"), _ts("2116-06-15 00:00"), _ts("2116-06-15 07:59"),
                         _ts("2116-06-15 08:00"), _ts("2117-01-01")])
        start = pd.Series([_ts("2100-06-15 00:00")] * 2 + [_ts("2100-06-15 08:00")] * 2 + [_ts("2100-06-15")])
        assert get_age_in_years(end, start).tolist() == [15.0, 16.0, 15.0, 16.0, 16.0]

    def test_age_with_missing_dob(self):
        age = get_age_in_years(pd.Series([_ts("2116-06-14")]), pd.Series([pd.NaT], dtype="datetime64[ns]"))
        assert np.isnan(age.iloc[0])

    def test_cohort_selection_criteria(self):
        cohort = get_cohort(*self._frames(), stratify_by="admission_type")

        assert cohort["subject_id"].tolist() == [1, 4, 5], (
            f"Unexpected cohort subjects: {cohort['subject_id'].tolist()}"
        )
        for _, row in cohort.iterrows():
            assert MIN_AGE <= row["admission_age"] <= MAX_AGE, (
                f"Subject {row['subject_id']} age {row['admission_age']} out of range"
            )

    def test_first_icu_stay_only(self):
        cohort = get_cohort(*self._frames(), stratify_by="admission_type")
        subject_1 = cohort[cohort["subject_id"] == 1]

        assert len(subject_1) == 1, "Should only have one row per patient"
        assert subject_1.iloc[0]["icustay_id"] == 1001
        assert subject_1.iloc[0]["hadm_id"] == 101
        assert subject_1.iloc[0]["icu_intime"] == self.base_time + pd.Timedelta(hours=2)

    def test_first_stay_is_chosen_before_age_filter(self):
        cohort = get_cohort(*self._frames(), stratify_by="admission_type")
        assert 7 not in cohort["subject_id"].tolist()

    def test_admission_type_labels(self):
        cohort = get_cohort(*self._frames(), stratify_by="admission_type")
        labels = dict(zip(cohort["subject_id"], cohort["admission_type"]))
        assert labels == {1: "Elective", 4: "Non-Elective", 5: "Non-Elective"}

    def test_gender_labels(self):
        cohort = get_cohort(*self._frames(), stratify_by="gender")
        assert dict(zip(cohort["subject_id"], cohort["gender"])) == {1: "M", 4: "F", 5: "M"}
        assert "admission_type" not in cohort.columns

    def test_cohort_columns(self):
        cohort = get_cohort(*self._frames(), stratify_by="gender")
        for col in ["subject_id", "hadm_id", "icustay_id", "deathtime", "icu_intime",
                    "icu_outtime", "admittime", "dischtime", "gender"]:
            assert col in cohort.columns, f"Missing required column: {col}"
        assert cohort.loc[cohort["subject_id"] == 4, "deathtime"].notna().all()

    def test_stay_without_admission_is_dropped(self):
        self.admissions = [a for a in self.admissions if a["hadm_id"] != 401]
        cohort = get_cohort(*self._frames(), stratify_by="admission_type")
        assert cohort["subject_id"].tolist() == [1, 5]

    def test_tied_first_stays_are_kept(self, caplog):
        self._add_stay(1, 101, 1003, offset=pd.Timedelta(hours=2), days=4)

        with caplog.at_level(logging.WARNING):
            cohort = get_cohort(*self._frames(), stratify_by="admission_type")

        assert cohort.loc[cohort["subject_id"] == 1, "icustay_id"].tolist() == [1001, 1003]
        assert "earliest intime" in caplog.text

    def test_tied_first_stays_can_be_rejected(self):
        self._add_stay(1, 101, 1003, offset=pd.Timedelta(hours=2), days=4)

        with pytest.raises(TiedFirstStayError) as excinfo:
            get_cohort(*self._frames(), stratify_by="admission_type", tie_policy="raise")
        assert excinfo.value.subject_ids == [1]

    def test_select_first_icu_stays(self):
        _, icustays, _ = self._frames()
        first = select_first_icu_stays(icustays)
        assert sorted(first["icustay_id"].tolist()) == [1001, 2001, 3001, 4001, 5001, 6001, 7001]
        assert find_tied_first_stays(first) == []

    def test_unknown_stratification_key(self):
        with pytest.raises(ValueError):
            get_cohort(*self._frames(), stratify_by="ethnicity")


class TestLabels:

    def test_admission_type_catch_all(self):
        raw = pd.Series(["ELECTIVE", "EMERGENCY", "URGENT", "NEWBORN", None, "elective"])
        assert label_admission_type(raw).tolist() == [
            "Elective", "Non-Elective", "Non-Elective", "Non-Elective", "Non-Elective", "Non-Elective",
        ]

    def test_gender_missing_and_unexpected(self, caplog):
        raw = pd.Series(["F", "M", None, "X"])
        with caplog.at_level(logging.WARNING):
            labels = label_gender(raw)

        assert labels.tolist() == ["F", "M", "Unknown", "X"]
        assert "Unexpected gender values" in caplog.text

    def test_expected_genders_do_not_warn(self, caplog):
        with caplog.at_level(logging.WARNING):
            label_gender(pd.Series(["F", "M"]))
        assert caplog.text == ""


class TestFeatureDerivation:

    def setup_method(self):
        base = _ts("2150-01-01 00:00:00")
        self.cohort = pd.DataFrame({
            "subject_id": [1, 2, 3],
            "hadm_id": [10, 20, 30],
            "icustay_id": [100, 200, 300],
            "deathtime": pd.to_datetime([pd.NaT, base + pd.Timedelta(days=3), pd.NaT]),
            "icu_intime": [base, base, base],
            "icu_outtime": [base + pd.Timedelta(hours=36), base + pd.Timedelta(days=2), base + pd.Timedelta(days=1)],
            "admittime": [base - pd.Timedelta(hours=12)] * 3,
            "dischtime": [base + pd.Timedelta(days=4), base + pd.Timedelta(days=3), base + pd.Timedelta(days=2)],
            "admission_age": [60.0, 70.0, 80.0],
            "admission_type": ["Elective", "Non-Elective", "Non-Elective"],
        })

        flags = {c: [0, 0, 0] for c in COMORBIDITY_CATEGORIES}
        flags["congestive_heart_failure"] = [1, 1, 0]
        flags["hypertension"] = [1, np.nan, 0]
        flags["depression"] = [1, 0, 0]
        self.comorbidities = pd.DataFrame({"hadm_id": [10, 20, 30], **flags})

        self.sofa = pd.DataFrame({"icustay_id": [100, 200, 300], "sofa": [3.0, np.nan, 7.0]})

    def test_day_difference(self):
        diff = get_day_difference(pd.Series([_ts("2100-01-02 12:00")]), pd.Series([_ts("2100-01-01")]))
        assert diff.tolist() == [1.5]

    def test_count_diseases_treats_missing_as_absent(self):
        counts = count_diseases(self.comorbidities)
        assert counts.tolist() == [3, 1, 0]
        assert counts.dtype == "int64"

    def test_features(self):
        features = get_features(self.cohort, self.comorbidities, self.sofa)

        assert features["subject_id"].tolist() == [1, 2, 3]
        assert features["los_icu_days"].tolist() == [1.5, 2.0, 1.0]
        assert features["los_hospital_days"].tolist() == [4.5, 3.5, 2.5]
        assert features["disease_count"].tolist() == [3, 1, 0]
        # A null SOFA score keeps the row
        assert np.isnan(features.loc[1, "sofa"])

    def test_disease_count_is_bounded(self):
        all_flags = pd.DataFrame({"hadm_id": [10], **{c: [1] for c in COMORBIDITY_CATEGORIES}})
        assert count_diseases(all_flags).tolist() == [len(COMORBIDITY_CATEGORIES)]

    def test_missing_comorbidity_or_sofa_drops_the_row(self, caplog):
        comorbidities = self.comorbidities[self.comorbidities["hadm_id"] != 20]
        sofa = self.sofa[self.sofa["icustay_id"] != 300]

        with caplog.at_level(logging.WARNING):
            features = get_features(self.cohort, comorbidities, sofa)

        assert features["subject_id"].tolist() == [1]
        assert "no comorbidity record" in caplog.text
        assert "no SOFA record" in caplog.text
