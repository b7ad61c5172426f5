import math
from typing import Any, Dict, List

import duckdb  # type: ignore
import pandas as pd
import pytest

import run_table_one as table_one_cli
from table_one import (
    ConfigurationError,
    DataSourceError,
    SchemaError,
    TableOneConfig,
    compute_table_one,
    get_table_one,
    load_config,
    run_table_one,
)
from table_one.constants import COMORBIDITY_CATEGORIES
from table_one.data_loading import load_source_tables
from table_one.report import REPORT_COLUMNS

BASE_TIME = pd.Timestamp("2150-01-01 00:00:00")


def _ts_offset(**kwargs) -> pd.Timestamp:

    return BASE_TIME + pd.Timedelta(**kwargs)


def create_mimic_schema(con: Any) -> None:

    # Minimal schemas with only the columns referenced in queries
    con.execute(
        """
        CREATE TABLE patients (
            subject_id INTEGER,
            gender VARCHAR,
            dob TIMESTAMP
        );
        """
    )

    con.execute(
        """
        CREATE TABLE icustays (
            icustay_id INTEGER,
            subject_id INTEGER,
            hadm_id INTEGER,
            intime TIMESTAMP,
            outtime TIMESTAMP
        );
        """
    )

    con.execute(
        """
        CREATE TABLE admissions (
            subject_id INTEGER,
            hadm_id INTEGER,
            admittime TIMESTAMP,
            dischtime TIMESTAMP,
            admission_type VARCHAR,
            deathtime TIMESTAMP
        );
        """
    )

    flag_columns = ",\n            ".join(f"{c} INTEGER" for c in COMORBIDITY_CATEGORIES)
    con.execute(
        f"""
        CREATE TABLE elixhauser_quan (
            hadm_id INTEGER,
            {flag_columns}
        );
        """
    )

    con.execute(
        """
        CREATE TABLE sofa (
            icustay_id INTEGER,
            sofa INTEGER
        );
        """
    )


def _insert_comorbidities(con: Any, hadm_id: int, flagged: List[str], missing: List[str] = ()) -> None:

    values = []
    for c in COMORBIDITY_CATEGORIES:
        if c in missing:
            values.append("NULL")
        else:
            values.append("1" if c in flagged else "0")
    con.execute(f"INSERT INTO elixhauser_quan VALUES ({hadm_id}, {', '.join(values)})")


def seed_synthetic_data(con: Any) -> None:

    # subject_id, gender, age, admission_type, died, ICU days, hospital days
    cases: List[Dict[str, Any]] = [
        {"subject_id": 1, "gender": "M", "age": 65, "admission_type": "ELECTIVE", "died": False, "icu": 2, "hosp": 10},
        {"subject_id": 2, "gender": "F", "age": 15, "admission_type": "EMERGENCY", "died": False, "icu": 1, "hosp": 3},
        {"subject_id": 3, "gender": "F", "age": 96, "admission_type": "URGENT", "died": True, "icu": 1, "hosp": 3},
        {"subject_id": 4, "gender": "F", "age": 40, "admission_type": "EMERGENCY", "died": True, "icu": 2, "hosp": 5},
        {"subject_id": 5, "gender": "M", "age": 80, "admission_type": "URGENT", "died": False, "icu": 1, "hosp": 4},
        {"subject_id": 6, "gender": "M", "age": 50, "admission_type": "ELECTIVE", "died": False, "icu": 1, "hosp": 2},
        {"subject_id": 7, "gender": "F", "age": 30, "admission_type": "EMERGENCY", "died": False, "icu": 1, "hosp": 2},
        {"subject_id": 8, "gender": "F", "age": 70, "admission_type": "ELECTIVE", "died": False, "icu": 3, "hosp": 6},
    ]

    patients, icustays, admissions = [], [], []
    for case in cases:
        subject_id = case["subject_id"]
        hadm_id = 100 + subject_id
        icustay_id = 1000 + subject_id
        admittime = BASE_TIME
        intime = _ts_offset(hours=12)
        dischtime = admittime + pd.Timedelta(days=case["hosp"])

        patients.append({
            "subject_id": subject_id,
            "gender": case["gender"],
            "dob": intime - pd.DateOffset(years=case["age"]),
        })
        admissions.append({
            "subject_id": subject_id,
            "hadm_id": hadm_id,
            "admittime": admittime,
            "dischtime": dischtime,
            "admission_type": case["admission_type"],
            "deathtime": dischtime if case["died"] else pd.NaT,
        })
        icustays.append({
            "icustay_id": icustay_id,
            "subject_id": subject_id,
            "hadm_id": hadm_id,
            "intime": intime,
            "outtime": intime + pd.Timedelta(days=case["icu"]),
        })

    # Second, later ICU stay for subject 1 in a new emergency admission
    admissions.append({
        "subject_id": 1,
        "hadm_id": 201,
        "admittime": _ts_offset(days=60),
        "dischtime": _ts_offset(days=70),
        "admission_type": "EMERGENCY",
        "deathtime": _ts_offset(days=70),
    })
    icustays.append({
        "icustay_id": 2001,
        "subject_id": 1,
        "hadm_id": 201,
        "intime": _ts_offset(days=60, hours=3),
        "outtime": _ts_offset(days=65),
    })

    patients_df = pd.DataFrame(patients)
    con.register("patients_df", patients_df)
    con.execute("INSERT INTO patients SELECT * FROM patients_df")

    icustays_df = pd.DataFrame(icustays)
    con.register("icustays_df", icustays_df)
    con.execute("INSERT INTO icustays SELECT * FROM icustays_df")

    admissions_df = pd.DataFrame(admissions)
    con.register("admissions_df", admissions_df)
    con.execute("INSERT INTO admissions SELECT * FROM admissions_df")

    # Comorbidities: subject 6 has no record
    _insert_comorbidities(con, 101, ["congestive_heart_failure", "hypertension", "diabetes_uncomplicated"])
    _insert_comorbidities(con, 102, [])
    _insert_comorbidities(con, 103, ["renal_failure"])
    _insert_comorbidities(con, 104, [])
    _insert_comorbidities(con, 105, ["obesity"], missing=["hypertension", "depression"])
    _insert_comorbidities(con, 107, ["aids", "lymphoma"])
    _insert_comorbidities(con, 108, ["liver_disease", "coagulopathy"])
    _insert_comorbidities(con, 201, ["congestive_heart_failure"])

    # SOFA: subject 7 has no record, subject 8 has a NULL score
    con.execute(
        """
        INSERT INTO sofa VALUES
            (1001, 4), (1002, 2), (1003, 9), (1004, 10), (1005, 6),
            (1006, 3), (1008, NULL), (2001, 12);
        """
    )


def create_in_memory_mimic() -> Any:

    con = duckdb.connect(database=":memory:")
    create_mimic_schema(con)
    seed_synthetic_data(con)
    return con


def _row(report: pd.DataFrame, column: str, label: str) -> pd.Series:

    rows = report[report[column] == label]
    assert len(rows) == 1, f"Expected one row for {column}={label}, got {len(rows)}"
    return rows.iloc[0]


class TestTableOnePipeline:
    """End-to-end runs against a seeded in-memory MIMIC schema."""

    def setup_method(self):
        self.con = create_in_memory_mimic()
        self.config = TableOneConfig(duckdb_path=":memory:")
        self.tables = load_source_tables(self.con, self.config.table_prefix)

    def teardown_method(self):
        self.con.close()

    def test_source_tables_are_loaded(self):
        assert set(self.tables) == {"patients", "icustays", "admissions", "elixhauser_quan", "sofa"}
        assert len(self.tables["icustays"]) == 9
        assert pd.api.types.is_datetime64_any_dtype(self.tables["icustays"]["intime"])
        assert self.tables["sofa"]["sofa"].isna().sum() == 1

    def test_cohort_and_attrition(self):
        result = compute_table_one(self.tables, "admission_type")

        # Subjects 2 (15) and 3 (96) are excluded by age
        assert result.cohort["subject_id"].tolist() == [1, 4, 5, 6, 7, 8]
        # Subject 6 has no comorbidities, subject 7 no SOFA record
        assert result.features["subject_id"].tolist() == [1, 4, 5, 8]
        assert result.attrition == {
            "icu_stays": 9,
            "first_icu_stays": 8,
            "cohort_rows": 6,
            "with_comorbidities": 5,
            "with_sofa": 4,
        }

    def test_first_icu_stay_is_used(self):
        result = compute_table_one(self.tables, "admission_type")
        subject_1 = result.features[result.features["subject_id"] == 1].iloc[0]

        assert subject_1["icustay_id"] == 1001
        assert subject_1["disease_count"] == 3
        assert subject_1["sofa"] == 4
        assert pd.isnull(subject_1["deathtime"])

    def test_admission_type_report(self):
        report = compute_table_one(self.tables, "admission_type").report

        assert list(report.columns) == ["admission_type"] + REPORT_COLUMNS
        assert report["admission_type"].tolist() == ["Elective", "Non-Elective"]

        elective = _row(report, "admission_type", "Elective")
        assert elective["patient_count"] == 2
        assert elective["patient_percentage"] == 50.0
        assert elective["median_morbidity_count"] == 2.5
        assert elective["iqr_morbidity_count"] == "2.25 - 2.75"
        assert elective["percent_multimorbidity"] == 100.0
        assert elective["lower_95ci_multimorbidity"] == 100.0
        # Only subject 1 has a SOFA score
        assert elective["mean_sofa"] == 4.0
        assert math.isnan(elective["sofa_lower_95ci"])
        assert elective["mean_los_icu"] == pytest.approx(2.5)
        assert elective["mean_los_hospital"] == pytest.approx(8.0)
        assert elective["percent_mortality"] == 0.0

        non_elective = _row(report, "admission_type", "Non-Elective")
        margin = 1.96 * math.sqrt(0.5 * 0.5 / 2) * 100
        assert non_elective["patient_count"] == 2
        assert non_elective["median_morbidity_count"] == 0.5
        assert non_elective["percent_multimorbidity"] == 0.0
        assert non_elective["mean_sofa"] == pytest.approx(8.0)
        assert non_elective["mean_los_icu"] == pytest.approx(1.5)
        assert non_elective["percent_mortality"] == 50.0
        assert non_elective["lower_95ci_mortality"] == pytest.approx(50.0 - margin)
        assert non_elective["upper_95ci_mortality"] == pytest.approx(50.0 + margin)

    def test_gender_report(self):
        report = get_table_one(self.con, "gender", self.config).report

        assert report["gender"].tolist() == ["F", "M"]
        assert report["patient_count"].sum() == 4
        assert report["patient_percentage"].sum() == pytest.approx(100.0)

        female = _row(report, "gender", "F")
        assert female["percent_mortality"] == 50.0
        male = _row(report, "gender", "M")
        assert male["iqr_morbidity_count"] == "1.5 - 2.5"

    def test_each_patient_in_exactly_one_stratum(self):
        for stratify_by in ["admission_type", "gender"]:
            result = compute_table_one(self.tables, stratify_by)
            assert result.features["subject_id"].is_unique
            assert result.summary["patient_count"].sum() == len(result.features)
            assert (result.summary["iqr_lower"] <= result.summary["median_morbidity_count"]).all()
            assert (result.summary["median_morbidity_count"] <= result.summary["iqr_upper"]).all()

    def test_missing_table_is_fatal(self):
        self.con.execute("DROP TABLE sofa")
        with pytest.raises(SchemaError):
            load_source_tables(self.con)

    def test_missing_column_is_fatal(self):
        self.con.execute("ALTER TABLE elixhauser_quan DROP COLUMN depression")
        with pytest.raises(SchemaError):
            load_source_tables(self.con)


class TestRunTableOne:
    """Runs from configuration against a DuckDB database file."""

    @pytest.fixture
    def database_path(self, tmp_path):
        path = tmp_path / "mimiciii.duckdb"
        con = duckdb.connect(str(path))
        create_mimic_schema(con)
        seed_synthetic_data(con)
        con.close()
        return path

    def test_writes_one_report_per_stratification(self, database_path, tmp_path):
        config = TableOneConfig(duckdb_path=str(database_path), output_dir=str(tmp_path / "out"))
        results = run_table_one(config)

        assert set(results) == {"admission_type", "gender"}
        for stratify_by, result in results.items():
            saved = pd.read_csv(result.report_path)
            assert saved[stratify_by].tolist() == result.report[stratify_by].tolist()
            assert saved["patient_count"].tolist() == result.report["patient_count"].tolist()

    def test_database_in_data_dir(self, database_path, tmp_path):
        config = TableOneConfig(data_dir=str(database_path.parent), output_dir=str(tmp_path / "out"))
        results = run_table_one(config, ["gender"])
        assert list(results) == ["gender"]

    def test_reruns_are_byte_identical(self, database_path, tmp_path):
        first = run_table_one(TableOneConfig(duckdb_path=str(database_path), output_dir=str(tmp_path / "a")))
        second = run_table_one(TableOneConfig(duckdb_path=str(database_path), output_dir=str(tmp_path / "b")))

        for stratify_by in first:
            with open(first[stratify_by].report_path, "rb") as f1, open(second[stratify_by].report_path, "rb") as f2:
                assert f1.read() == f2.read()

    def test_missing_database_file(self, tmp_path):
        config = TableOneConfig(duckdb_path=str(tmp_path / "missing.duckdb"))
        with pytest.raises(DataSourceError):
            run_table_one(config)

    def test_unknown_stratification(self, database_path):
        with pytest.raises(ValueError):
            run_table_one(TableOneConfig(duckdb_path=str(database_path)), ["ethnicity"])

    def test_command_line(self, database_path, tmp_path, capsys):
        out_dir = tmp_path / "cli"
        exit_code = table_one_cli.main([
            "--duckdb-path", str(database_path),
            "--output-dir", str(out_dir),
            "--stratify-by", "gender",
        ])

        assert exit_code == 0
        assert (out_dir / "gender_statistics.csv").exists()
        assert not (out_dir / "admission_type_statistics.csv").exists()
        assert "TABLE ONE BY GENDER" in capsys.readouterr().out

    def test_command_line_failure(self, tmp_path):
        exit_code = table_one_cli.main(["--duckdb-path", str(tmp_path / "missing.duckdb")])
        assert exit_code == 1


class TestConfiguration:

    ENV_VARS = [
        "TABLE_ONE_BACKEND", "MIMIC_DATA_DIR", "MIMIC_DUCKDB_PATH", "MIMIC_SCHEMA",
        "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_DB",
        "TABLE_ONE_OUTPUT_DIR", "TABLE_ONE_TIE_POLICY",
    ]

    @pytest.fixture(autouse=True)
    def clean_environment(self, monkeypatch):
        # setenv first so that values loaded from .env files are undone too
        for name in self.ENV_VARS:
            monkeypatch.setenv(name, "")
            monkeypatch.delenv(name)

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "TABLE_ONE_BACKEND=postgres\n"
            "POSTGRES_HOST=db\n"
            "POSTGRES_PORT=5433\n"
            "POSTGRES_USER=mimic\n"
            "POSTGRES_PASSWORD=secret\n"
            "MIMIC_DATA_DIR=/data/mimic\n"
        )
        config = load_config(str(env_file))

        assert config.backend == "postgres"
        assert config.postgres_host == "db"
        assert config.postgres_port == 5433
        assert config.postgres_user == "mimic"
        assert config.postgres_password == "secret"
        assert config.postgres_db == "mimic"
        assert config.table_prefix == "mimiciii."
        assert config.database_path == "/data/mimic/mimiciii.duckdb"

    def test_overrides_take_precedence(self, monkeypatch):
        monkeypatch.setenv("TABLE_ONE_OUTPUT_DIR", "from_env")
        config = load_config(output_dir="from_cli", schema=None, tie_policy="raise")

        assert config.output_dir == "from_cli"
        assert config.tie_policy == "raise"
        assert config.table_prefix == ""

    def test_duckdb_schema_prefix(self):
        assert TableOneConfig(schema="mimiciii").table_prefix == "mimiciii."

    def test_invalid_values(self, monkeypatch, tmp_path):
        with pytest.raises(ConfigurationError):
            TableOneConfig(backend="sqlite")
        with pytest.raises(ConfigurationError):
            TableOneConfig(tie_policy="first")
        with pytest.raises(ConfigurationError):
            load_config(str(tmp_path / "missing.env"))

        monkeypatch.setenv("POSTGRES_PORT", "not-a-port")
        with pytest.raises(ConfigurationError):
            load_config()


if __name__ == "__main__":

    pytest.main([__file__])
