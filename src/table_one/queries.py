"""
SQL used to read the five MIMIC-III source tables.

Each query is a template with a ``{prefix}`` placeholder for the schema
qualifier, see ``TableOneConfig.table_prefix``. Columns are cast with syntax
shared by DuckDB and PostgreSQL so the DataFrames have the same dtypes
whatever backend holds the data.
"""
from typing import Dict

from .constants import COMORBIDITY_CATEGORIES

# ---- base pulls ----
PATIENTS_SQL = """
    SELECT p.subject_id::INTEGER AS subject_id,
           p.gender AS gender,
           p.dob::TIMESTAMP AS dob
    FROM {prefix}patients p
    """

ICUSTAYS_SQL = """
    SELECT i.icustay_id::INTEGER AS icustay_id,
           i.subject_id::INTEGER AS subject_id,
           i.hadm_id::INTEGER AS hadm_id,
           i.intime::TIMESTAMP AS intime,
           i.outtime::TIMESTAMP AS outtime
    FROM {prefix}icustays i
    """

ADMISSIONS_SQL = """
    SELECT a.hadm_id::INTEGER AS hadm_id,
           a.admittime::TIMESTAMP AS admittime,
           a.dischtime::TIMESTAMP AS dischtime,
           a.admission_type AS admission_type,
           a.deathtime::TIMESTAMP AS deathtime
    FROM {prefix}admissions a
    """

# ---- comorbidities / severity ----
COMORBIDITY_SQL = """
    SELECT e.hadm_id::INTEGER AS hadm_id,
           {columns}
    FROM {prefix}elixhauser_quan e
    """.replace(
    "{columns}",
    ",\n           ".join(f"e.{c}::INTEGER AS {c}" for c in COMORBIDITY_CATEGORIES),
)

SOFA_SQL = """
    SELECT s.icustay_id::INTEGER AS icustay_id,
           s.sofa::FLOAT8 AS sofa
    FROM {prefix}sofa s
    """

# Table name -> query template, in load order
SOURCE_QUERIES: Dict[str, str] = {
    "patients": PATIENTS_SQL,
    "icustays": ICUSTAYS_SQL,
    "admissions": ADMISSIONS_SQL,
    "elixhauser_quan": COMORBIDITY_SQL,
    "sofa": SOFA_SQL,
}


def build_query(table: str, prefix: str = "") -> str:
    """Render the query for a source table with its schema qualifier."""
    return SOURCE_QUERIES[table].format(prefix=prefix)
