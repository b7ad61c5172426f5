"""
Table One Statistics for ICU Admissions

This package computes descriptive statistics of the MIMIC-III adult ICU
population, stratified by admission type (Elective / Non-Elective) or by
gender: comorbidity burden, SOFA severity, ICU and hospital length of stay and
in-hospital mortality, each with a 95% confidence interval.

The package is organized into several components:
- Source table access (DuckDB database file or PostgreSQL server)
- Cohort selection (first ICU stay, age 16-95 at ICU admission)
- Per-patient features (length of stay, Elixhauser comorbidity count, SOFA)
- Group aggregation with Wald and normal-approximation intervals
- Report formatting and CSV output

Main workflow:
1. Build a TableOneConfig (load_config reads .env / environment variables)
2. run_table_one(config) loads the source tables once
3. Each stratification runs cohort -> features -> aggregation -> report
4. Reports are written to <output_dir>/<stratification>_statistics.csv
"""
from .config import TableOneConfig, load_config
from .exceptions import (
    ConfigurationError,
    DataSourceError,
    SchemaError,
    TableOneError,
    TiedFirstStayError,
)
from .pipeline import TableOneResult, compute_table_one, get_table_one, run_table_one
