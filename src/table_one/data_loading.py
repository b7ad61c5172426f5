"""
Source data access for the Table One pipeline.

Opens a read-only connection to the MIMIC-III source tables, either a DuckDB
database file or a PostgreSQL server (psycopg2), and loads the five source
tables as pandas DataFrames. Any failure here is fatal and is raised before a
single stratum has been computed.
"""
import logging
from pathlib import Path
from typing import Dict, List

import duckdb
import pandas as pd
import psycopg2

from .config import TableOneConfig
from .exceptions import DataSourceError, SchemaError
from .logging_utils import logger
from .queries import SOURCE_QUERIES, build_query

log = logging.getLogger(__name__)

TIMESTAMP_COLUMNS = ["dob", "intime", "outtime", "admittime", "dischtime", "deathtime"]


def connect(config: TableOneConfig):
    """
    Open a read-only connection to the MIMIC-III source tables.

    Args:
        config (TableOneConfig): Backend selection and connection parameters

    Returns:
        duckdb.DuckDBPyConnection for the duckdb backend, a psycopg2
        connection for the postgres backend

    Raises:
        DataSourceError: If the database file is missing or the server is
            unreachable
    """
    logger.log_start("connect")

    if config.backend == "duckdb":
        db_path = Path(config.database_path)
        if not db_path.exists():
            raise DataSourceError(f"DuckDB database not found: {db_path}")
        try:
            con = duckdb.connect(str(db_path), read_only=True)
        except duckdb.Error as e:
            raise DataSourceError(f"Cannot open {db_path}: {e}") from e
        logger.log_info(f"Opened {db_path}")
    else:
        try:
            con = psycopg2.connect(
                host=config.postgres_host,
                port=config.postgres_port,
                dbname=config.postgres_db,
                user=config.postgres_user,
                password=config.postgres_password,
            )
            con.set_session(readonly=True)
        except psycopg2.Error as e:
            raise DataSourceError(
                f"Cannot connect to PostgreSQL at {config.postgres_host}:{config.postgres_port}: {e}"
            ) from e
        logger.log_info(f"Connected to PostgreSQL database '{config.postgres_db}' at {config.postgres_host}")

    logger.log_end("connect")
    return con


def _assert_required_columns(df: pd.DataFrame, cols: List[str], name: str):
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise SchemaError(f"{name} missing columns: {missing}")


def load_table(con, table: str, prefix: str = "") -> pd.DataFrame:
    """
    Run the source query for one table and return its rows.

    Raises:
        SchemaError: If the table or one of the queried columns does not exist,
            or a value cannot be cast to the expected type
    """
    sql = build_query(table, prefix)
    try:
        if isinstance(con, duckdb.DuckDBPyConnection):
            df = con.execute(sql).fetchdf()
        else:
            df = pd.read_sql_query(sql, con)
    except (duckdb.Error, psycopg2.Error) as e:
        raise SchemaError(f"Failed to read {prefix}{table}: {e}") from e

    for col in TIMESTAMP_COLUMNS:
        if col in df.columns:
            df[col] = pd.to_datetime(df[col])
    return df


def load_source_tables(con, prefix: str = "") -> Dict[str, pd.DataFrame]:
    """
    Load every source table needed by the pipeline.

    Args:
        con: Open DuckDB or psycopg2 connection
        prefix (str): Schema qualifier prepended to the table names

    Returns:
        Dict[str, pd.DataFrame]: Keys patients, icustays, admissions,
            elixhauser_quan and sofa
    """
    logger.log_start("load_source_tables")

    tables = {}
    for table in SOURCE_QUERIES:
        tables[table] = load_table(con, table, prefix)
        logger.log_info(f"{table}: {len(tables[table])} rows")

    _assert_required_columns(tables["patients"], ["subject_id", "gender", "dob"], "patients")
    _assert_required_columns(
        tables["icustays"], ["icustay_id", "subject_id", "hadm_id", "intime", "outtime"], "icustays"
    )
    _assert_required_columns(
        tables["admissions"], ["hadm_id", "admittime", "dischtime", "admission_type", "deathtime"], "admissions"
    )
    _assert_required_columns(tables["sofa"], ["icustay_id", "sofa"], "sofa")

    if tables["icustays"].empty:
        log.warning("icustays is empty: every report will have zero strata")

    logger.log_end("load_source_tables")
    return tables
