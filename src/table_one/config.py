"""
Runtime configuration for the Table One pipeline.

The database endpoint and the location of the MIMIC-III dataset are read from
environment variables (optionally from a ``.env`` file, the same file the
development container uses for the PostgreSQL service) and passed explicitly
into the pipeline entry point as a ``TableOneConfig``.
"""
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .constants import TIE_POLICIES
from .exceptions import ConfigurationError

BACKENDS = ["duckdb", "postgres"]

DEFAULT_DATA_DIR = "/mnt/mimic-data"   # dataset mount inside the dev container
DEFAULT_DUCKDB_FILE = "mimiciii.duckdb"
DEFAULT_POSTGRES_SCHEMA = "mimiciii"
DEFAULT_OUTPUT_DIR = "results"


@dataclass(frozen=True)
class TableOneConfig:
    """
    Connection parameters and run options for the pipeline.

    Attributes:
        backend: "duckdb" to open a DuckDB database file, "postgres" to connect to a
            PostgreSQL server with psycopg2
        data_dir: Folder holding the MIMIC-III dataset
        duckdb_path: DuckDB database file (defaults to data_dir/mimiciii.duckdb)
        schema: Schema holding the MIMIC-III tables, None for unqualified names
        output_dir: Folder the report CSVs are written to
        tie_policy: "keep" tied first ICU stays (with a warning) or "raise"
    """
    backend: str = "duckdb"
    data_dir: str = DEFAULT_DATA_DIR
    duckdb_path: Optional[str] = None
    schema: Optional[str] = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "postgres"
    postgres_password: str = ""
    postgres_db: str = "mimic"
    output_dir: str = DEFAULT_OUTPUT_DIR
    tie_policy: str = "keep"

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"Unknown backend '{self.backend}'. Use one of {BACKENDS}")
        if self.tie_policy not in TIE_POLICIES:
            raise ConfigurationError(f"Unknown tie policy '{self.tie_policy}'. Use one of {TIE_POLICIES}")

    @property
    def database_path(self) -> str:
        """DuckDB database file to open for the duckdb backend."""
        if self.duckdb_path:
            return self.duckdb_path
        return str(Path(self.data_dir) / DEFAULT_DUCKDB_FILE)

    @property
    def table_prefix(self) -> str:
        """Qualifier prepended to every source table name."""
        if self.backend == "postgres":
            return f"{self.schema or DEFAULT_POSTGRES_SCHEMA}."
        if self.schema:
            return f"{self.schema}."
        return ""


def _parse_port(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"POSTGRES_PORT must be an integer, got '{value}'") from None


def load_config(env_file: Optional[str] = None, **overrides) -> TableOneConfig:
    """
    Build a TableOneConfig from environment variables.

    Args:
        env_file: Optional path to a .env file. When omitted, a .env file in the
            working directory is used if present. Variables already set in the
            environment take precedence over the file.
        **overrides: Field values that replace whatever the environment says
            (None values are ignored, which lets argparse defaults pass through)

    Returns:
        TableOneConfig: Validated configuration

    Raises:
        ConfigurationError: If a value is invalid or env_file does not exist
    """
    if env_file is not None and not Path(env_file).exists():
        raise ConfigurationError(f"Environment file not found: {env_file}")
    load_dotenv(env_file)

    config = TableOneConfig(
        backend=os.getenv("TABLE_ONE_BACKEND", "duckdb"),
        data_dir=os.getenv("MIMIC_DATA_DIR", DEFAULT_DATA_DIR),
        duckdb_path=os.getenv("MIMIC_DUCKDB_PATH") or None,
        schema=os.getenv("MIMIC_SCHEMA") or None,
        postgres_host=os.getenv("POSTGRES_HOST", "localhost"),
        postgres_port=_parse_port(os.getenv("POSTGRES_PORT", "5432")),
        postgres_user=os.getenv("POSTGRES_USER", "postgres"),
        postgres_password=os.getenv("POSTGRES_PASSWORD", ""),
        postgres_db=os.getenv("POSTGRES_DB", "mimic"),
        output_dir=os.getenv("TABLE_ONE_OUTPUT_DIR", DEFAULT_OUTPUT_DIR),
        tie_policy=os.getenv("TABLE_ONE_TIE_POLICY", "keep"),
    )

    overrides = {key: value for key, value in overrides.items() if value is not None}
    if overrides:
        config = replace(config, **overrides)
    return config
