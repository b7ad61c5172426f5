"""
Table One Pipeline Entry Point

This module wires the three stages of the pipeline together:
1. Cohort selection (first ICU stay, age 16-95)
2. Per-patient feature derivation (length of stay, comorbidity count, SOFA)
3. Group aggregation with 95% confidence intervals, and report formatting

The source tables are loaded once per run and shared by every requested
stratification (admission type, gender).
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from .cohort_data import get_cohort, select_first_icu_stays
from .config import TableOneConfig
from .constants import STRATIFICATION_KEYS
from .data_loading import connect, load_source_tables
from .feature_data import get_features
from .logging_utils import logger
from .report import format_report, write_report
from .statistics import aggregate_by_stratum


@dataclass
class TableOneResult:
    """Intermediate and final outputs of one stratification."""
    stratify_by: str
    cohort: pd.DataFrame
    features: pd.DataFrame
    summary: pd.DataFrame
    report: pd.DataFrame
    attrition: Dict[str, int] = field(default_factory=dict)
    report_path: Optional[str] = None


def get_attrition(tables: Dict[str, pd.DataFrame], cohort: pd.DataFrame, features: pd.DataFrame) -> Dict[str, int]:
    """
    Row counts after each selection step, so that shrinking denominators are
    visible next to the report.
    """
    with_comorbidities = cohort["hadm_id"].isin(tables["elixhauser_quan"]["hadm_id"])
    return {
        "icu_stays": len(tables["icustays"]),
        "first_icu_stays": len(select_first_icu_stays(tables["icustays"])),
        "cohort_rows": len(cohort),
        "with_comorbidities": int(with_comorbidities.sum()),
        "with_sofa": len(features),
    }


def compute_table_one(tables: Dict[str, pd.DataFrame], stratify_by: str, tie_policy: str = "keep") -> TableOneResult:
    """
    Run cohort selection, feature derivation and aggregation on loaded tables.

    Args:
        tables (Dict[str, pd.DataFrame]): Output of load_source_tables
        stratify_by (str): "admission_type" or "gender"
        tie_policy (str): See get_cohort

    Returns:
        TableOneResult: Cohort, features, summary and formatted report
    """
    logger.log_start(f"compute_table_one[{stratify_by}]")

    cohort = get_cohort(
        tables["patients"], tables["icustays"], tables["admissions"], stratify_by, tie_policy
    )
    features = get_features(cohort, tables["elixhauser_quan"], tables["sofa"])
    summary = aggregate_by_stratum(features, stratify_by)
    report = format_report(summary, stratify_by)

    attrition = get_attrition(tables, cohort, features)
    logger.log_info(", ".join(f"{step}={count}" for step, count in attrition.items()))

    logger.log_end(f"compute_table_one[{stratify_by}]")
    return TableOneResult(stratify_by, cohort, features, summary, report, attrition)


def get_table_one(con, stratify_by: str, config: TableOneConfig) -> TableOneResult:
    """Load the source tables through `con` and compute one stratification."""
    tables = load_source_tables(con, config.table_prefix)
    return compute_table_one(tables, stratify_by, config.tie_policy)


def run_table_one(config: TableOneConfig, stratify_by_values: Optional[List[str]] = None) -> Dict[str, TableOneResult]:
    """
    Compute and save the Table One reports.

    Opens the connection described by `config`, loads the source tables once,
    computes every requested stratification and writes one CSV per
    stratification into config.output_dir.

    Args:
        config (TableOneConfig): Connection parameters and run options
        stratify_by_values (List[str]): Stratification keys, defaults to all

    Returns:
        Dict[str, TableOneResult]: Results keyed by stratification

    Raises:
        DataSourceError: If the source store or a source table is unavailable
    """
    stratify_by_values = stratify_by_values or list(STRATIFICATION_KEYS)
    for stratify_by in stratify_by_values:
        if stratify_by not in STRATIFICATION_KEYS:
            raise ValueError(f"Cannot stratify by '{stratify_by}'. Use one of {STRATIFICATION_KEYS}")

    logger.log_start("run_table_one")

    con = connect(config)
    try:
        tables = load_source_tables(con, config.table_prefix)
    finally:
        con.close()

    results = {}
    for stratify_by in stratify_by_values:
        result = compute_table_one(tables, stratify_by, config.tie_policy)
        result.report_path = str(write_report(result.report, config.output_dir, stratify_by))
        results[stratify_by] = result

    logger.log_end("run_table_one")
    return results
