"""
Exceptions raised by the Table One pipeline.

Arithmetic degeneracies (empty or single-patient strata) are not errors: they
surface as NaN cells in the report.
"""


class TableOneError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(TableOneError):
    """A configuration value is missing or invalid."""


class DataSourceError(TableOneError):
    """The relational store holding the source tables cannot be reached."""


class SchemaError(DataSourceError):
    """A source table or column is missing, or a source query failed."""


class TiedFirstStayError(TableOneError):
    """A patient has several ICU stays sharing the earliest intime."""

    def __init__(self, subject_ids):
        self.subject_ids = list(subject_ids)
        super().__init__(
            f"{len(self.subject_ids)} patient(s) have tied first ICU stays: "
            f"{self.subject_ids[:10]}"
        )
