"""
Logging Utilities for the Table One Pipeline

This module provides stage-level logging with hierarchical nesting so that the
flow cohort selection -> feature derivation -> aggregation can be followed in
the console, together with the wall-clock time spent in every stage.

Each stage function calls ``logger.log_start`` on entry and ``logger.log_end``
on exit. Informational lines emitted in between (row counts, attrition) are
indented to the level of the stage that produced them.

Warnings about the data itself (dropped rows, tied first stays, unexpected
stratification labels) go through the standard ``logging`` module instead, so
that they can be filtered or redirected independently of the stage trace.
"""
import time
from datetime import datetime
from typing import List


class NestedLogger:
    """
    A logger that indents its output by the depth of the running stage.

    Attributes:
        _nesting_level (int): Current indentation level (0 = no indentation)
        _started_at (List[float]): Start times of the currently open stages
    """

    def __init__(self):
        self._nesting_level = 0
        self._started_at: List[float] = []

    def _get_timestamp(self) -> str:
        """
        Get formatted timestamp with millisecond precision.

        Returns:
            str: Timestamp in format 'HH:MM:SS.mmm'
        """
        return datetime.now().strftime('%H:%M:%S.%f')[:-3]

    def _get_indent(self) -> str:
        return "    " * self._nesting_level

    def log_start(self, stage_name: str) -> None:
        """
        Log the start of a pipeline stage and open a new nesting level.

        Args:
            stage_name (str): Name of the stage being started

        Example output:
            10:30:45.123 Started run_table_one
                10:30:45.124 Started get_cohort
        """
        print(f"{self._get_indent()}{self._get_timestamp()} Started {stage_name}")
        self._nesting_level += 1
        self._started_at.append(time.perf_counter())

    def log_end(self, stage_name: str) -> None:
        """
        Close the current nesting level and log the stage completion with its
        elapsed time.

        Args:
            stage_name (str): Name of the stage being completed

        Example output:
                10:30:46.789 Finished get_cohort (1.665s)
            10:30:47.234 Finished run_table_one (2.111s)
        """
        if self._nesting_level > 0:
            self._nesting_level -= 1

        elapsed = ""
        if self._started_at:
            elapsed = f" ({time.perf_counter() - self._started_at.pop():.3f}s)"

        print(f"{self._get_indent()}{self._get_timestamp()} Finished {stage_name}{elapsed}")

    def log_info(self, message: str) -> None:
        """Print a message at the nesting level of the running stage."""
        print(f"{self._get_indent()}{self._get_timestamp()} {message}")


# Single instance shared by every stage so nesting stays consistent
logger = NestedLogger()
