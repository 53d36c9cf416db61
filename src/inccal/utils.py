import contextlib
import time
from typing import Generator, Sequence

import numpy as onp
import termcolor
from loguru import logger
from rich.console import Console
from rich.table import Table

from ._results import CalibrationResult


@contextlib.contextmanager
def stopwatch(label: str = "unlabeled block") -> Generator[None, None, None]:
    """Context manager for measuring runtime."""
    start_time = time.time()
    print("\n========")
    print(f"Running ({label})")
    yield
    print(f"{termcolor.colored(str(time.time() - start_time), attrs=['bold'])} seconds")
    print("========")


def _format_array(x: onp.ndarray) -> str:
    return onp.array2string(x, precision=6, suppress_small=True)


def print_summary(
    result: CalibrationResult,
    names: Sequence[str] | None = None,
    console: Console | None = None,
) -> None:
    """Print final estimates, marginal standard deviations and unobservable
    directions of a calibration result.

    Args:
        result: Output of `IncrementalEstimator.finalize()`.
        names: Design variables to list. All of them if None.
        console: Rich console to print to.
    """
    if console is None:
        console = Console()

    if not result.is_initialized:
        logger.warning(
            "No batch accepted out of {} ({} measurements), nothing to summarize.",
            result.num_batches,
            result.num_measurements,
        )
        return
    assert result.values is not None
    assert result.standard_deviations is not None
    assert result.null_space is not None
    assert result.column_labels is not None

    table = Table(title="Calibration result")
    table.add_column("Design variable", style="bold")
    table.add_column("Value")
    table.add_column("Std. deviation")
    for name, value in result.values.items():
        if names is not None and name not in names:
            continue
        table.add_row(name, _format_array(value), _format_array(result.standard_deviations[name]))
    console.print(table)

    console.print(
        f"Rank [bold]{result.rank}[/bold] of {result.num_cols} columns,"
        f" cost {result.initial_cost:.4e} -> {result.final_cost:.4e},"
        f" {result.num_batches_accepted}/{result.num_batches} batches and"
        f" {result.num_measurements_accepted}/{result.num_measurements} measurements"
        f" accepted, {result.num_outliers} outliers."
    )

    if result.null_space.shape[1] > 0:
        null_table = Table(title="Unobservable directions")
        null_table.add_column("Column", style="bold")
        for i in range(result.null_space.shape[1]):
            null_table.add_column(f"#{i}")
        for label, row in zip(result.column_labels, result.null_space):
            null_table.add_row(label, *[f"{x:+.4f}" for x in row])
        console.print(null_table)
