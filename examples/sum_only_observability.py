"""Two offsets of which only the sum is ever measured.

The estimator reports a rank-deficient system, a single unobservable direction
proportional to [1, -1], and no standard deviation for either offset. Adding
a measurement of one offset makes both observable.

    python sum_only_observability.py --help

"""

import inccal
import numpy as onp
import tyro


@inccal.ErrorTerm.factory
def sum_measurement(a: onp.ndarray, b: onp.ndarray, measured: float) -> onp.ndarray:
    return a + b - measured


@inccal.ErrorTerm.factory
def offset_measurement(a: onp.ndarray, measured: float) -> onp.ndarray:
    return a - measured


def main(num_measurements: int = 20, observe_offset: bool = False, seed: int = 0) -> None:
    rng = onp.random.default_rng(seed)
    estimator = inccal.IncrementalEstimator(inccal.EstimatorConfig(batch_size=5))
    a = estimator.add_variable(inccal.DesignVariable("a", [0.0]))
    b = estimator.add_variable(inccal.DesignVariable("b", [0.0]))

    for _ in range(num_measurements):
        estimator.add_measurement(
            [sum_measurement(a, b, 3.0 + rng.normal(scale=0.1), information=100.0)]
        )
    if observe_offset:
        estimator.add_measurement(
            [offset_measurement(a, 1.0 + rng.normal(scale=0.1), information=100.0)]
        )

    result = estimator.finalize()
    inccal.utils.print_summary(result)


if __name__ == "__main__":
    tyro.cli(main)
