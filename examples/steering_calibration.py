"""Streaming calibration of a car's steering model.

The steering angle is modeled as a cubic polynomial of the raw steering
encoder reading. Every measurement relates the reading to the steering angle
implied by the measured yaw rate and forward speed, through the wheelbase.
The forward speed of each measurement is a latent state, estimated together
with the calibration parameters.

For a summary of options:

    python steering_calibration.py --help

"""

from typing import Literal

import jax
import inccal
import numpy as onp
import tyro
from jax import numpy as jnp

jax.config.update("jax_enable_x64", True)

TRUE_POLYNOMIAL = onp.array([0.01, 0.5, -0.02, 0.03])
TRUE_WHEELBASE = 2.7


@inccal.ErrorTerm.factory
def steering_error(
    polynomial: jax.Array,
    wheelbase: jax.Array,
    speed: jax.Array,
    steering_reading: float,
    yaw_rate: float,
) -> jax.Array:
    """Polynomial steering angle minus the angle implied by the yaw rate,
    wrapped to [-pi, pi]."""
    powers = steering_reading ** jnp.arange(4)
    phi = jnp.arctan(wheelbase[0] * yaw_rate / speed[0])
    error = polynomial @ powers - phi
    return jnp.atleast_1d(jnp.arctan2(jnp.sin(error), jnp.cos(error)))


@inccal.ErrorTerm.factory
def speed_measurement(speed: jax.Array, measured: float) -> jax.Array:
    return speed - measured


@inccal.ErrorTerm.factory
def wheelbase_prior(wheelbase: jax.Array, measured: float) -> jax.Array:
    return wheelbase - measured


def main(
    num_measurements: int = 300,
    batch_size: int = 10,
    info_gain_delta: float = 0.2,
    linear_solver: Literal["qr", "dense_cholesky", "cholmod"] = "qr",
    num_threads: int = 1,
    seed: int = 0,
) -> None:
    rng = onp.random.default_rng(seed)
    estimator = inccal.IncrementalEstimator(
        inccal.EstimatorConfig(
            info_gain_delta=info_gain_delta,
            batch_size=batch_size,
            num_threads=num_threads,
            linear_solver=linear_solver,
        )
    )

    polynomial = estimator.add_variable(
        inccal.DesignVariable("steering_polynomial", [0.0, 1.0, 0.0, 0.0])
    )
    wheelbase = estimator.add_variable(inccal.DesignVariable("wheelbase", [2.5]))
    # Tape measure.
    estimator.add_measurement(
        [wheelbase_prior(wheelbase, 2.68, information=1.0 / 0.05**2)]
    )

    with inccal.utils.stopwatch("Streaming measurements"):
        for i in range(num_measurements):
            steering_reading = rng.uniform(-0.6, 0.6)
            true_speed = rng.uniform(3.0, 15.0)
            true_phi = TRUE_POLYNOMIAL @ steering_reading ** onp.arange(4)
            yaw_rate = true_speed * onp.tan(true_phi) / TRUE_WHEELBASE
            measured_speed = true_speed + rng.normal(scale=0.1)
            measured_yaw_rate = yaw_rate + rng.normal(scale=0.002)

            speed = estimator.add_variable(
                inccal.DesignVariable(
                    f"speed_{i}", [measured_speed], is_calibration=False
                )
            )
            estimator.add_measurement(
                [
                    speed_measurement(speed, measured_speed, information=1.0 / 0.1**2),
                    steering_error(
                        polynomial,
                        wheelbase,
                        speed,
                        steering_reading,
                        measured_yaw_rate,
                        information=1.0 / 0.01**2,
                    ),
                ]
            )
        result = estimator.finalize()

    inccal.utils.print_summary(result, names=("steering_polynomial", "wheelbase"))
    print("True polynomial:", TRUE_POLYNOMIAL)
    print("True wheelbase:", TRUE_WHEELBASE)
    statistics = estimator.error_statistics("steering_error")
    print(
        f"Steering error: mean={statistics.mean[0]:.2e}"
        f" std={statistics.standard_deviation[0]:.2e}"
        f" max={statistics.max_abs[0]:.2e}"
    )


if __name__ == "__main__":
    tyro.cli(main)
