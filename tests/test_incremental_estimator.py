"""End-to-end tests for the incremental estimator."""

import math

import numpy as onp
import pytest
from jax import numpy as jnp

import inccal

COEFFICIENTS = onp.array(
    [
        [1.0, 0.0, 0.0],
        [0.0, 1.0, 0.0],
        [0.0, 0.0, 1.0],
        [1.0, 1.0, 0.0],
        [0.0, 1.0, -1.0],
    ]
)
GROUND_TRUTH = onp.array([1.0, -2.0, 0.5])
NOISE_STD = 0.01


@inccal.ErrorTerm.factory
def linear_measurement(x0, x1, x2, coefficients, target):
    return jnp.atleast_1d(coefficients @ jnp.concatenate([x0, x1, x2]) - target)


@inccal.ErrorTerm.factory
def sum_measurement(a, b, target):
    return a + b - target


@inccal.ErrorTerm.factory
def prior(x, target):
    return x - target


def _store_state(estimator: inccal.IncrementalEstimator):
    return (
        len(estimator.store),
        len(estimator.accepted_error_terms),
        {var.id: estimator.store[var].value.tobytes() for var in estimator.store},
        tuple(
            (t.weight, t.chi2, t.raw_residual.tobytes())  # type: ignore
            for t in estimator.accepted_error_terms
        ),
    )


def test_three_variables_one_batch():
    """Five noisy linear measurements of three scalars, in one batch."""
    estimator = inccal.IncrementalEstimator(inccal.EstimatorConfig(batch_size=5))
    xs = [estimator.add_variable(inccal.DesignVariable(f"x{i}", [0.0])) for i in range(3)]
    assert estimator.state == inccal.EstimatorState.ACCUMULATING

    noise = NOISE_STD * onp.array([0.5, -1.0, 0.3, 0.8, -0.2])
    targets = COEFFICIENTS @ GROUND_TRUTH + noise
    batch_results = [
        estimator.add_measurement(
            [
                linear_measurement(
                    *xs, COEFFICIENTS[i], targets[i], information=1.0 / NOISE_STD**2
                )
            ]
        )
        for i in range(5)
    ]
    assert batch_results[:4] == [None] * 4
    batch = batch_results[4]
    assert batch is not None
    assert batch.accepted
    assert batch.info_gain == math.inf
    assert batch.rank == 3
    assert batch.num_measurements == 5
    assert batch.num_new_variables == 3
    assert estimator.state == inccal.EstimatorState.ACCEPTED

    result = estimator.finalize()
    assert estimator.state == inccal.EstimatorState.DONE
    assert result.is_initialized
    assert result.rank == 3
    assert result.null_space is not None
    assert result.null_space.shape == (3, 0)
    assert not result.is_rank_deficient
    assert result.values is not None
    assert result.standard_deviations is not None
    for i in range(3):
        value = result.values[f"x{i}"][0]
        std = result.standard_deviations[f"x{i}"][0]
        assert 0.0 < std < 0.02
        assert abs(value - GROUND_TRUTH[i]) < 3.0 * std

    assert result.num_measurements == result.num_measurements_accepted == 5
    assert result.num_batches == result.num_batches_accepted == 1
    assert result.num_outliers == 0
    assert result.residuals is not None and len(result.residuals) == 5
    assert result.initial_cost is not None and result.final_cost is not None
    assert result.final_cost < result.initial_cost
    assert result.column_labels == ("x0[0]", "x1[0]", "x2[0]")

    with pytest.raises(inccal.StructuralError):
        estimator.add_measurement([prior(xs[0], jnp.zeros(1))])
    assert estimator.finalize() is result


def test_sum_only_observability():
    """Only the sum of two variables is observed."""
    estimator = inccal.IncrementalEstimator()
    a = estimator.add_variable(inccal.DesignVariable("a", [0.0]))
    b = estimator.add_variable(inccal.DesignVariable("b", [0.0]))
    for target in (3.0, 3.1, 2.9):
        estimator.add_measurement([sum_measurement(a, b, target, information=100.0)])

    result = estimator.finalize()
    assert result.rank == 1
    assert result.is_rank_deficient
    assert result.null_space is not None and result.null_space_scaled is not None
    assert result.null_space.shape == (2, 1)
    onp.testing.assert_allclose(
        result.null_space[:, 0], onp.array([1.0, -1.0]) / onp.sqrt(2.0), atol=1e-8
    )
    onp.testing.assert_allclose(
        onp.abs(result.null_space_scaled[:, 0]), onp.ones(2) / onp.sqrt(2.0), atol=1e-8
    )

    # Updates are zero along the unobservable direction.
    assert result.values is not None and result.standard_deviations is not None
    onp.testing.assert_allclose(result.values["a"], [1.5], atol=1e-8)
    onp.testing.assert_allclose(result.values["b"], [1.5], atol=1e-8)
    assert onp.isnan(result.standard_deviations["a"][0])
    assert onp.isnan(result.standard_deviations["b"][0])


def test_information_gain_decisions():
    """Repeated measurements of one scalar gain 0.5 * log((n + 1) / n)."""
    estimator = inccal.IncrementalEstimator(inccal.EstimatorConfig(info_gain_delta=0.2))
    x = estimator.add_variable(inccal.DesignVariable("x", [0.0]))

    statuses = [
        estimator.add_measurement([prior(x, jnp.array([1.0]))]).status  # type: ignore
        for _ in range(4)
    ]
    assert statuses == ["accepted", "accepted", "accepted", "rejected_info_gain"]
    gains = [batch.info_gain for batch in estimator.batches]
    assert gains[0] == math.inf
    onp.testing.assert_allclose(
        gains[1:], [0.5 * math.log(2.0), 0.5 * math.log(1.5), 0.5 * math.log(4.0 / 3.0)]
    )
    assert estimator.num_batches_accepted == 3
    assert estimator.num_measurements == 4
    assert estimator.num_measurements_accepted == 3


def test_information_gain_with_mixed_parameter_scales():
    """A tightly determined parameter next to a loosely determined one keeps
    counting toward the observable rank, and batches that tighten it are
    kept."""
    estimator = inccal.IncrementalEstimator(inccal.EstimatorConfig(info_gain_delta=0.2))
    time_offset = estimator.add_variable(inccal.DesignVariable("time_offset", [0.0]))
    distance = estimator.add_variable(inccal.DesignVariable("distance", [0.0]))

    first = estimator.add_measurement(
        [
            prior(time_offset, jnp.array([1e-3]), information=1e12),
            prior(distance, jnp.array([5.0]), information=1e-2),
        ]
    )
    assert first is not None and first.accepted
    assert first.info_gain == math.inf

    # Halves the variance of the time offset.
    second = estimator.add_measurement(
        [prior(time_offset, jnp.array([1e-3]), information=1e12)]
    )
    assert second is not None and second.accepted
    assert second.info_gain == pytest.approx(0.5 * math.log(2.0), rel=1e-6)

    result = estimator.finalize()
    assert result.rank == 2
    assert result.standard_deviations is not None
    onp.testing.assert_allclose(
        result.standard_deviations["time_offset"], [math.sqrt(0.5e-12)], rtol=1e-6
    )
    onp.testing.assert_allclose(result.standard_deviations["distance"], [10.0], rtol=1e-6)


def _robust_estimator(max_rounds: int, weight_tolerance: float):
    config = inccal.EstimatorConfig(
        batch_size=6,
        max_iterations=1,
        robust_weighting=inccal.RobustWeightingConfig(
            loss="huber",
            threshold=3.0,
            max_iterations=max_rounds,
            weight_tolerance=weight_tolerance,
        ),
    )
    estimator = inccal.IncrementalEstimator(config)
    x = estimator.add_variable(inccal.DesignVariable("x", [0.0]))
    for target in [1.0] * 5 + [5.0]:
        estimator.add_measurement([prior(x, jnp.array([target]), information=100.0)])
    return estimator


def test_robust_rounds_stop_once_weights_settle():
    """With one Gauss-Newton iteration per round, the iteration count is the
    number of re-weighting rounds."""
    estimator = _robust_estimator(max_rounds=10, weight_tolerance=1e-3)
    batch = estimator.batches[-1]
    assert batch.accepted
    assert 1 < batch.num_iterations < 10


def test_robust_rounds_are_bounded():
    # Weights are never considered stable with a zero tolerance.
    estimator = _robust_estimator(max_rounds=4, weight_tolerance=0.0)
    batch = estimator.batches[-1]
    assert batch.accepted
    assert batch.num_iterations == 4


@pytest.mark.parametrize("linear_solver", ["qr", "dense_cholesky"])
def test_latent_variables(linear_solver):
    """Per-measurement latent states next to a shared calibration parameter.
    The QR solver eliminates the latent states block by block."""
    estimator = inccal.IncrementalEstimator(
        inccal.EstimatorConfig(batch_size=10, linear_solver=linear_solver)
    )
    offset = estimator.add_variable(inccal.DesignVariable("offset", [0.0]))
    rng = onp.random.default_rng(0)
    speeds = rng.uniform(1.0, 2.0, size=10)
    for i, speed in enumerate(speeds):
        latent = estimator.add_variable(
            inccal.DesignVariable(f"speed_{i}", [speed], is_calibration=False)
        )
        estimator.add_measurement(
            [
                prior(latent, jnp.array([speed]), information=100.0),
                sum_measurement(offset, latent, speed + 0.5, information=100.0),
            ]
        )

    result = estimator.finalize()
    assert result.rank == 11
    assert result.values is not None and result.standard_deviations is not None
    onp.testing.assert_allclose(result.values["offset"], [0.5], atol=1e-5)
    # The offset sees 10 measurements, each with variance 0.01 + 0.01.
    onp.testing.assert_allclose(
        result.standard_deviations["offset"], [math.sqrt(0.02 / 10)], rtol=1e-4
    )


def test_rejected_batch_leaves_state_unchanged():
    estimator = inccal.IncrementalEstimator(inccal.EstimatorConfig(info_gain_delta=1.0))
    x = estimator.add_variable(inccal.DesignVariable("x", [0.0]))
    first = estimator.add_measurement([prior(x, jnp.array([1.0]), information=100.0)])
    assert first is not None and first.accepted
    before = _store_state(estimator)

    latent = estimator.add_variable(
        inccal.DesignVariable("latent", [0.0], is_calibration=False)
    )
    batch = estimator.add_measurement(
        [
            prior(x, jnp.array([2.0]), information=100.0),
            sum_measurement(x, latent, 5.0),
        ]
    )
    assert batch is not None
    assert batch.status == "rejected_info_gain"
    assert batch.info_gain == pytest.approx(0.5 * math.log(2.0))
    assert batch.num_new_variables == 1
    assert estimator.state == inccal.EstimatorState.REJECTED

    assert _store_state(estimator) == before
    assert latent not in estimator.store
    assert estimator.num_pending_measurements == 0

    result = estimator.finalize()
    assert result.num_batches == 2
    assert result.num_batches_accepted == 1
    assert result.values is not None
    assert set(result.values.keys()) == {"x"}
    onp.testing.assert_allclose(result.values["x"], [1.0])


def test_process_batch():
    estimator = inccal.IncrementalEstimator(inccal.EstimatorConfig(batch_size=10))
    assert estimator.state == inccal.EstimatorState.IDLE
    assert estimator.process_batch() is None

    x = estimator.add_variable(inccal.DesignVariable("x", [0.0]))
    for target in (1.0, 2.0, 3.0):
        assert estimator.add_measurement([prior(x, jnp.array([target]))]) is None
    assert estimator.num_pending_measurements == 3

    batch = estimator.process_batch()
    assert batch is not None
    assert batch.accepted
    assert batch.num_measurements == 3
    onp.testing.assert_allclose(estimator.store[x].value, [2.0])

    statistics = estimator.error_statistics("prior")
    assert statistics.num_error_terms == 3
    onp.testing.assert_allclose(statistics.mean, [0.0], atol=1e-12)
    onp.testing.assert_allclose(statistics.variance, [2.0 / 3.0])
    onp.testing.assert_allclose(statistics.max_abs, [1.0])
    with pytest.raises(inccal.StructuralError):
        estimator.error_statistics("missing")


def test_no_batch_accepted():
    estimator = inccal.IncrementalEstimator(
        inccal.EstimatorConfig(info_gain_delta=math.inf)
    )
    x = estimator.add_variable(inccal.DesignVariable("x", [0.0]))
    estimator.add_measurement([prior(x, jnp.array([1.0]))])

    result = estimator.finalize()
    assert not result.is_initialized
    assert result.values is None
    assert result.standard_deviations is None
    assert result.null_space is None
    assert result.rank is None
    assert result.num_measurements == 1
    assert result.num_measurements_accepted == 0
    assert result.num_batches == 1
    assert result.num_batches_accepted == 0
    assert len(estimator.store) == 0


def test_outliers_are_counted_and_downweighted():
    config = inccal.EstimatorConfig(
        batch_size=21,
        robust_weighting=inccal.RobustWeightingConfig(loss="huber", threshold=3.0),
    )
    estimator = inccal.IncrementalEstimator(config)
    x = estimator.add_variable(inccal.DesignVariable("x", [0.0]))
    targets = [1.0] * 20 + [5.0]
    terms = [prior(x, jnp.array([t]), information=100.0) for t in targets]
    for term in terms:
        estimator.add_measurement([term])

    batch = estimator.batches[-1]
    assert batch.accepted
    assert batch.num_outliers == 1
    assert estimator.num_outliers == 1
    assert terms[-1].weight < 0.2
    assert terms[0].weight == 1.0
    assert abs(estimator.store[x].value[0] - 1.0) < 0.05

    # Outliers are kept in the problem.
    assert len(estimator.accepted_error_terms) == 21
    _, mahalanobis_squared = estimator.errors()
    assert onp.sum(mahalanobis_squared > config.outlier_threshold) == 1


def test_numerical_failure_rolls_back():
    estimator = inccal.IncrementalEstimator()
    x = estimator.add_variable(inccal.DesignVariable("x", [0.0]))
    estimator.add_measurement([prior(x, jnp.array([1.0]))])
    before = _store_state(estimator)

    batch = estimator.add_measurement([prior(x, jnp.array([onp.nan]))])
    assert batch is not None
    assert batch.status == "numerical_failure"
    assert math.isnan(batch.info_gain)
    assert _store_state(estimator) == before

    # The estimator keeps working.
    batch = estimator.add_measurement([prior(x, jnp.array([1.0]))])
    assert batch is not None and batch.accepted


def test_structural_error_rolls_back():
    estimator = inccal.IncrementalEstimator()
    x = estimator.add_variable(inccal.DesignVariable("x", [0.0]))
    estimator.add_measurement([prior(x, jnp.array([1.0]))])
    before = _store_state(estimator)

    y = estimator.add_variable(inccal.DesignVariable("y", [0.0]))
    with pytest.raises(inccal.StructuralError):
        # Residual is 1D, information is 2x2.
        estimator.add_measurement([sum_measurement(x, y, 1.0, information=onp.eye(2))])
    assert _store_state(estimator) == before
    assert y not in estimator.store

    with pytest.raises(inccal.StructuralError):
        estimator.add_measurement([prior(inccal.Var(100), jnp.zeros(1))])
    with pytest.raises(inccal.StructuralError):
        estimator.add_measurement([])
    accepted = estimator.accepted_error_terms[0]
    with pytest.raises(inccal.StructuralError):
        estimator.add_measurement([accepted])
    assert _store_state(estimator) == before


@pytest.mark.parametrize("linear_solver", ["qr", "dense_cholesky"])
def test_solver_variants(linear_solver):
    estimator = inccal.IncrementalEstimator(
        inccal.EstimatorConfig(batch_size=5, linear_solver=linear_solver, num_threads=2)
    )
    assert estimator.solver.name.startswith(
        "qr" if linear_solver == "qr" else "cholesky"
    )
    xs = [estimator.add_variable(inccal.DesignVariable(f"x{i}", [0.0])) for i in range(3)]
    targets = COEFFICIENTS @ GROUND_TRUTH
    for i in range(5):
        estimator.add_measurement(
            [linear_measurement(*xs, COEFFICIENTS[i], targets[i], information=1e4)]
        )
    result = estimator.finalize()
    assert result.values is not None
    onp.testing.assert_allclose(
        onp.concatenate([result.values[f"x{i}"] for i in range(3)]),
        GROUND_TRUTH,
        atol=1e-6,
    )
