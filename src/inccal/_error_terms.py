from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence, overload

import jax
import numpy as onp
import scipy.linalg
from jax import numpy as jnp

from ._errors import StructuralError
from ._variables import DesignVariable, Var


def _make_sqrt_information(information: onp.ndarray, residual_dim: int) -> onp.ndarray:
    """Returns `S` with `S.T @ S == information`, used to whiten residuals."""
    if information.ndim == 0:
        information = onp.eye(residual_dim) * information
    elif information.ndim == 1:
        information = onp.diag(information)

    if information.shape != (residual_dim, residual_dim):
        raise StructuralError(
            f"Information matrix has shape {information.shape}, but the residual"
            f" has dimension {residual_dim}."
        )
    if not onp.allclose(information, information.T, rtol=1e-9, atol=1e-12):
        raise StructuralError("Information matrix is not symmetric.")
    try:
        lower = scipy.linalg.cholesky(information, lower=True)
    except onp.linalg.LinAlgError:
        raise StructuralError("Information matrix is not positive definite.") from None
    return lower.T


@dataclass(eq=False)
class ErrorTerm:
    """A residual tying one measurement to one or more design variables.

    `args` is passed to `compute_residual`, with every `Var` handle replaced by
    the current value of the corresponding design variable. At least one
    `Var` must be present. Use :meth:`ErrorTerm.factory` to create error terms
    from a residual function.
    """

    compute_residual: Callable[..., Any]
    """Residual function. Should return a 1D residual vector."""

    args: tuple[Any, ...]
    """Arguments to the residual function. `Var` handles are substituted with
    design variable values."""

    information: Any = 1.0
    """Inverse measurement covariance. A scalar, a diagonal, or a full
    symmetric positive-definite matrix."""

    jacobian_fn: Callable[..., Any] | None = None
    """Optional analytical Jacobian. Takes the same inputs as
    `compute_residual` and returns a `(residual_dim, sum_of_tangent_dims)`
    matrix, or one block per variable. If None, we use forward-mode autodiff
    through each variable's retraction."""

    name: str | None = None
    """Custom name for logging and statistics grouping."""

    weight: float = field(default=1.0, init=False)
    """Robust weight in [0, 1]. Scales the squared whitened residual, so the
    whitened residual and Jacobian rows are scaled by `sqrt(weight)` rather
    than by the weight itself."""

    chi2: float = field(default=math.nan, init=False)
    """Cached `weight * e^T information e` from the last evaluation."""

    raw_residual: onp.ndarray | None = field(default=None, init=False)
    """Cached unweighted residual from the last evaluation."""

    def __post_init__(self) -> None:
        self.args = tuple(self.args)
        self.information = onp.asarray(self.information, dtype=onp.float64)
        self._sqrt_information: onp.ndarray | None = None

        variables = self.variables
        if len(variables) == 0:
            raise StructuralError(f"No design variables found in '{self.get_name()}'.")
        if len(set(variables)) != len(variables):
            raise StructuralError(
                f"Error term '{self.get_name()}' references a design variable twice."
            )
        if self.information.ndim > 2:
            raise StructuralError("Information must be a scalar, vector or matrix.")
        if self.information.ndim == 2:
            self._sqrt_information = _make_sqrt_information(
                self.information, self.information.shape[0]
            )

    @overload
    @staticmethod
    def factory(
        compute_residual: Callable[..., Any],
    ) -> Callable[..., ErrorTerm]: ...

    @overload
    @staticmethod
    def factory(
        compute_residual: None = None,
        *,
        jacobian_fn: Callable[..., Any] | None = None,
        name: str | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., ErrorTerm]]: ...

    @staticmethod
    def factory(
        compute_residual: Callable[..., Any] | None = None,
        *,
        jacobian_fn: Callable[..., Any] | None = None,
        name: str | None = None,
    ) -> Any:
        """Decorator for creating error terms from a residual function.

        Example:
            >>> @ErrorTerm.factory
            ... def prior(x: onp.ndarray, target: float) -> onp.ndarray:
            ...     return x - target
            >>>
            >>> term = prior(var, 1.0, information=100.0)
        """

        def decorator(fn: Callable[..., Any]) -> Callable[..., ErrorTerm]:
            def make(*args: Any, information: Any = 1.0) -> ErrorTerm:
                return ErrorTerm(
                    fn,
                    args,
                    information=information,
                    jacobian_fn=jacobian_fn,
                    name=name if name is not None else fn.__name__,
                )

            return make

        if compute_residual is None:
            return decorator
        return decorator(compute_residual)

    @property
    def variables(self) -> tuple[Var, ...]:
        return tuple(arg for arg in self.args if isinstance(arg, Var))

    @property
    def residual_dim(self) -> int | None:
        if self._sqrt_information is None:
            return None
        return self._sqrt_information.shape[0]

    @property
    def sqrt_information(self) -> onp.ndarray:
        assert self._sqrt_information is not None, "Error term was never evaluated."
        return self._sqrt_information

    def get_name(self) -> str:
        """Get the name. If not set, falls back to the function name."""
        if self.name is None:
            return getattr(self.compute_residual, "__name__", "error_term")
        return self.name

    def _resolve_args(self, values: Mapping[int, onp.ndarray]) -> tuple[Any, ...]:
        try:
            return tuple(
                values[arg.id] if isinstance(arg, Var) else arg for arg in self.args
            )
        except KeyError as e:
            raise StructuralError(
                f"Error term '{self.get_name()}' references unknown design variable"
                f" Var({e.args[0]})."
            ) from None

    def _compute_flat_residual(self, resolved_args: tuple[Any, ...]) -> onp.ndarray:
        residual = onp.asarray(
            self.compute_residual(*resolved_args), dtype=onp.float64
        ).reshape(-1)
        if self._sqrt_information is not None and residual.shape[0] != self.residual_dim:
            raise StructuralError(
                f"Error term '{self.get_name()}' returned a residual of dimension"
                f" {residual.shape[0]}, expected {self.residual_dim}."
            )
        return residual

    def _compute_jacobian(
        self,
        resolved_args: tuple[Any, ...],
        variables: Sequence[DesignVariable],
        residual_dim: int,
    ) -> onp.ndarray:
        """Jacobian with respect to the tangent spaces of all referenced
        variables, concatenated along columns in `self.variables` order."""
        tangent_dims = [v.tangent_dim for v in variables]
        if self.jacobian_fn is not None:
            out = self.jacobian_fn(*resolved_args)
            if isinstance(out, (tuple, list)):
                out = onp.concatenate(
                    [onp.asarray(block, dtype=onp.float64).reshape((residual_dim, -1)) for block in out],
                    axis=1,
                )
            jacobian = onp.asarray(out, dtype=onp.float64)
        else:
            jacobian = self._autodiff_jacobian(resolved_args, variables)

        expected_shape = (residual_dim, sum(tangent_dims))  # type: ignore
        if jacobian.ndim == 1 and residual_dim == 1:
            jacobian = jacobian[None, :]
        if jacobian.shape != expected_shape:
            raise StructuralError(
                f"Jacobian of '{self.get_name()}' has shape {jacobian.shape},"
                f" expected {expected_shape}."
            )
        return jacobian

    def _autodiff_jacobian(
        self,
        resolved_args: tuple[Any, ...],
        variables: Sequence[DesignVariable],
    ) -> onp.ndarray:
        var_positions = [i for i, arg in enumerate(self.args) if isinstance(arg, Var)]

        def residual_from_deltas(deltas: tuple[jax.Array, ...]) -> jax.Array:
            args = list(resolved_args)
            for position, variable, delta in zip(var_positions, variables, deltas):
                args[position] = variable.retract_fn(jnp.asarray(args[position]), delta)
            return jnp.ravel(jnp.asarray(self.compute_residual(*args)))

        zeros = tuple(jnp.zeros(v.tangent_dim) for v in variables)
        jacobians = jax.jacfwd(residual_from_deltas)(zeros)
        return onp.concatenate(
            [onp.asarray(jac, dtype=onp.float64) for jac in jacobians], axis=1
        )

    def linearize(
        self,
        values: Mapping[int, onp.ndarray],
        variables: Sequence[DesignVariable],
    ) -> tuple[onp.ndarray, onp.ndarray]:
        """Compute `(raw_residual, jacobian)` without touching any cached
        state. Safe to call from worker threads."""
        resolved_args = self._resolve_args(values)
        residual = self._compute_flat_residual(resolved_args)
        jacobian = self._compute_jacobian(resolved_args, variables, residual.shape[0])
        return residual, jacobian

    def residual(self, values: Mapping[int, onp.ndarray]) -> onp.ndarray:
        """Compute the raw residual without touching any cached state."""
        return self._compute_flat_residual(self._resolve_args(values))

    def commit_residual(self, residual: onp.ndarray) -> None:
        """Cache an evaluated residual and update the chi-squared cost."""
        if self._sqrt_information is None:
            self._sqrt_information = _make_sqrt_information(
                self.information, residual.shape[0]
            )
        elif residual.shape[0] != self.residual_dim:
            raise StructuralError(
                f"Error term '{self.get_name()}' returned a residual of dimension"
                f" {residual.shape[0]}, expected {self.residual_dim}."
            )
        self.raw_residual = residual
        self.chi2 = self.weight * self.mahalanobis_squared()

    def evaluate(self, values: Mapping[int, onp.ndarray]) -> float:
        """Evaluate the residual, update caches, and return the chi-squared
        cost."""
        self.commit_residual(self.residual(values))
        return self.chi2

    def mahalanobis_squared(self) -> float:
        """Unweighted `e^T information e` of the cached residual."""
        assert self.raw_residual is not None, "Error term was never evaluated."
        whitened = self.sqrt_information @ self.raw_residual
        return float(whitened @ whitened)

    def whiten(
        self, residual: onp.ndarray, jacobian: onp.ndarray
    ) -> tuple[onp.ndarray, onp.ndarray]:
        """Apply the square-root information and robust weight."""
        scale = math.sqrt(self.weight)
        sqrt_info = self.sqrt_information
        return scale * (sqrt_info @ residual), scale * (sqrt_info @ jacobian)
