from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

import numpy as onp

from ._errors import StructuralError


def _euclidean_retract(value: Any, delta: Any) -> Any:
    return value + delta


@dataclass(frozen=True, order=True)
class Var:
    """A stable handle to a design variable held in a `VarStore`.

    Error terms only ever hold these handles; the parameter storage itself is
    owned by the store, so activating, deactivating or rolling back variables
    can never leave a dangling reference behind."""

    id: int


@dataclass(eq=False)
class DesignVariable:
    """A named, mutable block of parameters that we want to estimate."""

    name: str
    """Unique name, used for logging and result labels."""

    value: onp.ndarray
    """Current parameter value. Converted to a 1D float64 array."""

    tangent_dim: int | None = None
    """Dimension of the tangent space, ie the number of Jacobian columns for
    this variable. Defaults to the parameter dimension."""

    retract_fn: Callable[[Any, Any], Any] = _euclidean_retract
    """Composition `x <- x (+) dx`. Must be traceable by JAX if error terms
    referencing this variable rely on autodiff Jacobians."""

    prior_sigma: float = 1.0
    """Prior standard deviation, used to scale the diagonal conditioner."""

    is_calibration: bool = True
    """True for calibration parameters, False for per-measurement latent
    states. Information gain is computed over calibration parameters only."""

    active: bool = True
    """Inactive variables are held fixed and contribute no columns."""

    column_offset: int | None = field(default=None, init=False)
    """First Jacobian column, assigned at build time. `None` while inactive."""

    activation_index: int | None = field(default=None, init=False)
    """Order of first activation. Fixes the column order across builds."""

    handle: Var | None = field(default=None, init=False)
    """Handle assigned when the variable is added to a store."""

    def __post_init__(self) -> None:
        self.value = onp.array(self.value, dtype=onp.float64).reshape(-1)
        if self.value.shape[0] < 1:
            raise StructuralError(f"Design variable '{self.name}' has no parameters.")
        if self.tangent_dim is None:
            self.tangent_dim = self.value.shape[0]
        if self.tangent_dim < 1:
            raise StructuralError(
                f"Design variable '{self.name}' has tangent dimension {self.tangent_dim}."
            )
        if not self.prior_sigma > 0.0:
            raise StructuralError(
                f"Design variable '{self.name}' needs a positive prior_sigma, got {self.prior_sigma}."
            )


@dataclass(frozen=True)
class VarStoreSnapshot:
    """Exact copy of a store's contents. Restoring it undoes every change
    made since it was taken, including newly added variables."""

    values: dict[int, onp.ndarray]
    active: dict[int, bool]
    activation_index: dict[int, int | None]
    column_offset: dict[int, int | None]
    next_activation_index: int


class VarStore:
    """Arena of design variables, indexed by stable integer IDs.

    Columns of any system built from the store follow first-activation order:
    a variable keeps its relative position if it is deactivated and later
    re-activated.
    """

    def __init__(self, variables: Iterable[DesignVariable] = ()) -> None:
        self._variables = dict[int, DesignVariable]()
        self._next_id = 0
        self._next_activation_index = 0
        for variable in variables:
            self.add(variable)

    def add(self, variable: DesignVariable) -> Var:
        """Register a design variable and return its handle. Each variable can
        be registered exactly once."""
        if variable.handle is not None:
            raise StructuralError(
                f"Design variable '{variable.name}' is already registered as {variable.handle}."
            )
        if any(v.name == variable.name for v in self._variables.values()):
            raise StructuralError(f"Duplicate design variable name '{variable.name}'.")

        handle = Var(self._next_id)
        self._next_id += 1
        variable.handle = handle
        self._variables[handle.id] = variable
        if variable.active:
            variable.active = False
            self.activate(handle)
        return handle

    def remove(self, var: Var) -> DesignVariable:
        variable = self.get(var)
        del self._variables[var.id]
        variable.handle = None
        variable.column_offset = None
        return variable

    def get(self, var: Var) -> DesignVariable:
        try:
            return self._variables[var.id]
        except KeyError:
            raise StructuralError(f"Unknown design variable {var}.") from None

    def __getitem__(self, var: Var) -> DesignVariable:
        return self.get(var)

    def __contains__(self, var: object) -> bool:
        return isinstance(var, Var) and var.id in self._variables

    def __len__(self) -> int:
        return len(self._variables)

    def __iter__(self) -> Iterator[Var]:
        return iter(Var(i) for i in self._variables.keys())

    def activate(self, var: Var) -> None:
        variable = self.get(var)
        if variable.active:
            return
        variable.active = True
        if variable.activation_index is None:
            variable.activation_index = self._next_activation_index
            self._next_activation_index += 1

    def deactivate(self, var: Var) -> None:
        variable = self.get(var)
        variable.active = False
        # Stale column indices must not survive a layout change.
        variable.column_offset = None

    def active_vars(self) -> tuple[Var, ...]:
        """Active variables in first-activation order."""
        active = [v for v in self._variables.values() if v.active]
        active.sort(key=lambda v: v.activation_index)
        return tuple(v.handle for v in active)  # type: ignore

    def values(self) -> dict[int, onp.ndarray]:
        """Read-only snapshot of all parameter values, keyed by variable ID."""
        out = dict[int, onp.ndarray]()
        for var_id, variable in self._variables.items():
            value = variable.value.copy()
            value.flags.writeable = False
            out[var_id] = value
        return out

    def retract(self, var: Var, delta: onp.ndarray) -> None:
        """Apply `x <- x (+) delta` to a single variable."""
        variable = self.get(var)
        delta = onp.asarray(delta, dtype=onp.float64)
        assert delta.shape == (variable.tangent_dim,)
        new_value = onp.asarray(
            variable.retract_fn(variable.value, delta), dtype=onp.float64
        ).reshape(-1)
        if new_value.shape != variable.value.shape:
            raise StructuralError(
                f"Retraction of '{variable.name}' changed its shape from"
                f" {variable.value.shape} to {new_value.shape}."
            )
        variable.value = new_value

    def snapshot(self) -> VarStoreSnapshot:
        return VarStoreSnapshot(
            values={i: v.value.copy() for i, v in self._variables.items()},
            active={i: v.active for i, v in self._variables.items()},
            activation_index={
                i: v.activation_index for i, v in self._variables.items()
            },
            column_offset={i: v.column_offset for i, v in self._variables.items()},
            next_activation_index=self._next_activation_index,
        )

    def restore(self, snapshot: VarStoreSnapshot) -> None:
        for var_id in [i for i in self._variables if i not in snapshot.values]:
            self.remove(Var(var_id))
        for var_id, variable in self._variables.items():
            variable.value = snapshot.values[var_id].copy()
            variable.active = snapshot.active[var_id]
            variable.activation_index = snapshot.activation_index[var_id]
            variable.column_offset = snapshot.column_offset[var_id]
        self._next_activation_index = snapshot.next_activation_index
