from __future__ import annotations

from typing import Any, Callable

import jaxlie
import numpy as onp

from ._variables import DesignVariable


def _make_retract_fn(group: type[jaxlie.MatrixLieGroup]) -> Callable[[Any, Any], Any]:
    """Retraction acting on flattened group parameters."""

    def retract(params: Any, delta: Any) -> Any:
        return jaxlie.manifold.rplus(group(params), delta).parameters()

    return retract


def _make_lie_variable(
    group: type[jaxlie.MatrixLieGroup],
    name: str,
    value: jaxlie.MatrixLieGroup | None,
    **kwargs: Any,
) -> DesignVariable:
    if value is None:
        value = group.identity()
    assert isinstance(value, group)
    return DesignVariable(
        name=name,
        value=onp.asarray(value.parameters()),
        tangent_dim=group.tangent_dim,
        retract_fn=_make_retract_fn(group),
        **kwargs,
    )


def so2_variable(name: str, value: jaxlie.SO2 | None = None, **kwargs: Any) -> DesignVariable:
    """Planar rotation, stored as a unit complex number."""
    return _make_lie_variable(jaxlie.SO2, name, value, **kwargs)


def so3_variable(name: str, value: jaxlie.SO3 | None = None, **kwargs: Any) -> DesignVariable:
    """3D rotation, stored as a wxyz quaternion."""
    return _make_lie_variable(jaxlie.SO3, name, value, **kwargs)


def se2_variable(name: str, value: jaxlie.SE2 | None = None, **kwargs: Any) -> DesignVariable:
    return _make_lie_variable(jaxlie.SE2, name, value, **kwargs)


def se3_variable(name: str, value: jaxlie.SE3 | None = None, **kwargs: Any) -> DesignVariable:
    return _make_lie_variable(jaxlie.SE3, name, value, **kwargs)
