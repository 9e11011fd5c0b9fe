from __future__ import annotations

import numpy as np
from typing import Dict, Type

from scipy.interpolate import CubicSpline


class Interpolator:
    """
    1D interpolation that is linear in the node values.

    value(x, y, t) == weights(x, t) @ y, so weights() is also the sensitivity
    of the interpolated value to each node value. Both ends extrapolate flat.
    """
    name = "base"

    def weights(self, nodes: np.ndarray, t: float) -> np.ndarray:
        raise NotImplementedError

    def value(self, nodes: np.ndarray, values: np.ndarray, t: float) -> float:
        return float(self.weights(nodes, t) @ values)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def __eq__(self, other) -> bool:
        return type(self) is type(other)

    def __hash__(self) -> int:
        return hash(type(self))


class LinearInterpolator(Interpolator):
    name = "linear"

    def weights(self, nodes: np.ndarray, t: float) -> np.ndarray:
        n = len(nodes)
        w = np.zeros(n, dtype=float)
        if n == 1 or t <= nodes[0]:
            w[0] = 1.0
            return w
        if t >= nodes[-1]:
            w[-1] = 1.0
            return w

        i = int(np.searchsorted(nodes, t, side="right")) - 1
        h = nodes[i + 1] - nodes[i]
        u = (t - nodes[i]) / h
        w[i] = 1.0 - u
        w[i + 1] = u
        return w


class NaturalCubicSplineInterpolator(Interpolator):
    """Natural cubic spline inside the node range, flat outside it."""
    name = "natural_cubic"

    def weights(self, nodes: np.ndarray, t: float) -> np.ndarray:
        n = len(nodes)
        if n < 3:
            return LinearInterpolator().weights(nodes, t)

        w = np.zeros(n, dtype=float)
        if t <= nodes[0]:
            w[0] = 1.0
            return w
        if t >= nodes[-1]:
            w[-1] = 1.0
            return w

        # the spline of the identity gives every node's weight in one pass
        spline = CubicSpline(nodes, np.eye(n), bc_type="natural")
        return np.asarray(spline(t), dtype=float)


_INTERPOLATORS: Dict[str, Type[Interpolator]] = {
    LinearInterpolator.name: LinearInterpolator,
    NaturalCubicSplineInterpolator.name: NaturalCubicSplineInterpolator,
}


def get_interpolator(name) -> Interpolator:
    if isinstance(name, Interpolator):
        return name
    try:
        return _INTERPOLATORS[str(name).lower()]()
    except KeyError:
        raise ValueError(f"Unsupported interpolator: {name}") from None
