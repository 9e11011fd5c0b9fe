"""
Quote-to-parameter sensitivities accumulated across calibration stages.

For a stage with residuals F(x, y, q) = 0, where x are the stage's own
parameters, y the parameters of curves resolved earlier and q the stage's own
market quotes (dF/dq = -I in market-quote convention), the implicit function
theorem gives

    dx/dQ = A^-1 [ -sum_k B_k S_k | I ]

with A = dF/dx, B_k = dF/dy_k and S_k = dy_k/dQ_prev the earlier curves'
blocks. The cumulative quote vector only ever grows, so earlier blocks are
padded with zero columns to the current width.
"""
from __future__ import annotations

import numpy as np
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .curves import Sensitivity
from .errors import SingularJacobianError


@dataclass(frozen=True, eq=False)
class SensitivityBlock:
    """
    dparams/dquotes for one curve.

    matrix has one row per curve parameter and one column per market quote
    seen up to and including the curve's stage. The curve's own quotes start
    at column_offset; layout locates every curve's quotes up to that stage.
    """
    name: str
    column_offset: int
    quote_count: int
    matrix: np.ndarray
    layout: Mapping[str, Tuple[int, int]]

    @property
    def parameter_count(self) -> int:
        return self.matrix.shape[0]

    @property
    def width(self) -> int:
        return self.matrix.shape[1]

    def padded(self, width: int) -> np.ndarray:
        if width < self.width:
            raise ValueError(f"{self.name}: cannot shrink a sensitivity block.")
        out = np.zeros((self.parameter_count, width), dtype=float)
        out[:, : self.width] = self.matrix
        return out


class SensitivityBundle:
    """Sensitivity blocks by curve name; extended, never modified."""

    def __init__(
        self,
        blocks: Optional[Mapping[str, SensitivityBlock]] = None,
        quote_labels: Sequence[str] = (),
    ):
        self._blocks = MappingProxyType(dict(blocks or {}))
        self._labels = tuple(quote_labels)
        for b in self._blocks.values():
            if b.width > len(self._labels):
                raise ValueError(f"Block '{b.name}' is wider than the bundle's quote vector.")

    @property
    def quote_count(self) -> int:
        return len(self._labels)

    @property
    def quote_labels(self) -> Tuple[str, ...]:
        return self._labels

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._blocks)

    @property
    def layout(self) -> Dict[str, Tuple[int, int]]:
        out: Dict[str, Tuple[int, int]] = {}
        for b in self._blocks.values():
            out.update(b.layout)
        return out

    def __contains__(self, name: str) -> bool:
        return name in self._blocks

    def __getitem__(self, name: str) -> SensitivityBlock:
        return self._blocks[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._blocks)

    def __len__(self) -> int:
        return len(self._blocks)

    def block(self, name: str) -> Tuple[int, np.ndarray]:
        b = self._blocks[name]
        return b.column_offset, b.matrix

    def padded(self, name: str, width: Optional[int] = None) -> np.ndarray:
        return self._blocks[name].padded(self.quote_count if width is None else width)

    def with_blocks(self, blocks: Mapping[str, SensitivityBlock], new_labels: Sequence[str]) -> "SensitivityBundle":
        clash = sorted(set(blocks) & set(self._blocks))
        if clash:
            raise ValueError(f"Sensitivity blocks already present: {clash}")
        merged = dict(self._blocks)
        merged.update(blocks)
        return SensitivityBundle(merged, self._labels + tuple(new_labels))

    def __repr__(self) -> str:
        return f"SensitivityBundle(curves={list(self._blocks)}, quotes={self.quote_count})"


def _check_gradient(name: str, grad, size: int) -> np.ndarray:
    g = np.asarray(grad, dtype=float)
    if g.shape != (size,):
        raise ValueError(f"Gradient for curve '{name}' has shape {g.shape}, expected ({size},).")
    return g


def assemble_stage_blocks(
    bundle: SensitivityBundle,
    slots: Sequence[Tuple[str, int, int]],
    jacobian: np.ndarray,
    gradients: Sequence[Sensitivity],
    labels: Sequence[str],
) -> SensitivityBundle:
    """
    Extend `bundle` with the blocks of one converged stage.

    slots: (name, parameter count, quote count) per slot in stage order.
    jacobian: dF/dx over the stage's own parameters at the solution.
    gradients: full per-instrument gradients at the solution, used for the
    dependence on curves already in the bundle. Curves with no block (known
    data supplied without sensitivities) are treated as fixed.
    """
    stage_names = {name for name, _, _ in slots}
    n = sum(p for _, p, _ in slots)
    if jacobian.shape != (n, n) or len(gradients) != n or len(labels) != n:
        raise ValueError("Stage Jacobian, gradients and quote labels do not match the stage size.")

    prior_width = bundle.quote_count
    rhs = np.zeros((n, prior_width + n), dtype=float)
    rhs[:, prior_width:] = np.eye(n)

    if prior_width:
        for i, grads in enumerate(gradients):
            for name, grad in grads.items():
                if name in stage_names or name not in bundle:
                    continue
                block = bundle[name]
                g = _check_gradient(name, grad, block.parameter_count)
                if np.any(g):
                    rhs[i, :prior_width] -= g @ block.padded(prior_width)

    try:
        total = np.linalg.solve(jacobian, rhs)
    except np.linalg.LinAlgError as exc:
        raise SingularJacobianError(f"Stage Jacobian cannot be inverted for sensitivities ({exc}).") from exc

    layout = bundle.layout
    row = 0
    col = prior_width
    spans: List[Tuple[str, int, int, int]] = []
    for name, params, quotes in slots:
        layout[name] = (col, quotes)
        spans.append((name, row, params, col))
        row += params
        col += quotes

    frozen_layout = MappingProxyType(dict(layout))
    blocks: Dict[str, SensitivityBlock] = {}
    for name, start, params, offset in spans:
        quotes = frozen_layout[name][1]
        blocks[name] = SensitivityBlock(name, offset, quotes, total[start:start + params, :], frozen_layout)

    return bundle.with_blocks(blocks, labels)
