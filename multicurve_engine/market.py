from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .curves import YieldCurve
from .errors import MalformedPlanError, UnresolvedDependencyError


@dataclass(frozen=True)
class Discounting:
    currency: str


@dataclass(frozen=True)
class OvernightForward:
    index: str


@dataclass(frozen=True)
class TermForward:
    index: str


@dataclass(frozen=True, eq=False)
class FxMatrix:
    """Spot FX against a base currency: rates[ccy] = units of base per 1 ccy."""
    base: str = "USD"
    rates: Mapping[str, float] = None

    def __post_init__(self):
        rates = {self.base: 1.0}
        rates.update(dict(self.rates or {}))
        if any(v <= 0.0 for v in rates.values()):
            raise ValueError("FX rates must be positive.")
        object.__setattr__(self, "rates", MappingProxyType(rates))

    def rate(self, from_ccy: str, to_ccy: str) -> float:
        """Units of to_ccy per 1 unit of from_ccy."""
        for ccy in (from_ccy, to_ccy):
            if ccy not in self.rates:
                raise UnresolvedDependencyError(f"No FX rate for currency {ccy}.")
        return self.rates[from_ccy] / self.rates[to_ccy]

    def convert(self, amount: float, from_ccy: str, to_ccy: str) -> float:
        return amount * self.rate(from_ccy, to_ccy)


def _fixing_key(t: float) -> float:
    return round(float(t), 8)


class MarketContext:
    """
    Resolved curves by name, the roles they fill, FX spots and fixings.

    A context is never modified: with_added()/with_fixings() return a new
    context, so evaluation against a context is safe from any thread.
    """

    def __init__(
        self,
        curves: Optional[Mapping[str, YieldCurve]] = None,
        roles: Optional[Mapping[object, str]] = None,
        fx: Optional[FxMatrix] = None,
        fixings: Optional[Mapping[str, Mapping[float, float]]] = None,
    ):
        curves = dict(curves or {})
        roles = dict(roles or {})
        for role, name in roles.items():
            if name not in curves:
                raise UnresolvedDependencyError(f"Role {role} refers to unknown curve '{name}'.")
        self._curves = MappingProxyType(curves)
        self._roles = MappingProxyType(roles)
        self._fx = fx if fx is not None else FxMatrix()
        self._fixings = MappingProxyType(
            {
                index: MappingProxyType({_fixing_key(t): float(v) for t, v in series.items()})
                for index, series in (fixings or {}).items()
            }
        )

    # ---- curves ----

    @property
    def curves(self) -> Mapping[str, YieldCurve]:
        return self._curves

    @property
    def roles(self) -> Mapping[object, str]:
        return self._roles

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._curves)

    def __contains__(self, name: str) -> bool:
        return name in self._curves

    def curve_by_name(self, name: str) -> YieldCurve:
        try:
            return self._curves[name]
        except KeyError:
            raise UnresolvedDependencyError(f"Curve '{name}' is not in the market context.") from None

    def curve(self, role) -> YieldCurve:
        """The curve filling a role (Discounting / OvernightForward / TermForward)."""
        try:
            name = self._roles[role]
        except KeyError:
            raise UnresolvedDependencyError(f"No curve resolved for {role}.") from None
        return self._curves[name]

    resolve = curve

    def with_added(
        self,
        curves: Mapping[str, YieldCurve],
        roles: Optional[Mapping[object, str]] = None,
    ) -> "MarketContext":
        """
        New context holding this one's content plus the given curves.

        Names and roles already present are rejected.
        """
        clash = sorted(set(curves) & set(self._curves))
        if clash:
            raise MalformedPlanError(f"Curves already present in the market context: {clash}")
        role_clash = [r for r in (roles or {}) if r in self._roles]
        if role_clash:
            raise MalformedPlanError(f"Roles already filled in the market context: {role_clash}")

        new_curves: Dict[str, YieldCurve] = dict(self._curves)
        new_curves.update(curves)
        new_roles = dict(self._roles)
        new_roles.update(roles or {})

        out = MarketContext.__new__(MarketContext)
        out._curves = MappingProxyType(new_curves)
        out._roles = MappingProxyType(new_roles)
        out._fx = self._fx
        out._fixings = self._fixings
        return out

    def with_fixings(self, fixings: Optional[Mapping[str, Mapping[float, float]]]) -> "MarketContext":
        return MarketContext(self._curves, self._roles, self._fx, fixings)

    # ---- lookups used by instruments ----

    def discount_factor(self, currency: str, t: float) -> float:
        return self.curve(Discounting(currency)).discount_factor(t)

    def forward_rate(self, role, t1: float, t2: float) -> float:
        return self.curve(role).forward_rate(t1, t2)

    def fixing(self, index: str, t: float) -> Optional[float]:
        return self._fixings.get(index, {}).get(_fixing_key(t))

    @property
    def fixings(self) -> Mapping[str, Mapping[float, float]]:
        return self._fixings

    @property
    def fx(self) -> FxMatrix:
        return self._fx

    def fx_rate(self, from_ccy: str, to_ccy: str) -> float:
        return self._fx.rate(from_ccy, to_ccy)

    def fx_convert(self, amount: float, from_ccy: str, to_ccy: str) -> float:
        return self._fx.convert(amount, from_ccy, to_ccy)

    def __repr__(self) -> str:
        return f"MarketContext(curves={list(self._curves)}, fx_base={self._fx.base!r})"


def roles_for(name: str, roles: Iterable[object]) -> Dict[object, str]:
    return {role: name for role in roles}
