"""
Plan catalog: provider price refs -> (plan, interval).

Built once at startup from settings and injected wherever a price ref must
be interpreted. Lookups never raise; unknown refs (seat add-ons, retired
prices, None) are simply "no match".
"""
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from strategyplan.models.billing import BillingInterval, Plan
from strategyplan.models.lifecycle import TIER_ORDER, is_lower_tier  # noqa: F401 (re-exported)


@dataclass(frozen=True)
class PlanMatch:
    plan: Plan
    interval: BillingInterval


@dataclass(frozen=True)
class PlanPrice:
    """One configured base-plan price."""
    price_ref: str
    plan: Plan
    interval: BillingInterval
    live: bool = False


@dataclass(frozen=True)
class SeatPrice:
    """Per-seat add-on price (team plan only)."""
    price_ref: str
    interval: BillingInterval
    live: bool = False


@dataclass(frozen=True)
class PlanLimits:
    """None means unlimited."""
    max_strategies: Optional[int]
    max_projects: Optional[int]
    max_users: int


PLAN_LIMITS: Mapping[Plan, PlanLimits] = MappingProxyType({
    Plan.STARTER: PlanLimits(max_strategies=1, max_projects=4, max_users=1),
    Plan.PRO: PlanLimits(max_strategies=None, max_projects=None, max_users=1),
    Plan.TEAM: PlanLimits(max_strategies=None, max_projects=None, max_users=6),
    Plan.LEGACY: PlanLimits(max_strategies=None, max_projects=None, max_users=6),
})


def limits_for(plan: Plan) -> PlanLimits:
    return PLAN_LIMITS.get(plan, PLAN_LIMITS[Plan.STARTER])


# (settings attribute, plan, interval) for each sellable base price
_PLAN_PRICE_SETTINGS: Tuple[Tuple[str, Plan, BillingInterval], ...] = (
    ("STRIPE_PRICE_STARTER_MONTHLY", Plan.STARTER, BillingInterval.MONTHLY),
    ("STRIPE_PRICE_PRO_MONTHLY", Plan.PRO, BillingInterval.MONTHLY),
    ("STRIPE_PRICE_PRO_ANNUAL", Plan.PRO, BillingInterval.ANNUAL),
    ("STRIPE_PRICE_TEAM_MONTHLY", Plan.TEAM, BillingInterval.MONTHLY),
    ("STRIPE_PRICE_TEAM_ANNUAL", Plan.TEAM, BillingInterval.ANNUAL),
)

_SEAT_PRICE_SETTINGS: Tuple[Tuple[str, BillingInterval], ...] = (
    ("STRIPE_PRICE_TEAM_SEAT_MONTHLY", BillingInterval.MONTHLY),
    ("STRIPE_PRICE_TEAM_SEAT_ANNUAL", BillingInterval.ANNUAL),
)


class PlanCatalog:
    """Immutable price catalog covering test-mode and live-mode prices."""

    def __init__(
        self,
        prices: Iterable[PlanPrice],
        seat_prices: Iterable[SeatPrice] = (),
        live_mode: bool = False,
    ):
        self.live_mode = live_mode
        self._prices: Tuple[PlanPrice, ...] = tuple(prices)
        self._seat_prices: Tuple[SeatPrice, ...] = tuple(seat_prices)

        by_ref: Dict[str, PlanMatch] = {}
        for price in self._prices:
            existing = by_ref.get(price.price_ref)
            match = PlanMatch(price.plan, price.interval)
            if existing is not None and existing != match:
                raise ValueError(f"Price {price.price_ref} mapped to two plans")
            by_ref[price.price_ref] = match
        self._by_ref: Mapping[str, PlanMatch] = MappingProxyType(by_ref)

        seat_refs = frozenset(seat.price_ref for seat in self._seat_prices)
        overlap = seat_refs & set(by_ref)
        if overlap:
            raise ValueError(f"Seat prices cannot also be base plans: {sorted(overlap)}")
        self._seat_refs = seat_refs

    @classmethod
    def from_settings(cls, settings) -> "PlanCatalog":
        prices: List[PlanPrice] = []
        for attr, plan, interval in _PLAN_PRICE_SETTINGS:
            for live, suffix in ((False, ""), (True, "_LIVE")):
                ref = getattr(settings, attr + suffix, None)
                if ref:
                    prices.append(PlanPrice(ref, plan, interval, live))

        seats: List[SeatPrice] = []
        for attr, interval in _SEAT_PRICE_SETTINGS:
            for live, suffix in ((False, ""), (True, "_LIVE")):
                ref = getattr(settings, attr + suffix, None)
                if ref:
                    seats.append(SeatPrice(ref, interval, live))

        return cls(prices, seats, live_mode=bool(settings.stripe_live_mode))

    def plan_for_price_ref(self, price_ref: Optional[str]) -> Optional[PlanMatch]:
        if not price_ref:
            return None
        return self._by_ref.get(price_ref)

    def is_base_plan_price(self, price_ref: Optional[str]) -> bool:
        return self.plan_for_price_ref(price_ref) is not None

    def is_seat_price(self, price_ref: Optional[str]) -> bool:
        return bool(price_ref) and price_ref in self._seat_refs

    def price_ref_for(self, plan: Plan, interval: BillingInterval) -> Optional[str]:
        """Outbound price for the active mode, falling back to the other mode."""
        candidates = [p for p in self._prices if p.plan == plan and p.interval == interval]
        return self._pick_for_mode(candidates)

    def seat_price_ref_for(self, interval: BillingInterval) -> Optional[str]:
        candidates = [s for s in self._seat_prices if s.interval == interval]
        ref = self._pick_for_mode(candidates)
        if ref is None and interval != BillingInterval.MONTHLY:
            # annual plans may still be billed monthly seats
            return self.seat_price_ref_for(BillingInterval.MONTHLY)
        return ref

    def _pick_for_mode(self, candidates) -> Optional[str]:
        if not candidates:
            return None
        for candidate in candidates:
            if candidate.live == self.live_mode:
                return candidate.price_ref
        return candidates[0].price_ref
