"""Static price catalog: (plan, billing period) <-> external price id."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, Mapping, Tuple

from services.billing_errors import PriceNotConfiguredError
from services.billing_types import BillingPeriod, NotFound, Plan, PriceResolution, Resolved


@dataclass(frozen=True)
class PriceCatalogEntry:
    plan: Plan
    billing_period: BillingPeriod
    price_id: str


@dataclass(frozen=True)
class PriceCatalog:
    """Immutable, injective price table built once at process start."""

    entries: Tuple[PriceCatalogEntry, ...]
    _by_price: Mapping[str, PriceCatalogEntry] = field(init=False, repr=False, compare=False)
    _by_plan: Mapping[Tuple[Plan, BillingPeriod], str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_price: Dict[str, PriceCatalogEntry] = {}
        by_plan: Dict[Tuple[Plan, BillingPeriod], str] = {}
        for entry in self.entries:
            price_id = (entry.price_id or "").strip()
            if not price_id:
                raise ValueError(f"Empty price id for {entry.plan.value}/{entry.billing_period.value}")
            if entry.billing_period == BillingPeriod.NONE:
                raise ValueError(f"Price {price_id} must map to a monthly or annual period")
            if price_id in by_price:
                other = by_price[price_id]
                raise ValueError(
                    f"Price {price_id} is mapped to both {other.plan.value}/{other.billing_period.value} "
                    f"and {entry.plan.value}/{entry.billing_period.value}"
                )
            key = (entry.plan, entry.billing_period)
            if key in by_plan:
                raise ValueError(f"Duplicate catalog entry for {entry.plan.value}/{entry.billing_period.value}")
            by_price[price_id] = entry
            by_plan[key] = price_id
        object.__setattr__(self, "_by_price", by_price)
        object.__setattr__(self, "_by_plan", by_plan)

    @classmethod
    def from_mapping(cls, mapping: Mapping[Tuple[str, str], str]) -> "PriceCatalog":
        """Build from {(plan, period): price_id}; blank price ids are skipped."""
        entries = [
            PriceCatalogEntry(plan=Plan(plan), billing_period=BillingPeriod(period), price_id=price_id.strip())
            for (plan, period), price_id in mapping.items()
            if price_id and price_id.strip()
        ]
        return cls(entries=tuple(entries))

    def resolve(self, price_id: str) -> PriceResolution:
        entry = self._by_price.get((price_id or "").strip())
        if entry is None:
            return NotFound(price_id=price_id)
        return Resolved(plan=entry.plan, billing_period=entry.billing_period)

    def price_id_for(self, plan: Plan | str, billing_period: BillingPeriod | str) -> str:
        try:
            key = (Plan(plan), BillingPeriod(billing_period))
        except ValueError as exc:
            raise PriceNotConfiguredError(
                f"No price configured for {plan}/{billing_period}.",
                plan=str(plan),
                billing_period=str(billing_period),
            ) from exc
        price_id = self._by_plan.get(key)
        if not price_id:
            raise PriceNotConfiguredError(
                f"No price configured for {key[0].value}/{key[1].value}.",
                plan=key[0].value,
                billing_period=key[1].value,
            )
        return price_id

    def __iter__(self) -> Iterator[PriceCatalogEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


def load_price_catalog(source=None) -> PriceCatalog:
    """Build the catalog from STRIPE_PRICE_ID_* settings."""
    if source is None:
        from config import settings

        source = settings

    mapping = {
        (plan.value, period.value): getattr(
            source, f"STRIPE_PRICE_ID_{plan.value.upper()}_{period.value.upper()}", ""
        )
        for plan in (Plan.GROWER, Plan.BUILDER, Plan.MAVEN)
        for period in (BillingPeriod.MONTHLY, BillingPeriod.ANNUAL)
    }
    return PriceCatalog.from_mapping(mapping)


_catalog: PriceCatalog | None = None


def get_price_catalog() -> PriceCatalog:
    """Process-wide catalog, constructed on first use."""
    global _catalog
    if _catalog is None:
        _catalog = load_price_catalog()
    return _catalog
