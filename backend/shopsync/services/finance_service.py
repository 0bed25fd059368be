"""Shop metrics derived from the mirrored data.

WHAT:
    compute_shop_metrics(): order count, revenue, product count, net settled
    amount, average order value, and the estimated unsettled revenue.

WHY:
    Settlements lag orders by days. The unsettled estimate,
    max(0, (order revenue - settled revenue) * factor), is a business policy
    (default factor 0.85 for platform fees/shipping), configured through
    UNSETTLED_REVENUE_FACTOR.

REFERENCES:
    - services/client_sync_coordinator.py (metrics on every cache entry)
    - routers/shop_sync.py (GET /metrics)
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from shopsync.config import get_settings
from shopsync.services.response_normalizer import to_decimal

ZERO = Decimal("0")


@dataclass
class ShopMetrics:
    total_orders: int = 0
    total_revenue: Decimal = field(default_factory=lambda: ZERO)
    total_products: int = 0
    total_net: Decimal = field(default_factory=lambda: ZERO)
    avg_order_value: Decimal = field(default_factory=lambda: ZERO)
    unsettled_revenue: Decimal = field(default_factory=lambda: ZERO)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def _in_range(value: Any, start: Optional[int], end: Optional[int]) -> bool:
    if start is None and end is None:
        return True
    if value is None:
        return False
    value = int(value)
    return (start is None or value >= start) and (end is None or value <= end)


def _sum(items: Iterable[Any], name: str) -> Decimal:
    total = ZERO
    for item in items:
        total += to_decimal(_field(item, name)) or ZERO
    return total


def estimate_unsettled_revenue(
    order_revenue: Decimal,
    settlement_revenue: Decimal,
    factor: Optional[float] = None,
) -> Decimal:
    """max(0, (order revenue - settled revenue) * factor)."""
    if factor is None:
        factor = get_settings().UNSETTLED_REVENUE_FACTOR
    gap = (order_revenue - settlement_revenue) * Decimal(str(factor))
    return max(ZERO, gap)


def compute_shop_metrics(
    orders: Iterable[Any],
    products: Iterable[Any],
    statements: Iterable[Any],
    start_time: Optional[int] = None,
    end_time: Optional[int] = None,
    factor: Optional[float] = None,
) -> ShopMetrics:
    """Metrics over rows or serialized dicts, optionally limited to [start_time, end_time]."""
    orders = [o for o in orders if _in_range(_field(o, "create_time"), start_time, end_time)]
    statements = [s for s in statements if _in_range(_field(s, "statement_time"), start_time, end_time)]
    products = list(products)

    revenue = _sum(orders, "total_amount")
    settled_revenue = _sum(statements, "revenue_amount")

    return ShopMetrics(
        total_orders=len(orders),
        total_revenue=revenue,
        total_products=len(products),
        total_net=_sum(statements, "settlement_amount"),
        avg_order_value=(revenue / len(orders)) if orders else ZERO,
        unsettled_revenue=estimate_unsettled_revenue(revenue, settled_revenue, factor),
    )
