"""
Cart planning shared by both checkout variants.

The planner is pure: it takes the requested lines plus a snapshot of the
referenced products (with their current inventory) and either returns the
rows a checkout must write or raises before anything is written. The
server (Postgres) and the device (SQLite) each load the snapshot and apply
the plan inside their own transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Mapping, Optional

from .errors import InsufficientStock, ProductNotFound, ValidationError

CENT = Decimal("0.01")


def to_money(v: Any) -> Decimal:
    if v is None:
        return Decimal("0.00")
    if isinstance(v, Decimal):
        d = v
    else:
        d = Decimal(str(v))
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CartLine:
    product_id: str
    quantity: int


@dataclass(frozen=True)
class PlannedLine:
    product_id: str
    product_name: str
    quantity: int
    price_at_sale: Decimal
    line_total: Decimal


@dataclass
class CheckoutPlan:
    lines: list[PlannedLine] = field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")

    def decrements(self) -> dict[str, int]:
        return {ln.product_id: ln.quantity for ln in self.lines}


def _line_value(item: Any, *names: str) -> Any:
    if isinstance(item, Mapping):
        for n in names:
            if n in item:
                return item[n]
        return None
    for n in names:
        if hasattr(item, n):
            return getattr(item, n)
    return None


def normalize_cart(items: Optional[Iterable[Any]]) -> list[CartLine]:
    """
    Validate requested lines and merge repeated products.

    Accepts wire dicts (`productId`), snake_case dicts/objects (`product_id`)
    or CartLine instances. Order of first appearance is kept.
    """
    merged: dict[str, int] = {}
    for item in items or []:
        pid = str(_line_value(item, "productId", "product_id") or "").strip()
        if not pid:
            raise ValidationError("productId is required")
        qty = _line_value(item, "quantity", "qty")
        if isinstance(qty, bool) or not isinstance(qty, int):
            try:
                qty_dec = Decimal(str(qty))
            except Exception as e:
                raise ValidationError(f"quantity must be a positive integer (product {pid})") from e
            if qty_dec != qty_dec.to_integral_value():
                raise ValidationError(f"quantity must be a positive integer (product {pid})")
            qty = int(qty_dec)
        if qty <= 0:
            raise ValidationError(f"quantity must be a positive integer (product {pid})")
        merged[pid] = merged.get(pid, 0) + qty
    if not merged:
        raise ValidationError("cart cannot be empty")
    return [CartLine(product_id=pid, quantity=qty) for pid, qty in merged.items()]


def plan_checkout(lines: list[CartLine], products: Mapping[str, Mapping[str, Any]]) -> CheckoutPlan:
    """
    `products` maps product id -> {"name", "selling_price", "quantity"} where
    quantity is the current inventory count (None when the product has no
    inventory record, which is treated as zero stock).
    """
    missing = [ln.product_id for ln in lines if ln.product_id not in products]
    if missing:
        raise ProductNotFound(missing)

    plan = CheckoutPlan()
    total = Decimal("0.00")
    for ln in lines:
        p = products[ln.product_id]
        available = p.get("quantity")
        available = int(available) if available is not None else 0
        if available < ln.quantity:
            raise InsufficientStock(str(p.get("name") or ln.product_id), available)
        price = to_money(p.get("selling_price"))
        line_total = to_money(price * ln.quantity)
        total += line_total
        plan.lines.append(
            PlannedLine(
                product_id=ln.product_id,
                product_name=str(p.get("name") or ""),
                quantity=ln.quantity,
                price_at_sale=price,
                line_total=line_total,
            )
        )
    plan.total_amount = to_money(total)
    return plan


def sale_total(items: Iterable[Any]) -> Decimal:
    total = Decimal("0.00")
    for it in items:
        qty = int(_line_value(it, "quantity", "qty") or 0)
        price = to_money(_line_value(it, "priceAtSale", "price_at_sale"))
        total += price * qty
    return to_money(total)
