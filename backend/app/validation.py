from __future__ import annotations

from decimal import Decimal
from typing import Annotated

from pydantic import AfterValidator, BeforeValidator, Field, StringConstraints

from shopline.cart import to_money


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


def _positive_money(v: Decimal) -> Decimal:
    v = to_money(v)
    if v <= 0:
        raise ValueError("must be positive")
    return v


# Required, trimmed text (names, categories, barcodes).
RequiredText = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=200)]

# Prices are stored as numeric(12,2); round half-up to cents on the way in.
Money = Annotated[Decimal, AfterValidator(_positive_money)]
AnyMoney = Annotated[Decimal, AfterValidator(to_money)]

PositiveQty = Annotated[int, Field(gt=0, strict=True)]
Qty = Annotated[int, Field(strict=True)]
