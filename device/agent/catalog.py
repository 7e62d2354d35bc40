from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from shopline.cart import to_money
from shopline.errors import ConflictError, NotFoundError, ValidationError
from shopline.ids import new_id

from .store import SYNC_PENDING, LocalStore, iso_now

# Local column for each editable product field.
_PRODUCT_FIELDS = {
    "name": "name",
    "barcode": "barcode",
    "category": "category",
    "selling_price": "sellingPrice",
    "purchase_price": "purchasePrice",
}


def _required_text(value: Any, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required")
    return text


def _positive_money(value: Any, field: str) -> Decimal:
    try:
        amount = to_money(value)
    except Exception as e:
        raise ValidationError(f"{field} must be a number") from e
    if amount <= 0:
        raise ValidationError(f"{field} must be positive")
    return amount


def _barcode_taken(store: LocalStore, barcode: str, exclude_id: Optional[str] = None) -> bool:
    row = store.query_one("SELECT id FROM products WHERE barcode = ?", (barcode,))
    return bool(row) and row["id"] != exclude_id


def create_product(
    store: LocalStore,
    name: str,
    barcode: str,
    category: str,
    selling_price,
    purchase_price,
    quantity: int = 0,
) -> str:
    name = _required_text(name, "name")
    barcode = _required_text(barcode, "barcode")
    category = _required_text(category, "category")
    selling = _positive_money(selling_price, "sellingPrice")
    purchase = _positive_money(purchase_price, "purchasePrice")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
        raise ValidationError("quantity must be a non-negative integer")

    product_id = new_id()
    now = iso_now()
    with store.transaction():
        if _barcode_taken(store, barcode):
            raise ConflictError(f"Product with barcode {barcode} already exists")
        store.execute(
            """
            INSERT INTO products (id, name, barcode, category, sellingPrice, purchasePrice,
                                  createdAt, updatedAt, deleted, syncStatus)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (product_id, name, barcode, category, selling, purchase, now, now, SYNC_PENDING),
        )
        store.execute(
            """
            INSERT INTO inventory (id, productId, quantity, updatedAt, syncStatus)
            VALUES (?, ?, ?, ?, ?)
            """,
            (new_id(), product_id, quantity, now, SYNC_PENDING),
        )
    return product_id


def update_product(store: LocalStore, product_id: str, **fields) -> dict:
    updates: list[str] = []
    params: list[Any] = []
    for key, value in fields.items():
        if value is None:
            continue
        col = _PRODUCT_FIELDS.get(key)
        if not col:
            raise ValidationError(f"unknown product field: {key}")
        if key in {"selling_price", "purchase_price"}:
            value = _positive_money(value, col)
        else:
            value = _required_text(value, key)
        updates.append(f"{col} = ?")
        params.append(value)

    with store.transaction():
        current = get_product(store, product_id)
        if not current:
            raise NotFoundError(f"Product {product_id} not found")
        if not updates:
            return current
        if "barcode" in fields and fields["barcode"] is not None:
            if _barcode_taken(store, str(fields["barcode"]).strip(), exclude_id=product_id):
                raise ConflictError(f"Product with barcode {fields['barcode']} already exists")
        updates += ["updatedAt = ?", "syncStatus = ?"]
        params += [iso_now(), SYNC_PENDING, product_id]
        store.execute(f"UPDATE products SET {', '.join(updates)} WHERE id = ?", tuple(params))
        return get_product(store, product_id)


def delete_product(store: LocalStore, product_id: str) -> None:
    cur = store.execute(
        "UPDATE products SET deleted = 1, updatedAt = ?, syncStatus = ? WHERE id = ? AND deleted = 0",
        (iso_now(), SYNC_PENDING, product_id),
    )
    if cur.rowcount == 0:
        raise NotFoundError(f"Product {product_id} not found")


_PRODUCT_SELECT = """
    SELECT p.id, p.name, p.barcode, p.category, p.sellingPrice, p.purchasePrice,
           p.createdAt, p.updatedAt, p.deleted, p.syncStatus, i.quantity
    FROM products p
    LEFT JOIN inventory i ON i.productId = p.id
"""


def get_product(store: LocalStore, product_id: str) -> Optional[dict]:
    return store.query_one(_PRODUCT_SELECT + " WHERE p.id = ? AND p.deleted = 0", (product_id,))


def get_product_by_barcode(store: LocalStore, barcode: str) -> Optional[dict]:
    return store.query_one(_PRODUCT_SELECT + " WHERE p.barcode = ? AND p.deleted = 0 LIMIT 1", (barcode,))


def list_products(store: LocalStore) -> list[dict]:
    return store.query(_PRODUCT_SELECT + " WHERE p.deleted = 0 ORDER BY p.name ASC")


def get_sale(store: LocalStore, sale_id: str) -> Optional[dict]:
    sale = store.query_one("SELECT id, totalAmount, createdAt, syncStatus FROM sales WHERE id = ?", (sale_id,))
    if not sale:
        return None
    sale["items"] = store.query(
        """
        SELECT si.id, si.productId, si.quantity, si.priceAtSale, p.name AS productName
        FROM sale_items si
        LEFT JOIN products p ON p.id = si.productId
        WHERE si.saleId = ?
        ORDER BY si.rowid
        """,
        (sale_id,),
    )
    return sale


def list_sales(store: LocalStore, limit: int = 50) -> list[dict]:
    ids = store.query("SELECT id FROM sales ORDER BY createdAt DESC LIMIT ?", (int(limit),))
    return [get_sale(store, r["id"]) for r in ids]


def recent_sales(store: LocalStore, limit: int = 5) -> list[dict]:
    return store.query(
        """
        SELECT s.id, s.totalAmount, s.createdAt,
               (SELECT p.name FROM sale_items si JOIN products p ON p.id = si.productId
                WHERE si.saleId = s.id LIMIT 1) AS title,
               (SELECT COUNT(*) FROM sale_items si WHERE si.saleId = s.id) AS itemCount
        FROM sales s
        ORDER BY s.createdAt DESC
        LIMIT ?
        """,
        (int(limit),),
    )


def dashboard_stats(store: LocalStore, low_stock_threshold: int = 3) -> dict:
    today = datetime.now(timezone.utc).date().isoformat()
    # Summed in Python so money stays Decimal.
    rows = store.query("SELECT totalAmount FROM sales WHERE createdAt LIKE ?", (f"{today}%",))
    today_sales = to_money(sum((r["totalAmount"] for r in rows), Decimal("0")))
    low = store.scalar(
        """
        SELECT COUNT(*) FROM inventory i JOIN products p ON p.id = i.productId
        WHERE p.deleted = 0 AND i.quantity <= ?
        """,
        (int(low_stock_threshold),),
    )
    total_items = store.scalar("SELECT COUNT(*) FROM products WHERE deleted = 0")
    return {
        "todaySales": today_sales,
        "lowStockCount": int(low or 0),
        "totalItemsCount": int(total_items or 0),
    }
