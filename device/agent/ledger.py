"""
Inventory Ledger: the one quantity counter per product.

Four actors touch it: restock (+N), checkout (-N, inside the sale
transaction), sync push (status flip only) and sync pull (absolute
overwrite). Pull never overwrites a row that still has unpushed local
changes; beyond that the last writer wins, so two devices changing the
same product's stock between syncs can lose one side's change.
"""

from typing import Optional

from shopline.errors import NotFoundError, TransactionError, ValidationError
from shopline.ids import new_id

from .store import SYNC_PENDING, SYNC_SYNCED, LocalStore, iso_now


def _positive_int(quantity, what: str = "quantity") -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"{what} must be a positive integer")
    return quantity


def get_record(store: LocalStore, product_id: str) -> Optional[dict]:
    return store.query_one(
        "SELECT id, productId, quantity, updatedAt, syncStatus FROM inventory WHERE productId = ?",
        (product_id,),
    )


def get_quantity(store: LocalStore, product_id: str) -> Optional[int]:
    row = get_record(store, product_id)
    return int(row["quantity"]) if row else None


def _require_product(store: LocalStore, product_id: str) -> None:
    row = store.query_one("SELECT id FROM products WHERE id = ? AND deleted = 0", (product_id,))
    if not row:
        raise NotFoundError(f"Product {product_id} not found")


def restock(store: LocalStore, product_id: str, quantity: int) -> dict:
    qty = _positive_int(quantity)
    now = iso_now()
    with store.transaction():
        _require_product(store, product_id)
        cur = store.execute(
            """
            UPDATE inventory
            SET quantity = quantity + ?, updatedAt = ?, syncStatus = ?
            WHERE productId = ?
            """,
            (qty, now, SYNC_PENDING, product_id),
        )
        if cur.rowcount == 0:
            # Every product should have a record from creation; recover if not.
            store.execute(
                """
                INSERT INTO inventory (id, productId, quantity, updatedAt, syncStatus)
                VALUES (?, ?, ?, ?, ?)
                """,
                (new_id(), product_id, qty, now, SYNC_PENDING),
            )
        return get_record(store, product_id)


def set_quantity(store: LocalStore, product_id: str, quantity: int) -> dict:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be an integer")
    now = iso_now()
    with store.transaction():
        _require_product(store, product_id)
        cur = store.execute(
            "UPDATE inventory SET quantity = ?, updatedAt = ?, syncStatus = ? WHERE productId = ?",
            (quantity, now, SYNC_PENDING, product_id),
        )
        if cur.rowcount == 0:
            store.execute(
                """
                INSERT INTO inventory (id, productId, quantity, updatedAt, syncStatus)
                VALUES (?, ?, ?, ?, ?)
                """,
                (new_id(), product_id, quantity, now, SYNC_PENDING),
            )
        return get_record(store, product_id)


def decrement(store: LocalStore, product_id: str, quantity: int, now: Optional[str] = None) -> None:
    # Called inside the checkout transaction; the record is known to exist.
    cur = store.execute(
        """
        UPDATE inventory
        SET quantity = quantity - ?, updatedAt = ?, syncStatus = ?
        WHERE productId = ?
        """,
        (quantity, now or iso_now(), SYNC_PENDING, product_id),
    )
    if cur.rowcount != 1:
        raise TransactionError(f"inventory record missing for product {product_id}")


def apply_remote_sale(store: LocalStore, product_id: str, quantity: int) -> None:
    """Mirror a decrement the server already applied; sync status is left alone."""
    store.execute(
        "UPDATE inventory SET quantity = quantity - ?, updatedAt = ? WHERE productId = ?",
        (quantity, iso_now(), product_id),
    )


def mark_synced(store: LocalStore, product_id: str, updated_at: Optional[str] = None) -> bool:
    # With updated_at, a record changed again after it was read for push stays pending.
    if updated_at is None:
        cur = store.execute(
            "UPDATE inventory SET syncStatus = ? WHERE productId = ? AND syncStatus = ?",
            (SYNC_SYNCED, product_id, SYNC_PENDING),
        )
    else:
        cur = store.execute(
            "UPDATE inventory SET syncStatus = ? WHERE productId = ? AND syncStatus = ? AND updatedAt = ?",
            (SYNC_SYNCED, product_id, SYNC_PENDING, updated_at),
        )
    return cur.rowcount == 1


def pending_records(store: LocalStore) -> list[dict]:
    return store.query(
        "SELECT productId, quantity, updatedAt FROM inventory WHERE syncStatus = ? ORDER BY updatedAt",
        (SYNC_PENDING,),
    )


def apply_remote_quantity(store: LocalStore, product_id: str, quantity: int) -> str:
    """
    Absolute overwrite from a pulled snapshot.

    Returns "skipped" when the local record has unpushed changes, "created"
    when the device had no record yet, otherwise "applied".
    """
    row = get_record(store, product_id)
    now = iso_now()
    if row is None:
        store.execute(
            """
            INSERT INTO inventory (id, productId, quantity, updatedAt, syncStatus)
            VALUES (?, ?, ?, ?, ?)
            """,
            (f"inv_{product_id}", product_id, int(quantity), now, SYNC_SYNCED),
        )
        return "created"
    if row["syncStatus"] == SYNC_PENDING:
        return "skipped"
    store.execute(
        "UPDATE inventory SET quantity = ?, updatedAt = ?, syncStatus = ? WHERE productId = ?",
        (int(quantity), now, SYNC_SYNCED, product_id),
    )
    return "applied"


def low_stock(store: LocalStore, threshold: int = 3) -> list[dict]:
    return store.query(
        """
        SELECT p.id, p.name, p.barcode, p.category, i.quantity
        FROM inventory i
        JOIN products p ON p.id = i.productId
        WHERE p.deleted = 0 AND i.quantity <= ?
        ORDER BY i.quantity ASC, p.name ASC
        """,
        (int(threshold),),
    )
