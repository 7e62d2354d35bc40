"""
Checkout Transactor, device side.

LocalCheckout is the offline path: it validates against the local (maybe
stale) stock copy and writes the sale, its lines and the inventory
decrements in one Local Store transaction, all marked pending for the
next sync. OnlineCheckout asks the Remote Store to do the same against the
authoritative stock, then mirrors the result locally as already synced.
"""

from typing import Optional

from shopline.cart import normalize_cart, plan_checkout, to_money
from shopline.errors import NetworkError, PreconditionError
from shopline.ids import new_id
from shopline.logs import json_log

from . import catalog, ledger
from .remote import RemoteApi
from .store import SYNC_PENDING, SYNC_SYNCED, LocalStore, iso_now


def load_snapshot(store: LocalStore, product_ids: list[str]) -> dict:
    if not product_ids:
        return {}
    marks = ",".join(["?"] * len(product_ids))
    rows = store.query(
        f"""
        SELECT p.id, p.name, p.sellingPrice, i.quantity
        FROM products p
        LEFT JOIN inventory i ON i.productId = p.id
        WHERE p.deleted = 0 AND p.id IN ({marks})
        """,
        tuple(product_ids),
    )
    return {
        r["id"]: {"name": r["name"], "selling_price": r["sellingPrice"], "quantity": r["quantity"]}
        for r in rows
    }


class LocalCheckout:
    def __init__(self, store: LocalStore):
        self.store = store

    def checkout(self, items) -> dict:
        lines = normalize_cart(items)
        sale_id = new_id()
        now = iso_now()
        with self.store.transaction():
            products = load_snapshot(self.store, [ln.product_id for ln in lines])
            plan = plan_checkout(lines, products)
            self.store.execute(
                "INSERT INTO sales (id, totalAmount, createdAt, syncStatus) VALUES (?, ?, ?, ?)",
                (sale_id, plan.total_amount, now, SYNC_PENDING),
            )
            for ln in plan.lines:
                self.store.execute(
                    """
                    INSERT INTO sale_items (id, saleId, productId, quantity, priceAtSale)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (new_id(), sale_id, ln.product_id, ln.quantity, ln.price_at_sale),
                )
                ledger.decrement(self.store, ln.product_id, ln.quantity, now)
        json_log("info", "checkout.local", sale_id=sale_id, total=plan.total_amount, lines=len(plan.lines))
        return catalog.get_sale(self.store, sale_id)


def record_remote_sale(store: LocalStore, sale: dict) -> bool:
    """Store a sale the server already committed. Returns False if it was known."""
    sale_id = str(sale.get("id") or "").strip()
    if not sale_id:
        raise NetworkError("checkout response is missing the sale id")
    items = sale.get("items") or []
    with store.transaction():
        cur = store.execute(
            """
            INSERT INTO sales (id, totalAmount, createdAt, syncStatus) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (sale_id, to_money(sale.get("totalAmount")), sale.get("createdAt") or iso_now(), SYNC_SYNCED),
        )
        if cur.rowcount == 0:
            return False
        for idx, it in enumerate(items):
            qty = int(it.get("quantity") or 0)
            store.execute(
                """
                INSERT INTO sale_items (id, saleId, productId, quantity, priceAtSale)
                VALUES (?, ?, ?, ?, ?)
                """,
                (it.get("id") or f"{sale_id}_{idx}", sale_id, it.get("productId"), qty, to_money(it.get("priceAtSale"))),
            )
            ledger.apply_remote_sale(store, it.get("productId"), qty)
    return True


class OnlineCheckout:
    def __init__(self, store: LocalStore, api: RemoteApi):
        self.store = store
        self.api = api

    def checkout(self, items) -> dict:
        lines = normalize_cart(items)
        sale = self.api.checkout([{"productId": ln.product_id, "quantity": ln.quantity} for ln in lines])
        record_remote_sale(self.store, sale)
        json_log("info", "checkout.online", sale_id=sale.get("id"), total=sale.get("totalAmount"))
        return catalog.get_sale(self.store, str(sale.get("id")))


def checkout_with_fallback(online: Optional[OnlineCheckout], local: LocalCheckout, items) -> dict:
    """
    Prefer the authoritative online checkout; fall back to the local-first
    path only when the server cannot be reached (or no token is stored).
    Validation and transaction errors reported by the server propagate.
    """
    if online is not None:
        try:
            return online.checkout(items)
        except (NetworkError, PreconditionError) as ex:
            json_log("warning", "checkout.online_unavailable", error=str(ex), kind=ex.kind.value)
    return local.checkout(items)
