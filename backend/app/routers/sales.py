from datetime import datetime
from typing import List, Optional

import psycopg
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from shopline.cart import normalize_cart, plan_checkout, sale_total, to_money
from shopline.errors import NotFoundError, TransactionError
from shopline.ids import new_id
from shopline.logs import json_log

from ..db import get_conn
from ..deps import get_owner_id, get_paging, page_meta
from ..validation import AnyMoney, PositiveQty, RequiredText

router = APIRouter(prefix="/sales", tags=["sales"])


class CheckoutLineIn(BaseModel):
    productId: RequiredText
    quantity: PositiveQty


class CheckoutIn(BaseModel):
    items: List[CheckoutLineIn]


class SyncSaleItemIn(BaseModel):
    productId: RequiredText
    quantity: PositiveQty
    priceAtSale: AnyMoney


class SyncSaleIn(BaseModel):
    id: Optional[str] = None
    totalAmount: AnyMoney
    createdAt: Optional[datetime] = None
    items: List[SyncSaleItemIn]


class SyncSalesIn(BaseModel):
    sales: List[SyncSaleIn]


def sale_out(sale: dict, items: list[dict]) -> dict:
    return {
        "id": sale["id"],
        "totalAmount": sale["total_amount"],
        "createdAt": sale.get("created_at"),
        "items": [
            {
                "id": it["id"],
                "productId": it["product_id"],
                "productName": it.get("name"),
                "quantity": int(it["quantity"]),
                "priceAtSale": it["price_at_sale"],
            }
            for it in items
        ],
    }


def _items_for(cur, sale_ids: list[str]) -> dict[str, list[dict]]:
    if not sale_ids:
        return {}
    cur.execute(
        """
        SELECT si.id, si.sale_id, si.product_id, si.quantity, si.price_at_sale, p.name
        FROM sale_items si
        LEFT JOIN products p ON p.id = si.product_id
        WHERE si.sale_id = ANY(%s)
        ORDER BY si.sale_id, si.id
        """,
        (sale_ids,),
    )
    out: dict[str, list[dict]] = {sid: [] for sid in sale_ids}
    for r in cur.fetchall():
        out.setdefault(r["sale_id"], []).append(r)
    return out


def _load_snapshot(cur, owner_id: str, product_ids: list[str]) -> dict[str, dict]:
    cur.execute(
        """
        SELECT id, name, selling_price
        FROM products
        WHERE user_id = %s AND id = ANY(%s) AND deleted = false
        """,
        (owner_id, product_ids),
    )
    products = {r["id"]: {"name": r["name"], "selling_price": r["selling_price"], "quantity": None} for r in cur.fetchall()}
    # Lock stock rows so concurrent checkouts of the same product serialize here.
    cur.execute(
        """
        SELECT product_id, quantity
        FROM inventory
        WHERE product_id = ANY(%s)
        ORDER BY product_id
        FOR UPDATE
        """,
        (list(products.keys()),),
    )
    for r in cur.fetchall():
        if r["product_id"] in products:
            products[r["product_id"]]["quantity"] = r["quantity"]
    return products


@router.post("/checkout", status_code=201)
def checkout(data: CheckoutIn, owner_id: str = Depends(get_owner_id)):
    """
    Record a sale and decrement stock atomically.

    Either the sale, its items and every stock decrement are committed
    together, or nothing is. Stock and existence checks run against locked
    rows before the first write.
    """
    lines = normalize_cart([{"productId": it.productId, "quantity": it.quantity} for it in data.items])
    sale_id = new_id("s")
    try:
        with get_conn() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    products = _load_snapshot(cur, owner_id, [ln.product_id for ln in lines])
                    plan = plan_checkout(lines, products)
                    cur.execute(
                        """
                        INSERT INTO sales (id, user_id, total_amount)
                        VALUES (%s, %s, %s)
                        RETURNING id, total_amount, created_at
                        """,
                        (sale_id, owner_id, plan.total_amount),
                    )
                    sale = cur.fetchone()
                    items = []
                    for idx, ln in enumerate(plan.lines):
                        item_id = f"{sale_id}_{idx}"
                        cur.execute(
                            """
                            INSERT INTO sale_items (id, sale_id, product_id, quantity, price_at_sale)
                            VALUES (%s, %s, %s, %s, %s)
                            """,
                            (item_id, sale_id, ln.product_id, ln.quantity, ln.price_at_sale),
                        )
                        cur.execute(
                            """
                            UPDATE inventory
                            SET quantity = quantity - %s, updated_at = now()
                            WHERE product_id = %s
                            """,
                            (ln.quantity, ln.product_id),
                        )
                        if cur.rowcount != 1:
                            raise TransactionError(f"inventory record missing for product {ln.product_id}")
                        items.append(
                            {
                                "id": item_id,
                                "product_id": ln.product_id,
                                "name": ln.product_name,
                                "quantity": ln.quantity,
                                "price_at_sale": ln.price_at_sale,
                            }
                        )
    except psycopg.Error as ex:
        json_log("error", "sale.checkout_failed", owner_id=owner_id, error=str(ex))
        raise TransactionError("checkout failed; no changes were saved") from ex
    json_log("info", "sale.checkout", sale_id=sale_id, owner_id=owner_id, total=str(plan.total_amount), lines=len(items))
    return sale_out(sale, items)


def _import_sale(conn, owner_id: str, sale_id: str, s: SyncSaleIn) -> str:
    if not s.items:
        json_log("warning", "sale.sync.rejected", sale_id=sale_id, reason="empty")
        return "failed"
    if sale_total(s.items) != to_money(s.totalAmount):
        json_log("warning", "sale.sync.rejected", sale_id=sale_id, reason="total_mismatch")
        return "failed"
    try:
        # Nested transaction: a savepoint per sale so one bad sale never rolls back the batch.
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO sales (id, user_id, total_amount, created_at)
                    VALUES (%s, %s, %s, COALESCE(%s, now()))
                    ON CONFLICT (id) DO NOTHING
                    RETURNING id
                    """,
                    (sale_id, owner_id, to_money(s.totalAmount), s.createdAt),
                )
                if cur.fetchone() is None:
                    cur.execute("SELECT user_id FROM sales WHERE id = %s", (sale_id,))
                    existing = cur.fetchone()
                    if existing and str(existing["user_id"]) == owner_id:
                        return "already_synced"
                    json_log("warning", "sale.sync.rejected", sale_id=sale_id, reason="id_taken")
                    return "failed"
                product_ids = sorted({it.productId for it in s.items})
                cur.execute(
                    "SELECT id FROM products WHERE user_id = %s AND id = ANY(%s)",
                    (owner_id, product_ids),
                )
                known = {r["id"] for r in cur.fetchall()}
                unknown = [pid for pid in product_ids if pid not in known]
                if unknown:
                    raise NotFoundError(f"unknown products: {', '.join(unknown)}")
                for idx, it in enumerate(s.items):
                    cur.execute(
                        """
                        INSERT INTO sale_items (id, sale_id, product_id, quantity, price_at_sale)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (f"{sale_id}_{idx}", sale_id, it.productId, it.quantity, it.priceAtSale),
                    )
    except (NotFoundError, psycopg.Error) as ex:
        json_log("warning", "sale.sync.rejected", sale_id=sale_id, reason=str(ex))
        return "failed"
    return "synced"


@router.post("/sync")
def sync_sales(data: SyncSalesIn, owner_id: str = Depends(get_owner_id)):
    """
    Import sales recorded offline. Idempotent by sale id.

    Stock is not touched here: devices push their absolute inventory counts
    separately.
    """
    results = []
    with get_conn() as conn:
        for s in data.sales:
            sale_id = (s.id or "").strip() or new_id("s")
            status = _import_sale(conn, owner_id, sale_id, s)
            results.append({"id": sale_id, "status": status})
    synced = sum(1 for r in results if r["status"] == "synced")
    json_log("info", "sale.sync", owner_id=owner_id, received=len(results), synced=synced)
    return {"results": results}


@router.get("")
def list_sales(paging: tuple = Depends(get_paging), owner_id: str = Depends(get_owner_id)):
    page, limit = paging
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) AS total FROM sales WHERE user_id = %s", (owner_id,))
            total = int(cur.fetchone()["total"])
            cur.execute(
                """
                SELECT id, total_amount, created_at
                FROM sales
                WHERE user_id = %s
                ORDER BY created_at DESC, id
                LIMIT %s OFFSET %s
                """,
                (owner_id, limit, (page - 1) * limit),
            )
            sales = cur.fetchall()
            items = _items_for(cur, [s["id"] for s in sales])
    return {
        "items": [sale_out(s, items.get(s["id"], [])) for s in sales],
        "meta": page_meta(total, page, limit),
    }


@router.get("/{sale_id}")
def get_sale(sale_id: str, owner_id: str = Depends(get_owner_id)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT id, total_amount, created_at FROM sales WHERE user_id = %s AND id = %s",
                (owner_id, sale_id),
            )
            sale = cur.fetchone()
            if not sale:
                raise NotFoundError("sale not found")
            items = _items_for(cur, [sale_id])
    return sale_out(sale, items.get(sale_id, []))
