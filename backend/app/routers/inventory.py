from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from shopline.errors import NotFoundError
from shopline.logs import json_log

from ..db import get_conn
from ..deps import get_owner_id, get_paging, page_meta
from ..validation import PositiveQty, Qty, RequiredText

router = APIRouter(prefix="/inventory", tags=["inventory"])


class RestockIn(BaseModel):
    productId: RequiredText
    quantity: PositiveQty


class SetQuantityIn(BaseModel):
    productId: RequiredText
    # Absolute; may be negative when offline sales raced past zero.
    quantity: Qty


def inventory_out(row: dict) -> dict:
    out = {
        "id": row["id"],
        "productId": row["product_id"],
        "quantity": int(row["quantity"]),
        "updatedAt": row.get("updated_at"),
    }
    if "name" in row:
        out["product"] = {"name": row["name"], "barcode": row.get("barcode"), "category": row.get("category")}
    return out


def _require_product(cur, owner_id: str, product_id: str, include_deleted: bool = False) -> None:
    sql = "SELECT id FROM products WHERE user_id = %s AND id = %s"
    if not include_deleted:
        sql += " AND deleted = false"
    cur.execute(sql, (owner_id, product_id))
    if not cur.fetchone():
        raise NotFoundError("Product not found")


def _write_quantity(owner_id: str, product_id: str, quantity: int, absolute: bool) -> dict:
    if absolute:
        update_sql = "quantity = EXCLUDED.quantity"
    else:
        update_sql = "quantity = inventory.quantity + EXCLUDED.quantity"
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                # Absolute sets also accept soft-deleted products; restock does not.
                _require_product(cur, owner_id, product_id, include_deleted=absolute)
                cur.execute(
                    f"""
                    INSERT INTO inventory (id, product_id, quantity)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (product_id) DO UPDATE
                    SET {update_sql},
                        updated_at = now()
                    RETURNING id, product_id, quantity, updated_at
                    """,
                    (f"inv_{product_id}", product_id, quantity),
                )
                return cur.fetchone()


@router.post("/restock")
def restock(data: RestockIn, owner_id: str = Depends(get_owner_id)):
    row = _write_quantity(owner_id, data.productId, data.quantity, absolute=False)
    json_log("info", "inventory.restocked", product_id=data.productId, added=data.quantity, quantity=row["quantity"])
    return inventory_out(row)


@router.post("/set")
def set_quantity(data: SetQuantityIn, owner_id: str = Depends(get_owner_id)):
    row = _write_quantity(owner_id, data.productId, data.quantity, absolute=True)
    return inventory_out(row)


@router.get("")
def list_inventory(paging: tuple = Depends(get_paging), owner_id: str = Depends(get_owner_id)):
    page, limit = paging
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) AS total
                FROM inventory i
                JOIN products p ON p.id = i.product_id
                WHERE p.user_id = %s AND p.deleted = false
                """,
                (owner_id,),
            )
            total = int(cur.fetchone()["total"])
            cur.execute(
                """
                SELECT i.id, i.product_id, i.quantity, i.updated_at, p.name, p.barcode, p.category
                FROM inventory i
                JOIN products p ON p.id = i.product_id
                WHERE p.user_id = %s AND p.deleted = false
                ORDER BY p.name, i.product_id
                LIMIT %s OFFSET %s
                """,
                (owner_id, limit, (page - 1) * limit),
            )
            rows = cur.fetchall()
    return {"items": [inventory_out(r) for r in rows], "meta": page_meta(total, page, limit)}


@router.get("/low-stock")
def low_stock(threshold: int = Query(10, ge=0), owner_id: str = Depends(get_owner_id)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT i.id, i.product_id, i.quantity, i.updated_at, p.name, p.barcode, p.category
                FROM inventory i
                JOIN products p ON p.id = i.product_id
                WHERE p.user_id = %s AND p.deleted = false AND i.quantity <= %s
                ORDER BY i.quantity ASC, p.name
                """,
                (owner_id, threshold),
            )
            rows = cur.fetchall()
    return {"items": [inventory_out(r) for r in rows], "threshold": threshold}
