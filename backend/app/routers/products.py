from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from shopline.errors import ConflictError, NotFoundError, ValidationError
from shopline.ids import new_id
from shopline.logs import json_log

from ..db import get_conn
from ..deps import get_owner_id, get_paging, page_meta
from ..validation import Money, RequiredText

router = APIRouter(prefix="/products", tags=["products"])

_PRODUCT_COLS = """
    p.id, p.name, p.barcode, p.category, p.selling_price, p.purchase_price,
    p.deleted, p.created_at, p.updated_at, i.quantity
"""

# API field -> column. Only these are patchable.
_PATCHABLE = {
    "name": "name",
    "barcode": "barcode",
    "category": "category",
    "sellingPrice": "selling_price",
    "purchasePrice": "purchase_price",
    "deleted": "deleted",
}


class ProductIn(BaseModel):
    # Devices send the id they generated offline so both sides agree on it.
    id: Optional[str] = None
    name: RequiredText
    barcode: RequiredText
    category: RequiredText
    sellingPrice: Money
    purchasePrice: Money


class ProductUpdate(BaseModel):
    name: Optional[RequiredText] = None
    barcode: Optional[RequiredText] = None
    category: Optional[RequiredText] = None
    sellingPrice: Optional[Money] = None
    purchasePrice: Optional[Money] = None
    deleted: Optional[bool] = None


def product_out(row: dict) -> dict:
    qty = row.get("quantity")
    return {
        "id": row["id"],
        "name": row["name"],
        "barcode": row["barcode"],
        "category": row["category"],
        "sellingPrice": row["selling_price"],
        "purchasePrice": row["purchase_price"],
        "deleted": bool(row.get("deleted")),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
        "inventory": {"quantity": int(qty)} if qty is not None else None,
    }


def _fetch_product(cur, owner_id: str, product_id: str) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT {_PRODUCT_COLS}
        FROM products p
        LEFT JOIN inventory i ON i.product_id = p.id
        WHERE p.user_id = %s AND p.id = %s
        """,
        (owner_id, product_id),
    )
    return cur.fetchone()


def _ensure_barcode_free(cur, owner_id: str, barcode: str, exclude_id: Optional[str] = None) -> None:
    cur.execute(
        """
        SELECT id
        FROM products
        WHERE user_id = %s AND barcode = %s AND (%s::text IS NULL OR id <> %s)
        """,
        (owner_id, barcode, exclude_id, exclude_id),
    )
    if cur.fetchone():
        raise ConflictError("Product with this barcode already exists")


@router.get("")
def list_products(
    search: Optional[str] = Query(None),
    include_deleted: bool = Query(True),
    paging: tuple = Depends(get_paging),
    owner_id: str = Depends(get_owner_id),
):
    page, limit = paging
    where = ["p.user_id = %s"]
    params: list = [owner_id]
    q = (search or "").strip()
    if q:
        like = f"%{q}%"
        where.append("(p.name ILIKE %s OR p.category ILIKE %s OR p.barcode ILIKE %s)")
        params.extend([like, like, like])
    if not include_deleted:
        where.append("p.deleted = false")
    where_sql = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) AS total FROM products p WHERE {where_sql}", params)
            total = int(cur.fetchone()["total"])
            cur.execute(
                f"""
                SELECT {_PRODUCT_COLS}
                FROM products p
                LEFT JOIN inventory i ON i.product_id = p.id
                WHERE {where_sql}
                ORDER BY p.created_at DESC, p.id
                LIMIT %s OFFSET %s
                """,
                params + [limit, (page - 1) * limit],
            )
            rows = cur.fetchall()
    return {"items": [product_out(r) for r in rows], "meta": page_meta(total, page, limit)}


@router.get("/{product_id}")
def get_product(product_id: str, owner_id: str = Depends(get_owner_id)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = _fetch_product(cur, owner_id, product_id)
    if not row:
        raise NotFoundError("product not found")
    return product_out(row)


@router.post("", status_code=201)
def create_product(data: ProductIn, owner_id: str = Depends(get_owner_id)):
    product_id = (data.id or "").strip() or new_id("p")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM products WHERE id = %s", (product_id,))
                if cur.fetchone():
                    raise ConflictError("Product with this id already exists")
                _ensure_barcode_free(cur, owner_id, data.barcode)
                cur.execute(
                    """
                    INSERT INTO products (id, user_id, name, barcode, category, selling_price, purchase_price)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        product_id,
                        owner_id,
                        data.name,
                        data.barcode,
                        data.category,
                        data.sellingPrice,
                        data.purchasePrice,
                    ),
                )
                # Every product starts with an empty stock record.
                cur.execute(
                    """
                    INSERT INTO inventory (id, product_id, quantity)
                    VALUES (%s, %s, 0)
                    """,
                    (f"inv_{product_id}", product_id),
                )
                row = _fetch_product(cur, owner_id, product_id)
    json_log("info", "product.created", product_id=product_id, owner_id=owner_id)
    return product_out(row)


@router.patch("/{product_id}")
def update_product(product_id: str, data: ProductUpdate, owner_id: str = Depends(get_owner_id)):
    patch = data.model_dump(exclude_unset=True)
    for k, v in patch.items():
        if v is None:
            raise ValidationError(f"{k} cannot be null")
    fields = [f"{_PATCHABLE[k]} = %s" for k in patch]
    params = list(patch.values())
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if not _fetch_product(cur, owner_id, product_id):
                    raise NotFoundError("product not found")
                if "barcode" in patch:
                    _ensure_barcode_free(cur, owner_id, patch["barcode"], exclude_id=product_id)
                if fields:
                    cur.execute(
                        f"""
                        UPDATE products
                        SET {', '.join(fields)}, updated_at = now()
                        WHERE user_id = %s AND id = %s
                        """,
                        params + [owner_id, product_id],
                    )
                row = _fetch_product(cur, owner_id, product_id)
    return product_out(row)


@router.delete("/{product_id}")
def delete_product(product_id: str, owner_id: str = Depends(get_owner_id)):
    """
    Remove a product and its stock record in one transaction.

    Products that appear on recorded sales are soft-deleted instead so the
    sale lines keep a valid reference.
    """
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if not _fetch_product(cur, owner_id, product_id):
                    raise NotFoundError("product not found")
                cur.execute("SELECT 1 FROM sale_items WHERE product_id = %s LIMIT 1", (product_id,))
                if cur.fetchone():
                    cur.execute(
                        """
                        UPDATE products
                        SET deleted = true, updated_at = now()
                        WHERE user_id = %s AND id = %s
                        """,
                        (owner_id, product_id),
                    )
                    json_log("info", "product.soft_deleted", product_id=product_id, owner_id=owner_id)
                    return {"ok": True, "id": product_id, "soft": True}
                cur.execute("DELETE FROM inventory WHERE product_id = %s", (product_id,))
                cur.execute("DELETE FROM products WHERE user_id = %s AND id = %s", (owner_id, product_id))
    json_log("info", "product.deleted", product_id=product_id, owner_id=owner_id)
    return {"ok": True, "id": product_id, "soft": False}
