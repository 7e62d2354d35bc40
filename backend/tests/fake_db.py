"""
In-memory stand-in for the handful of SQL statements the shop routers run.

Statements are matched on their whitespace-normalized prefix; anything
unexpected fails the test loudly. `transaction()` snapshots the tables and
restores them when the block raises, like a real (sub)transaction.
"""

import copy
import re
from contextlib import contextmanager
from datetime import datetime, timezone

NOW = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)


class FakeShopDb:
    def __init__(self):
        self.products: dict[str, dict] = {}
        self.inventory: dict[str, int] = {}
        self.sales: dict[str, dict] = {}
        self.sale_items: list[dict] = []
        self.executed: list[str] = []
        # Statement prefix -> exception to raise when it runs.
        self.fail_on: dict[str, Exception] = {}

    def add_product(self, pid, name, price, qty=None, user_id="u1", barcode=None, deleted=False):
        self.products[pid] = {
            "id": pid,
            "user_id": user_id,
            "name": name,
            "barcode": barcode or f"bc-{pid}",
            "category": "general",
            "selling_price": price,
            "purchase_price": price,
            "deleted": deleted,
            "created_at": NOW,
            "updated_at": NOW,
        }
        if qty is not None:
            self.inventory[pid] = qty

    def _snapshot(self):
        return copy.deepcopy((self.products, self.inventory, self.sales, self.sale_items))

    def _restore(self, snap):
        self.products, self.inventory, self.sales, self.sale_items = snap

    def conn(self):
        return FakeConn(self)


class FakeConn:
    def __init__(self, db: FakeShopDb):
        self.db = db

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return FakeCursor(self.db)

    @contextmanager
    def transaction(self):
        snap = self.db._snapshot()
        try:
            yield
        except BaseException:
            self.db._restore(snap)
            raise


class FakeCursor:
    def __init__(self, db: FakeShopDb):
        self.db = db
        self._rows: list[dict] = []
        self.rowcount = -1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def _product_row(self, p):
        row = dict(p)
        row["quantity"] = self.db.inventory.get(p["id"])
        return row

    def execute(self, sql, params=()):
        s = " ".join(sql.split())
        db = self.db
        db.executed.append(s)
        for prefix, exc in db.fail_on.items():
            if s.startswith(prefix):
                raise exc
        self._rows = []
        self.rowcount = 0
        params = tuple(params)

        # ---- products ----
        if s.startswith("SELECT p.id, p.name") and "WHERE p.user_id = %s AND p.id = %s" in s:
            owner, pid = params
            p = db.products.get(pid)
            if p and p["user_id"] == owner:
                self._rows = [self._product_row(p)]
        elif s.startswith("SELECT id FROM products WHERE id = %s"):
            (pid,) = params
            if pid in db.products:
                self._rows = [{"id": pid}]
        elif s.startswith("SELECT id FROM products WHERE user_id = %s AND barcode = %s"):
            owner, barcode, exclude, _ = params
            self._rows = [
                {"id": p["id"]}
                for p in db.products.values()
                if p["user_id"] == owner and p["barcode"] == barcode and p["id"] != exclude
            ]
        elif s.startswith("SELECT id FROM products WHERE user_id = %s AND id = %s AND deleted = false"):
            owner, pid = params
            p = db.products.get(pid)
            if p and p["user_id"] == owner and not p["deleted"]:
                self._rows = [{"id": pid}]
        elif s == "SELECT id FROM products WHERE user_id = %s AND id = %s":
            owner, pid = params
            p = db.products.get(pid)
            if p and p["user_id"] == owner:
                self._rows = [{"id": pid}]
        elif s.startswith("SELECT id FROM products WHERE user_id = %s AND id = ANY(%s)"):
            owner, ids = params
            self._rows = [{"id": pid} for pid in ids if pid in db.products and db.products[pid]["user_id"] == owner]
        elif s.startswith("SELECT id, name, selling_price FROM products"):
            owner, ids = params
            for pid in ids:
                p = db.products.get(pid)
                if p and p["user_id"] == owner and not p["deleted"]:
                    self._rows.append({"id": pid, "name": p["name"], "selling_price": p["selling_price"]})
        elif s.startswith("INSERT INTO products"):
            pid, owner, name, barcode, category, selling, purchase = params
            db.products[pid] = {
                "id": pid,
                "user_id": owner,
                "name": name,
                "barcode": barcode,
                "category": category,
                "selling_price": selling,
                "purchase_price": purchase,
                "deleted": False,
                "created_at": NOW,
                "updated_at": NOW,
            }
            self.rowcount = 1
        elif s.startswith("UPDATE products SET deleted = true"):
            owner, pid = params
            db.products[pid]["deleted"] = True
            self.rowcount = 1
        elif s.startswith("UPDATE products SET"):
            set_part = s[len("UPDATE products SET "): s.index(" WHERE ")]
            cols = re.findall(r"(\w+) = %s", set_part)
            values = params[: len(cols)]
            owner, pid = params[len(cols):]
            p = db.products[pid]
            for col, val in zip(cols, values):
                p[col] = val
            self.rowcount = 1
        elif s.startswith("DELETE FROM products"):
            owner, pid = params
            db.products.pop(pid, None)
            self.rowcount = 1
        elif s.startswith("SELECT 1 FROM sale_items WHERE product_id"):
            (pid,) = params
            if any(it["product_id"] == pid for it in db.sale_items):
                self._rows = [{"?column?": 1}]

        # ---- inventory ----
        elif s.startswith("INSERT INTO inventory") and "ON CONFLICT" in s:
            inv_id, pid, qty = params
            if pid in db.inventory and "inventory.quantity + EXCLUDED.quantity" in s:
                db.inventory[pid] += qty
            else:
                db.inventory[pid] = qty
            self._rows = [{"id": inv_id, "product_id": pid, "quantity": db.inventory[pid], "updated_at": NOW}]
        elif s.startswith("INSERT INTO inventory"):
            inv_id, pid = params
            db.inventory[pid] = 0
            self.rowcount = 1
        elif s.startswith("DELETE FROM inventory"):
            (pid,) = params
            db.inventory.pop(pid, None)
            self.rowcount = 1
        elif s.startswith("SELECT product_id, quantity FROM inventory"):
            (ids,) = params
            self._rows = [{"product_id": pid, "quantity": db.inventory[pid]} for pid in sorted(ids) if pid in db.inventory]
        elif s.startswith("UPDATE inventory SET quantity = quantity -"):
            qty, pid = params
            if pid in db.inventory:
                db.inventory[pid] -= qty
                self.rowcount = 1

        # ---- sales ----
        elif s.startswith("INSERT INTO sales (id, user_id, total_amount) VALUES"):
            sid, owner, total = params
            db.sales[sid] = {"id": sid, "user_id": owner, "total_amount": total, "created_at": NOW}
            self._rows = [{"id": sid, "total_amount": total, "created_at": NOW}]
        elif s.startswith("INSERT INTO sales (id, user_id, total_amount, created_at)"):
            sid, owner, total, created = params
            if sid not in db.sales:
                db.sales[sid] = {"id": sid, "user_id": owner, "total_amount": total, "created_at": created or NOW}
                self._rows = [{"id": sid}]
        elif s.startswith("SELECT user_id FROM sales WHERE id = %s"):
            (sid,) = params
            if sid in db.sales:
                self._rows = [{"user_id": db.sales[sid]["user_id"]}]
        elif s.startswith("INSERT INTO sale_items"):
            item_id, sid, pid, qty, price = params
            db.sale_items.append(
                {"id": item_id, "sale_id": sid, "product_id": pid, "quantity": qty, "price_at_sale": price}
            )
            self.rowcount = 1
        elif s.startswith("SELECT id, total_amount, created_at FROM sales WHERE user_id = %s AND id = %s"):
            owner, sid = params
            sale = db.sales.get(sid)
            if sale and sale["user_id"] == owner:
                self._rows = [dict(sale)]
        elif s.startswith("SELECT si.id, si.sale_id"):
            (ids,) = params
            for it in db.sale_items:
                if it["sale_id"] in ids:
                    row = dict(it)
                    p = db.products.get(it["product_id"])
                    row["name"] = p["name"] if p else None
                    self._rows.append(row)
        else:
            raise AssertionError(f"unexpected sql: {s}")
