"""
Sync Engine: reconcile the Local Store with the Remote Store.

A full cycle pushes first and pulls second. Pulling first would let a
stale server snapshot overwrite local rows that have not been pushed yet.

Push (sync_up) walks pending rows one round-trip at a time, per entity:
products, inventory, then sales (one batch). A row that fails stays
pending and the loop moves on; only a missing or rejected token stops the
cycle.

Pull (sync_down) pages through the server's products and sales. Rows
that are still pending locally are skipped (local wins until pushed);
everything else is overwritten with the server's version (server wins).
"""

import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Optional

from shopline.cart import to_money
from shopline.errors import ConflictError, NotFoundError, PreconditionError
from shopline.logs import json_log

from . import ledger
from .remote import RemoteApi
from .store import LAST_SYNC_KEY, SYNC_PENDING, SYNC_SYNCED, LocalStore, iso_now

SALE_OK_STATUSES = {"synced", "already_synced"}


@dataclass
class EntityCounts:
    pushed: int = 0
    failed: int = 0
    pulled: int = 0
    skipped: int = 0


@dataclass
class SyncReport:
    products: EntityCounts = field(default_factory=EntityCounts)
    inventory: EntityCounts = field(default_factory=EntityCounts)
    sales: EntityCounts = field(default_factory=EntityCounts)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class SyncEngine:
    def __init__(self, store: LocalStore, api: RemoteApi, page_size: int = 100):
        self.store = store
        self.api = api
        self.page_size = max(1, int(page_size or 100))

    def _require_token(self, step: str) -> None:
        if not self.store.get_token():
            json_log("warning", "sync.no_token", step=step)
            raise PreconditionError("no auth token stored; sync skipped")

    # ---------- push ----------

    def _product_payload(self, row: dict) -> dict:
        return {
            "id": row["id"],
            "name": row["name"],
            "barcode": row["barcode"],
            "category": row["category"],
            "sellingPrice": row["sellingPrice"],
            "purchasePrice": row["purchasePrice"],
        }

    def _mark_product_synced(self, row: dict) -> None:
        self.store.execute(
            "UPDATE products SET syncStatus = ? WHERE id = ? AND syncStatus = ? AND updatedAt = ?",
            (SYNC_SYNCED, row["id"], SYNC_PENDING, row["updatedAt"]),
        )

    def _push_product(self, row: dict) -> str:
        payload = self._product_payload(row)
        if row["deleted"]:
            try:
                self.api.update_product(row["id"], {"deleted": True})
            except NotFoundError:
                # Deleted before its first push. Sales and stock may still
                # reference it, so create it on the server and retire it there.
                try:
                    self.api.create_product(payload)
                except ConflictError:
                    json_log("warning", "sync.product.barcode_conflict", product_id=row["id"], barcode=row["barcode"])
                    return "deleted"
                self.api.update_product(row["id"], {"deleted": True})
            return "deleted"
        try:
            self.api.create_product(payload)
            return "created"
        except ConflictError:
            pass
        # Already on the server (a retried create, or a later local edit).
        # Send the current fields; a 404 here means the conflict was a
        # barcode owned by another id, which still counts as reconciled.
        fields = {k: v for k, v in payload.items() if k != "id"}
        try:
            self.api.update_product(row["id"], fields)
        except NotFoundError:
            json_log("warning", "sync.product.barcode_conflict", product_id=row["id"], barcode=row["barcode"])
        return "reconciled"

    def sync_products_up(self, report: Optional[SyncReport] = None) -> EntityCounts:
        self._require_token("products_up")
        counts = report.products if report else EntityCounts()
        rows = self.store.query(
            """
            SELECT id, name, barcode, category, sellingPrice, purchasePrice, updatedAt, deleted
            FROM products WHERE syncStatus = ? ORDER BY createdAt
            """,
            (SYNC_PENDING,),
        )
        if rows:
            json_log("info", "sync.products.push", count=len(rows))
        for row in rows:
            try:
                outcome = self._push_product(row)
                self._mark_product_synced(row)
                counts.pushed += 1
                if outcome == "reconciled":
                    json_log("info", "sync.product.already_exists", product_id=row["id"])
            except PreconditionError:
                raise
            except Exception as ex:
                counts.failed += 1
                json_log("error", "sync.product.push_failed", product_id=row["id"], error=str(ex))
        return counts

    def sync_inventory_up(self, report: Optional[SyncReport] = None) -> EntityCounts:
        self._require_token("inventory_up")
        counts = report.inventory if report else EntityCounts()
        rows = ledger.pending_records(self.store)
        if rows:
            json_log("info", "sync.inventory.push", count=len(rows))
        for row in rows:
            try:
                self.api.set_inventory(row["productId"], int(row["quantity"]))
                ledger.mark_synced(self.store, row["productId"], row["updatedAt"])
                counts.pushed += 1
            except PreconditionError:
                raise
            except Exception as ex:
                counts.failed += 1
                json_log("error", "sync.inventory.push_failed", product_id=row["productId"], error=str(ex))
        return counts

    def _pending_sales(self) -> list[dict]:
        sales = self.store.query(
            "SELECT id, totalAmount, createdAt FROM sales WHERE syncStatus = ? ORDER BY createdAt",
            (SYNC_PENDING,),
        )
        out = []
        for s in sales:
            items = self.store.query(
                "SELECT productId, quantity, priceAtSale FROM sale_items WHERE saleId = ? ORDER BY rowid",
                (s["id"],),
            )
            out.append(
                {
                    "id": s["id"],
                    "totalAmount": s["totalAmount"],
                    "createdAt": s["createdAt"],
                    "items": items,
                }
            )
        return out

    def sync_sales_up(self, report: Optional[SyncReport] = None) -> EntityCounts:
        self._require_token("sales_up")
        counts = report.sales if report else EntityCounts()
        sales = self._pending_sales()
        if not sales:
            return counts
        json_log("info", "sync.sales.push", count=len(sales))
        try:
            results = self.api.sync_sales(sales)
        except PreconditionError:
            raise
        except Exception as ex:
            counts.failed += len(sales)
            json_log("error", "sync.sales.push_failed", count=len(sales), error=str(ex))
            return counts

        by_id = {str(r.get("id")): str(r.get("status") or "") for r in results}
        for s in sales:
            status = by_id.get(s["id"])
            if status in SALE_OK_STATUSES:
                self.store.execute(
                    "UPDATE sales SET syncStatus = ? WHERE id = ? AND syncStatus = ?",
                    (SYNC_SYNCED, s["id"], SYNC_PENDING),
                )
                counts.pushed += 1
            else:
                counts.failed += 1
                json_log("warning", "sync.sale.rejected", sale_id=s["id"], status=status or "missing")
        return counts

    def sync_up(self, report: Optional[SyncReport] = None) -> SyncReport:
        report = report or SyncReport()
        self._require_token("sync_up")
        # Products first: inventory rows and sale lines reference them.
        self.sync_products_up(report)
        self.sync_inventory_up(report)
        self.sync_sales_up(report)
        return report

    # ---------- pull ----------

    def _local_status(self, table: str, row_id: str) -> Optional[str]:
        return self.store.scalar(f"SELECT syncStatus FROM {table} WHERE id = ?", (row_id,))

    def _apply_remote_product(self, p: dict, counts: EntityCounts) -> None:
        pid = str(p.get("id") or "")
        if not pid:
            return
        if self._local_status("products", pid) == SYNC_PENDING:
            counts.skipped += 1
            return
        now = iso_now()
        self.store.execute(
            """
            INSERT INTO products (id, name, barcode, category, sellingPrice, purchasePrice,
                                  createdAt, updatedAt, deleted, syncStatus)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              name=excluded.name,
              barcode=excluded.barcode,
              category=excluded.category,
              sellingPrice=excluded.sellingPrice,
              purchasePrice=excluded.purchasePrice,
              createdAt=excluded.createdAt,
              updatedAt=excluded.updatedAt,
              deleted=excluded.deleted,
              syncStatus=excluded.syncStatus
            """,
            (
                pid,
                p.get("name"),
                p.get("barcode"),
                p.get("category"),
                to_money(p.get("sellingPrice")),
                to_money(p.get("purchasePrice")),
                p.get("createdAt") or now,
                p.get("updatedAt") or now,
                1 if p.get("deleted") else 0,
                SYNC_SYNCED,
            ),
        )
        counts.pulled += 1

    def sync_products_down(self, report: Optional[SyncReport] = None) -> EntityCounts:
        self._require_token("products_down")
        report = report or SyncReport()
        counts = report.products
        total = 0
        for rows in self.api.iter_pages(self.api.list_products, self.page_size):
            total += len(rows)
            with self.store.transaction():
                for p in rows:
                    try:
                        with self.store.savepoint():
                            self._apply_remote_product(p, counts)
                            inv = p.get("inventory")
                            if isinstance(inv, dict) and inv.get("quantity") is not None:
                                outcome = ledger.apply_remote_quantity(self.store, str(p["id"]), int(inv["quantity"]))
                                if outcome == "skipped":
                                    report.inventory.skipped += 1
                                else:
                                    report.inventory.pulled += 1
                    except sqlite3.IntegrityError as ex:
                        # e.g. the barcode belongs to a different, unpushed local product.
                        counts.failed += 1
                        json_log("error", "sync.product.pull_failed", product_id=p.get("id"), error=str(ex))
        json_log("info", "sync.products.pulled", count=total)
        return counts

    def _apply_remote_sale(self, s: dict, counts: EntityCounts) -> None:
        sid = str(s.get("id") or "")
        if not sid:
            return
        if self._local_status("sales", sid) == SYNC_PENDING:
            counts.skipped += 1
            return
        self.store.execute(
            """
            INSERT INTO sales (id, totalAmount, createdAt, syncStatus)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              totalAmount=excluded.totalAmount,
              createdAt=excluded.createdAt,
              syncStatus=excluded.syncStatus
            """,
            (sid, to_money(s.get("totalAmount")), s.get("createdAt") or iso_now(), SYNC_SYNCED),
        )
        # Replace the lines wholesale so the local sale matches the server exactly.
        self.store.execute("DELETE FROM sale_items WHERE saleId = ?", (sid,))
        for idx, it in enumerate(s.get("items") or []):
            self.store.execute(
                """
                INSERT INTO sale_items (id, saleId, productId, quantity, priceAtSale)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    it.get("id") or f"{sid}_{idx}",
                    sid,
                    it.get("productId"),
                    int(it.get("quantity") or 0),
                    to_money(it.get("priceAtSale")),
                ),
            )
        counts.pulled += 1

    def sync_sales_down(self, report: Optional[SyncReport] = None) -> EntityCounts:
        self._require_token("sales_down")
        counts = report.sales if report else EntityCounts()
        total = 0
        for rows in self.api.iter_pages(self.api.list_sales, self.page_size):
            total += len(rows)
            with self.store.transaction():
                for s in rows:
                    try:
                        with self.store.savepoint():
                            self._apply_remote_sale(s, counts)
                    except sqlite3.IntegrityError as ex:
                        counts.failed += 1
                        json_log("error", "sync.sale.pull_failed", sale_id=s.get("id"), error=str(ex))
        json_log("info", "sync.sales.pulled", count=total)
        return counts

    def sync_down(self, report: Optional[SyncReport] = None) -> SyncReport:
        report = report or SyncReport()
        self._require_token("sync_down")
        self.sync_products_down(report)
        self.sync_sales_down(report)
        return report

    # ---------- full cycle ----------

    def sync_all(self) -> SyncReport:
        self._require_token("sync_all")
        report = SyncReport(started_at=iso_now())
        try:
            self.sync_up(report)
            self.sync_down(report)
        except Exception as ex:
            json_log("error", "sync.failed", error=str(ex), kind=getattr(getattr(ex, "kind", None), "value", None))
            raise
        report.finished_at = iso_now()
        self.store.set_setting(LAST_SYNC_KEY, report.finished_at)
        json_log("info", "sync.completed", **{k: v for k, v in report.to_dict().items() if isinstance(v, dict)})
        return report
