#!/usr/bin/env python3
"""
Command-line entry point for the device agent.

  python -m device.agent.cli init-db
  python -m device.agent.cli login --token <session-token>
  python -m device.agent.cli add-product --name Soap --barcode 123 --category Home --price 150 --cost 90 --qty 5
  python -m device.agent.cli checkout --item <productId>:2
  python -m device.agent.cli sync
"""

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Optional

from shopline.errors import PosError

from . import catalog, ledger
from .checkout import LocalCheckout, OnlineCheckout, checkout_with_fallback
from .config import CONFIG_PATH, load_config
from .remote import RemoteApi
from .runner import SyncRunner
from .store import LAST_SYNC_KEY, LocalStore
from .sync import SyncEngine


@dataclass
class Device:
    cfg: dict
    store: LocalStore
    api: RemoteApi
    engine: SyncEngine
    runner: SyncRunner
    local_checkout: LocalCheckout
    online_checkout: Optional[OnlineCheckout]

    def checkout(self, items) -> dict:
        return checkout_with_fallback(self.online_checkout, self.local_checkout, items)

    def login(self, token: str) -> None:
        self.store.set_token(token)
        self.runner.on_login()

    def logout(self) -> None:
        self.runner.before_logout()
        self.store.clear_token()


def build_device(cfg: dict) -> Device:
    store = LocalStore.open(cfg["db_path"])
    api = RemoteApi(cfg["api_base_url"], store.get_token, timeout_s=cfg.get("http_timeout_seconds") or 10)
    engine = SyncEngine(store, api, page_size=cfg.get("sync_page_size") or 100)
    online = OnlineCheckout(store, api) if cfg.get("prefer_online_checkout") else None
    return Device(
        cfg=cfg,
        store=store,
        api=api,
        engine=engine,
        runner=SyncRunner(engine),
        local_checkout=LocalCheckout(store),
        online_checkout=online,
    )


def _parse_item(raw: str) -> dict:
    pid, sep, qty = (raw or "").rpartition(":")
    if not sep or not pid:
        raise argparse.ArgumentTypeError(f"expected PRODUCT_ID:QTY, got {raw!r}")
    try:
        return {"productId": pid, "quantity": int(qty)}
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"quantity must be an integer in {raw!r}") from e


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pos-agent")
    parser.add_argument("--config", default=os.environ.get("POS_CONFIG_PATH", CONFIG_PATH), help="Config JSON path")
    parser.add_argument("--db", default=None, help="SQLite DB path (overrides config)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Initialize the local SQLite schema and exit")

    p = sub.add_parser("login", help="Store a session token and start a background sync")
    p.add_argument("--token", required=True)

    sub.add_parser("logout", help="Push pending rows (best effort) and forget the token")
    sub.add_parser("sync", help="Run one push+pull cycle")
    sub.add_parser("status", help="Show pending counts and dashboard stats")

    p = sub.add_parser("add-product")
    p.add_argument("--name", required=True)
    p.add_argument("--barcode", required=True)
    p.add_argument("--category", required=True)
    p.add_argument("--price", required=True, help="selling price")
    p.add_argument("--cost", required=True, help="purchase price")
    p.add_argument("--qty", type=int, default=0)

    p = sub.add_parser("restock")
    p.add_argument("--product", required=True)
    p.add_argument("--qty", type=int, required=True)

    p = sub.add_parser("set-qty")
    p.add_argument("--product", required=True)
    p.add_argument("--qty", type=int, required=True)

    p = sub.add_parser("checkout")
    p.add_argument("--item", action="append", type=_parse_item, required=True, help="PRODUCT_ID:QTY (repeatable)")
    p.add_argument("--offline", action="store_true", help="Skip the online attempt")

    sub.add_parser("products")
    p = sub.add_parser("sales")
    p.add_argument("--limit", type=int, default=20)
    return parser


def _pending_counts(store: LocalStore) -> dict:
    return {
        table: int(store.scalar(f"SELECT COUNT(1) FROM {table} WHERE syncStatus = 'pending'") or 0)
        for table in ("products", "inventory", "sales")
    }


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    if args.db:
        cfg["db_path"] = os.path.abspath(args.db)

    device = build_device(cfg)
    try:
        cmd = args.command
        if cmd == "init-db":
            _print({"ok": True, "db_path": cfg["db_path"]})
        elif cmd == "login":
            device.login(args.token)
            device.runner.wait()
            _print({"ok": True, "sync": device.runner.status()})
        elif cmd == "logout":
            device.logout()
            _print({"ok": True, "sync": device.runner.status()})
        elif cmd == "sync":
            report = device.engine.sync_all()
            _print(report.to_dict())
        elif cmd == "status":
            _print(
                {
                    "pending": _pending_counts(device.store),
                    "last_sync_at": device.store.get_setting(LAST_SYNC_KEY),
                    "stats": catalog.dashboard_stats(device.store, int(cfg.get("low_stock_threshold") or 3)),
                    "low_stock": ledger.low_stock(device.store, int(cfg.get("low_stock_threshold") or 3)),
                    "recent_sales": catalog.recent_sales(device.store),
                }
            )
        elif cmd == "add-product":
            pid = catalog.create_product(
                device.store, args.name, args.barcode, args.category, args.price, args.cost, args.qty
            )
            _print(catalog.get_product(device.store, pid))
        elif cmd == "restock":
            _print(ledger.restock(device.store, args.product, args.qty))
        elif cmd == "set-qty":
            _print(ledger.set_quantity(device.store, args.product, args.qty))
        elif cmd == "checkout":
            if args.offline:
                _print(device.local_checkout.checkout(args.item))
            else:
                _print(device.checkout(args.item))
        elif cmd == "products":
            _print(catalog.list_products(device.store))
        elif cmd == "sales":
            _print(catalog.list_sales(device.store, args.limit))
        return 0
    except PosError as ex:
        _print({"error": ex.message, "kind": ex.kind.value})
        return 1
    finally:
        device.store.close()


if __name__ == "__main__":
    sys.exit(main())
