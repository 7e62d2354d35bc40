from decimal import Decimal

import pytest

from device.agent import catalog, ledger
from device.agent.checkout import LocalCheckout
from device.agent.store import LAST_SYNC_KEY, SYNC_PENDING, SYNC_SYNCED
from device.agent.sync import SyncEngine
from shopline.errors import NetworkError, PreconditionError, TransactionError


def _status(store, table, row_id):
    return store.scalar(f"SELECT syncStatus FROM {table} WHERE id = ?", (row_id,))


def _engine(store, api, page_size=100):
    return SyncEngine(store, api, page_size=page_size)


def test_every_entry_point_requires_a_token(store, api):
    engine = _engine(store, api)
    for op in (engine.sync_up, engine.sync_down, engine.sync_all):
        with pytest.raises(PreconditionError):
            op()
    assert api.calls == []


def test_push_creates_products_stock_and_sales(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 5)
    sale = LocalCheckout(store).checkout([{"productId": pid, "quantity": 2}])

    report = _engine(store, api).sync_up()

    assert report.products.pushed == 1
    assert report.inventory.pushed == 1
    assert report.sales.pushed == 1
    assert api.products[pid]["sellingPrice"] == Decimal("10.00")
    assert api.inventory[pid] == 3
    assert api.sales[sale["id"]]["totalAmount"] == Decimal("20.00")
    assert _status(store, "products", pid) == SYNC_SYNCED
    assert ledger.get_record(store, pid)["syncStatus"] == SYNC_SYNCED
    assert _status(store, "sales", sale["id"]) == SYNC_SYNCED
    # Products before stock before sales.
    assert api.paths("POST") == ["/products", "/inventory/set", "/sales/sync"]


def test_synced_rows_are_not_pushed_again(logged_in, api):
    store = logged_in
    catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 5)
    engine = _engine(store, api)
    engine.sync_up()
    api.calls.clear()

    engine.sync_up()

    assert api.paths("POST") == []


def test_product_conflict_counts_as_reconciled(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 0)
    # A previous push reached the server but the device never saw the response.
    api.seed_product(pid, "Alpha", "A1", "9")

    counts = _engine(store, api).sync_products_up()

    assert counts.pushed == 1
    assert counts.failed == 0
    assert _status(store, "products", pid) == SYNC_SYNCED
    assert api.products[pid]["sellingPrice"] == Decimal("10.00")
    assert api.paths() == ["/products", f"/products/{pid}"]


def test_barcode_owned_by_another_product_is_still_marked_synced(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 0)
    api.seed_product("someone-else", "Other", "A1", "3")

    counts = _engine(store, api).sync_products_up()

    assert counts.pushed == 1
    assert _status(store, "products", pid) == SYNC_SYNCED
    assert pid not in api.products


def test_deleted_product_is_pushed_as_flag(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 0)
    engine = _engine(store, api)
    engine.sync_products_up()
    catalog.delete_product(store, pid)

    engine.sync_products_up()

    assert api.products[pid]["deleted"] is True
    assert _status(store, "products", pid) == SYNC_SYNCED


def test_one_failing_row_does_not_stop_the_others(logged_in, api):
    store = logged_in
    bad = catalog.create_product(store, "Bad", "B1", "misc", "10", "6", 0)
    good = catalog.create_product(store, "Good", "G1", "misc", "10", "6", 0)
    real_create = api._create_product

    def _create(data):
        if data["id"] == bad:
            raise TransactionError("server exploded")
        return real_create(data)

    api._create_product = _create

    counts = _engine(store, api).sync_products_up()

    assert counts.pushed == 1
    assert counts.failed == 1
    assert _status(store, "products", bad) == SYNC_PENDING
    assert _status(store, "products", good) == SYNC_SYNCED


def test_rejected_token_aborts_the_cycle(logged_in, api):
    store = logged_in
    catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 0)
    api.failures[("POST", "/products")] = PreconditionError("invalid token")

    with pytest.raises(PreconditionError):
        _engine(store, api).sync_all()

    assert "/inventory/set" not in api.paths()
    assert store.get_setting(LAST_SYNC_KEY) is None


def test_row_edited_during_push_stays_pending(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 0)

    def _edit_while_in_flight(method, path, payload):
        if path == "/products":
            store.execute(
                "UPDATE products SET name = ?, updatedAt = ? WHERE id = ?",
                ("Alpha v2", "2099-01-01T00:00:00.000Z", pid),
            )

    api.before_request = _edit_while_in_flight

    _engine(store, api).sync_products_up()

    assert _status(store, "products", pid) == SYNC_PENDING


def test_sales_statuses(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 10)
    engine = _engine(store, api)
    engine.sync_products_up()
    first = LocalCheckout(store).checkout([{"productId": pid, "quantity": 1}])
    second = LocalCheckout(store).checkout([{"productId": pid, "quantity": 1}])
    # The first sale already reached the server in an earlier, interrupted cycle.
    api.sales[first["id"]] = {"id": first["id"], "totalAmount": Decimal("10.00"), "createdAt": "x", "items": []}
    # The second one is corrupt locally.
    store.execute("UPDATE sales SET totalAmount = ? WHERE id = ?", (Decimal("999.00"), second["id"]))

    counts = engine.sync_sales_up()

    assert counts.pushed == 1
    assert counts.failed == 1
    assert _status(store, "sales", first["id"]) == SYNC_SYNCED
    assert _status(store, "sales", second["id"]) == SYNC_PENDING


def test_sales_batch_network_failure_keeps_everything_pending(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 10)
    sale = LocalCheckout(store).checkout([{"productId": pid, "quantity": 1}])
    api.failures[("POST", "/sales/sync")] = NetworkError("timeout")

    counts = _engine(store, api).sync_sales_up()

    assert counts.failed == 1
    assert _status(store, "sales", sale["id"]) == SYNC_PENDING


def test_pull_applies_server_rows(logged_in, api):
    store = logged_in
    api.seed_product("p1", "Alpha", "A1", "10", qty=4)
    api.seed_sale("s1", [{"productId": "p1", "quantity": 2, "priceAtSale": "10"}])

    report = _engine(store, api).sync_down()

    assert report.products.pulled == 1
    assert report.inventory.pulled == 1
    assert report.sales.pulled == 1
    p = catalog.get_product(store, "p1")
    assert p["syncStatus"] == SYNC_SYNCED
    assert p["quantity"] == 4
    sale = catalog.get_sale(store, "s1")
    assert sale["totalAmount"] == Decimal("20.00")
    assert sale["syncStatus"] == SYNC_SYNCED
    assert [it["productId"] for it in sale["items"]] == ["p1"]


def test_pull_never_overwrites_pending_rows(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Local name", "A1", "misc", "10", "6", 7)
    before = store.query_one("SELECT * FROM products WHERE id = ?", (pid,))
    before_inv = ledger.get_record(store, pid)
    api.seed_product(pid, "Server name", "A1", "99", qty=1)

    report = _engine(store, api).sync_down()

    assert report.products.skipped == 1
    assert report.inventory.skipped == 1
    assert store.query_one("SELECT * FROM products WHERE id = ?", (pid,)) == before
    assert ledger.get_record(store, pid) == before_inv


def test_pull_pages_through_everything(logged_in, api):
    store = logged_in
    for i in range(5):
        api.seed_product(f"p{i}", f"Item {i}", f"bc{i}", "1", qty=i)

    _engine(store, api, page_size=2).sync_products_down()

    assert store.scalar("SELECT COUNT(*) FROM products") == 5
    assert api.paths("GET") == ["/products", "/products", "/products"]


def test_pull_isolates_rows_that_violate_local_constraints(logged_in, api):
    store = logged_in
    # Unpushed local product already uses this barcode under another id.
    catalog.create_product(store, "Local", "DUP", "misc", "1", "1", 0)
    api.seed_product("remote-1", "Remote", "DUP", "1")
    api.seed_product("remote-2", "Fine", "OK", "1")

    counts = _engine(store, api).sync_products_down()

    assert counts.failed == 1
    assert catalog.get_product(store, "remote-1") is None
    assert catalog.get_product(store, "remote-2") is not None


def test_full_cycle_pushes_before_pulling(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 5)
    LocalCheckout(store).checkout([{"productId": pid, "quantity": 2}])

    report = _engine(store, api).sync_all()

    first_get = next(i for i, (m, _) in enumerate(api.calls) if m == "GET")
    assert all(m == "POST" for m, _ in api.calls[:first_get])
    assert report.finished_at is not None
    assert store.get_setting(LAST_SYNC_KEY) == report.finished_at
    # Round trip leaves the device matching the server.
    assert ledger.get_quantity(store, pid) == 3
    assert store.scalar("SELECT COUNT(*) FROM sales WHERE syncStatus = ?", (SYNC_PENDING,)) == 0


def _pending(store):
    return {
        table: store.scalar(f"SELECT COUNT(*) FROM {table} WHERE syncStatus = ?", (SYNC_PENDING,))
        for table in ("products", "inventory", "sales")
    }


def test_product_deleted_before_first_push_still_delivers_its_sale(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 5)
    sale = LocalCheckout(store).checkout([{"productId": pid, "quantity": 2}])
    catalog.delete_product(store, pid)
    engine = _engine(store, api)

    engine.sync_all()

    assert api.products[pid]["deleted"] is True
    assert api.inventory[pid] == 3
    assert api.sales[sale["id"]]["totalAmount"] == Decimal("20.00")
    assert _pending(store) == {"products": 0, "inventory": 0, "sales": 0}

    api.calls.clear()
    engine.sync_all()
    assert api.paths("POST") == []
    assert api.paths("PATCH") == []


def test_deleted_product_with_taken_barcode_is_not_retried(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 0)
    catalog.delete_product(store, pid)
    api.seed_product("someone-else", "Other", "A1", "3")

    counts = _engine(store, api).sync_products_up()

    assert counts.pushed == 1
    assert counts.failed == 0
    assert pid not in api.products
    assert _status(store, "products", pid) == SYNC_SYNCED


def test_synced_product_deleted_with_unpushed_stock_converges(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 5)
    engine = _engine(store, api)
    engine.sync_all()
    sale = LocalCheckout(store).checkout([{"productId": pid, "quantity": 1}])
    catalog.delete_product(store, pid)

    report = engine.sync_all()

    assert report.inventory.failed == 0
    assert api.products[pid]["deleted"] is True
    assert api.inventory[pid] == 4
    assert sale["id"] in api.sales
    assert _pending(store) == {"products": 0, "inventory": 0, "sales": 0}


def test_pull_skips_pending_sale_untouched(logged_in, api):
    store = logged_in
    pid = catalog.create_product(store, "Alpha", "A1", "misc", "10", "6", 5)
    sale = LocalCheckout(store).checkout([{"productId": pid, "quantity": 1}])
    before = store.query_one("SELECT * FROM sales WHERE id = ?", (sale["id"],))
    before_items = store.query("SELECT * FROM sale_items WHERE saleId = ?", (sale["id"],))
    api.seed_product(pid, "Alpha", "A1", "10", qty=5)
    api.seed_sale(sale["id"], [{"productId": pid, "quantity": 3, "priceAtSale": "10"}])

    counts = _engine(store, api).sync_sales_down()

    assert counts.skipped == 1
    assert store.query_one("SELECT * FROM sales WHERE id = ?", (sale["id"],)) == before
    assert store.query("SELECT * FROM sale_items WHERE saleId = ?", (sale["id"],)) == before_items


def test_pull_replaces_items_of_synced_sale(logged_in, api):
    store = logged_in
    api.seed_product("p1", "Alpha", "A1", "10", qty=9)
    api.seed_product("p2", "Beta", "B1", "4", qty=9)
    api.seed_sale("s1", [
        {"productId": "p1", "quantity": 1, "priceAtSale": "10"},
        {"productId": "p2", "quantity": 2, "priceAtSale": "4"},
    ])
    engine = _engine(store, api)
    engine.sync_down()
    api.seed_sale("s1", [{"productId": "p1", "quantity": 3, "priceAtSale": "10"}])

    engine.sync_down()

    items = store.query("SELECT id, productId, quantity FROM sale_items WHERE saleId = ? ORDER BY id", ("s1",))
    assert items == [{"id": "s1_0", "productId": "p1", "quantity": 3}]
    sale = catalog.get_sale(store, "s1")
    assert sale["totalAmount"] == Decimal("30.00")
    assert sale["syncStatus"] == SYNC_SYNCED
