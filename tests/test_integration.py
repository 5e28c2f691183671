"""End-to-end checks against PostgreSQL; skipped unless DATABASE_URL is set."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from ordering.db import get_conn
from ordering.errors import Conflict, InsufficientStock
from ordering.placement import place_order
from ordering.store import OrderStore


def _count(conn, table):
    with conn.cursor() as cur:
        cur.execute(f"SELECT count(*) AS n FROM {table}")
        n = cur.fetchone()["n"]
    conn.commit()
    return n


def _stock(conn, product_id):
    with conn.cursor() as cur:
        cur.execute("SELECT stock_quantity FROM products WHERE id = %s", (product_id,))
        stock = cur.fetchone()["stock_quantity"]
    conn.commit()
    return stock


@pytest.fixture()
def catalog(clean_db, client):
    a = client.post("/products", json={"sku": "A", "name": "Alpha", "unit_price": "10.00", "stock_quantity": 5}).json()
    b = client.post("/products", json={"sku": "B", "name": "Beta", "unit_price": "3.50", "stock_quantity": 2}).json()
    return a, b


def test_place_order_over_http(clean_db, client, catalog):
    a, b = catalog

    res = client.post(
        "/orders",
        json={
            "user_id": 7,
            "items": [
                {"product_id": a["id"], "quantity": 2},
                {"sku": "A", "quantity": 1},
                {"product_id": b["id"], "quantity": 2},
            ],
        },
    )
    assert res.status_code == 201
    order = res.json()
    assert Decimal(order["total_amount"]) == Decimal("37.00")

    assert client.get(f"/products/{a['id']}").json()["stock_quantity"] == 2
    assert client.get(f"/products/{b['id']}").json()["stock_quantity"] == 0
    assert client.get(f"/products/{a['id']}").json()["version"] == 2

    fetched = client.get(f"/orders/{order['id']}").json()
    assert [(i["product_id"], i["quantity"]) for i in fetched["items"]] == [(a["id"], 3), (b["id"], 2)]
    assert len(client.get("/users/7/orders").json()) == 1

    sold_out = client.post("/orders", json={"user_id": 7, "items": [{"product_id": b["id"], "quantity": 1}]})
    assert sold_out.status_code == 409
    assert sold_out.json()["detail"]["code"] == "OUT_OF_STOCK"

    referenced = client.delete(f"/products/{a['id']}")
    assert referenced.status_code == 409


def test_price_change_does_not_rewrite_history(clean_db, client, catalog):
    a, _ = catalog
    order = client.post("/orders", json={"user_id": 1, "items": [{"product_id": a["id"], "quantity": 1}]}).json()

    client.put(f"/products/{a['id']}", json={"unit_price": "99.00"})

    fetched = client.get(f"/orders/{order['id']}").json()
    assert Decimal(fetched["items"][0]["unit_price"]) == Decimal("10.00")
    assert Decimal(fetched["total_amount"]) == Decimal("10.00")


@pytest.mark.parametrize("mode", ["serializable", "version"])
def test_concurrent_orders_for_last_unit(clean_db, client, mode):
    product = client.post(
        "/products", json={"sku": "LAST", "name": "Last one", "unit_price": "1.00", "stock_quantity": 1}
    ).json()

    def attempt(user_id):
        store = OrderStore(get_conn)
        try:
            return place_order(store, user_id, [{"product_id": product["id"], "quantity": 1}], mode=mode, backoff=0)
        except (InsufficientStock, Conflict) as e:
            return e
        finally:
            store.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(8)))

    assert sum(isinstance(r, dict) for r in results) == 1
    assert _stock(clean_db, product["id"]) == 0
    assert _count(clean_db, "orders") == 1


def test_fault_after_order_header_leaves_nothing_behind(clean_db, client, catalog, monkeypatch):
    a, _ = catalog

    def failing_decrement(self, lines):
        raise RuntimeError("injected fault")

    monkeypatch.setattr(OrderStore, "decrement_stock", failing_decrement)

    store = OrderStore(get_conn)
    try:
        with pytest.raises(RuntimeError):
            place_order(store, 1, [{"product_id": a["id"], "quantity": 2}], backoff=0)
    finally:
        store.close()

    assert _count(clean_db, "orders") == 0
    assert _count(clean_db, "order_items") == 0
    assert _stock(clean_db, a["id"]) == 5
