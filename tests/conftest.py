import os
import threading
from collections import Counter, defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import psycopg2
import psycopg2.extras
import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient

load_dotenv()


class InMemoryStore:
    """
    Dict-backed stand-in for OrderStore.

    Transactions are serialized on one lock, writes are staged and only
    applied on commit, so a failing transaction leaves nothing behind.
    faults maps an operation name (or "commit") to exceptions raised on
    its next calls.
    """

    def __init__(self):
        self.products = {}
        self.orders = {}
        self.order_items = []
        self.calls = Counter()
        self.faults = defaultdict(list)
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self._next_order_id = 1
        self._lock = threading.RLock()
        self._tx = None

    def add_product(self, product_id, sku, unit_price, stock_quantity, version=1, name=None):
        self.products[product_id] = {
            "id": product_id,
            "sku": sku,
            "name": name or sku,
            "unit_price": Decimal(unit_price),
            "stock_quantity": stock_quantity,
            "version": version,
        }

    def _record(self, name):
        self.calls[name] += 1
        if self.faults[name]:
            raise self.faults[name].pop(0)

    def close(self):
        self.closed = True

    def fetch_products(self, product_ids):
        with self._lock:
            self._record("fetch_products")
            return {pid: dict(self.products[pid]) for pid in product_ids if pid in self.products}

    def resolve_skus(self, skus):
        with self._lock:
            self._record("resolve_skus")
            return {p["sku"]: pid for pid, p in self.products.items() if p["sku"] in skus}

    @contextmanager
    def transaction(self, isolation="serializable"):
        with self._lock:
            self._record("transaction")
            self._tx = {"orders": {}, "items": [], "stock": {}}
            try:
                yield self
                self._record("commit")
            except BaseException:
                self.rollbacks += 1
                raise
            else:
                for pid, (stock, version) in self._tx["stock"].items():
                    self.products[pid]["stock_quantity"] = stock
                    self.products[pid]["version"] = version
                self.orders.update(self._tx["orders"])
                self.order_items.extend(self._tx["items"])
                self.commits += 1
            finally:
                self._tx = None

    def lock_products(self, product_ids):
        self._record("lock_products")
        return {pid: dict(self.products[pid]) for pid in sorted(product_ids) if pid in self.products}

    def read_products(self, product_ids):
        self._record("read_products")
        return {pid: dict(self.products[pid]) for pid in product_ids if pid in self.products}

    def insert_order(self, user_id, total_amount):
        self._record("insert_order")
        order = {
            "id": self._next_order_id,
            "user_id": user_id,
            "total_amount": total_amount,
            "created_at": datetime.now(timezone.utc),
        }
        self._next_order_id += 1
        self._tx["orders"][order["id"]] = order
        return dict(order)

    def insert_order_items(self, order_id, lines):
        self._record("insert_order_items")
        rows = [
            {
                "order_id": order_id,
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
                "line_total": line.line_total,
            }
            for line in lines
        ]
        self._tx["items"].extend(rows)
        return [
            {k: v for k, v in r.items() if k != "order_id"}
            for r in sorted(rows, key=lambda r: r["product_id"])
        ]

    def decrement_stock(self, lines):
        self._record("decrement_stock")
        updated = set()
        for line in lines:
            row = self.products.get(line.product_id)
            if row is None:
                continue
            if row["version"] == line.version and row["stock_quantity"] >= line.quantity:
                self._tx["stock"][line.product_id] = (row["stock_quantity"] - line.quantity, row["version"] + 1)
                updated.add(line.product_id)
        return updated


class DummyConn:
    closed = 0

    def cursor(self, *args, **kwargs):
        raise AssertionError("database access not expected in this test")

    def commit(self):
        pass

    def rollback(self):
        pass

    def close(self):
        pass


@pytest.fixture()
def store():
    s = InMemoryStore()
    s.add_product(1, "A", "10.00", 5)
    s.add_product(2, "B", "3.50", 2)
    return s


@pytest.fixture()
def dummy_conn():
    return DummyConn()


@pytest.fixture()
def client():
    from ordering.main import app

    return TestClient(app)


@pytest.fixture(scope="session")
def db_conn():
    if not os.environ.get("DATABASE_URL"):
        pytest.skip("DATABASE_URL not set")
    conn = psycopg2.connect(
        os.environ["DATABASE_URL"],
        cursor_factory=psycopg2.extras.RealDictCursor,
    )
    schema_path = Path(__file__).resolve().parents[1] / "src" / "ordering" / "schema.sql"
    with conn.cursor() as cur:
        cur.execute(schema_path.read_text(encoding="utf-8"))
    conn.commit()
    yield conn
    conn.close()


@pytest.fixture()
def clean_db(db_conn):
    with db_conn.cursor() as cur:
        cur.execute(
            """
            TRUNCATE TABLE
                order_items,
                orders,
                products
            RESTART IDENTITY
            CASCADE
            """
        )
    db_conn.commit()
    return db_conn
