import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Set

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from .config import DB_STATEMENT_TIMEOUT_MS
from .errors import SerializationConflict, StoreUnavailable
from .helpers import PlanLine

logger = logging.getLogger(__name__)

ISOLATION_LEVELS = {
    "serializable": "SERIALIZABLE",
    "read_committed": "READ COMMITTED",
}


class OrderStore:
    """
    Persistence operations used by order placement.

    Wraps one psycopg2 connection, opened lazily through `connect`. A
    connection that fails at the transport level is dropped so the next
    attempt reconnects.
    """

    def __init__(self, connect: Callable[[], Any], statement_timeout_ms: int = DB_STATEMENT_TIMEOUT_MS):
        self._connect = connect
        self._conn = None
        self.statement_timeout_ms = statement_timeout_ms

    @property
    def conn(self):
        if self._conn is None or self._conn.closed:
            with self._driver_errors():
                self._conn = self._connect()
        return self._conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    @contextmanager
    def _driver_errors(self, commit_sent: bool = False):
        try:
            yield
        except psycopg2.extensions.TransactionRollbackError as e:
            # 40001 serialization_failure, 40P01 deadlock_detected
            raise SerializationConflict(str(e).strip()) from e
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self.close()
            raise StoreUnavailable(str(e).strip() or e.__class__.__name__, commit_sent=commit_sent) from e

    def _rollback(self) -> None:
        if self._conn is None or self._conn.closed:
            return
        try:
            self._conn.rollback()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            logger.warning("Rollback failed, dropping connection", exc_info=True)
            self.close()

    @contextmanager
    def transaction(self, isolation: str = "serializable"):
        """Run the block as one transaction; commit on success, roll back on any error."""
        level = ISOLATION_LEVELS[isolation]
        conn = self.conn
        try:
            with self._driver_errors():
                if conn.get_transaction_status() != psycopg2.extensions.TRANSACTION_STATUS_IDLE:
                    conn.rollback()
                with conn.cursor() as cur:
                    cur.execute(f"SET TRANSACTION ISOLATION LEVEL {level}")
                    if self.statement_timeout_ms:
                        cur.execute("SET LOCAL statement_timeout = %s", (self.statement_timeout_ms,))
            yield self
        except BaseException:
            self._rollback()
            raise

        with self._driver_errors(commit_sent=True):
            conn.commit()

    def fetch_products(self, product_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        """Bulk snapshot read of products, outside any write transaction."""
        with self._driver_errors():
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, sku, name, unit_price, stock_quantity, version
                    FROM products
                    WHERE id = ANY(%s)
                    """,
                    (list(product_ids),),
                )
                rows = cur.fetchall() or []
            # end the read-only transaction psycopg2 opened implicitly
            self.conn.commit()
        return {r["id"]: r for r in rows}

    def lock_products(self, product_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        with self._driver_errors():
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, unit_price, stock_quantity, version
                    FROM products
                    WHERE id = ANY(%s)
                    ORDER BY id
                    FOR UPDATE
                    """,
                    (list(product_ids),),
                )
                rows = cur.fetchall() or []
        return {r["id"]: r for r in rows}

    def read_products(self, product_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        with self._driver_errors():
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, unit_price, stock_quantity, version
                    FROM products
                    WHERE id = ANY(%s)
                    """,
                    (list(product_ids),),
                )
                rows = cur.fetchall() or []
        return {r["id"]: r for r in rows}

    def insert_order(self, user_id: int, total_amount) -> Dict[str, Any]:
        with self._driver_errors():
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO orders (user_id, total_amount)
                    VALUES (%s, %s)
                    RETURNING id, user_id, total_amount, created_at
                    """,
                    (user_id, total_amount),
                )
                return cur.fetchone()

    def insert_order_items(self, order_id: int, lines: List[PlanLine]) -> List[Dict[str, Any]]:
        with self._driver_errors():
            with self.conn.cursor() as cur:
                rows = psycopg2.extras.execute_values(
                    cur,
                    """
                    INSERT INTO order_items (order_id, product_id, quantity, unit_price, line_total)
                    VALUES %s
                    RETURNING product_id, quantity, unit_price, line_total
                    """,
                    [(order_id, line.product_id, line.quantity, line.unit_price, line.line_total) for line in lines],
                    page_size=max(len(lines), 1),
                    fetch=True,
                )
        return sorted(rows, key=lambda r: r["product_id"])

    def decrement_stock(self, lines: List[PlanLine]) -> Set[int]:
        """
        Deduct stock for every line in one statement.

        A row is only touched while its version still matches the one the
        plan was priced from and it holds enough stock. Returns the ids of
        the rows that were updated.
        """
        with self._driver_errors():
            with self.conn.cursor() as cur:
                rows = psycopg2.extras.execute_values(
                    cur,
                    """
                    UPDATE products AS p
                    SET stock_quantity = p.stock_quantity - v.quantity,
                        version = p.version + 1,
                        updated_at = now()
                    FROM (VALUES %s) AS v (id, quantity, version)
                    WHERE p.id = v.id
                      AND p.version = v.version
                      AND p.stock_quantity >= v.quantity
                    RETURNING p.id
                    """,
                    [(line.product_id, line.quantity, line.version) for line in lines],
                    template="(%s::bigint, %s::integer, %s::bigint)",
                    page_size=max(len(lines), 1),
                    fetch=True,
                )
        return {r["id"] for r in rows}

    def resolve_skus(self, skus: Iterable[str]) -> Dict[str, int]:
        with self._driver_errors():
            with self.conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, sku
                    FROM products
                    WHERE sku = ANY(%s)
                    """,
                    (list(skus),),
                )
                rows = cur.fetchall() or []
            self.conn.commit()
        return {r["sku"]: r["id"] for r in rows}
