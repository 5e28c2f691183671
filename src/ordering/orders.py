from decimal import Decimal
from typing import Any, Dict, List, Optional

# Lines are folded into the header row, so an order is read in one round trip.
# Money goes through json as text to keep NUMERIC exact.
ORDER_WITH_ITEMS_SQL = """
    SELECT o.id, o.user_id, o.total_amount, o.created_at,
           COALESCE(
               json_agg(
                   json_build_object(
                       'product_id', oi.product_id,
                       'quantity', oi.quantity,
                       'unit_price', oi.unit_price::text,
                       'line_total', oi.line_total::text
                   )
                   ORDER BY oi.product_id
               ) FILTER (WHERE oi.order_id IS NOT NULL),
               '[]'
           ) AS items
    FROM orders AS o
    LEFT JOIN order_items AS oi ON oi.order_id = o.id
    WHERE {where}
    GROUP BY o.id
    ORDER BY o.created_at DESC, o.id DESC
"""


def _with_decimal_prices(row: Dict[str, Any]) -> Dict[str, Any]:
    row["items"] = [
        {**item, "unit_price": Decimal(item["unit_price"]), "line_total": Decimal(item["line_total"])}
        for item in row["items"] or []
    ]
    return row


def _select_orders(conn, where: str, params: tuple) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(ORDER_WITH_ITEMS_SQL.format(where=where), params)
        rows = cur.fetchall() or []
    return [_with_decimal_prices(row) for row in rows]


def get_order_by_id(conn, order_id: int) -> Optional[Dict[str, Any]]:
    orders = _select_orders(conn, "o.id = %s", (order_id,))
    return orders[0] if orders else None


def list_orders_by_user(conn, user_id: int) -> List[Dict[str, Any]]:
    """Newest first; each order carries its lines."""
    return _select_orders(conn, "o.user_id = %s", (user_id,))
