from decimal import Decimal
from typing import Any, Dict, List, Optional

PRODUCT_COLUMNS = "id, sku, name, unit_price, stock_quantity, version, created_at, updated_at"


def create_product(
    conn,
    sku: str,
    name: str,
    unit_price: Decimal,
    stock_quantity: int,
) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO products (sku, name, unit_price, stock_quantity)
            VALUES (%s, %s, %s, %s)
            RETURNING {PRODUCT_COLUMNS}
            """,
            (sku, name, unit_price, stock_quantity),
        )
        row = cur.fetchone()
    conn.commit()
    return row


def get_product_by_id(conn, product_id: int) -> Optional[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {PRODUCT_COLUMNS}
            FROM products
            WHERE id = %s
            """,
            (product_id,),
        )
        return cur.fetchone()


def update_product(
    conn,
    product_id: int,
    name: Optional[str],
    unit_price: Optional[Decimal],
    stock_quantity: Optional[int],
) -> Optional[Dict[str, Any]]:
    """Partial update; every change bumps the version token."""
    fields = []
    params: List[Any] = []

    if name is not None:
        fields.append("name = %s")
        params.append(name)
    if unit_price is not None:
        fields.append("unit_price = %s")
        params.append(unit_price)
    if stock_quantity is not None:
        fields.append("stock_quantity = %s")
        params.append(stock_quantity)

    if not fields:
        return get_product_by_id(conn, product_id)
    params.append(product_id)

    with conn.cursor() as cur:
        cur.execute(
            f"""
            UPDATE products
            SET {", ".join(fields)}, version = version + 1, updated_at = now()
            WHERE id = %s
            RETURNING {PRODUCT_COLUMNS}
            """,
            tuple(params),
        )
        row = cur.fetchone()
    conn.commit()
    return row


def delete_product(conn, product_id: int) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            """
            DELETE FROM products
            WHERE id = %s
            """,
            (product_id,),
        )
        deleted = cur.rowcount > 0
    conn.commit()
    return deleted
