from typing import List

from fastapi import APIRouter, HTTPException
from psycopg2.errors import IntegrityError, UniqueViolation

from .db import get_conn
from .errors import (
    Conflict,
    EmptyOrder,
    InsufficientStock,
    InvalidOrderLine,
    InvalidQuantity,
    ProductNotFound,
    StoreUnavailable,
    Unavailable,
)
from .helpers import resolve_item_skus
from .models import (
    OrderCreate,
    OrderOut,
    OrderSummaryOut,
    ProductCreate,
    ProductOut,
    ProductUpdate,
)
from .orders import get_order_by_id, list_orders_by_user
from .placement import place_order
from .products import create_product, delete_product, get_product_by_id, update_product
from .store import OrderStore

router = APIRouter()


@router.post("/products", response_model=ProductOut, status_code=201)
def create_product_endpoint(payload: ProductCreate):
    conn = get_conn()
    try:
        return create_product(conn, payload.sku, payload.name, payload.unit_price, payload.stock_quantity)
    except UniqueViolation:
        conn.rollback()
        raise HTTPException(status_code=409, detail="SKU already exists")
    finally:
        conn.close()


@router.get("/products/{product_id}", response_model=ProductOut)
def get_product_endpoint(product_id: int):
    conn = get_conn()
    try:
        row = get_product_by_id(conn, product_id)
        if not row:
            raise HTTPException(status_code=404, detail="Product not found")
        return row
    finally:
        conn.close()


@router.put("/products/{product_id}", response_model=ProductOut)
def update_product_endpoint(product_id: int, payload: ProductUpdate):
    conn = get_conn()
    try:
        row = update_product(conn, product_id, payload.name, payload.unit_price, payload.stock_quantity)
        if not row:
            raise HTTPException(status_code=404, detail="Product not found")
        return row
    finally:
        conn.close()


@router.delete("/products/{product_id}", status_code=204)
def delete_product_endpoint(product_id: int):
    conn = get_conn()
    try:
        deleted = delete_product(conn, product_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Product not found")
    except IntegrityError:
        conn.rollback()
        raise HTTPException(status_code=409, detail="Product is referenced by orders")
    finally:
        conn.close()


@router.post("/orders", response_model=OrderOut, status_code=201)
def create_order_endpoint(payload: OrderCreate):
    store = OrderStore(get_conn)
    try:
        items = resolve_item_skus(store, [i.model_dump() for i in payload.items])
        return place_order(store, payload.user_id, items)
    except (EmptyOrder, InvalidOrderLine, InvalidQuantity) as e:
        raise HTTPException(status_code=400, detail={"code": e.code, "message": str(e)})
    except ProductNotFound as e:
        raise HTTPException(status_code=404, detail={"code": e.code, "product_id": e.product_id})
    except InsufficientStock as e:
        raise HTTPException(
            status_code=409,
            detail={
                "code": e.code,
                "product_id": e.product_id,
                "available": e.available,
                "requested": e.requested,
            },
        )
    except Conflict as e:
        raise HTTPException(status_code=409, detail={"code": e.code, "attempts": e.attempts})
    except (Unavailable, StoreUnavailable):
        raise HTTPException(status_code=503, detail={"code": Unavailable.code})
    finally:
        store.close()


@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order_endpoint(order_id: int):
    conn = get_conn()
    try:
        order = get_order_by_id(conn, order_id)
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")
        return order
    finally:
        conn.close()


@router.get("/users/{user_id}/orders", response_model=List[OrderSummaryOut])
def list_user_orders_endpoint(user_id: int):
    conn = get_conn()
    try:
        return list_orders_by_user(conn, user_id)
    finally:
        conn.close()
