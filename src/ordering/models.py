from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class ProductCreate(BaseModel):
    sku: str
    name: str
    unit_price: Decimal = Field(ge=0, decimal_places=2)
    stock_quantity: int = Field(ge=0)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    unit_price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    stock_quantity: Optional[int] = Field(default=None, ge=0)


class ProductOut(BaseModel):
    id: int
    sku: str
    name: str
    unit_price: Decimal
    stock_quantity: int
    version: int
    created_at: datetime
    updated_at: datetime


class OrderItemIn(BaseModel):
    product_id: Optional[int] = None
    sku: Optional[str] = None
    quantity: int

    @model_validator(mode="after")
    def check_reference(self):
        if (self.product_id is None) == (self.sku is None):
            raise ValueError("Exactly one of product_id or sku is required")
        return self


class OrderCreate(BaseModel):
    user_id: int
    items: List[OrderItemIn]


class OrderItemOut(BaseModel):
    product_id: int
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderOut(BaseModel):
    id: int
    user_id: int
    total_amount: Decimal
    items: List[OrderItemOut]
    created_at: datetime


class OrderSummaryOut(BaseModel):
    id: int
    user_id: int
    total_amount: Decimal
    created_at: datetime
