from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from dropshop.models.order import OrderStatus
from dropshop.schemas.base import BaseResponse, BaseSchema


class OrderProductSchema(BaseSchema):
    id: int
    drop_product_id: int
    order_quantity: int
    unit_price: Decimal


class OrderSchema(BaseSchema):
    id: int
    order_number: str
    drop_id: int
    client_id: Optional[int] = None
    customer_name: str
    status: OrderStatus
    payment_intent_id: str
    total_amount: Decimal
    pickup_time: str
    order_date: date
    special_instructions: Optional[str] = None
    order_products: List[OrderProductSchema] = []


class OrderLookupResponse(BaseResponse):
    order_id: int
    order_number: str
    status: OrderStatus


class OrderStatusRequest(BaseModel):
    status: OrderStatus = Field(..., description="目标订单状态", examples=["ready"])
