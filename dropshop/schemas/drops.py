"""场次 API 专用的 Pydantic 模型"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dropshop.models.drop import DropStatus
from dropshop.schemas.base import BaseResponse, BaseSchema


# ==================== 请求模型 ====================

class ChangeStatusRequest(BaseModel):
    """变更场次状态请求"""
    new_status: DropStatus = Field(
        ...,
        description="目标状态",
        examples=["active"]
    )
    force: bool = Field(
        False,
        description="管理员强制（开放无库存场次）"
    )


class DeadlineRequest(BaseModel):
    drop_date: date = Field(..., description="场次日期", examples=["2026-10-20"])
    location_id: int = Field(..., gt=0, description="取餐点ID")


class InventoryUpdateItem(BaseModel):
    product_id: int = Field(..., gt=0, description="商品ID")
    stock_quantity: int = Field(..., ge=0, description="总库存")


class InventoryUpdateRequest(BaseModel):
    inventory: List[InventoryUpdateItem] = Field(..., min_length=1)


# ==================== 响应模型 ====================

class LocationSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    code: str
    district: Optional[str] = None
    address: Optional[str] = None
    location_url: Optional[str] = None
    pickup_hour_start: time
    pickup_hour_end: time


class DropProductSchema(BaseSchema):
    """场次商品库存"""
    id: int
    drop_id: int
    product_id: int
    name: Optional[str] = None
    stock_quantity: int
    reserved_quantity: int
    available_quantity: int
    selling_price: Decimal

    @classmethod
    def from_model(cls, drop_product) -> "DropProductSchema":
        schema = cls.model_validate(drop_product)
        if drop_product.product is not None:
            schema.name = drop_product.product.name
        return schema


class DropSchema(BaseSchema):
    id: int
    date: date
    status: DropStatus
    pickup_deadline: Optional[datetime] = None
    drop_number: int
    notes: Optional[str] = None
    last_modified_by: Optional[str] = None
    location: Optional[LocationSchema] = None


class OrderabilityResponse(BaseResponse):
    """场次可下单判定"""
    drop_id: int
    orderable: bool
    reason: str
    grace_period: bool = False
    deadline: Optional[datetime] = None
    time_remaining_seconds: Optional[int] = Field(None, ge=0, description="距截单剩余秒数")
    time_remaining: Optional[str] = Field(None, description="剩余时间，如 2h 5m")


class CurrentDropResponse(BaseResponse):
    drop: Optional[DropSchema] = None
    deadline: Optional[datetime] = None
    time_remaining: Optional[str] = None
    products: List[DropProductSchema] = []


class UpcomingDropSchema(DropSchema):
    deadline: Optional[datetime] = Field(None, description="实时计算的截单时间")


class DeadlineResponse(BaseResponse):
    deadline: datetime


class InventoryResponse(BaseResponse):
    drop_id: int
    data: List[DropProductSchema] = []
