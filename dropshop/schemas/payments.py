"""支付相关的 Pydantic 模型

IntentSnapshot 是写入支付意图 metadata 的唯一载体：创建意图时序列化一次，
支付成功后生成订单时反序列化一次，不依赖可变的购物车。
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from dropshop.schemas.base import BaseResponse

# Stripe metadata 限制：最多 50 个 key，单个 value 最长 500 字符
METADATA_VALUE_LIMIT = 500
METADATA_MAX_PARTS = 45


class CustomerInfo(BaseModel):
    """顾客信息（业务校验在服务层完成，便于返回完整错误列表）"""
    name: str = Field("", description="顾客姓名", examples=["Alice"])
    email: str = Field("", description="顾客邮箱", examples=["alice@example.com"])
    phone: Optional[str] = Field(None, description="联系电话")
    pickup_time: Optional[str] = Field(None, description="取餐时间段", examples=["12:30"])
    pickup_date: Optional[str] = Field(None, description="取餐日期 YYYY-MM-DD", examples=["2026-10-20"])
    special_instructions: Optional[str] = Field(None, description="备注")


class CartItem(BaseModel):
    """购物车商品行，id 为场次商品ID"""
    id: int = Field(..., description="场次商品ID", examples=[1])
    name: str = Field("", description="商品名称")
    quantity: int = Field(..., description="购买数量", examples=[2])
    price: Decimal = Field(..., description="前端展示单价", examples=["8.50"])


class SnapshotLine(BaseModel):
    drop_product_id: int
    name: str
    quantity: int
    unit_price: Decimal


class IntentSnapshot(BaseModel):
    hold_id: str
    drop_id: int
    customer: CustomerInfo
    lines: List[SnapshotLine]
    total_amount: Decimal

    def to_metadata(self) -> Dict[str, str]:
        """序列化为支付意图 metadata（按长度切片）"""
        payload = self.model_dump_json()
        parts = [
            payload[i:i + METADATA_VALUE_LIMIT]
            for i in range(0, len(payload), METADATA_VALUE_LIMIT)
        ]
        if len(parts) > METADATA_MAX_PARTS:
            raise ValueError(f"snapshot too large for metadata: {len(payload)} chars")

        metadata = {
            "drop_id": str(self.drop_id),
            "hold_id": self.hold_id,
            "customer_email": self.customer.email,
            "snapshot_parts": str(len(parts)),
        }
        for index, part in enumerate(parts):
            metadata[f"snapshot_{index}"] = part
        return metadata

    @classmethod
    def from_metadata(cls, metadata: Dict[str, str]) -> "IntentSnapshot":
        count = int(metadata["snapshot_parts"])
        payload = "".join(metadata[f"snapshot_{index}"] for index in range(count))
        return cls.model_validate(json.loads(payload))


# ==================== 请求模型 ====================

class CreateIntentRequest(BaseModel):
    """创建支付意图请求"""
    items: List[CartItem] = Field(default_factory=list, description="购物车商品")
    customer_info: CustomerInfo = Field(..., description="顾客信息")


class ValidateIntentRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1, max_length=128, description="支付意图ID")


# ==================== 响应模型 ====================

class CreateIntentResponse(BaseResponse):
    payment_intent_id: str
    client_secret: Optional[str] = None
    drop_id: int
    total_amount: Decimal
    reserved_until: datetime


class ValidateIntentResponse(BaseResponse):
    valid: bool
    status: str
    client_secret: Optional[str] = None
