from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class BaseSchema(BaseModel):
    """基础 ORM 字段"""
    model_config = ConfigDict(from_attributes=True)  # 支持从 ORM 对象直接生成 Schema

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BaseResponse(BaseModel):
    """基础响应模型"""
    success: bool = Field(
        True,
        description="请求是否成功"
    )
    message: Optional[str] = Field(
        None,
        description="响应消息"
    )
