"""场次管理 API 路由"""

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Path, Query

from dropshop.core.dependencies import get_acting_admin, get_lifecycle
from dropshop.schemas.base import BaseResponse
from dropshop.schemas.drops import (
    ChangeStatusRequest,
    CurrentDropResponse,
    DeadlineRequest,
    DeadlineResponse,
    DropSchema,
    DropProductSchema,
    InventoryResponse,
    InventoryUpdateRequest,
    OrderabilityResponse,
    UpcomingDropSchema,
)
from dropshop.services import deadline as deadlines
from dropshop.services.drop_service import DropLifecycleManager

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/drops",
    tags=["场次管理"],
    responses={
        400: {"description": "请求参数错误"},
        404: {"description": "场次不存在"},
        409: {"description": "状态冲突"},
        500: {"description": "服务器内部错误"}
    }
)


@router.get(
    "/current",
    response_model=CurrentDropResponse,
    summary="当前可下单场次",
    description="""返回当前处于开放状态、且未超过截单时间（含宽限期）的场次及其库存。
    没有可下单场次时 drop 为空。""",
)
def get_current_drop(lifecycle: DropLifecycleManager = Depends(get_lifecycle)):
    drop = lifecycle.current_active_drop()
    if drop is None:
        return CurrentDropResponse(message="当前没有可下单的场次")

    verdict = lifecycle.orderability(drop.id)
    return CurrentDropResponse(
        drop=DropSchema.model_validate(drop),
        deadline=verdict.deadline,
        time_remaining=deadlines.format_time_remaining(verdict.time_remaining) if verdict.time_remaining else None,
        products=[DropProductSchema.from_model(dp) for dp in lifecycle.inventory(drop.id)],
    )


@router.get(
    "/upcoming",
    response_model=List[UpcomingDropSchema],
    summary="即将开放的场次",
)
def list_upcoming_drops(
    since: Optional[date] = Query(None, description="起始日期（含）", examples=["2026-10-20"]),
    lifecycle: DropLifecycleManager = Depends(get_lifecycle),
):
    drops = []
    for drop in lifecycle.upcoming_drops(since):
        schema = UpcomingDropSchema.model_validate(drop)
        schema.deadline = lifecycle.effective_deadline(drop)
        drops.append(schema)
    return drops


@router.post(
    "/calculate-deadline",
    response_model=DeadlineResponse,
    summary="计算截单时间",
    description="截单时间 = 场次日期 + 取餐点取餐结束时间（门店时区），返回 UTC。",
)
def calculate_deadline(
    request: DeadlineRequest = Body(...),
    lifecycle: DropLifecycleManager = Depends(get_lifecycle),
):
    return DeadlineResponse(deadline=lifecycle.calculate_deadline(request.drop_date, request.location_id))


@router.get(
    "/{drop_id}/orderable",
    response_model=OrderabilityResponse,
    summary="场次是否可下单",
)
def get_orderability(
    drop_id: int = Path(..., gt=0, description="场次ID"),
    lifecycle: DropLifecycleManager = Depends(get_lifecycle),
):
    verdict = lifecycle.orderability(drop_id)
    remaining = verdict.time_remaining
    return OrderabilityResponse(
        drop_id=drop_id,
        orderable=verdict.orderable,
        reason=verdict.reason,
        grace_period=verdict.grace_period,
        deadline=verdict.deadline,
        time_remaining_seconds=int(remaining.total_seconds()) if remaining is not None else None,
        time_remaining=deadlines.format_time_remaining(remaining) if remaining is not None else None,
    )


@router.put(
    "/{drop_id}/status",
    response_model=DropSchema,
    summary="变更场次状态",
    description="""合法流转：upcoming -> active / cancelled，active -> completed / cancelled。

    **注意：**
    - 开放时冻结截单时间，且至少需要一个有库存的商品（force 可跳过）
    - 取消时释放该场次所有支付中的预占，已生成的订单保留
    """,
)
def change_drop_status(
    drop_id: int = Path(..., gt=0, description="场次ID"),
    request: ChangeStatusRequest = Body(...),
    acting_admin: str = Depends(get_acting_admin),
    lifecycle: DropLifecycleManager = Depends(get_lifecycle),
):
    drop = lifecycle.change_status(drop_id, request.new_status, acting_admin, force=request.force)
    return DropSchema.model_validate(drop)


@router.delete(
    "/{drop_id}",
    response_model=BaseResponse,
    summary="删除场次",
    description="已有订单的场次不能删除（请改为取消）；存在支付中的预占时需要 force=true。",
)
def delete_drop(
    drop_id: int = Path(..., gt=0, description="场次ID"),
    force: bool = Query(False, description="强制删除（释放在途预占）"),
    acting_admin: str = Depends(get_acting_admin),
    lifecycle: DropLifecycleManager = Depends(get_lifecycle),
):
    lifecycle.delete_drop(drop_id, force=force)
    logger.info(f"管理员删除场次: drop_id={drop_id}, admin={acting_admin}")
    return BaseResponse(message="删除成功")


@router.get(
    "/{drop_id}/inventory",
    response_model=InventoryResponse,
    summary="场次库存",
)
def get_drop_inventory(
    drop_id: int = Path(..., gt=0, description="场次ID"),
    lifecycle: DropLifecycleManager = Depends(get_lifecycle),
):
    return InventoryResponse(
        drop_id=drop_id,
        data=[DropProductSchema.from_model(dp) for dp in lifecycle.inventory(drop_id)],
    )


@router.put(
    "/{drop_id}/inventory",
    response_model=InventoryResponse,
    summary="调整场次库存",
    description="库存不能低于已预占数量。",
)
def update_drop_inventory(
    drop_id: int = Path(..., gt=0, description="场次ID"),
    request: InventoryUpdateRequest = Body(...),
    acting_admin: str = Depends(get_acting_admin),
    lifecycle: DropLifecycleManager = Depends(get_lifecycle),
):
    items = [item.model_dump() for item in request.inventory]
    updated = lifecycle.update_inventory(drop_id, items, acting_admin)
    return InventoryResponse(
        drop_id=drop_id,
        message="库存更新成功",
        data=[DropProductSchema.from_model(dp) for dp in updated],
    )
