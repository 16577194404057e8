"""订单 API 路由"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Path, Query

from dropshop.core.dependencies import get_acting_admin, get_order_service
from dropshop.core.exceptions import NotFound
from dropshop.schemas.orders import OrderLookupResponse, OrderSchema, OrderStatusRequest
from dropshop.services.order_service import OrderService, poll_for_order

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/orders",
    tags=["订单"],
    responses={
        202: {"description": "订单生成中，请稍后重试"},
        404: {"description": "订单不存在"},
        409: {"description": "状态流转不合法"},
    }
)

# 单次请求内的轮询上限，超出后由前端继续重试
WAIT_MAX_ATTEMPTS = 10


def _lookup_response(order) -> OrderLookupResponse:
    return OrderLookupResponse(order_id=order.id, order_number=order.order_number, status=order.status)


@router.get(
    "/by-payment-intent/{payment_intent_id}",
    response_model=OrderLookupResponse,
    summary="按支付意图查询订单",
)
def get_order_by_intent(
    payment_intent_id: str = Path(..., min_length=1, max_length=128, description="支付意图ID"),
    orders: OrderService = Depends(get_order_service),
):
    order = orders.find_by_intent(payment_intent_id)
    if order is None:
        raise NotFound("订单不存在或尚未生成", payment_intent_id=payment_intent_id)
    return _lookup_response(order)


@router.get(
    "/by-payment-intent/{payment_intent_id}/wait",
    response_model=OrderLookupResponse,
    summary="等待订单生成",
    description="""支付确认后轮询订单是否已由回调生成。

    超过轮询次数返回 202（materialization_timeout）：支付可能已成功，请稍后刷新。""",
)
def wait_for_order(
    payment_intent_id: str = Path(..., min_length=1, max_length=128, description="支付意图ID"),
    max_attempts: Optional[int] = Query(None, ge=1, le=WAIT_MAX_ATTEMPTS, description="最大轮询次数"),
    orders: OrderService = Depends(get_order_service),
):
    def lookup(intent_id: str):
        # 每次轮询都要看到其他事务提交的新订单
        orders.db.rollback()
        return orders.find_by_intent(intent_id)

    order = poll_for_order(lookup, payment_intent_id, max_attempts=max_attempts or WAIT_MAX_ATTEMPTS)
    return _lookup_response(order)


@router.get(
    "/{order_id}",
    response_model=OrderSchema,
    summary="订单详情",
)
def get_order(
    order_id: int = Path(..., gt=0, description="订单ID"),
    orders: OrderService = Depends(get_order_service),
):
    return OrderSchema.model_validate(orders.get_order(order_id))


@router.patch(
    "/{order_id}/status",
    response_model=OrderSchema,
    summary="更新订单状态",
    description="合法流转：pending -> confirmed -> ready -> completed，未完成前均可取消。",
)
def update_order_status(
    order_id: int = Path(..., gt=0, description="订单ID"),
    request: OrderStatusRequest = Body(...),
    acting_admin: str = Depends(get_acting_admin),
    orders: OrderService = Depends(get_order_service),
):
    order = orders.update_status(order_id, request.status)
    logger.info(f"管理员更新订单状态: order_id={order_id}, status={request.status.value}, admin={acting_admin}")
    return OrderSchema.model_validate(order)
