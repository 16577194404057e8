"""支付 API 路由"""

import logging

from fastapi import APIRouter, Body, Depends

from dropshop.core.dependencies import get_coordinator
from dropshop.schemas.payments import (
    CreateIntentRequest,
    CreateIntentResponse,
    ValidateIntentRequest,
    ValidateIntentResponse,
)
from dropshop.services.payment_service import PaymentReservationCoordinator

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/payments",
    tags=["支付"],
    responses={
        400: {"description": "请求参数错误"},
        402: {"description": "支付被拒绝"},
        409: {"description": "库存不足或场次不可下单"},
        502: {"description": "支付服务不可用"},
    }
)


@router.post(
    "/intents",
    response_model=CreateIntentResponse,
    summary="创建支付意图",
    description="""预占购物车库存并创建支付意图。

    **特点：**
    - 多行预占全部成功或全部回滚
    - 金额以场次售价快照为准，不信任前端价格
    - 预占在支付完成前保留，超时后自动释放
    """,
    responses={
        409: {
            "description": "库存不足",
            "content": {
                "application/json": {
                    "example": {
                        "success": False,
                        "code": "insufficient_inventory",
                        "message": "部分商品已售罄",
                        "details": {
                            "unavailable": [{"drop_product_id": 3, "requested": 2, "available": 1}]
                        }
                    }
                }
            }
        }
    }
)
def create_payment_intent(
    request: CreateIntentRequest = Body(...),
    coordinator: PaymentReservationCoordinator = Depends(get_coordinator),
):
    created = coordinator.create_intent(request.items, request.customer_info)
    return CreateIntentResponse(
        payment_intent_id=created.payment_intent_id,
        client_secret=created.client_secret,
        drop_id=created.drop_id,
        total_amount=created.total_amount,
        reserved_until=created.reserved_until,
    )


@router.post(
    "/intents/validate",
    response_model=ValidateIntentResponse,
    summary="校验支付意图是否可复用",
    description="前端重新进入支付页时调用；只有待支付且库存预占仍有效的意图可以继续使用。",
)
def validate_payment_intent(
    request: ValidateIntentRequest = Body(...),
    coordinator: PaymentReservationCoordinator = Depends(get_coordinator),
):
    result = coordinator.validate_intent(request.payment_intent_id)
    return ValidateIntentResponse(
        valid=result.valid,
        status=result.status,
        client_secret=result.client_secret,
    )
