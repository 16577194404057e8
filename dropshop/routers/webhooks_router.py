"""支付回调路由

Stripe 可能重复投递、乱序投递，处理必须幂等：
    payment_intent.succeeded      -> 生成订单（已存在则直接返回）
                                     库存已无法恢复时告警管理员并返回 2xx
    payment_intent.payment_failed -> 释放预占
    payment_intent.canceled       -> 释放预占
"""

import logging

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from dropshop.core.dependencies import get_coordinator, get_materializer, get_processor
from dropshop.core.exceptions import PaidOrderUnrecoverable
from dropshop.services.order_service import OrderMaterializer
from dropshop.services.payment_processor import StripePaymentProcessor
from dropshop.services.payment_service import PaymentReservationCoordinator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["支付回调"])

RELEASE_EVENTS = {
    "payment_intent.payment_failed": "payment_failed",
    "payment_intent.canceled": "payment_canceled",
}


@router.post("/stripe", summary="Stripe 回调")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    processor: StripePaymentProcessor = Depends(get_processor),
    coordinator: PaymentReservationCoordinator = Depends(get_coordinator),
    materializer: OrderMaterializer = Depends(get_materializer),
):
    payload = await request.body()
    event = processor.construct_event(payload, stripe_signature)
    event_type = event["type"]
    intent = event["intent"]

    if intent is None:
        logger.info(f"忽略非支付意图事件: {event_type}")
        return {"received": True}

    if event_type == "payment_intent.succeeded":
        try:
            order = await run_in_threadpool(materializer.materialize, intent)
        except PaidOrderUnrecoverable as e:
            # 管理员已收到告警，返回 2xx 避免 Stripe 反复重投
            logger.error(f"支付成功但无法生成订单，已转人工处理: intent_id={intent.id}, unavailable={e.unavailable}")
            return {"received": True, "order_number": None, "alerted": True}
        return {"received": True, "order_number": order.order_number}

    if event_type in RELEASE_EVENTS:
        if event["last_payment_error"]:
            logger.info(f"支付失败: intent_id={intent.id}, error={event['last_payment_error']}")
        released = await run_in_threadpool(coordinator.release_intent, intent.id, RELEASE_EVENTS[event_type])
        return {"received": True, "released": released}

    logger.info(f"未处理的 Stripe 事件: {event_type}, intent_id={intent.id}")
    return {"received": True}
