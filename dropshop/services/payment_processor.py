"""支付服务适配层（Stripe）"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import stripe

from dropshop.core.config import settings
from dropshop.core.exceptions import ExternalServiceError, PaymentDeclined, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class PaymentIntentHandle:
    id: str
    status: str
    client_secret: Optional[str] = None
    amount: Optional[int] = None
    metadata: Dict[str, str] = field(default_factory=dict)


def to_minor_units(amount: Decimal) -> int:
    """金额转最小货币单位（分）"""
    minor = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(minor)


def _as_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject 不再是 dict 子类，统一转成普通 dict 再取值"""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _to_handle(obj: Any) -> PaymentIntentHandle:
    data = _as_dict(obj)
    metadata = _as_dict(data.get("metadata"))
    return PaymentIntentHandle(
        id=data["id"],
        status=data.get("status") or "",
        client_secret=data.get("client_secret"),
        amount=data.get("amount"),
        metadata={k: str(v) for k, v in metadata.items()},
    )


class StripePaymentProcessor:
    """Stripe PaymentIntent 封装，所有调用带超时与有限重试"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        currency: Optional[str] = None,
    ):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.currency = currency or settings.PAYMENT_CURRENCY

        stripe.api_key = self.api_key
        stripe.max_network_retries = settings.PAYMENT_MAX_NETWORK_RETRIES
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.PAYMENT_TIMEOUT_SECONDS)

    def _required(self) -> None:
        if not self.api_key:
            raise ExternalServiceError("Stripe 未配置，请设置 STRIPE_SECRET_KEY")

    def create_intent(
        self,
        amount: int,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentHandle:
        self._required()
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=self.currency,
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            logger.warning(f"Stripe 拒绝支付: {e.user_message}")
            raise PaymentDeclined(e.user_message or "支付被拒绝")
        except stripe.StripeError as e:
            logger.error(f"创建支付意图失败: {e}")
            raise ExternalServiceError(f"创建支付意图失败: {e.user_message or e}")

        logger.info(f"创建支付意图成功: intent_id={intent.id}, amount={amount}")
        return _to_handle(intent)

    def retrieve_intent(self, intent_id: str) -> PaymentIntentHandle:
        self._required()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.InvalidRequestError as e:
            raise ValidationError([f"支付意图不存在: {intent_id}"], message=str(e.user_message or e))
        except stripe.StripeError as e:
            logger.error(f"查询支付意图失败: intent_id={intent_id}, error={e}")
            raise ExternalServiceError(f"查询支付意图失败: {e.user_message or e}")
        return _to_handle(intent)

    def cancel_intent(self, intent_id: str) -> PaymentIntentHandle:
        self._required()
        try:
            intent = stripe.PaymentIntent.cancel(intent_id)
        except stripe.StripeError as e:
            logger.error(f"取消支付意图失败: intent_id={intent_id}, error={e}")
            raise ExternalServiceError(f"取消支付意图失败: {e.user_message or e}")
        return _to_handle(intent)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """校验 webhook 签名并解析事件"""
        if not self.webhook_secret:
            raise ExternalServiceError("STRIPE_WEBHOOK_SECRET 未配置")
        if not signature:
            raise ValidationError(["缺少 Stripe-Signature 请求头"])
        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.webhook_secret,
            )
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise ValidationError([f"Webhook 签名校验失败: {e}"])

        event_data = _as_dict(event)
        data_object = _as_dict(_as_dict(event_data.get("data")).get("object"))
        return {
            "type": event_data.get("type"),
            "intent": _to_handle(data_object) if data_object.get("object") == "payment_intent" else None,
            "last_payment_error": _as_dict(data_object.get("last_payment_error")).get("message"),
        }
