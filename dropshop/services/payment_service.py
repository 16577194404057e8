"""支付预占协调

下单流程：校验 -> 找到当前可下单场次 -> 多行预占（全有或全无）
-> 创建支付意图（metadata 携带订单快照）-> 回填意图ID。
预占在支付成功前一直处于“在途”状态，超时由 sweep_abandoned 自动释放。
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from dropshop.core.config import settings
from dropshop.core.exceptions import (
    ExternalServiceError,
    InsufficientInventory,
    NoActiveDrop,
    ValidationError,
)
from dropshop.models.drop import DropProduct
from dropshop.models.inventory_reservations import InventoryReservation, ReservationStatus
from dropshop.schemas.payments import CartItem, CustomerInfo, IntentSnapshot, SnapshotLine
from dropshop.services.deadline import utcnow
from dropshop.services.drop_service import DropLifecycleManager
from dropshop.services.ledger import ReservationLedger
from dropshop.services.payment_processor import StripePaymentProcessor, to_minor_units

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# 仅“待支付”状态的意图允许前端复用
REUSABLE_STATUSES = {"requires_payment_method", "requires_confirmation"}


@dataclass(frozen=True)
class CreatedIntent:
    payment_intent_id: str
    client_secret: Optional[str]
    drop_id: int
    total_amount: Decimal
    reserved_until: datetime


@dataclass(frozen=True)
class IntentValidation:
    valid: bool
    status: str
    client_secret: Optional[str] = None


def validate_customer_info(customer_info: CustomerInfo) -> List[str]:
    errors = []

    if not (customer_info.name or "").strip():
        errors.append("Customer name is required")

    email = (customer_info.email or "").strip()
    if not email:
        errors.append("Customer email is required")
    elif not EMAIL_RE.match(email):
        errors.append("Customer email is invalid")

    if not customer_info.pickup_time:
        errors.append("Pickup time is required")

    if not customer_info.pickup_date:
        errors.append("Pickup date is required")
    else:
        try:
            date.fromisoformat(customer_info.pickup_date)
        except ValueError:
            errors.append("Pickup date must be YYYY-MM-DD")

    return errors


def validate_cart_items(items: List[CartItem]) -> List[str]:
    if not items:
        return ["Cart cannot be empty"]

    errors = []
    for index, item in enumerate(items, start=1):
        if item.quantity is None or item.quantity <= 0:
            errors.append(f"Item {index}: Quantity must be greater than 0")
        if item.price is None or item.price <= 0:
            errors.append(f"Item {index}: Price must be greater than 0")
    return errors


class PaymentReservationCoordinator:
    """支付预占协调服务"""

    def __init__(
        self,
        db: Session,
        ledger: ReservationLedger,
        lifecycle: DropLifecycleManager,
        processor: StripePaymentProcessor,
        reservation_ttl: Optional[timedelta] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.processor = processor
        self.reservation_ttl = reservation_ttl or timedelta(minutes=settings.RESERVATION_TTL_MINUTES)

    def create_intent(
        self,
        items: List[CartItem],
        customer_info: CustomerInfo,
        now: Optional[datetime] = None,
    ) -> CreatedIntent:
        """预占库存并创建支付意图"""
        errors = validate_customer_info(customer_info) + validate_cart_items(items)
        if errors:
            raise ValidationError(errors)

        now = now or utcnow()
        drop = self.lifecycle.current_active_drop(now)
        if drop is None:
            raise NoActiveDrop()

        quantities = self._merge_lines(items)
        drop_products = self._drop_products(drop.id, quantities)

        hold_id = uuid.uuid4().hex
        expires_at = now + self.reservation_ttl
        self.ledger.reserve_lines(
            [(dp_id, quantity) for dp_id, quantity in quantities.items()],
            hold_id=hold_id,
            expires_at=expires_at,
            drop_id=drop.id,
        )

        names = {item.id: item.name for item in items}
        lines = [
            SnapshotLine(
                drop_product_id=dp_id,
                name=drop_products[dp_id].product.name if drop_products[dp_id].product else names.get(dp_id, ""),
                quantity=quantity,
                unit_price=drop_products[dp_id].selling_price,
            )
            for dp_id, quantity in quantities.items()
        ]
        total = sum((line.unit_price * line.quantity for line in lines), Decimal("0"))
        snapshot = IntentSnapshot(
            hold_id=hold_id,
            drop_id=drop.id,
            customer=customer_info,
            lines=lines,
            total_amount=total,
        )

        try:
            intent = self.processor.create_intent(
                amount=to_minor_units(total),
                metadata=snapshot.to_metadata(),
                idempotency_key=hold_id,
            )
        except Exception:
            # 支付意图创建失败，预占不能遗留
            self.db.rollback()
            released = self.ledger.release_hold(hold_id, source="intent_failed")
            logger.error(f"创建支付意图失败，已释放预占: hold_id={hold_id}, released={released}")
            raise

        self.ledger.attach_intent(hold_id, intent.id)
        logger.info(
            f"支付预占完成: intent_id={intent.id}, drop_id={drop.id}, hold_id={hold_id}, total={total}"
        )
        return CreatedIntent(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            drop_id=drop.id,
            total_amount=total,
            reserved_until=expires_at,
        )

    def validate_intent(self, intent_id: str) -> IntentValidation:
        """重新查询支付意图，只有待支付且预占仍有效时才可复用"""
        intent = self.processor.retrieve_intent(intent_id)

        if intent.status not in REUSABLE_STATUSES:
            logger.info(f"支付意图不可复用: intent_id={intent_id}, status={intent.status}")
            return IntentValidation(False, intent.status)

        holding = self.db.execute(
            select(InventoryReservation.id).where(
                InventoryReservation.payment_intent_id == intent_id,
                InventoryReservation.status == ReservationStatus.RESERVED,
            ).limit(1)
        ).first()
        if holding is None:
            logger.info(f"支付意图的预占已释放，不可复用: intent_id={intent_id}")
            return IntentValidation(False, intent.status)

        return IntentValidation(True, intent.status, intent.client_secret)

    def release_intent(self, intent_id: str, reason: str = "payment_failed") -> int:
        """支付失败 / 取消时释放预占"""
        released = self.ledger.release_intent(intent_id, source=reason)
        logger.info(f"释放支付意图预占: intent_id={intent_id}, reason={reason}, released={released}")
        return released

    def sweep_abandoned(self, now: Optional[datetime] = None, batch_size: int = 500) -> int:
        """释放超时未支付的预占，并尽力取消对应的支付意图"""
        now = now or utcnow()
        intent_ids = self.db.execute(
            select(InventoryReservation.payment_intent_id)
            .where(
                InventoryReservation.status == ReservationStatus.RESERVED,
                InventoryReservation.expired_at <= now,
                InventoryReservation.payment_intent_id.is_not(None),
            )
            .distinct()
        ).scalars().all()

        released = self.ledger.release_expired(now, batch_size)

        for intent_id in intent_ids:
            try:
                self.processor.cancel_intent(intent_id)
            except ExternalServiceError as e:
                # 意图可能已支付成功，交由生成订单时重新预占
                logger.warning(f"取消过期支付意图失败: intent_id={intent_id}, error={e.message}")

        return released

    # ==================== 内部方法 ====================

    @staticmethod
    def _merge_lines(items: List[CartItem]) -> Dict[int, int]:
        quantities: Dict[int, int] = {}
        for item in items:
            quantities[item.id] = quantities.get(item.id, 0) + item.quantity
        return quantities

    def _drop_products(self, drop_id: int, quantities: Dict[int, int]) -> Dict[int, DropProduct]:
        rows = self.db.execute(
            select(DropProduct).where(
                DropProduct.drop_id == drop_id,
                DropProduct.id.in_(list(quantities)),
            )
        ).unique().scalars().all()
        found = {dp.id: dp for dp in rows}

        missing = [dp_id for dp_id in quantities if dp_id not in found]
        if missing:
            # 购物车来自旧场次或商品已下架，提示前端刷新
            raise InsufficientInventory([
                {"drop_product_id": dp_id, "requested": quantities[dp_id], "available": 0}
                for dp_id in missing
            ])
        return found
