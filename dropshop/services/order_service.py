"""订单生成与查询

OrderMaterializer 在支付成功通知到达时把预占确认为订单。通知可能重复投递、
也可能并发到达，幂等性由三层保证：先按意图ID查询、Redlock 串行化同一意图、
orders.payment_intent_id 唯一约束兜底（失败方整体回滚，包括库存确认）。
"""

import logging
import threading
import time
from datetime import date
from typing import Callable, Optional, Tuple

from redlock import Redlock
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dropshop.core.config import settings
from dropshop.core.exceptions import (
    InvalidTransition,
    MaterializationTimeout,
    NotFound,
    PaidOrderUnrecoverable,
)
from dropshop.models.client import Client
from dropshop.models.drop import Drop
from dropshop.models.order import Order, OrderProduct, OrderStatus
from dropshop.schemas.payments import CustomerInfo, IntentSnapshot
from dropshop.services.ledger import ReservationLedger, ReserveResult
from dropshop.services.payment_processor import PaymentIntentHandle

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


class OrderService:
    """订单查询与状态流转"""

    def __init__(self, db: Session):
        self.db = db

    def find_by_intent(self, payment_intent_id: str) -> Optional[Order]:
        return self.db.execute(
            select(Order).where(Order.payment_intent_id == payment_intent_id)
        ).scalar_one_or_none()

    def get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound(f"订单不存在: {order_id}", order_id=order_id)
        return order

    def update_status(self, order_id: int, new_status: OrderStatus) -> Order:
        order = self.get_order(order_id)
        current = order.status
        if new_status not in ORDER_TRANSITIONS[current]:
            raise InvalidTransition(f"不允许的订单状态流转: {current.value} -> {new_status.value}")

        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == current)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise InvalidTransition("订单状态已被并发修改，请刷新后重试")
        self.db.commit()
        self.db.refresh(order)
        logger.info(f"订单状态变更: order_id={order_id}, {current.value} -> {new_status.value}")
        return order


class OrderMaterializer:
    """支付成功 -> 订单"""

    def __init__(
        self,
        db: Session,
        ledger: ReservationLedger,
        notifier=None,
        rlock: Redlock = None,
    ):
        self.db = db
        self.ledger = ledger
        self.notifier = notifier
        self.rlock = rlock
        self.orders = OrderService(db)

    def materialize(self, intent: PaymentIntentHandle) -> Order:
        """幂等地把支付成功的意图落为订单"""
        existing = self.orders.find_by_intent(intent.id)
        if existing is not None:
            logger.info(f"订单已存在，跳过生成: intent_id={intent.id}, order={existing.order_number}")
            return existing

        lock = None
        if self.rlock:
            lock = self.rlock.lock(f"lock:materialize:{intent.id}", settings.MATERIALIZE_LOCK_TTL_MS)
            if not lock:
                # 其他 worker 正在处理，交给唯一约束兜底
                logger.warning(f"获取订单生成锁失败: intent_id={intent.id}")

        try:
            existing = self.orders.find_by_intent(intent.id)
            if existing is not None:
                return existing

            snapshot = IntentSnapshot.from_metadata(intent.metadata)
            order, created = self._create_order(intent.id, snapshot)
        finally:
            if self.rlock and lock:
                self.rlock.unlock(lock)

        if created:
            self._notify(order, snapshot)
        return order

    def _create_order(self, intent_id: str, snapshot: IntentSnapshot) -> Tuple[Order, bool]:
        try:
            client = self._resolve_client(snapshot.customer)
            order_number = self._allocate_order_number(snapshot.drop_id)

            order = Order(
                order_number=order_number,
                drop_id=snapshot.drop_id,
                client_id=client.id,
                customer_name=snapshot.customer.name.strip(),
                status=OrderStatus.CONFIRMED,
                payment_intent_id=intent_id,
                payment_method="stripe",
                total_amount=snapshot.total_amount,
                pickup_time=snapshot.customer.pickup_time,
                order_date=date.fromisoformat(snapshot.customer.pickup_date),
                special_instructions=snapshot.customer.special_instructions,
            )
            self.db.add(order)
            # 重复的意图在这里触发唯一约束
            self.db.flush()

            committed, lost = self.ledger.commit_hold(snapshot.hold_id, intent_id)
            if committed or lost:
                pending = [(r.drop_product_id, r.quantity) for r in lost]
            else:
                # 批次记录缺失，按快照逐行重新预占
                pending = [(line.drop_product_id, line.quantity) for line in snapshot.lines]
            for drop_product_id, quantity in pending:
                self._recommit_lost_line(drop_product_id, quantity, snapshot, intent_id)

            for line in snapshot.lines:
                self.db.add(OrderProduct(
                    order_id=order.id,
                    drop_product_id=line.drop_product_id,
                    order_quantity=line.quantity,
                    unit_price=line.unit_price,
                ))

            self.ledger.commit_transaction()
        except IntegrityError:
            self.db.rollback()
            existing = self.orders.find_by_intent(intent_id)
            if existing is None:
                raise
            logger.info(f"并发生成订单冲突，返回已存在订单: intent_id={intent_id}")
            return existing, False
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"订单生成成功: order_number={order.order_number}, intent_id={intent_id}")
        return order, True

    def _recommit_lost_line(self, drop_product_id: int, quantity: int, snapshot: IntentSnapshot, intent_id: str) -> None:
        """预占已被超时释放但支付成功：尝试重新预占后确认"""
        outcome = self.ledger.reserve(
            drop_product_id,
            quantity,
            drop_id=snapshot.drop_id,
            source="webhook_recover",
            autocommit=False,
        )
        if outcome is not ReserveResult.OK:
            logger.critical(
                f"支付成功但库存已无法预占: intent_id={intent_id}, "
                f"drop_product_id={drop_product_id}, quantity={quantity}, outcome={outcome.value}"
            )
            self._alert_admin(
                f"CRITICAL: payment {intent_id} succeeded but inventory is gone",
                f"drop_product_id={drop_product_id} quantity={quantity} customer={snapshot.customer.email}",
            )
            raise PaidOrderUnrecoverable([{
                "drop_product_id": drop_product_id,
                "requested": quantity,
                "available": 0,
            }])
        self.ledger.commit(drop_product_id, quantity, reference=intent_id, autocommit=False)
        logger.warning(f"过期预占已重新确认: intent_id={intent_id}, drop_product_id={drop_product_id}")

    def _resolve_client(self, customer: CustomerInfo) -> Client:
        email = customer.email.strip().lower()
        client = self.db.execute(select(Client).where(Client.email == email)).scalar_one_or_none()
        if client is not None:
            return client

        try:
            with self.db.begin_nested():
                client = Client(name=customer.name.strip(), email=email, phone=customer.phone or None)
                self.db.add(client)
        except IntegrityError:
            client = self.db.execute(select(Client).where(Client.email == email)).scalar_one()
        return client

    def _allocate_order_number(self, drop_id: int) -> str:
        """场次内订单序号原子自增，格式 {取餐点简码}{场次号:02}-{序号:03}"""
        result = self.db.execute(
            update(Drop)
            .where(Drop.id == drop_id)
            .values(order_sequence=Drop.order_sequence + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFound(f"场次不存在: {drop_id}", drop_id=drop_id)

        drop = self.db.get(Drop, drop_id)
        self.db.refresh(drop)
        return f"{drop.location.code}{drop.drop_number:02d}-{drop.order_sequence:03d}"

    def _notify(self, order: Order, snapshot: IntentSnapshot) -> None:
        """发送确认邮件，失败只记录日志"""
        if self.notifier is None:
            return

        drop = self.db.get(Drop, order.drop_id)
        location = drop.location if drop else None
        payload = {
            "order_number": order.order_number,
            "customer_name": snapshot.customer.name,
            "customer_email": snapshot.customer.email,
            "pickup_date": snapshot.customer.pickup_date,
            "pickup_time": snapshot.customer.pickup_time,
            "items": [
                {
                    "product_name": line.name,
                    "quantity": line.quantity,
                    "unit_price": str(line.unit_price),
                    "total_price": str(line.unit_price * line.quantity),
                }
                for line in snapshot.lines
            ],
            "total_amount": str(snapshot.total_amount),
            "special_instructions": snapshot.customer.special_instructions,
            "location_name": location.name if location else None,
            "location_district": location.district if location else None,
            "location_url": location.location_url if location else None,
        }
        try:
            if not self.notifier.send(payload):
                logger.warning(f"确认邮件未发送: order_number={order.order_number}")
        except Exception as e:
            logger.error(f"确认邮件发送异常（不影响订单）: order_number={order.order_number}, error={e}")

    def _alert_admin(self, subject: str, body: str) -> None:
        if self.notifier is None or not hasattr(self.notifier, "send_admin_alert"):
            return
        try:
            self.notifier.send_admin_alert(subject, body)
        except Exception as e:
            logger.error(f"管理员告警发送失败: {e}")


def poll_for_order(
    lookup: Callable[[str], Optional[Order]],
    intent_id: str,
    max_attempts: Optional[int] = None,
    interval_ms: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Order:
    """轮询订单是否已生成（有界、可取消）

    超过次数或被取消时抛出 MaterializationTimeout：支付可能已成功，只是订单还没落库。
    """
    max_attempts = max_attempts or settings.ORDER_POLL_MAX_ATTEMPTS
    interval = (settings.ORDER_POLL_INTERVAL_MS if interval_ms is None else interval_ms) / 1000.0

    for attempt in range(1, max_attempts + 1):
        order = lookup(intent_id)
        if order is not None:
            logger.info(f"轮询到订单: intent_id={intent_id}, attempts={attempt}")
            return order

        if attempt % 5 == 0:
            logger.info(f"等待订单生成中... ({attempt}/{max_attempts}) intent_id={intent_id}")

        if attempt < max_attempts:
            if cancel_event is not None:
                if cancel_event.wait(interval):
                    raise MaterializationTimeout(intent_id=intent_id, attempts=attempt, cancelled=True)
            else:
                time.sleep(interval)

    logger.error(f"等待订单生成超时: intent_id={intent_id}")
    raise MaterializationTimeout(intent_id=intent_id, attempts=max_attempts, cancelled=False)
