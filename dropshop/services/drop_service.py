"""场次生命周期管理

状态机：
    upcoming -> active -> completed
    upcoming -> cancelled
    active   -> cancelled
completed / cancelled 为终态。状态变更使用 CAS（WHERE status = 当前状态），
并发修改同一场次时只有一个管理员能成功。
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from dropshop.core.exceptions import (
    DropHasOrders,
    ExternalServiceError,
    InvalidTransition,
    NotFound,
    NotOrderable,
    ValidationError,
)
from dropshop.models.drop import Drop, DropProduct, DropStatus
from dropshop.models.inventory_reservations import InventoryReservation, ReservationStatus
from dropshop.models.location import Location
from dropshop.models.order import Order
from dropshop.models.product import Product
from dropshop.services import deadline as deadlines
from dropshop.services.ledger import ReservationLedger

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    DropStatus.UPCOMING: {DropStatus.ACTIVE, DropStatus.CANCELLED},
    DropStatus.ACTIVE: {DropStatus.COMPLETED, DropStatus.CANCELLED},
    DropStatus.COMPLETED: set(),
    DropStatus.CANCELLED: set(),
}

STATUS_REASONS = {
    DropStatus.UPCOMING: "场次尚未开放下单",
    DropStatus.COMPLETED: "场次已结束",
    DropStatus.CANCELLED: "场次已取消",
}


@dataclass(frozen=True)
class Orderability:
    orderable: bool
    reason: str
    grace_period: bool = False
    deadline: Optional[datetime] = None
    time_remaining: Optional[timedelta] = None


class DropLifecycleManager:
    """场次生命周期服务"""

    def __init__(
        self,
        db: Session,
        ledger: ReservationLedger,
        grace: Optional[timedelta] = None,
        processor=None,
    ):
        self.db = db
        self.ledger = ledger
        self.processor = processor
        self.grace = deadlines.DEFAULT_GRACE_PERIOD if grace is None else grace

    # ==================== 查询 ====================

    def get_drop(self, drop_id: int) -> Drop:
        drop = self.db.get(Drop, drop_id)
        if drop is None:
            raise NotFound(f"场次不存在: {drop_id}", drop_id=drop_id)
        return drop

    def effective_deadline(self, drop: Drop) -> Optional[datetime]:
        """已激活（及终态）场次使用冻结的截单时间，未开放场次实时计算"""
        if drop.status != DropStatus.UPCOMING and drop.pickup_deadline is not None:
            return deadlines.ensure_utc(drop.pickup_deadline)
        if drop.location is None:
            return None
        return deadlines.calculate_deadline(drop.date, drop.location.pickup_hour_end)

    def calculate_deadline(self, drop_date: date, location_id: int) -> datetime:
        location = self.db.get(Location, location_id)
        if location is None:
            raise NotFound(f"取餐点不存在: {location_id}", location_id=location_id)
        return deadlines.calculate_deadline(drop_date, location.pickup_hour_end)

    def orderability(self, drop_id: int, now: Optional[datetime] = None) -> Orderability:
        """场次是否可下单 = status == active 且截单判定通过"""
        drop = self.get_drop(drop_id)
        return self._orderability(drop, now)

    def ensure_orderable(self, drop: Drop, now: Optional[datetime] = None) -> Orderability:
        verdict = self._orderability(drop, now)
        if not verdict.orderable:
            raise NotOrderable(verdict.reason, drop_id=drop.id)
        return verdict

    def current_active_drop(self, now: Optional[datetime] = None) -> Optional[Drop]:
        """当前可下单的场次（按需查询，不做全局缓存）

        条件：status = active、截单时间（含宽限期）未过，按截单时间最早者优先。
        """
        now = now or deadlines.utcnow()
        drop = self.db.execute(
            select(Drop)
            .where(
                Drop.status == DropStatus.ACTIVE,
                Drop.pickup_deadline.is_not(None),
                Drop.pickup_deadline >= now - self.grace,
            )
            .order_by(Drop.pickup_deadline.asc(), Drop.id.asc())
            .limit(1)
        ).unique().scalar_one_or_none()

        if drop is None or not self._orderability(drop, now).orderable:
            return None
        return drop

    def upcoming_drops(self, since: Optional[date] = None) -> List[Drop]:
        stmt = select(Drop).where(Drop.status == DropStatus.UPCOMING)
        if since is not None:
            stmt = stmt.where(Drop.date >= since)
        return list(self.db.execute(stmt.order_by(Drop.date.asc(), Drop.id.asc())).unique().scalars().all())

    def inventory(self, drop_id: int) -> List[DropProduct]:
        self.get_drop(drop_id)
        return list(self.db.execute(
            select(DropProduct)
            .where(DropProduct.drop_id == drop_id)
            .order_by(DropProduct.id.asc())
        ).unique().scalars().all())

    def orders(self, drop_id: int) -> List[Order]:
        return list(self.db.execute(
            select(Order).where(Order.drop_id == drop_id).order_by(Order.id.asc())
        ).scalars().all())

    # ==================== 管理操作 ====================

    def create_drop(
        self,
        drop_date: date,
        location_id: int,
        products: List[Dict],
        notes: Optional[str] = None,
    ) -> Drop:
        """创建场次，售价取商品当前标价的快照（可显式指定）"""
        lines = []
        for item in products:
            product = self.db.get(Product, item["product_id"])
            if product is None:
                raise NotFound(f"商品不存在: {item['product_id']}", product_id=item["product_id"])
            stock = int(item.get("stock_quantity", 0))
            if stock < 0:
                raise ValidationError([f"库存不能为负数: product_id={product.id}"])
            price = item.get("selling_price")
            lines.append(DropProduct(
                product_id=product.id,
                stock_quantity=stock,
                reserved_quantity=0,
                selling_price=Decimal(str(price)) if price is not None else product.sell_price,
            ))

        drop = Drop(
            date=drop_date,
            location_id=location_id,
            status=DropStatus.UPCOMING,
            drop_number=self._allocate_drop_number(location_id),
            order_sequence=0,
            notes=notes,
            drop_products=lines,
        )
        self.db.add(drop)
        self.db.commit()
        logger.info(f"创建场次成功: drop_id={drop.id}, date={drop_date}, location_id={location_id}")
        return drop

    def change_status(
        self,
        drop_id: int,
        new_status: Union[DropStatus, str],
        acting_admin: str,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> Drop:
        """变更场次状态

        - upcoming -> active：至少一个商品有库存（force 可跳过），并冻结截单时间
        - * -> cancelled：释放场次下所有在途预占，已生成的订单保留
        - active -> completed：此后对该场次的预占一律返回 not_orderable
        """
        try:
            new_status = DropStatus(new_status)
        except ValueError:
            raise ValidationError([f"无效的场次状态: {new_status}"])

        now = now or deadlines.utcnow()
        drop = self.get_drop(drop_id)
        current = drop.status

        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(
                f"不允许的状态流转: {current.value} -> {new_status.value}",
                drop_id=drop_id,
                current=current.value,
                requested=new_status.value,
            )

        values = {
            "status": new_status,
            "last_modified_by": acting_admin,
            "status_changed_at": now,
            "updated_at": func.now(),
        }

        if new_status == DropStatus.ACTIVE:
            if not force and not any(dp.stock_quantity > 0 for dp in drop.drop_products):
                raise InvalidTransition("场次没有任何可售库存，无法开放", drop_id=drop_id)
            frozen = deadlines.calculate_deadline(drop.date, drop.location.pickup_hour_end)
            values["pickup_deadline"] = frozen
            if frozen < now:
                logger.warning(f"开放的场次截单时间已过: drop_id={drop_id}, deadline={frozen.isoformat()}")

        result = self.db.execute(
            update(Drop)
            .where(Drop.id == drop_id, Drop.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise InvalidTransition("场次状态已被并发修改，请刷新后重试", drop_id=drop_id)

        released = 0
        open_intents = []
        if new_status == DropStatus.CANCELLED:
            open_intents = self._open_intents(drop_id)
            released = self.ledger.release_drop(drop_id, autocommit=False)

        self.ledger.commit_transaction()
        self.db.refresh(drop)
        self._cancel_intents(open_intents)
        logger.info(
            f"场次状态变更成功: drop_id={drop_id}, {current.value} -> {new_status.value}, "
            f"admin={acting_admin}, released={released}"
        )
        return drop

    def complete_expired_drops(self, now: Optional[datetime] = None) -> int:
        """截单（含宽限期）后自动结束场次"""
        now = now or deadlines.utcnow()
        expired_ids = self.db.execute(
            select(Drop.id).where(
                Drop.status == DropStatus.ACTIVE,
                Drop.pickup_deadline.is_not(None),
                Drop.pickup_deadline < now - self.grace,
            )
        ).scalars().all()

        completed = 0
        for drop_id in expired_ids:
            try:
                self.change_status(drop_id, DropStatus.COMPLETED, acting_admin="system", now=now)
                completed += 1
            except InvalidTransition as e:
                # 管理员刚好手动变更过
                logger.info(f"跳过自动结束场次: drop_id={drop_id}, reason={e.message}")
        return completed

    def delete_drop(self, drop_id: int, force: bool = False) -> None:
        """删除场次：有订单一律拒绝（请改为取消）；有在途预占需 force"""
        drop = self.get_drop(drop_id)

        order_count = self.db.execute(
            select(func.count(Order.id)).where(Order.drop_id == drop_id)
        ).scalar_one()
        if order_count > 0:
            raise DropHasOrders(drop_id=drop_id, orders=order_count)

        in_flight = self.db.execute(
            select(func.count(InventoryReservation.id)).where(
                InventoryReservation.drop_id == drop_id,
                InventoryReservation.status == ReservationStatus.RESERVED,
            )
        ).scalar_one()
        if in_flight and not force:
            raise InvalidTransition(
                "场次存在支付中的预占，请先取消场次或使用强制删除",
                drop_id=drop_id,
                reservations=in_flight,
            )
        if in_flight:
            self.ledger.release_drop(drop_id, source="drop_delete", autocommit=False)

        self.db.execute(delete(InventoryReservation).where(InventoryReservation.drop_id == drop_id))
        self.db.delete(drop)
        self.ledger.commit_transaction()
        logger.info(f"删除场次成功: drop_id={drop_id}, force={force}")

    def update_inventory(self, drop_id: int, items: List[Dict], acting_admin: str) -> List[DropProduct]:
        """按商品调整场次库存（售价快照不可修改）"""
        drop = self.get_drop(drop_id)
        if drop.status in (DropStatus.COMPLETED, DropStatus.CANCELLED):
            raise InvalidTransition(f"场次已{drop.status.value}，不能修改库存", drop_id=drop_id)

        # 先整体校验，任一行不合法则整批不生效
        by_product = {dp.product_id: dp for dp in drop.drop_products}
        changes = []
        errors = []
        for item in items:
            line = by_product.get(item["product_id"])
            if line is None:
                raise NotFound(f"场次中没有该商品: {item['product_id']}", product_id=item["product_id"])
            stock_quantity = int(item["stock_quantity"])
            if stock_quantity < 0:
                errors.append(f"库存不能为负数: product_id={line.product_id}")
            elif stock_quantity < line.reserved_quantity:
                errors.append(f"库存不能低于已预占数量: product_id={line.product_id}, reserved={line.reserved_quantity}")
            changes.append((line.id, stock_quantity))
        if errors:
            raise ValidationError(errors)

        try:
            for drop_product_id, stock_quantity in changes:
                self.ledger.adjust_stock(drop_product_id, stock_quantity, operator=acting_admin, autocommit=False)
        except Exception:
            self.db.rollback()
            raise
        self.ledger.commit_transaction()

        return self.inventory(drop_id)

    # ==================== 内部方法 ====================

    def _open_intents(self, drop_id: int) -> List[str]:
        return list(self.db.execute(
            select(InventoryReservation.payment_intent_id)
            .where(
                InventoryReservation.drop_id == drop_id,
                InventoryReservation.status == ReservationStatus.RESERVED,
                InventoryReservation.payment_intent_id.is_not(None),
            )
            .distinct()
        ).scalars().all())

    def _cancel_intents(self, intent_ids: List[str]) -> None:
        """取消场次后作废支付中的意图，避免顾客继续付款"""
        if self.processor is None:
            return
        for intent_id in intent_ids:
            try:
                self.processor.cancel_intent(intent_id)
            except ExternalServiceError as e:
                # 意图可能已支付成功，由订单生成流程告警
                logger.warning(f"取消场次的支付意图失败: intent_id={intent_id}, error={e.message}")

    def _allocate_drop_number(self, location_id: int) -> int:
        """取餐点内场次号原子自增，删除场次后不回收"""
        result = self.db.execute(
            update(Location)
            .where(Location.id == location_id)
            .values(drop_sequence=Location.drop_sequence + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise NotFound(f"取餐点不存在: {location_id}", location_id=location_id)

        return self.db.execute(
            select(Location.drop_sequence).where(Location.id == location_id)
        ).scalar_one()

    def _orderability(self, drop: Drop, now: Optional[datetime]) -> Orderability:
        deadline = self.effective_deadline(drop)

        if drop.status != DropStatus.ACTIVE:
            return Orderability(False, STATUS_REASONS[drop.status], deadline=deadline)
        if deadline is None:
            return Orderability(False, "场次缺少截单时间", deadline=None)

        verdict = deadlines.evaluate(deadline, now, self.grace)
        if not verdict.orderable:
            return Orderability(False, "已超过下单截止时间", deadline=deadline, time_remaining=timedelta(0))
        if verdict.grace_period:
            return Orderability(
                True,
                "已过截止时间，宽限期内仍可下单",
                grace_period=True,
                deadline=deadline,
                time_remaining=verdict.time_remaining,
            )
        return Orderability(True, "可下单", deadline=deadline, time_remaining=verdict.time_remaining)
