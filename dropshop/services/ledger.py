"""库存预占账本

所有库存变更都是一条带条件的原子 UPDATE，由数据库保证线性一致，
调用方不允许先读后写。预占批次（hold）只做记账，库存本身体现为
drop_products.reserved_quantity 的增减。
"""

import enum
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from dropshop.core.config import settings
from dropshop.core.exceptions import (
    InsufficientInventory,
    NotFound,
    NotOrderable,
    ReservationReleaseFailure,
    ValidationError,
)
from dropshop.models.drop import Drop, DropProduct, DropStatus
from dropshop.models.inventory_logs import ChangeType, InventoryLog
from dropshop.models.inventory_reservations import InventoryReservation, ReservationStatus

logger = logging.getLogger(__name__)


class ReserveResult(str, enum.Enum):
    OK = "ok"
    INSUFFICIENT_STOCK = "insufficient_stock"
    NOT_ORDERABLE = "not_orderable"


def cache_key(drop_product_id: int) -> str:
    return f"stock:available:dp:{drop_product_id}"


class ReservationLedger:
    """库存账本核心类"""

    def __init__(self, db: Session, redis: Redis = None):
        self.db = db
        self.redis = redis
        self._pending_invalidations: Set[int] = set()

    # ==================== 单行原子操作 ====================

    def reserve(
        self,
        drop_product_id: int,
        quantity: int,
        hold_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        drop_id: Optional[int] = None,
        source: str = "checkout",
        autocommit: bool = True,
    ) -> ReserveResult:
        """预占库存：reserved += quantity，仅当可售库存充足且场次开放"""
        if quantity <= 0:
            raise ValidationError([f"预占数量必须大于0: {quantity}"])

        active_drops = select(Drop.id).where(Drop.status == DropStatus.ACTIVE)
        stmt = (
            update(DropProduct)
            .where(
                DropProduct.id == drop_product_id,
                DropProduct.reserved_quantity + quantity <= DropProduct.stock_quantity,
                DropProduct.drop_id.in_(active_drops),
            )
            .values(
                reserved_quantity=DropProduct.reserved_quantity + quantity,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if drop_id is not None:
            stmt = stmt.where(DropProduct.drop_id == drop_id)

        result = self.db.execute(stmt)

        if result.rowcount != 1:
            if autocommit:
                self.db.rollback()
            return self._diagnose_reserve_failure(drop_product_id, drop_id)

        stock, reserved, row_drop_id = self._quantities(drop_product_id)
        self._log(
            drop_product_id,
            ChangeType.RESERVE,
            -quantity,
            after_available=stock - reserved,
            reference=hold_id,
            source=source,
        )
        if hold_id is not None:
            self.db.add(InventoryReservation(
                hold_id=hold_id,
                drop_id=row_drop_id,
                drop_product_id=drop_product_id,
                quantity=quantity,
                status=ReservationStatus.RESERVED,
                expired_at=expires_at,
            ))

        self._touched(drop_product_id)
        if autocommit:
            self.commit_transaction()
        logger.info(f"预占库存成功: drop_product_id={drop_product_id}, quantity={quantity}, hold_id={hold_id}")
        return ReserveResult.OK

    def release(
        self,
        drop_product_id: int,
        quantity: int,
        reference: Optional[str] = None,
        source: str = "checkout",
        autocommit: bool = True,
    ) -> None:
        """释放预占：reserved -= quantity；失败说明数据不一致，直接上抛"""
        result = self.db.execute(
            update(DropProduct)
            .where(
                DropProduct.id == drop_product_id,
                DropProduct.reserved_quantity >= quantity,
            )
            .values(
                reserved_quantity=DropProduct.reserved_quantity - quantity,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.error(f"释放库存失败: drop_product_id={drop_product_id}, quantity={quantity}, reference={reference}")
            raise ReservationReleaseFailure(
                f"无法释放预占: drop_product_id={drop_product_id}, quantity={quantity}",
                drop_product_id=drop_product_id,
                quantity=quantity,
            )

        stock, reserved, _ = self._quantities(drop_product_id)
        self._log(
            drop_product_id,
            ChangeType.RELEASE,
            quantity,
            after_available=stock - reserved,
            reference=reference,
            source=source,
        )
        self._touched(drop_product_id)
        if autocommit:
            self.commit_transaction()
        logger.info(f"释放库存成功: drop_product_id={drop_product_id}, quantity={quantity}")

    def commit(
        self,
        drop_product_id: int,
        quantity: int,
        reference: Optional[str] = None,
        source: str = "webhook",
        autocommit: bool = True,
    ) -> None:
        """确认扣减：stock 与 reserved 同时减少，可售库存不变"""
        result = self.db.execute(
            update(DropProduct)
            .where(
                DropProduct.id == drop_product_id,
                DropProduct.reserved_quantity >= quantity,
            )
            .values(
                stock_quantity=DropProduct.stock_quantity - quantity,
                reserved_quantity=DropProduct.reserved_quantity - quantity,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.error(f"确认库存失败: drop_product_id={drop_product_id}, quantity={quantity}, reference={reference}")
            raise ReservationReleaseFailure(
                f"无法确认预占: drop_product_id={drop_product_id}, quantity={quantity}",
                drop_product_id=drop_product_id,
                quantity=quantity,
            )

        stock, reserved, _ = self._quantities(drop_product_id)
        self._log(
            drop_product_id,
            ChangeType.COMMIT,
            0,
            after_available=stock - reserved,
            reference=reference,
            source=source,
        )
        self._touched(drop_product_id)
        if autocommit:
            self.commit_transaction()
        logger.info(f"确认库存成功: drop_product_id={drop_product_id}, quantity={quantity}")

    def adjust_stock(
        self,
        drop_product_id: int,
        stock_quantity: int,
        operator: Optional[str] = None,
        autocommit: bool = True,
    ) -> int:
        """管理员调整总库存，不允许低于已预占数量"""
        if stock_quantity < 0:
            raise ValidationError([f"库存不能为负数: {stock_quantity}"])

        before = self.availability(drop_product_id, use_cache=False)
        result = self.db.execute(
            update(DropProduct)
            .where(
                DropProduct.id == drop_product_id,
                DropProduct.reserved_quantity <= stock_quantity,
            )
            .values(stock_quantity=stock_quantity, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ValidationError([f"库存不能低于已预占数量: drop_product_id={drop_product_id}"])

        stock, reserved, _ = self._quantities(drop_product_id)
        after = stock - reserved
        self._log(
            drop_product_id,
            ChangeType.ADJUST,
            after - before,
            after_available=after,
            operator=operator,
            source="admin",
        )
        self._touched(drop_product_id)
        if autocommit:
            self.commit_transaction()
        logger.info(f"调整库存成功: drop_product_id={drop_product_id}, stock={stock_quantity}, operator={operator}")
        return after

    def availability(self, drop_product_id: int, use_cache: bool = True) -> int:
        """查询可售库存（带缓存）"""
        key = cache_key(drop_product_id)

        if use_cache and self.redis:
            try:
                cached = self.redis.get(key)
                if cached is not None:
                    logger.debug(f"Cache hit for drop product {drop_product_id}")
                    return int(cached)
            except RedisError as e:
                logger.warning(f"Redis 读取失败，回退数据库: {e}")

        stock, reserved, _ = self._quantities(drop_product_id)
        available = stock - reserved

        if use_cache and self.redis:
            try:
                self.redis.setex(key, settings.STOCK_CACHE_TTL_SECONDS, available)
            except RedisError as e:
                logger.warning(f"Redis 写入失败: {e}")

        return available

    # ==================== 多行与批次操作 ====================

    def reserve_lines(
        self,
        lines: Iterable[Tuple[int, int]],
        hold_id: str,
        expires_at: datetime,
        drop_id: Optional[int] = None,
    ) -> None:
        """多行预占（全部成功或全部回滚）

        每行单独提交；任一行失败时，本次已成功的行全部释放后再抛出异常，
        异常中列出所有不可售的行。
        """
        unavailable: List[Dict] = []
        not_orderable = False

        try:
            for drop_product_id, quantity in lines:
                outcome = self.reserve(
                    drop_product_id,
                    quantity,
                    hold_id=hold_id,
                    expires_at=expires_at,
                    drop_id=drop_id,
                )
                if outcome is ReserveResult.NOT_ORDERABLE:
                    not_orderable = True
                if outcome is not ReserveResult.OK:
                    unavailable.append({
                        "drop_product_id": drop_product_id,
                        "requested": quantity,
                        "available": max(self.availability(drop_product_id, use_cache=False), 0),
                    })
        except Exception:
            self.db.rollback()
            self.release_hold(hold_id, source="checkout_rollback")
            raise

        if not unavailable:
            return

        released = self.release_hold(hold_id, source="checkout_rollback")
        logger.info(f"多行预占失败，已回滚 {released} 行: hold_id={hold_id}, unavailable={unavailable}")

        if not_orderable:
            raise NotOrderable("场次已关闭，无法继续下单", drop_id=drop_id)
        raise InsufficientInventory(unavailable)

    def attach_intent(self, hold_id: str, payment_intent_id: str) -> None:
        """回填支付意图ID"""
        self.db.execute(
            update(InventoryReservation)
            .where(InventoryReservation.hold_id == hold_id)
            .values(payment_intent_id=payment_intent_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def release_hold(self, hold_id: str, source: str = "checkout", autocommit: bool = True) -> int:
        """释放批次内所有在途预占，返回释放的行数"""
        reservations = self._reservations(InventoryReservation.hold_id == hold_id)
        return self._release_reservations(reservations, source, autocommit)

    def release_intent(self, payment_intent_id: str, source: str = "webhook") -> int:
        reservations = self._reservations(InventoryReservation.payment_intent_id == payment_intent_id)
        return self._release_reservations(reservations, source, autocommit=True)

    def release_drop(self, drop_id: int, source: str = "drop_cancel", autocommit: bool = True) -> int:
        """释放场次下所有在途预占（取消场次时调用）"""
        reservations = self._reservations(InventoryReservation.drop_id == drop_id)
        return self._release_reservations(reservations, source, autocommit)

    def commit_hold(self, hold_id: str, payment_intent_id: str) -> Tuple[List[InventoryReservation], List[InventoryReservation]]:
        """确认批次内预占（不提交事务，由调用方统一提交）

        Returns:
            (已确认的行, 已不在预占状态的行)
        """
        reservations = self.db.execute(
            select(InventoryReservation).where(InventoryReservation.hold_id == hold_id)
        ).scalars().all()

        committed, lost = [], []
        for reservation in reservations:
            if reservation.status == ReservationStatus.COMMITTED:
                continue
            if not self._transition(reservation, ReservationStatus.RESERVED, ReservationStatus.COMMITTED):
                lost.append(reservation)
                continue
            self.commit(
                reservation.drop_product_id,
                reservation.quantity,
                reference=payment_intent_id,
                autocommit=False,
            )
            committed.append(reservation)
        return committed, lost

    def release_expired(self, now: datetime, batch_size: int = 500) -> int:
        """清理过期的在途预占（超时未支付）

        使用 skip_locked 防止多 worker 竞争，每批单独提交。
        """
        total_released = 0

        while True:
            expired = self.db.execute(
                select(InventoryReservation)
                .where(
                    InventoryReservation.status == ReservationStatus.RESERVED,
                    InventoryReservation.expired_at <= now,
                )
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            ).scalars().all()

            if not expired:
                break

            logger.info(f"本次清理 {len(expired)} 条过期预占记录")
            total_released += self._release_reservations(expired, "cleanup_job", autocommit=True)

            if len(expired) < batch_size:
                break

        logger.info(f"清理任务完成，总共释放 {total_released} 条过期预占记录")
        return total_released

    def count_expired(self, now: datetime) -> int:
        return self.db.execute(
            select(func.count(InventoryReservation.id)).where(
                InventoryReservation.status == ReservationStatus.RESERVED,
                InventoryReservation.expired_at <= now,
            )
        ).scalar_one()

    # ==================== 事务与缓存 ====================

    def commit_transaction(self) -> None:
        """提交事务后再失效缓存，避免读到未提交的值被重新缓存"""
        self.db.commit()
        self._flush_invalidations()

    def _touched(self, drop_product_id: int) -> None:
        self._pending_invalidations.add(drop_product_id)
        obj = self.db.identity_map.get(self.db.identity_key(DropProduct, drop_product_id))
        if obj is not None:
            self.db.expire(obj)

    def _flush_invalidations(self) -> None:
        ids, self._pending_invalidations = self._pending_invalidations, set()
        if not self.redis or not ids:
            return
        try:
            self.redis.delete(*[cache_key(dp_id) for dp_id in ids])
            logger.debug(f"Cache invalidated for drop products {sorted(ids)}")
        except RedisError as e:
            logger.warning(f"Redis 缓存失效失败: {e}")

    # ==================== 内部方法 ====================

    def _reservations(self, criterion) -> List[InventoryReservation]:
        return self.db.execute(
            select(InventoryReservation).where(
                criterion,
                InventoryReservation.status == ReservationStatus.RESERVED,
            )
        ).scalars().all()

    def _release_reservations(self, reservations, source: str, autocommit: bool) -> int:
        released = 0
        for reservation in reservations:
            if not self._transition(reservation, ReservationStatus.RESERVED, ReservationStatus.RELEASED):
                # 已被其他流程确认或释放
                continue
            self.release(
                reservation.drop_product_id,
                reservation.quantity,
                reference=reservation.payment_intent_id or reservation.hold_id,
                source=source,
                autocommit=False,
            )
            released += 1
        if autocommit:
            self.commit_transaction()
        return released

    def _transition(self, reservation: InventoryReservation, current: ReservationStatus, new: ReservationStatus) -> bool:
        """预占记录状态 CAS，保证同一条预占只会被确认或释放一次"""
        result = self.db.execute(
            update(InventoryReservation)
            .where(
                InventoryReservation.id == reservation.id,
                InventoryReservation.status == current,
            )
            .values(status=new, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            reservation.status = new
            return True
        self.db.expire(reservation)
        return False

    def _quantities(self, drop_product_id: int) -> Tuple[int, int, int]:
        row = self.db.execute(
            select(
                DropProduct.stock_quantity,
                DropProduct.reserved_quantity,
                DropProduct.drop_id,
            ).where(DropProduct.id == drop_product_id)
        ).one_or_none()
        if row is None:
            raise NotFound(f"场次商品不存在: {drop_product_id}", drop_product_id=drop_product_id)
        return row.stock_quantity, row.reserved_quantity, row.drop_id

    def _diagnose_reserve_failure(self, drop_product_id: int, drop_id: Optional[int]) -> ReserveResult:
        """条件更新未命中后判断原因（不影响写入的原子性）"""
        row = self.db.execute(
            select(DropProduct.drop_id, Drop.status)
            .join(Drop, Drop.id == DropProduct.drop_id)
            .where(DropProduct.id == drop_product_id)
        ).one_or_none()

        if row is None or (drop_id is not None and row.drop_id != drop_id):
            raise NotFound(f"场次商品不存在: {drop_product_id}", drop_product_id=drop_product_id)
        if row.status != DropStatus.ACTIVE:
            logger.info(f"场次未开放，拒绝预占: drop_product_id={drop_product_id}, status={row.status.value}")
            return ReserveResult.NOT_ORDERABLE
        logger.info(f"库存不足: drop_product_id={drop_product_id}")
        return ReserveResult.INSUFFICIENT_STOCK

    def _log(
        self,
        drop_product_id: int,
        change_type: ChangeType,
        quantity: int,
        after_available: int,
        reference: Optional[str] = None,
        operator: Optional[str] = None,
        source: Optional[str] = None,
    ) -> None:
        self.db.add(InventoryLog(
            drop_product_id=drop_product_id,
            reference=reference,
            change_type=change_type,
            quantity=quantity,
            before_available=after_available - quantity,
            after_available=after_available,
            operator=operator or f"{source}_service",
            source=source,
        ))
