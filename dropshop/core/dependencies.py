"""依赖注入配置模块"""

from typing import Optional

from fastapi import Depends, Header

# 数据库会话依赖
from dropshop.db.session import SessionLocal
from sqlalchemy.orm import Session

# Redis 依赖
from dropshop.core.redis import redis_client, redlock

from dropshop.services.drop_service import DropLifecycleManager
from dropshop.services.ledger import ReservationLedger
from dropshop.services.notifier import CeleryNotifier
from dropshop.services.order_service import OrderMaterializer, OrderService
from dropshop.services.payment_processor import StripePaymentProcessor
from dropshop.services.payment_service import PaymentReservationCoordinator


def get_redis():
    """获取同步 Redis 客户端"""
    return redis_client

def get_redlock():
    """获取 Redlock 分布式锁实例"""
    return redlock

def get_db() -> Session:
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_processor() -> StripePaymentProcessor:
    return StripePaymentProcessor()


def get_ledger(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> ReservationLedger:
    """获取库存账本实例（依赖注入）"""
    return ReservationLedger(db=db, redis=redis)


def get_lifecycle(
    db: Session = Depends(get_db),
    ledger: ReservationLedger = Depends(get_ledger),
    processor: StripePaymentProcessor = Depends(get_processor),
) -> DropLifecycleManager:
    return DropLifecycleManager(db=db, ledger=ledger, processor=processor)


def get_notifier():
    """邮件走 Celery notification 队列"""
    return CeleryNotifier()


def get_coordinator(
    db: Session = Depends(get_db),
    ledger: ReservationLedger = Depends(get_ledger),
    lifecycle: DropLifecycleManager = Depends(get_lifecycle),
    processor: StripePaymentProcessor = Depends(get_processor),
) -> PaymentReservationCoordinator:
    return PaymentReservationCoordinator(db=db, ledger=ledger, lifecycle=lifecycle, processor=processor)


def get_materializer(
    db: Session = Depends(get_db),
    ledger: ReservationLedger = Depends(get_ledger),
    notifier = Depends(get_notifier),
    rlock = Depends(get_redlock),
) -> OrderMaterializer:
    return OrderMaterializer(db=db, ledger=ledger, notifier=notifier, rlock=rlock)


def get_order_service(db: Session = Depends(get_db)) -> OrderService:
    return OrderService(db)


def get_acting_admin(x_admin_user: Optional[str] = Header(None)) -> str:
    """操作人（由上游网关鉴权后透传，未提供时记为 admin）"""
    return (x_admin_user or "admin").strip() or "admin"

