"""库存与场次相关的 Celery 定时任务"""

from celery_app import app
from dropshop.db.session import SessionLocal
from dropshop.services.drop_service import DropLifecycleManager
from dropshop.services.ledger import ReservationLedger
from dropshop.services.payment_processor import StripePaymentProcessor
from dropshop.services.payment_service import PaymentReservationCoordinator
from dropshop.core.redis import redis_client
import logging

logger = logging.getLogger(__name__)

@app.task(name='tasks.inventory.sweep_abandoned_reservations')
def sweep_abandoned_reservations(batch_size: int = 500):
    """释放超时未支付的预占，并尽力取消对应的支付意图

    Args:
        batch_size: 批处理大小，默认500条

    Returns:
        清理的记录数量描述
    """
    db = SessionLocal()
    try:
        ledger = ReservationLedger(db, redis_client)
        coordinator = PaymentReservationCoordinator(
            db,
            ledger,
            DropLifecycleManager(db, ledger),
            StripePaymentProcessor(),
        )
        count = coordinator.sweep_abandoned(batch_size=batch_size)
        result = f"成功释放 {count} 条过期预占记录"
        logger.info(result)
        return result
    except Exception as e:
        logger.error(f"释放过期预占任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

@app.task(name='tasks.inventory.complete_expired_drops')
def complete_expired_drops():
    """截单（含宽限期）后自动结束场次"""
    db = SessionLocal()
    try:
        lifecycle = DropLifecycleManager(db, ReservationLedger(db, redis_client))
        count = lifecycle.complete_expired_drops()
        result = f"自动结束 {count} 个场次"
        logger.info(result)
        return result
    except Exception as e:
        logger.error(f"自动结束场次任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

# 导出任务
__all__ = [
    'sweep_abandoned_reservations',
    'complete_expired_drops',
]
