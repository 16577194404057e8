"""预占清理 / 场次结束本地执行脚本"""

import argparse
import logging
from dropshop.db.session import SessionLocal
from dropshop.services.drop_service import DropLifecycleManager
from dropshop.services.ledger import ReservationLedger
from dropshop.services.payment_processor import StripePaymentProcessor
from dropshop.services.payment_service import PaymentReservationCoordinator
from dropshop.services.deadline import utcnow
from dropshop.core.redis import redis_client

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def run_cleanup(batch_size: int = 500, dry_run: bool = False, complete_drops: bool = False):
    """执行过期预占清理

    Args:
        batch_size: 批处理大小
        dry_run: 是否为试运行模式（不实际执行清理）
        complete_drops: 是否同时结束已过截单时间的场次
    """
    db = SessionLocal()
    try:
        ledger = ReservationLedger(db, redis_client)
        if dry_run:
            # 试运行模式：只统计待清理记录数量
            expired_count = ledger.count_expired(utcnow())
            logger.info(f"试运行模式：发现 {expired_count} 条过期预占记录待清理")
            return expired_count

        lifecycle = DropLifecycleManager(db, ledger)
        coordinator = PaymentReservationCoordinator(db, ledger, lifecycle, StripePaymentProcessor())
        count = coordinator.sweep_abandoned(batch_size=batch_size)
        logger.info(f"清理完成：成功释放 {count} 条过期预占记录")

        if complete_drops:
            completed = lifecycle.complete_expired_drops()
            logger.info(f"自动结束 {completed} 个场次")
        return count

    except Exception as e:
        logger.error(f"清理执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

def main():
    """主函数"""
    parser = argparse.ArgumentParser(description='过期预占清理工具')
    parser.add_argument(
        '--batch-size',
        type=int,
        default=500,
        help='批处理大小 (默认: 500)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='试运行模式，只统计不执行清理'
    )
    parser.add_argument(
        '--complete-drops',
        action='store_true',
        help='同时结束已过截单时间的场次'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='详细输出模式'
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        result = run_cleanup(args.batch_size, args.dry_run, args.complete_drops)
        if args.dry_run:
            print(f"📊 试运行结果：发现 {result} 条过期记录")
        else:
            print(f"✅ 清理完成：处理了 {result} 条记录")
    except Exception as e:
        print(f"❌ 执行失败: {str(e)}")
        return 1

    return 0

if __name__ == "__main__":
    exit(main())
