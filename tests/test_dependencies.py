"""依赖注入单元测试"""
from unittest.mock import Mock, patch
from sqlalchemy.orm import Session
from redis import Redis
from redlock import Redlock

from dropshop.core.dependencies import (
    get_acting_admin,
    get_coordinator,
    get_db,
    get_ledger,
    get_lifecycle,
    get_materializer,
    get_notifier,
    get_order_service,
    get_redis,
    get_redlock,
)
from dropshop.services.drop_service import DropLifecycleManager
from dropshop.services.ledger import ReservationLedger
from dropshop.services.notifier import CeleryNotifier
from dropshop.services.order_service import OrderMaterializer, OrderService
from dropshop.services.payment_processor import StripePaymentProcessor
from dropshop.services.payment_service import PaymentReservationCoordinator


class TestDependencies:
    """依赖注入测试类"""

    def test_get_db(self):
        """测试数据库会话依赖"""
        with patch('dropshop.core.dependencies.SessionLocal') as mock_session_local:
            db_mock = Mock(spec=Session)
            mock_session_local.return_value = db_mock

            # 获取生成器
            gen = get_db()
            db = next(gen)

            assert db == db_mock
            mock_session_local.assert_called_once()

            # 测试清理
            gen.close()
            db_mock.close.assert_called_once()

    def test_get_redis(self):
        with patch('dropshop.core.dependencies.redis_client') as mock_redis_client:
            assert get_redis() == mock_redis_client

    def test_get_redlock(self):
        with patch('dropshop.core.dependencies.redlock') as mock_redlock:
            assert get_redlock() == mock_redlock

    def test_get_ledger(self):
        """测试库存账本依赖注入"""
        db_mock = Mock(spec=Session)
        redis_mock = Mock(spec=Redis)

        ledger = get_ledger(db=db_mock, redis=redis_mock)

        assert isinstance(ledger, ReservationLedger)
        assert ledger.db == db_mock
        assert ledger.redis == redis_mock

    def test_get_ledger_without_redis(self):
        """Redis 不可用时账本直接读数据库"""
        ledger = get_ledger(db=Mock(spec=Session), redis=None)
        assert ledger.redis is None

    def test_service_wiring(self):
        db_mock = Mock(spec=Session)
        ledger = get_ledger(db=db_mock, redis=None)
        processor = Mock(spec=StripePaymentProcessor)
        lifecycle = get_lifecycle(db=db_mock, ledger=ledger, processor=processor)
        rlock = Mock(spec=Redlock)

        coordinator = get_coordinator(db=db_mock, ledger=ledger, lifecycle=lifecycle, processor=processor)
        materializer = get_materializer(db=db_mock, ledger=ledger, notifier=Mock(), rlock=rlock)

        assert isinstance(lifecycle, DropLifecycleManager)
        assert lifecycle.processor is processor
        assert isinstance(coordinator, PaymentReservationCoordinator)
        assert coordinator.processor is processor
        assert isinstance(materializer, OrderMaterializer)
        assert materializer.rlock is rlock
        assert isinstance(get_order_service(db=db_mock), OrderService)

    def test_get_notifier(self):
        assert isinstance(get_notifier(), CeleryNotifier)

    def test_get_acting_admin(self):
        assert get_acting_admin("alice") == "alice"
        assert get_acting_admin(None) == "admin"
        assert get_acting_admin("  ") == "admin"
