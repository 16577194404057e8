"""测试配置和 fixtures"""
import itertools
from datetime import time, timedelta
from decimal import Decimal

import pytest
from unittest.mock import Mock
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from redis import Redis
from redlock import Redlock

from dropshop.db.base import Base
from dropshop.models import DropStatus, Location, Product
from dropshop.services.deadline import utcnow
from dropshop.services.drop_service import DropLifecycleManager
from dropshop.services.ledger import ReservationLedger
from dropshop.services.order_service import OrderMaterializer
from dropshop.services.payment_processor import PaymentIntentHandle, StripePaymentProcessor
from dropshop.services.payment_service import PaymentReservationCoordinator
from dropshop.schemas.payments import CartItem, CustomerInfo


@pytest.fixture
def engine(tmp_path):
    """文件型 SQLite，支持多线程并发测试"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'dropshop.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # pysqlite 默认的事务处理与 SAVEPOINT 不兼容，改为显式 BEGIN IMMEDIATE
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """创建测试数据库会话"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def mock_redis():
    """创建模拟 Redis 客户端"""
    redis_mock = Mock(spec=Redis)
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.delete.return_value = 1
    return redis_mock


@pytest.fixture
def mock_redlock():
    """创建模拟 Redlock 分布式锁"""
    redlock_mock = Mock(spec=Redlock)
    lock_mock = Mock()
    redlock_mock.lock.return_value = lock_mock
    redlock_mock.unlock.return_value = True
    return redlock_mock


@pytest.fixture
def mock_processor():
    """模拟支付服务，意图ID 依次为 pi_test_1, pi_test_2 ..."""
    processor = Mock(spec=StripePaymentProcessor)
    processor.created = {}
    counter = itertools.count(1)

    def create_intent(amount, metadata, idempotency_key=None):
        handle = PaymentIntentHandle(
            id=f"pi_test_{next(counter)}",
            status="requires_payment_method",
            client_secret="pi_secret_test",
            amount=amount,
            metadata=dict(metadata),
        )
        processor.created[handle.id] = handle
        return handle

    processor.create_intent.side_effect = create_intent
    return processor


@pytest.fixture
def succeed(mock_processor):
    """模拟支付成功：返回 succeeded 状态、携带创建时 metadata 的意图"""
    def _succeed(intent_id):
        created = mock_processor.created[intent_id]
        return PaymentIntentHandle(
            id=intent_id,
            status="succeeded",
            amount=created.amount,
            metadata=dict(created.metadata),
        )
    return _succeed


@pytest.fixture
def mock_notifier():
    notifier = Mock()
    notifier.send.return_value = True
    notifier.send_admin_alert.return_value = True
    return notifier


@pytest.fixture
def ledger(db_session, mock_redis):
    return ReservationLedger(db_session, mock_redis)


@pytest.fixture
def lifecycle(db_session, ledger, mock_processor):
    return DropLifecycleManager(db_session, ledger, processor=mock_processor)


@pytest.fixture
def coordinator(db_session, ledger, lifecycle, mock_processor):
    return PaymentReservationCoordinator(db_session, ledger, lifecycle, mock_processor)


@pytest.fixture
def materializer(db_session, ledger, mock_notifier, mock_redlock):
    return OrderMaterializer(db_session, ledger, notifier=mock_notifier, rlock=mock_redlock)


@pytest.fixture
def location(db_session):
    """示例取餐点：14:00 截单"""
    loc = Location(
        name="Impact Hub",
        code="IH",
        district="Paris 11e",
        location_url="https://maps.example.com/ih",
        pickup_hour_start=time(11, 30),
        pickup_hour_end=time(14, 0),
    )
    db_session.add(loc)
    db_session.commit()
    return loc


@pytest.fixture
def products(db_session):
    """示例商品"""
    items = [
        Product(name="Jambon Beurre", category="sandwich", sell_price=Decimal("8.50")),
        Product(name="Cookie", category="dessert", sell_price=Decimal("3.00")),
    ]
    db_session.add_all(items)
    db_session.commit()
    return items


@pytest.fixture
def drop_date():
    """两天后的场次，截单时间一定在未来"""
    return (utcnow() + timedelta(days=2)).date()


@pytest.fixture
def upcoming_drop(lifecycle, location, products, drop_date):
    return lifecycle.create_drop(
        drop_date,
        location.id,
        [
            {"product_id": products[0].id, "stock_quantity": 10},
            {"product_id": products[1].id, "stock_quantity": 5},
        ],
    )


@pytest.fixture
def active_drop(lifecycle, upcoming_drop):
    return lifecycle.change_status(upcoming_drop.id, DropStatus.ACTIVE, acting_admin="alice")


@pytest.fixture
def customer_info(drop_date):
    return CustomerInfo(
        name="Alice Martin",
        email="alice@example.com",
        phone="+33600000000",
        pickup_time="12:30",
        pickup_date=drop_date.isoformat(),
    )


@pytest.fixture
def make_cart():
    """按场次商品顺序构造购物车：make_cart(drop, 2, 1)"""
    def _make(drop, *quantities):
        return [
            CartItem(id=dp.id, name=dp.product.name, quantity=quantity, price=dp.selling_price)
            for dp, quantity in zip(drop.drop_products, quantities)
            if quantity
        ]
    return _make
