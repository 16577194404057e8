import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    String,
    Text,
    Date,
    Numeric,
    TIMESTAMP,
    func,
    Enum,
    ForeignKey,
    CheckConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from dropshop.db.base import Base, BigIntPK


# 1️ 订单状态枚举

class OrderStatus(str, enum.Enum):
    PENDING = "pending"        # 待确认
    CONFIRMED = "confirmed"    # 已支付
    READY = "ready"            # 已备餐
    COMPLETED = "completed"    # 已取餐
    CANCELLED = "cancelled"    # 已取消


# 2️ 订单表（只在支付成功后创建，与 payment intent 一对一）

class Order(Base):
    __tablename__ = "orders"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    order_number = Column(
        String(32),
        nullable=False,
        unique=True,
        comment="订单号，如 IH01-001",
    )

    drop_id = Column(
        BigInteger,
        ForeignKey("drops.id"),
        nullable=False,
        index=True,
        comment="场次ID",
    )

    client_id = Column(
        BigInteger,
        ForeignKey("clients.id"),
        nullable=True,
        index=True,
    )

    customer_name = Column(
        String(255),
        nullable=False,
        comment="顾客姓名（打印取餐袋用）",
    )

    status = Column(
        Enum(
            OrderStatus,
            name="order_status_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=OrderStatus.CONFIRMED,
    )

    payment_intent_id = Column(
        String(128),
        nullable=False,
        unique=True,
        comment="支付意图ID（幂等键）",
    )

    payment_method = Column(
        String(32),
        nullable=False,
        default="stripe",
    )

    total_amount = Column(
        Numeric(10, 2),
        nullable=False,
    )

    pickup_time = Column(
        String(16),
        nullable=False,
        comment="取餐时间段",
    )

    order_date = Column(
        Date,
        nullable=False,
        comment="取餐日期",
    )

    special_instructions = Column(
        Text,
        nullable=True,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    drop = relationship("Drop")
    client = relationship("Client")
    order_products = relationship(
        "OrderProduct",
        back_populates="order",
        order_by="OrderProduct.id",
    )


# 3️ 订单商品表（创建后不可变）

class OrderProduct(Base):
    __tablename__ = "order_products"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    order_id = Column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    drop_product_id = Column(
        BigInteger,
        ForeignKey("drop_products.id"),
        nullable=False,
        index=True,
    )

    order_quantity = Column(
        Integer,
        nullable=False,
    )

    unit_price = Column(
        Numeric(10, 2),
        nullable=False,
        comment="下单时单价快照",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    order = relationship("Order", back_populates="order_products")
    drop_product = relationship("DropProduct")

    __table_args__ = (
        CheckConstraint(
            "order_quantity > 0",
            name="ck_order_quantity_positive",
        ),
    )


Index(
    "idx_orders_drop_status",
    Order.drop_id,
    Order.status,
)
