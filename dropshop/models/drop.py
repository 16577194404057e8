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
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from dropshop.db.base import Base, BigIntPK


# 1️ 场次状态枚举

class DropStatus(str, enum.Enum):
    UPCOMING = "upcoming"      # 未开放
    ACTIVE = "active"          # 开放下单（截单时间已冻结）
    COMPLETED = "completed"    # 已结束（终态）
    CANCELLED = "cancelled"    # 已取消（终态）


# 2️ 场次表

class Drop(Base):
    __tablename__ = "drops"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    date = Column(
        Date,
        nullable=False,
        index=True,
        comment="场次日期（门店本地日期）",
    )

    location_id = Column(
        BigInteger,
        ForeignKey("locations.id"),
        nullable=False,
        index=True,
        comment="取餐点ID",
    )

    status = Column(
        Enum(
            DropStatus,
            name="drop_status_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=DropStatus.UPCOMING,
        comment="场次状态",
    )

    pickup_deadline = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="下单截止时间（激活时冻结，UTC）",
    )

    drop_number = Column(
        Integer,
        nullable=False,
        comment="该取餐点的第几场（用于订单号）",
    )

    order_sequence = Column(
        Integer,
        nullable=False,
        default=0,
        comment="已分配的订单序号",
    )

    notes = Column(
        Text,
        nullable=True,
    )

    last_modified_by = Column(
        String(64),
        nullable=True,
        comment="最后修改状态的管理员",
    )

    status_changed_at = Column(
        TIMESTAMP(timezone=True),
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

    location = relationship("Location", lazy="joined")
    drop_products = relationship(
        "DropProduct",
        back_populates="drop",
        cascade="all, delete-orphan",
        order_by="DropProduct.id",
    )

    # 场次号用于订单号前缀，同一取餐点内不能重复
    __table_args__ = (
        UniqueConstraint(
            "location_id",
            "drop_number",
            name="uq_location_drop_number",
        ),
    )


# 3️ 场次商品库存表

class DropProduct(Base):
    __tablename__ = "drop_products"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    drop_id = Column(
        BigInteger,
        ForeignKey("drops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="场次ID",
    )

    product_id = Column(
        BigInteger,
        ForeignKey("products.id"),
        nullable=False,
        comment="商品ID",
    )

    stock_quantity = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="总库存（确认扣减后减少）",
    )

    reserved_quantity = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="已预占库存（支付中）",
    )

    selling_price = Column(
        Numeric(10, 2),
        nullable=False,
        comment="售价快照（创建时固定，不随商品改价变化）",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    drop = relationship("Drop", back_populates="drop_products")
    product = relationship("Product", lazy="joined")

    @property
    def available_quantity(self) -> int:
        """可售库存 = 总库存 - 已预占"""
        return self.stock_quantity - self.reserved_quantity

    __table_args__ = (
        CheckConstraint(
            "reserved_quantity >= 0",
            name="ck_reserved_quantity_non_negative",
        ),
        CheckConstraint(
            "reserved_quantity <= stock_quantity",
            name="ck_reserved_not_exceeding_stock",
        ),
        UniqueConstraint(
            "drop_id",
            "product_id",
            name="uq_drop_product",
        ),
    )


# 4️ 高频查询优化索引

Index(
    "idx_drops_status_deadline",
    Drop.status,
    Drop.pickup_deadline,
)
