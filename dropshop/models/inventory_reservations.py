import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    func,
    Enum,
    UniqueConstraint,
    Index,
    ForeignKey,
)
from dropshop.db.base import Base, BigIntPK



# 1️ 预占状态枚举

class ReservationStatus(str, enum.Enum):
    RESERVED = "RESERVED"     # 已预占（支付中）
    COMMITTED = "COMMITTED"   # 已确认扣减（订单已生成）
    RELEASED = "RELEASED"     # 已释放（失败 / 超时 / 取消）



# 2️ 预占记录表
# 库存本身只体现为 drop_products.reserved_quantity 的增减，
# 这里仅记账，用于取消场次和超时清理时找到在途预占

class InventoryReservation(Base):
    __tablename__ = "inventory_reservations"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    hold_id = Column(
        String(64),
        nullable=False,
        index=True,
        comment="预占批次ID（一次下单请求一批）",
    )

    payment_intent_id = Column(
        String(128),
        nullable=True,
        index=True,
        comment="支付意图ID（创建成功后回填）",
    )

    drop_id = Column(
        BigInteger,
        ForeignKey("drops.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="场次ID",
    )

    drop_product_id = Column(
        BigInteger,
        ForeignKey("drop_products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="场次商品ID",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="预占数量",
    )

    status = Column(
        Enum(
            ReservationStatus,
            name="reservation_status_type",
        ),
        nullable=False,
        default=ReservationStatus.RESERVED,
        server_default=ReservationStatus.RESERVED.value,
        comment="预占状态",
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

    expired_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="预占过期时间",
    )

    # 同一批次同一商品只能有一条预占记录
    __table_args__ = (
        UniqueConstraint(
            "hold_id",
            "drop_product_id",
            name="uq_hold_drop_product",
        ),
    )



# 3️ 高频查询优化索引

Index(
    "idx_reservation_status_expired",
    InventoryReservation.status,
    InventoryReservation.expired_at,
)
