import enum

from sqlalchemy import (
    Column,
    BigInteger,
    String,
    Integer,
    TIMESTAMP,
    func,
    Enum,
    Index,
)
from dropshop.db.base import Base, BigIntPK

# 1定义库存变更类型（数据库 ENUM）
class ChangeType(str, enum.Enum):
    RESERVE = "RESERVE"   # 预占库存
    COMMIT = "COMMIT"     # 确认扣减
    RELEASE = "RELEASE"   # 释放库存
    ADJUST = "ADJUST"     # 人工调整
# 2️库存日志表
class InventoryLog(Base):
    __tablename__ = "inventory_logs"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    drop_product_id = Column(
        BigInteger,
        nullable=False,
        index=True,
        comment="场次商品ID",
    )

    reference = Column(
        String(128),
        nullable=True,
        index=True,
        comment="关联的预占批次或支付意图（库存调整时为空）",
    )

    change_type = Column(
        Enum(
            ChangeType,
            name="inventory_change_type",
        ),
        nullable=False,
        comment="库存变更类型",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="变更数量",
    )

    before_available = Column(
        Integer,
        nullable=False,
        comment="变更前可用库存",
    )

    after_available = Column(
        Integer,
        nullable=False,
        comment="变更后可用库存",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    operator = Column(
        String(64),
        nullable=True,
        comment="操作人/服务名",
    )

    source = Column(
        String(50),
        nullable=True,
        comment="来源：checkout / webhook / cleanup_job / admin",
    )

# 3️组合索引（高频查询优化）


Index(
    "idx_inventory_logs_dp_created_desc",
    InventoryLog.drop_product_id,
    InventoryLog.created_at.desc(),
)
