from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    Time,
    TIMESTAMP,
    func,
)
from dropshop.db.base import Base, BigIntPK


class Location(Base):
    __tablename__ = "locations"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(
        String(255),
        nullable=False,
        comment="取餐点名称",
    )

    code = Column(
        String(4),
        nullable=False,
        unique=True,
        comment="取餐点简码（用于订单号，如 IH）",
    )

    district = Column(
        String(128),
        nullable=True,
    )

    address = Column(
        String(255),
        nullable=True,
    )

    location_url = Column(
        String(512),
        nullable=True,
        comment="地图链接",
    )

    pickup_hour_start = Column(
        Time,
        nullable=False,
        comment="取餐开始时间（门店本地时间）",
    )

    pickup_hour_end = Column(
        Time,
        nullable=False,
        comment="取餐结束时间（门店本地时间），即下单截止时间",
    )

    active = Column(
        Boolean,
        nullable=False,
        default=True,
    )

    drop_sequence = Column(
        Integer,
        nullable=False,
        default=0,
        comment="已分配的场次序号（删除场次后不回收）",
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
