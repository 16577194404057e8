from sqlalchemy import (
    Column,
    String,
    TIMESTAMP,
    func,
)
from dropshop.db.base import Base, BigIntPK


class Client(Base):
    """下单顾客（按邮箱去重，无账号体系）"""
    __tablename__ = "clients"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(
        String(255),
        nullable=False,
    )

    email = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="顾客邮箱（唯一）",
    )

    phone = Column(
        String(64),
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
