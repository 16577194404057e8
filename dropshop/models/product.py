from sqlalchemy import (
    Column,
    String,
    Integer,
    Numeric,
    Boolean,
    Text,
    TIMESTAMP,
    func,
    Index,
)
from dropshop.db.base import Base, BigIntPK


class Product(Base):
    __tablename__ = "products"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    name = Column(
        String(255),
        nullable=False,
        comment="商品名称",
    )

    description = Column(
        Text,
        nullable=True,
    )

    category = Column(
        String(32),
        nullable=False,
        default="sandwich",
        comment="sandwich / side / dessert / beverage",
    )

    sell_price = Column(
        Numeric(10, 2),
        nullable=False,
        comment="当前标价（场次创建时快照为 selling_price）",
    )

    active = Column(
        Boolean,
        nullable=False,
        default=True,
    )

    sort_order = Column(
        Integer,
        nullable=False,
        default=0,
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
        onupdate=func.now(),
    )


Index(
    "idx_products_name",
    Product.name,
)
