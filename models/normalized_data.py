from sqlalchemy import (
    Column, String, Text, Integer, BigInteger, Numeric, Boolean, DateTime,
    ForeignKey, ForeignKeyConstraint, Index, UniqueConstraint
)
from models.base import Base, BigIntPK, JSONType, utcnow


class NormalizedColumnsMixin:
    """
    Columns shared by every normalized table.

    - (tenant_id, external_id, source_system) is the upsert key
    - raw_record_id points back at the raw row the entity was last built from
    - inserted_at is written once; synced_at changes on every successful write
    """

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(String(255), nullable=False, index=True)
    source_system = Column(String(50), nullable=False, default="shopify")
    external_id = Column(String(255), nullable=False)
    raw_payload = Column(JSONType, nullable=True)
    inserted_at = Column(DateTime, nullable=False, default=utcnow)
    synced_at = Column(DateTime, nullable=False, default=utcnow)


class NormalizedOrder(NormalizedColumnsMixin, Base):
    """
    Business-ready orders.

    Field Mapping (upstream -> column):
    - id -> external_id
    - order_number / name -> order_number / order_name
    - customer.email (fallback email) -> customer_email
    - total_price, subtotal_price, total_tax -> fixed point, 2 decimals
    - closed_at -> fulfilled_at
    - tags (comma separated) -> tags (sorted list)
    """
    __tablename__ = "orders"

    raw_record_id = Column(BigInteger, ForeignKey("raw_records.id", ondelete="SET NULL"), nullable=True)

    order_number = Column(String(64), nullable=True, index=True)
    order_name = Column(String(64), nullable=True)
    customer_email = Column(String(320), nullable=True, index=True)
    customer_first_name = Column(String(255), nullable=True)
    customer_last_name = Column(String(255), nullable=True)

    total_price = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal_price = Column(Numeric(12, 2), nullable=True)
    total_tax = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")

    financial_status = Column(String(50), nullable=True, index=True)
    fulfillment_status = Column(String(50), nullable=True, index=True)

    created_at = Column(DateTime, nullable=True, index=True)
    updated_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    shipping_address = Column(JSONType, nullable=True)
    tags = Column(JSONType, nullable=True)
    note = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", "source_system", name="uq_orders_tenant_external_source"),
    )


class NormalizedOrderLine(NormalizedColumnsMixin, Base):
    """Line items; the full set is replaced whenever the parent order is rewritten"""
    __tablename__ = "order_lines"

    raw_record_id = Column(BigInteger, ForeignKey("raw_records.id", ondelete="SET NULL"), nullable=True)
    order_external_id = Column(String(255), nullable=False)

    product_id = Column(String(255), nullable=True, index=True)
    variant_id = Column(String(255), nullable=True, index=True)
    title = Column(String(500), nullable=True)
    variant_title = Column(String(500), nullable=True)
    sku = Column(String(255), nullable=True, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    fulfillment_status = Column(String(50), nullable=True)
    fulfillable_quantity = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", "source_system", name="uq_order_lines_tenant_external_source"),
        ForeignKeyConstraint(
            ["tenant_id", "order_external_id", "source_system"],
            ["orders.tenant_id", "orders.external_id", "orders.source_system"],
            ondelete="CASCADE",
        ),
        Index("idx_order_lines_parent", "tenant_id", "order_external_id"),
    )


class NormalizedProduct(NormalizedColumnsMixin, Base):
    """
    Business-ready products.

    inventory_count is the sum of the variants' inventory_quantity at the
    time of the transform.
    """
    __tablename__ = "products"

    raw_record_id = Column(BigInteger, ForeignKey("raw_records.id", ondelete="SET NULL"), nullable=True)

    title = Column(String(500), nullable=False)
    handle = Column(String(255), nullable=True)
    body_html = Column(Text, nullable=True)
    vendor = Column(String(255), nullable=True, index=True)
    product_type = Column(String(255), nullable=True)
    status = Column(String(50), nullable=True, index=True)
    tags = Column(JSONType, nullable=True)
    image_url = Column(String(2048), nullable=True)
    inventory_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)
    published_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", "source_system", name="uq_products_tenant_external_source"),
    )


class NormalizedVariant(NormalizedColumnsMixin, Base):
    """Product variants; replaced as a set together with their product"""
    __tablename__ = "product_variants"

    raw_record_id = Column(BigInteger, ForeignKey("raw_records.id", ondelete="SET NULL"), nullable=True)
    product_external_id = Column(String(255), nullable=False)

    title = Column(String(500), nullable=True)
    sku = Column(String(255), nullable=True, index=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    position = Column(Integer, nullable=False, default=0)
    inventory_quantity = Column(Integer, nullable=True)
    requires_shipping = Column(Boolean, nullable=True)
    taxable = Column(Boolean, nullable=True)

    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", "source_system", name="uq_variants_tenant_external_source"),
        ForeignKeyConstraint(
            ["tenant_id", "product_external_id", "source_system"],
            ["products.tenant_id", "products.external_id", "products.source_system"],
            ondelete="CASCADE",
        ),
        Index("idx_variants_parent", "tenant_id", "product_external_id"),
    )
