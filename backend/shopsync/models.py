"""SQLAlchemy ORM models for the TikTok Shop mirror.

WHAT:
    Shop connections (credentials + per-resource sync state) and the three
    mirrored record types: orders, products and settlements.

WHY:
    - Natural key + shop row is the idempotency key for every upsert.
    - Event times stay as integer Unix seconds, exactly as TikTok returns
      them, so incremental windows can be computed without conversions.
    - `details` keeps the full upstream payload for analytics consumers.

REFERENCES:
    - shopsync/services/shop_store.py (all reads/writes)
    - https://partner.tiktokshop.com/docv2/page/order-api-overview
"""

import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship

from shopsync.utils.clock import utcnow


# Single Base used by the entire application
Base = declarative_base()


class TikTokShop(Base):
    """A connected TikTok storefront for one tenant account.

    WHAT: Credentials and per-resource sync state for one (account, shop) pair
    WHY: Every signed call needs the access token + shop_cipher; the
         last-synced columns drive incremental windows and staleness prompts
    NOTE: Several rows may share the same external shop_id (one per account).
          Upserts and last-synced stamps fan out to all of them.
    """
    __tablename__ = "tiktok_shops"
    __table_args__ = (
        UniqueConstraint("account_id", "shop_id", name="uq_tiktok_shop_account"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Owning tenant account (accounts table lives outside this service)
    account_id = Column(UUID(as_uuid=True), nullable=False, index=True)

    # TikTok identifiers
    shop_id = Column(String, nullable=False, index=True)  # External shop id
    shop_cipher = Column(String, nullable=True)  # Required by shop-scoped endpoints
    shop_name = Column(String, nullable=True)
    region = Column(String, nullable=True)  # e.g., "US", "GB"
    seller_type = Column(String, nullable=True)  # LOCAL / CROSS_BORDER

    # Encrypted OAuth tokens (see shopsync.security)
    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    refresh_token_expires_at = Column(DateTime, nullable=True)

    # Sync state (stamped only after a successful persistence pass)
    orders_last_synced_at = Column(DateTime, nullable=True)
    products_last_synced_at = Column(DateTime, nullable=True)
    settlements_last_synced_at = Column(DateTime, nullable=True)
    performance_last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    orders = relationship("ShopOrder", back_populates="shop", cascade="all, delete-orphan")
    products = relationship("ShopProduct", back_populates="shop", cascade="all, delete-orphan")
    settlements = relationship("ShopSettlement", back_populates="shop", cascade="all, delete-orphan")

    def last_synced_map(self) -> dict:
        """Per-resource last-synced instants, keyed by resource name."""
        return {
            "orders": self.orders_last_synced_at,
            "products": self.products_last_synced_at,
            "settlements": self.settlements_last_synced_at,
            "performance": self.performance_last_synced_at,
        }

    def __str__(self):
        return f"{self.shop_name or self.shop_id} ({self.region or '-'})"


class ShopOrder(Base):
    """Mirrored TikTok Shop order.

    WHAT: One order per (shop row, order_id)
    WHY: Orders are the source of truth for revenue; create_time drives the
         incremental window
    """
    __tablename__ = "tiktok_shop_orders"
    __table_args__ = (
        UniqueConstraint("shop_id", "order_id", name="uq_tiktok_shop_order"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("tiktok_shops.id"), nullable=False, index=True)

    order_id = Column(String, nullable=False)
    status = Column(String, nullable=True)  # UNPAID, AWAITING_SHIPMENT, COMPLETED, ...
    create_time = Column(BigInteger, nullable=False, index=True)  # Unix seconds
    update_time = Column(BigInteger, nullable=True)

    total_amount = Column(Numeric(18, 4), nullable=True)
    currency = Column(String, nullable=True)
    buyer_user_id = Column(String, nullable=True)
    line_item_count = Column(Integer, nullable=True)

    details = Column(JSON, nullable=True)  # Full upstream payload

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    shop = relationship("TikTokShop", back_populates="orders")


class ShopProduct(Base):
    """Mirrored active product listing plus trailing performance.

    WHAT: One product per (shop row, product_id)
    WHY: Products are fully refreshed every sync (price/stock change anytime);
         performance columns come from the 30-day analytics report
    """
    __tablename__ = "tiktok_shop_products"
    __table_args__ = (
        UniqueConstraint("shop_id", "product_id", name="uq_tiktok_shop_product"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("tiktok_shops.id"), nullable=False, index=True)

    product_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    status = Column(String, nullable=True)
    create_time = Column(BigInteger, nullable=True)
    update_time = Column(BigInteger, nullable=True)

    price = Column(Numeric(18, 4), nullable=True)  # Representative SKU price
    currency = Column(String, nullable=True)
    inventory = Column(Integer, nullable=True)  # Sum across SKUs
    images = Column(JSON, nullable=True)  # List of image URLs

    # Trailing performance (merged after upsert)
    ctr = Column(Float, nullable=True)
    gmv = Column(Numeric(18, 4), nullable=True)
    orders_count = Column(Integer, nullable=True)
    units_sold = Column(Integer, nullable=True)

    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    shop = relationship("TikTokShop", back_populates="products")


class ShopSettlement(Base):
    """Mirrored finance statement (settlement).

    WHAT: One statement per (shop row, settlement_id)
    WHY: Settled revenue vs order revenue feeds the unsettled-revenue estimate
    """
    __tablename__ = "tiktok_shop_settlements"
    __table_args__ = (
        UniqueConstraint("shop_id", "settlement_id", name="uq_tiktok_shop_settlement"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("tiktok_shops.id"), nullable=False, index=True)

    settlement_id = Column(String, nullable=False)
    statement_time = Column(BigInteger, nullable=False, index=True)  # Unix seconds
    payment_status = Column(String, nullable=True)

    revenue_amount = Column(Numeric(18, 4), nullable=True)
    settlement_amount = Column(Numeric(18, 4), nullable=True)  # Net paid out
    fee_amount = Column(Numeric(18, 4), nullable=True)
    adjustment_amount = Column(Numeric(18, 4), nullable=True)
    currency = Column(String, nullable=True)

    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    shop = relationship("TikTokShop", back_populates="settlements")
