# backend/modules/bom/models/bom_models.py

"""
Catalog and bill-of-materials models.

Commerce products and variations are local mirrors of the external store;
the store stays the source of truth and these rows are a cache kept in sync
by the deduction executor and the inventory sync service.
"""

import uuid

from sqlalchemy import (
    Column, Integer, String, ForeignKey, DateTime, Boolean, Float,
    Text, Numeric, JSON, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from core.database import Base
from core.mixins import AccountScopedMixin, TimestampMixin
from ..enums.bom_enums import ComponentType, ProductType


def _uuid() -> str:
    return str(uuid.uuid4())


class CommerceProduct(Base, AccountScopedMixin, TimestampMixin):
    """Local mirror of a product on the commerce platform"""
    __tablename__ = "commerce_products"
    __table_args__ = (
        UniqueConstraint("account_id", "woo_id", name="uq_commerce_product_account_woo"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    woo_id = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    product_type = Column(String(30), nullable=False, default=ProductType.SIMPLE.value)
    stock_quantity = Column(Float, nullable=True)
    raw_data = Column(JSON, nullable=True)

    variations = relationship(
        "ProductVariation", back_populates="product", cascade="all, delete-orphan"
    )
    boms = relationship("BOM", back_populates="product", cascade="all, delete-orphan")

    @property
    def is_variable(self) -> bool:
        """Variable parents have no stock of their own"""
        if (self.product_type or "").startswith(ProductType.VARIABLE.value):
            return True
        raw = self.raw_data or {}
        return bool(raw.get("variations"))

    @property
    def cached_stock(self) -> float:
        if self.stock_quantity is not None:
            return self.stock_quantity
        raw = self.raw_data or {}
        return raw.get("stock_quantity") or 0

    def __repr__(self):
        return f"<CommerceProduct(id={self.id}, woo_id={self.woo_id}, name='{self.name}')>"


class ProductVariation(Base, TimestampMixin):
    """Local mirror of one variation of a variable product"""
    __tablename__ = "product_variations"
    __table_args__ = (
        UniqueConstraint("product_id", "woo_id", name="uq_product_variation_product_woo"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(String(36), ForeignKey("commerce_products.id"), nullable=False, index=True)
    woo_id = Column(Integer, nullable=False)
    sku = Column(String(100), nullable=True)
    stock_quantity = Column(Float, nullable=True)
    raw_data = Column(JSON, nullable=True)

    product = relationship("CommerceProduct", back_populates="variations")

    @property
    def cached_stock(self) -> float:
        if self.stock_quantity is not None:
            return self.stock_quantity
        raw = self.raw_data or {}
        return raw.get("stock_quantity") or 0

    def __repr__(self):
        return f"<ProductVariation(product_id={self.product_id}, woo_id={self.woo_id})>"


class InternalProduct(Base, AccountScopedMixin, TimestampMixin):
    """Stock item that only exists locally (packaging, raw materials)"""
    __tablename__ = "internal_products"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    stock_quantity = Column(Float, nullable=False, default=0)

    def __repr__(self):
        return f"<InternalProduct(id={self.id}, name='{self.name}')>"


class BOM(Base, TimestampMixin):
    """Bill of materials for a product, or for one variation of it"""
    __tablename__ = "boms"
    __table_args__ = (
        UniqueConstraint("product_id", "variation_id", name="uq_bom_product_variation"),
    )

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(String(36), ForeignKey("commerce_products.id"), nullable=False, index=True)
    # Variation woo id, 0 when the BOM belongs to the product itself
    variation_id = Column(Integer, nullable=False, default=0)
    notes = Column(Text, nullable=True)

    product = relationship("CommerceProduct", back_populates="boms")
    items = relationship(
        "BOMItem",
        back_populates="bom",
        cascade="all, delete-orphan",
        order_by="[BOMItem.position, BOMItem.id]"
    )

    def __repr__(self):
        return f"<BOM(id={self.id}, product_id={self.product_id}, variation_id={self.variation_id})>"


class BOMItem(Base, TimestampMixin):
    """One recipe line of a BOM"""
    __tablename__ = "bom_items"
    __table_args__ = (
        # Exactly one of commerce product / internal product
        CheckConstraint(
            "(child_product_id IS NULL) <> (internal_product_id IS NULL)",
            name="ck_bom_item_single_component"
        ),
        # A variation is always qualified by its parent product
        CheckConstraint(
            "child_variation_id IS NULL OR child_product_id IS NOT NULL",
            name="ck_bom_item_variation_has_parent"
        ),
        Index("ix_bom_items_child_product", "child_product_id", "child_variation_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bom_id = Column(Integer, ForeignKey("boms.id"), nullable=False, index=True)
    child_product_id = Column(String(36), ForeignKey("commerce_products.id"), nullable=True)
    child_variation_id = Column(Integer, ForeignKey("product_variations.id"), nullable=True)
    internal_product_id = Column(
        String(36), ForeignKey("internal_products.id"), nullable=True, index=True
    )

    quantity = Column(Numeric(12, 4), nullable=False, default=1)
    # Overage applied to cost and buildable-unit math, never to stock deduction
    waste_factor = Column(Numeric(6, 4), nullable=False, default=0)
    position = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)
    deactivated_reason = Column(String(50), nullable=True)

    bom = relationship("BOM", back_populates="items")
    child_product = relationship("CommerceProduct", foreign_keys=[child_product_id])
    child_variation = relationship("ProductVariation", foreign_keys=[child_variation_id])
    internal_product = relationship("InternalProduct", foreign_keys=[internal_product_id])

    @property
    def component_type(self):
        """Resolve the component kind, internal product taking precedence"""
        if self.internal_product_id:
            return ComponentType.INTERNAL_PRODUCT
        if self.child_variation_id:
            return ComponentType.PRODUCT_VARIATION
        if self.child_product_id:
            return ComponentType.COMMERCE_PRODUCT
        return None

    def __repr__(self):
        return f"<BOMItem(id={self.id}, bom_id={self.bom_id}, quantity={self.quantity})>"


class CommerceStoreCredentials(Base, TimestampMixin):
    """REST credentials of an account's commerce store"""
    __tablename__ = "commerce_store_credentials"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(String(64), nullable=False, unique=True, index=True)
    store_url = Column(String(255), nullable=False)
    consumer_key = Column(String(255), nullable=False)
    consumer_secret = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_verified_at = Column(DateTime, nullable=True)
