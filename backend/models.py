from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, ForeignKey, JSON, Text,
    CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import relationship
import datetime
import enum
import uuid

Base = declarative_base()


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_uuid() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    UNDELIVERED = "undelivered"
    PARTIAL = "partial"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DeliveryStatus(str, enum.Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class DeliveryMode(str, enum.Enum):
    AMOUNT_ONLY = "amount_only"
    AMOUNT_AND_QUANTITY = "amount_and_quantity"
    FULL = "full"


class DeliveryReason(str, enum.Enum):
    READY_PARTIAL = "ready-partial"
    INVENTORY_LIMITED = "inventory-limited"
    CUSTOMER_REQUEST = "customer-request"
    QUALITY_CHECK = "quality-check"
    PRODUCTION_DELAY = "production-delay"
    SHIPPING_ARRANGEMENT = "shipping-arrangement"
    CASH_FLOW = "cash-flow"
    OTHER = "other"


class PipelineState(str, enum.Enum):
    """validated -> recorded -> allocated. Only the last two are ever persisted."""
    VALIDATED = "validated"
    RECORDED = "recorded"
    ALLOCATED = "allocated"


class MovementType(str, enum.Enum):
    IN = "in"
    OUT = "out"


class AllocationMethod(str, enum.Enum):
    RATIO = "ratio"
    MANUAL = "manual"


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, index=True)
    product_code = Column(String(64), index=True)
    product_name = Column(String(255))
    purchase_price = Column(Float, default=0.0)
    selling_price = Column(Float, default=0.0)

    # Display cache of sum(in) - sum(out); derivations.derive_product_stock is the truth
    current_stock = Column(Float, default=0.0, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    movements = relationship("InventoryMovement", back_populates="product")


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"
    id = Column(Integer, primary_key=True, index=True)
    order_no = Column(String(64), unique=True, index=True)
    partner_id = Column(Integer, nullable=True, index=True)

    # Fixed at creation
    total_amount = Column(Float, nullable=False, default=0.0)

    # Display cache of total - sum(confirmed deliveries); see derivations.derive_remaining_amount
    remaining_amount = Column(Float, nullable=False, default=0.0)

    delivery_deadline = Column(Date, nullable=True)
    status = Column(String(20), default=OrderStatus.UNDELIVERED.value, nullable=False)
    memo = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship("PurchaseOrderItem", back_populates="order", order_by="PurchaseOrderItem.id")
    deliveries = relationship("Delivery", back_populates="order", order_by="Delivery.delivery_sequence")

    __table_args__ = (
        CheckConstraint(
            "status IN ('undelivered', 'partial', 'completed', 'cancelled')",
            name="ck_purchase_order_status"
        ),
    )


class PurchaseOrderItem(Base):
    __tablename__ = "purchase_order_items"
    id = Column(Integer, primary_key=True, index=True)
    purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Float, nullable=False)
    unit_price = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)

    order = relationship("PurchaseOrder", back_populates="items")
    product = relationship("Product")


class Delivery(Base):
    """
    A confirmed partial or full fulfilment against a purchase order
    (transaction_type "purchase").

    Amount, parent order and sequence are immutable once written; only the
    pipeline bookkeeping columns move forward.
    """
    __tablename__ = "deliveries"
    id = Column(String(36), primary_key=True, default=new_uuid)
    transaction_type = Column(String(20), default="purchase", nullable=False)
    parent_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=False, index=True)
    partner_id = Column(Integer, nullable=True)

    total_amount = Column(Float, nullable=False)
    delivery_sequence = Column(Integer, nullable=False)
    transaction_date = Column(Date, nullable=False)
    scheduled_date = Column(Date, nullable=True)
    status = Column(String(20), default=DeliveryStatus.CONFIRMED.value, nullable=False)

    delivery_mode = Column(String(30), default=DeliveryMode.AMOUNT_ONLY.value, nullable=False)
    reason_code = Column(String(40), nullable=True)
    memo = Column(Text, nullable=True)

    # {order_item_id: quantity} as normalized by the validator
    requested_quantities = Column(JSON, nullable=True)

    idempotency_key = Column(String(128), nullable=True)

    pipeline_state = Column(String(20), default=PipelineState.RECORDED.value, nullable=False)
    allocated_at = Column(DateTime, nullable=True)
    allocation_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)

    order = relationship("PurchaseOrder", back_populates="deliveries")

    __table_args__ = (
        UniqueConstraint("parent_order_id", "delivery_sequence", name="uq_delivery_order_sequence"),
        UniqueConstraint("idempotency_key", name="uq_delivery_idempotency_key"),
        CheckConstraint("delivery_sequence >= 1", name="ck_delivery_sequence_positive"),
        CheckConstraint(
            "delivery_mode IN ('amount_only', 'amount_and_quantity', 'full')",
            name="ck_delivery_mode"
        ),
        CheckConstraint(
            "pipeline_state IN ('recorded', 'allocated')",
            name="ck_delivery_pipeline_state"
        ),
        Index("ix_delivery_order_created", "parent_order_id", "created_at"),
    )


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"
    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    purchase_order_item_id = Column(Integer, ForeignKey("purchase_order_items.id"), nullable=True, index=True)
    movement_type = Column(String(10), nullable=False)
    quantity = Column(Float, nullable=False)

    # The product's real unit cost, not a pro-rated delivery price
    unit_price = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)

    delivery_id = Column(String(36), ForeignKey("deliveries.id"), nullable=True, index=True)
    delivery_sequence = Column(Integer, nullable=True)
    memo = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    product = relationship("Product", back_populates="movements")

    __table_args__ = (
        CheckConstraint("movement_type IN ('in', 'out')", name="ck_movement_type"),
    )


class AccountingAllocation(Base):
    """Money-side bookkeeping for a delivery; independent of physical stock."""
    __tablename__ = "accounting_allocations"
    id = Column(Integer, primary_key=True, index=True)
    delivery_id = Column(String(36), ForeignKey("deliveries.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    purchase_order_item_id = Column(Integer, ForeignKey("purchase_order_items.id"), nullable=True)
    allocated_amount = Column(Float, nullable=False)
    allocation_ratio = Column(Float, nullable=False)
    method = Column(String(10), default=AllocationMethod.RATIO.value, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("method IN ('ratio', 'manual')", name="ck_allocation_method"),
    )


class IntegrityBackup(Base):
    """Snapshot of the rows a correction is about to overwrite."""
    __tablename__ = "integrity_backups"
    backup_id = Column(String(36), primary_key=True, default=new_uuid)
    created_at = Column(DateTime, default=utcnow)
    reason = Column(String(255), nullable=True)
    tables_json = Column(JSON, nullable=False)
    """
    {
        "purchase_orders": [{"id", "total_amount", "remaining_amount", "status"}, ...],
        "products": [{"id", "current_stock"}, ...],
        "inventory_movements": [{...full row...}, ...]
    }
    """
    record_counts_json = Column(JSON, nullable=True)
    restored_at = Column(DateTime, nullable=True)
