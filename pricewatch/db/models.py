"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, foreign, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


PRODUCT_NAME_PLACEHOLDER = "Detecting..."


class Product(Base):
    """Product page to monitor, keyed by its URL."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships
    price_records: Mapped[list["PriceRecord"]] = relationship(
        "PriceRecord",
        back_populates="product",
        cascade="all, delete-orphan",
    )
    # Run logs hold a plain product id with no constraint; the cascade is ORM-only
    run_logs: Mapped[list["RunLog"]] = relationship(
        "RunLog",
        primaryjoin=lambda: Product.id == foreign(RunLog.product_id),
        cascade="all, delete-orphan",
        back_populates="product",
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} url={self.url!r}>"


class PriceRecord(Base):
    """Append-only price observation in minor currency units."""

    __tablename__ = "price_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    price: Mapped[int] = mapped_column(Integer, nullable=False)  # cents
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Relationships
    product: Mapped["Product"] = relationship("Product", back_populates="price_records")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_price_record_non_negative"),
        CheckConstraint("length(currency) = 3", name="ck_price_record_currency_code"),
        Index("ix_price_records_product_captured", "product_id", "captured_at"),
    )


class RunLog(Base):
    """Audit trail of extraction attempts.

    ``product_id`` is a weak reference: the row may outlive or predate its
    product when a resolve raced or failed.
    """

    __tablename__ = "run_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # SUCCESS | FAILED
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped[Optional["Product"]] = relationship(
        "Product",
        primaryjoin=lambda: Product.id == foreign(RunLog.product_id),
        back_populates="run_logs",
    )

    __table_args__ = (
        CheckConstraint("status IN ('SUCCESS', 'FAILED')", name="ck_run_log_status"),
    )


class Setting(Base):
    """Key to JSON-string value store."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
