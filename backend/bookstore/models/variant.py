import enum
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String

from bookstore.db import Base


class BookFormat(str, enum.Enum):
    HARDCOVER = "hardcover"
    PAPERBACK = "paperback"
    PHYSICAL = "physical"
    EBOOK = "ebook"
    PDF = "pdf"
    EPUB = "epub"
    AUDIOBOOK = "audiobook"
    DOCX = "docx"
    WORKSHEET = "worksheet"


PHYSICAL_FORMATS = {BookFormat.HARDCOVER.value, BookFormat.PAPERBACK.value, BookFormat.PHYSICAL.value}


def is_physical_format(fmt) -> bool:
    """Only physical formats consume stock; digital stock is unlimited."""
    if isinstance(fmt, BookFormat):
        fmt = fmt.value
    return fmt in PHYSICAL_FORMATS


class Variant(Base):
    """A stock-bearing format of a catalogue book (the stock ledger lives here)."""

    __tablename__ = "variants"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_variants_stock_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_variants_reserved_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(64), unique=True, index=True, nullable=False)
    title = Column(String(256), nullable=False)
    format = Column(String(32), nullable=False, default=BookFormat.PAPERBACK.value)
    price_cents = Column(Integer, nullable=False, default=0)
    stock_quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_physical(self) -> bool:
        return is_physical_format(self.format)

    @property
    def available_quantity(self) -> int:
        return self.stock_quantity - self.reserved_quantity

    def __repr__(self):
        return (
            f"<Variant id={self.id} sku={self.sku} stock={self.stock_quantity} "
            f"reserved={self.reserved_quantity}>"
        )
