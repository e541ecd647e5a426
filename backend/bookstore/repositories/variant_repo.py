from typing import Optional

from sqlalchemy.orm import Session

from bookstore.models.variant import BookFormat, Variant


class VariantRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, variant_id: int) -> Optional[Variant]:
        return self.db.query(Variant).filter(Variant.id == variant_id).first()

    def get_for_update(self, variant_id: int) -> Optional[Variant]:
        """
        SELECT ... FOR UPDATE, re-reading the row even when the session already
        holds it so counters are never decided on a stale copy.
        (SQLite ignores FOR UPDATE; callers hold the variant file lock there.)
        """
        return (
            self.db.query(Variant)
            .filter(Variant.id == variant_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def create_or_update(
        self,
        sku: str,
        title: str,
        price_cents: int,
        stock_quantity: int = 0,
        format: str = BookFormat.PAPERBACK.value,
    ) -> Variant:
        v = self.db.query(Variant).filter(Variant.sku == sku).first()
        if v:
            v.title = title
            v.price_cents = price_cents
            v.stock_quantity = stock_quantity
            v.format = format
        else:
            v = Variant(
                sku=sku,
                title=title,
                price_cents=price_cents,
                stock_quantity=stock_quantity,
                reserved_quantity=0,
                format=format,
            )
            self.db.add(v)
        self.db.flush()
        return v
