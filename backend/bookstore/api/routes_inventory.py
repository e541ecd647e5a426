from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from bookstore.api.errors import http_error
from bookstore.db import get_db
from bookstore.services.errors import InventoryException
from bookstore.services.inventory_service import InventoryService

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


@router.get("/available/{variant_id}")
def available(variant_id: int, db: Session = Depends(get_db)):
    """Units that can still be reserved (stock minus live reservations)."""
    svc = InventoryService(db)
    try:
        avail = svc.available_quantity(variant_id)
        return {"variant_id": variant_id, "available": avail}
    except InventoryException as e:
        raise http_error(e)
