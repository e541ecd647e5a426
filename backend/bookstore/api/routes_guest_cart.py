from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from bookstore.api.deps import get_guest_identity
from bookstore.api.errors import http_error
from bookstore.db import get_db
from bookstore.schemas.cart_schema import AddItemIn, UpdateItemIn
from bookstore.services.cart_service import CartIdentity, CartService
from bookstore.services.errors import ServiceException

# guests are identified by the X-Session-Id header (client generated UUID v4)
router = APIRouter(prefix="/api/guest-cart", tags=["guest-cart"])


@router.get("", summary="Get the guest cart")
def get_cart(identity: CartIdentity = Depends(get_guest_identity), db: Session = Depends(get_db)):
    return CartService(db).get_cart(identity)


@router.post("/items", summary="Add item to guest cart")
def add_item(
    payload: AddItemIn,
    identity: CartIdentity = Depends(get_guest_identity),
    db: Session = Depends(get_db),
):
    try:
        return CartService(db).add_item(identity, payload.variant_id, payload.qty)
    except ServiceException as e:
        raise http_error(e)


@router.put("/items/{item_id}", summary="Change guest item quantity")
def update_item(
    item_id: int,
    payload: UpdateItemIn,
    identity: CartIdentity = Depends(get_guest_identity),
    db: Session = Depends(get_db),
):
    try:
        return CartService(db).update_item(identity, item_id, payload.qty)
    except ServiceException as e:
        raise http_error(e)


@router.delete("/items/{item_id}", summary="Remove guest item")
def remove_item(
    item_id: int,
    identity: CartIdentity = Depends(get_guest_identity),
    db: Session = Depends(get_db),
):
    try:
        return CartService(db).remove_item(identity, item_id)
    except ServiceException as e:
        raise http_error(e)


@router.delete("", summary="Clear guest cart")
def clear_cart(identity: CartIdentity = Depends(get_guest_identity), db: Session = Depends(get_db)):
    try:
        return CartService(db).clear_cart(identity)
    except ServiceException as e:
        raise http_error(e)
