from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from bookstore.api.deps import get_user_identity, validate_session_id
from bookstore.api.errors import http_error
from bookstore.db import get_db
from bookstore.schemas.cart_schema import AddItemIn, MergeCartIn, UpdateItemIn
from bookstore.services.cart_merge_service import CartMergeService
from bookstore.services.cart_service import CartIdentity, CartService
from bookstore.services.errors import ServiceException

router = APIRouter(prefix="/api/cart", tags=["cart"])


@router.get("", summary="Get the user's cart")
def get_cart(identity: CartIdentity = Depends(get_user_identity), db: Session = Depends(get_db)):
    return CartService(db).get_cart(identity)


@router.post("/items", summary="Add item to cart (reserves stock)")
def add_item(
    payload: AddItemIn,
    identity: CartIdentity = Depends(get_user_identity),
    db: Session = Depends(get_db),
):
    try:
        return CartService(db).add_item(identity, payload.variant_id, payload.qty)
    except ServiceException as e:
        raise http_error(e)


@router.put("/items/{item_id}", summary="Change item quantity")
def update_item(
    item_id: int,
    payload: UpdateItemIn,
    identity: CartIdentity = Depends(get_user_identity),
    db: Session = Depends(get_db),
):
    try:
        return CartService(db).update_item(identity, item_id, payload.qty)
    except ServiceException as e:
        raise http_error(e)


@router.delete("/items/{item_id}", summary="Remove item (releases stock)")
def remove_item(
    item_id: int,
    identity: CartIdentity = Depends(get_user_identity),
    db: Session = Depends(get_db),
):
    try:
        return CartService(db).remove_item(identity, item_id)
    except ServiceException as e:
        raise http_error(e)


@router.delete("", summary="Clear cart")
def clear_cart(identity: CartIdentity = Depends(get_user_identity), db: Session = Depends(get_db)):
    try:
        return CartService(db).clear_cart(identity)
    except ServiceException as e:
        raise http_error(e)


@router.post("/merge", summary="Merge a guest cart into the user's cart after login")
def merge_cart(
    payload: MergeCartIn,
    identity: CartIdentity = Depends(get_user_identity),
    db: Session = Depends(get_db),
):
    session_id = validate_session_id(payload.session_id)
    try:
        return CartMergeService(db).merge_guest_cart(identity.user_id, session_id)
    except ServiceException as e:
        raise http_error(e)
