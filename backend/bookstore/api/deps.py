import re
from typing import Dict, Optional

from fastapi import Header, HTTPException, Request

from bookstore.adapters.payment_provider import PaymentProvider, build_payment_providers
from bookstore.config import settings
from bookstore.services.cart_service import CartIdentity

# client-generated guest ids are random (version 4) UUIDs
UUID_V4 = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)


def validate_session_id(session_id: Optional[str]) -> str:
    if not session_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "MISSING_SESSION_ID", "message": "X-Session-Id header is required"},
        )
    if not UUID_V4.match(session_id):
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_SESSION_ID", "message": "Session id must be a UUID v4"},
        )
    return session_id.lower()


def get_user_identity(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> CartIdentity:
    """The gateway in front of us authenticates and forwards the user id."""
    if not x_user_id or not x_user_id.strip().isdigit():
        raise HTTPException(
            status_code=401,
            detail={"code": "MISSING_USER_ID", "message": "Authenticated user id is required"},
        )
    return CartIdentity.for_user(int(x_user_id))


def get_guest_identity(x_session_id: Optional[str] = Header(None, alias="X-Session-Id")) -> CartIdentity:
    return CartIdentity.for_guest(validate_session_id(x_session_id))


def get_payment_providers(request: Request) -> Dict[str, PaymentProvider]:
    providers = getattr(request.app.state, "payment_providers", None)
    if providers is None:
        providers = build_payment_providers(settings)
        request.app.state.payment_providers = providers
    return providers


def get_order_identity(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
) -> CartIdentity:
    """Orders are visible to the user who placed them or to the guest session."""
    if x_user_id:
        return get_user_identity(x_user_id)
    if x_session_id:
        return get_guest_identity(x_session_id)
    raise HTTPException(
        status_code=401,
        detail={"code": "MISSING_USER_ID", "message": "User or guest session id is required"},
    )
