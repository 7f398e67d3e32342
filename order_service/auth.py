"""
Access control for the Order service.

Bearer tokens are issued by the Users service and only verified here. A
token carries the buyer id (``sub``), email and role; admins may act on any
order and reach the inventory and payment-replay routes, buyers only on
their own carts and orders.
"""
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from .config import ALGORITHM, SECRET_KEY
from .models import Order

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
REQUIRED_CLAIMS = ("sub", "email", "role")

security = HTTPBearer()


class CurrentUser(BaseModel):
    """Buyer or admin the request acts for."""
    id: int
    email: str
    role: str
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def can_access(self, order: Order) -> bool:
        return self.is_admin or order.user_id == self.id


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> CurrentUser:
    """
    Verify a bearer token and build the user it names.

    Raises:
        HTTPException: 401 if the token is expired, forged or lacks a claim
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise _unauthorized("Could not validate credentials")

    missing = [claim for claim in REQUIRED_CLAIMS if payload.get(claim) is None]
    if missing:
        logger.warning(f"Bearer token missing claims {missing}")
        raise _unauthorized("Could not validate credentials")
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise _unauthorized("Could not validate credentials")
    return CurrentUser(id=user_id, email=payload["email"], role=payload["role"], token=token)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """FastAPI dependency: the user named by the request's bearer token."""
    return decode_token(credentials.credentials)


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user


def ensure_order_access(order: Order, current_user: CurrentUser) -> Order:
    """
    Return ``order`` if ``current_user`` owns it or is an admin.

    Raises:
        HTTPException: 403 otherwise
    """
    if not current_user.can_access(order):
        logger.warning(f"User {current_user.id} denied access to order {order.order_number}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this order"
        )
    return order
