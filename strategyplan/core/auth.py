"""
Auth utilities for billing routes.

Caller identity comes from the X-User-Id header; session/JWT validation
happens upstream of this service. The header is resolved to a stored user so
routes always act on that user's tenant.
"""
from fastapi import Depends, Header, HTTPException
from typing import Optional
import logging

from strategyplan.core.errors import PermissionError
from strategyplan.features.tenants.service import TenantDirectory
from strategyplan.models.user import User

logger = logging.getLogger(__name__)


async def get_current_user(
    x_user_id: Optional[str] = Header(None, description="Authenticated user id"),
) -> User:
    """
    Resolve the calling user.

    Raises:
        HTTPException 401: Missing header or unknown user
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")

    user = TenantDirectory().get_user(x_user_id)
    if user is None:
        logger.info("auth.unknown_user")
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Billing changes are restricted to organization administrators."""
    if not user.is_admin:
        raise PermissionError("Only administrators can manage billing")
    return user
