from fastapi import Depends, HTTPException, status

from app.auth.dependencies import get_current_user
from app.auth.schemas import CurrentUser
from app.core.enums import UserRole


async def require_admin(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Require the admin role. Approvals, overrides and promotion execution are admin-only."""
    if current_user.role != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only an admin can perform this action",
        )
    return current_user


async def require_staff(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Require a teacher or admin. Pupils only read their own published results."""
    if current_user.role not in (UserRole.ADMIN.value, UserRole.TEACHER.value):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return current_user
