from typing import Optional

from fastapi import Header, HTTPException, status

from app.auth.schemas import CurrentUser
from app.core.enums import UserRole


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> CurrentUser:
    """
    Resolve the caller from gateway headers. Sign-in happens upstream;
    this service only needs who is calling and in which role.
    """
    if not x_user_id or not x_user_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing caller identity",
        )
    role = x_user_role.strip().lower()
    if role not in {r.value for r in UserRole}:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown role",
        )
    return CurrentUser(id=x_user_id.strip(), role=role, name=(x_user_name or "").strip())
