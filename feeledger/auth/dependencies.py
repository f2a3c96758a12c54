from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.auth.schemas import CurrentUser
from feeledger.auth.security import decode_access_token
from feeledger.core.models import Student, User
from feeledger.db.session import get_db


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """Resolve the authenticated user, and their student profile if any, from the access token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = decode_access_token(token)
    except JWTError:
        raise credentials_exception

    user_id_str = payload.get("user_id") or payload.get("sub")
    if not user_id_str:
        raise credentials_exception
    try:
        user_id = UUID(user_id_str)
    except ValueError:
        raise credentials_exception

    user = await db.get(User, user_id)
    if not user:
        raise credentials_exception

    student_id: Optional[UUID] = (
        await db.execute(select(Student.id).where(Student.user_id == user.id))
    ).scalar_one_or_none()

    return CurrentUser(id=user.id, role=user.role, student_id=student_id)


async def require_staff(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """Require ADMIN, ACCOUNTING or SUPER_ADMIN role."""
    if not current_user.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only accounting staff can perform this action",
        )
    return current_user


async def require_student(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    if current_user.student_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only students can make online payments",
        )
    return current_user
