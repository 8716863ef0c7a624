from datetime import datetime, timedelta, timezone
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.config.config import settings
from dispatch_hub.database.database import get_db
from dispatch_hub.models.models import User
from dispatch_hub.schemas.status_schema import UserRole
from dispatch_hub.schemas.user_schema import TokenResponse

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(
        to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM
    )
    return encoded_jwt


def create_token_response(user: User) -> TokenResponse:
    access_token = create_access_token(
        {"sub": str(user.id), "role": user.role.value, "email": user.email}
    )
    return TokenResponse(access_token=access_token, role=user.role, email=user.email)


async def get_current_user(
    token: str = Depends(oauth2_scheme), db: AsyncSession = Depends(get_db)
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
        )
        user_id = UUID(payload.get("sub") or "")
    except (JWTError, ValueError):
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None or not user.is_active:
        raise credentials_exception

    return user


def require_roles(*roles: UserRole):
    """Dependency factory: the current user must hold one of `roles`."""

    async def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions for this resource",
            )
        return current_user

    return checker


STAFF_ROLES = (UserRole.ADMIN, UserRole.MANAGER, UserRole.OPERATOR)
FINANCE_ROLES = (UserRole.ADMIN, UserRole.MANAGER)

get_current_admin_user = require_roles(UserRole.ADMIN)
get_current_staff_user = require_roles(*STAFF_ROLES)
get_current_finance_user = require_roles(*FINANCE_ROLES)
