from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_hub.models.models import User
from dispatch_hub.schemas.user_schema import UserCreate
from dispatch_hub.utils.exceptions import ValidationFailed
from dispatch_hub.utils.logger_config import setup_logger

logger = setup_logger()

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def authenticate(db: AsyncSession, email: str, password: str) -> Optional[User]:
    """
    Args:
            db: Database session
            email: Login email
            password: Plain text password

    Returns:
            The active user, or None if the credentials do not match
    """
    user = await get_user_by_email(db, email)
    if user is None or not user.is_active:
        logger.warning(f"Login failed for {email}: unknown or inactive user")
        return None
    if not verify_password(password, user.password):
        logger.warning(f"Login failed for {email}: bad password")
        return None
    return user


async def create_user(db: AsyncSession, data: UserCreate) -> User:
    user = User(
        email=data.email.lower(),
        password=hash_password(data.password),
        full_name=data.full_name,
        phone_number=data.phone_number,
        role=data.role,
        rider_code=data.rider_code.upper() if data.rider_code else None,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ValidationFailed("A user with this email or rider code already exists") from e
    await db.refresh(user)
    logger.info(f"Created {user.role.value} user {user.email}")
    return user
