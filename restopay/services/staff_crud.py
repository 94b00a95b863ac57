from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select
from fastapi import HTTPException, status

from restopay.models import StaffRole, StaffUser
from restopay.schemas import UserCreate
from .auth import get_password_hash, verify_password


async def get_user_by_email(db: AsyncSession, email: str) -> StaffUser | None:
    res = await db.execute(select(StaffUser).where(StaffUser.email == email))
    return res.scalar_one_or_none()


async def create_user(db: AsyncSession, payload: UserCreate) -> StaffUser:
    existing = await get_user_by_email(db, payload.email)
    if existing:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered.")
    # The first account bootstraps the admin role
    user_count = await db.scalar(select(func.count()).select_from(StaffUser))
    role = StaffRole.ADMIN if not user_count else StaffRole.STAFF
    user = StaffUser(email=payload.email, hashed_password=get_password_hash(payload.password), role=role.value)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def authenticate_user(db: AsyncSession, email: str, password: str) -> StaffUser:
    user = await get_user_by_email(db, email)
    if not user or not verify_password(password, str(user.hashed_password)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password.")
    return user
