from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from restopay.database import get_db
from restopay.dependencies import get_app_settings
from restopay.models import StaffRole, StaffUser
from restopay.schemas import TokenData
from restopay.settings import Settings

ALGORITHM = "HS256"
REFRESH_TOKEN_EXPIRE_DAYS = 7

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(subject: str, secret_key: str, expires_delta: timedelta) -> str:
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode: dict[str, str | int] = {"sub": subject, "exp": int(expire.timestamp()), "type": "access"}
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def create_refresh_token(subject: str, secret_key: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))
    to_encode: dict[str, str | int] = {"sub": subject, "exp": int(expire.timestamp()), "type": "refresh"}
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def _decode_subject(token: str, secret_key: str, token_type: str) -> Optional[str]:
    try:
        payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != token_type:
        return None
    return payload.get("sub")


def verify_refresh_token(token: str, secret_key: str) -> Optional[str]:
    """
    Verify the refresh token and return the subject (user ID) if valid.
    Returns None if the token is invalid, expired or an access token.
    """
    return _decode_subject(token, secret_key, "refresh")


async def get_user_by_id(db: AsyncSession, user_id: int) -> Optional[StaffUser]:
    result = await db.execute(select(StaffUser).where(StaffUser.id == user_id))
    return result.scalar_one_or_none()


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> StaffUser:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials.",
        headers={"WWW-Authenticate": "Bearer"},
    )
    data = TokenData(sub=_decode_subject(token, settings.secret_key, "access"))
    if data.sub is None:
        raise credentials_exception

    try:
        user_id = int(data.sub)
    except ValueError:
        raise credentials_exception

    user = await get_user_by_id(db, user_id)
    if user is None or getattr(user, "is_active", False) is False:
        raise credentials_exception

    return user


def require_roles(*roles: StaffRole):
    allowed = {role.value for role in roles}

    async def checker(current_user: StaffUser = Depends(get_current_user)) -> StaffUser:
        if current_user.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions.")
        return current_user

    return checker
