from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession

from restopay import schemas
from restopay.database import get_db
from restopay.dependencies import get_app_settings
from restopay.models import StaffUser
from restopay.services.auth import (
    REFRESH_TOKEN_EXPIRE_DAYS,
    create_access_token,
    create_refresh_token,
    get_current_user,
    verify_refresh_token,
)
from restopay.services.staff_crud import authenticate_user, create_user
from restopay.settings import Settings

router = APIRouter(tags=["auth"])


def _issue_tokens(response: Response, user: StaffUser, settings: Settings, cookie_path: str) -> dict:
    access_token = create_access_token(
        subject=str(user.id),
        secret_key=settings.secret_key,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
    )
    refresh_token = create_refresh_token(subject=str(user.id), secret_key=settings.secret_key)

    # Set refresh token as HttpOnly cookie
    response.set_cookie(
        key="refresh_token",
        value=refresh_token,
        httponly=True,
        secure=not settings.debug,
        samesite="strict",
        max_age=60 * 60 * 24 * REFRESH_TOKEN_EXPIRE_DAYS,
        path=cookie_path,
    )
    return {"access_token": access_token, "token_type": "bearer"}


# --- Auth: Register ---
@router.post("/auth/register", response_model=schemas.UserRead, status_code=201)
async def register(user_in: schemas.UserCreate, db: AsyncSession = Depends(get_db)):
    return await create_user(db, user_in)


# --- Auth: Login ---
@router.post("/auth/login", response_model=schemas.Token)
async def login_for_access_token(
    response: Response,
    request: schemas.UserCreate,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    user = await authenticate_user(db, email=request.email, password=request.password)
    return _issue_tokens(response, user, settings, cookie_path="/auth/refresh")


# --- OAuth2 Token endpoint for Swagger ---
@router.post("/auth/token", response_model=schemas.Token)
async def login_for_documentation(
    response: Response,
    request: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    user = await authenticate_user(db, email=request.username, password=request.password)
    return _issue_tokens(response, user, settings, cookie_path="/auth/refresh")


# --- Refresh token endpoint ---
@router.post("/auth/refresh", response_model=schemas.Token)
async def refresh_access_token(request: Request, settings: Settings = Depends(get_app_settings)):
    refresh_token = request.cookies.get("refresh_token")
    if not refresh_token:
        raise HTTPException(status_code=401, detail="Missing refresh token")

    user_id = verify_refresh_token(refresh_token, settings.secret_key)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    new_access_token = create_access_token(
        subject=str(user_id),
        secret_key=settings.secret_key,
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
    )
    return {"access_token": new_access_token, "token_type": "bearer"}


@router.get("/users/me", response_model=schemas.UserRead)
async def read_me(current_user: StaffUser = Depends(get_current_user)):
    return current_user
