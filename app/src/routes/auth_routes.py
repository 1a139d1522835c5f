"""
Account API routes.

Endpoints:
    POST /auth/register — create an account (form: username=email, password)
    POST /auth/token    — exchange credentials for a bearer token
    GET  /auth/me       — current account
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm

from commons import limiter
from configs.config import get_config
from src.auth.tokens import (
    ACCESS_TOKEN_COOKIE,
    authenticate_user,
    create_access_token,
    get_current_user,
    get_password_hash,
)
from src.database.user_repository import UserRepository

logger = logging.getLogger(__name__)
cfg = get_config()

router = APIRouter(prefix="/auth", tags=["Authentication"])

MIN_PASSWORD_LENGTH = 8


@router.post("/register", status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register_user(
    request: Request, form_data: OAuth2PasswordRequestForm = Depends()
) -> Dict[str, Any]:
    """Register a new account with email (as username) and password."""
    if "@" not in form_data.username:
        raise HTTPException(status_code=400, detail="Username must be an email address")
    if len(form_data.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
        )

    user_repo = UserRepository()
    if user_repo.get_user_by_email(form_data.username):
        raise HTTPException(status_code=400, detail="Email already registered")

    user = user_repo.create_user(
        email=form_data.username,
        hashed_password=get_password_hash(form_data.password),
    )
    logger.info("Registered user %s", user["email"])
    return {"message": "User created successfully", "email": user["email"]}


@router.post("/token")
@limiter.limit("10/minute")
def login_for_access_token(
    request: Request, form_data: OAuth2PasswordRequestForm = Depends()
) -> JSONResponse:
    """Login with email and password; returns a bearer token and sets a cookie."""
    user = authenticate_user(form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    UserRepository().record_login(user["email"])
    access_token = create_access_token(user["email"])
    response = JSONResponse(
        content={"access_token": access_token, "token_type": "bearer", "email": user["email"]}
    )
    response.set_cookie(
        key=ACCESS_TOKEN_COOKIE,
        value=access_token,
        httponly=True,
        secure=cfg.ENVIRONMENT == "production",
        samesite="lax",
        max_age=cfg.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )
    return response


@router.get("/me")
async def get_current_logged_in_user(
    current_user: Dict[str, Any] = Depends(get_current_user),
) -> Dict[str, Any]:
    return {
        "email": current_user["email"],
        "display_name": current_user.get("display_name"),
    }
