"""Auth API routes: login, registration, current user, user management."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import func, select

import config
from bot.models import User
from bot.models.base import async_session_factory
from web.auth import (
    create_access_token,
    get_current_user,
    get_user_by_username,
    hash_password,
    require_admin_user,
    require_user,
    verify_password,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 6


class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    username: str
    is_admin: bool


class UserResponse(BaseModel):
    id: int
    username: str
    is_admin: bool


class CreateUserRequest(BaseModel):
    username: str
    password: str
    is_admin: bool = False


def _user_response(user: User) -> UserResponse:
    return UserResponse(id=user.id, username=user.username, is_admin=user.is_admin)


def _login_response(user: User) -> LoginResponse:
    token = create_access_token(user.username, user.is_admin)
    return LoginResponse(access_token=token, username=user.username, is_admin=user.is_admin)


def _check_credentials(username: str, password: str) -> None:
    if not username.strip() or len(username) > 64:
        raise HTTPException(400, "Username must be 1-64 characters")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


async def _create_user(username: str, password: str, is_admin: bool) -> User:
    async with async_session_factory() as session:
        existing = await session.execute(select(User).where(User.username == username))
        if existing.scalar_one_or_none():
            raise HTTPException(400, "Username already exists")
        user = User(username=username, password_hash=hash_password(password), is_admin=is_admin)
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest):
    """Authenticate and return JWT."""
    user = await get_user_by_username(body.username)
    if not user:
        # Bootstrap: if INITIAL_ADMIN_PASSWORD is set and matches, create admin
        if (
            config.INITIAL_ADMIN_PASSWORD
            and body.username == config.INITIAL_ADMIN_USERNAME
            and body.password == config.INITIAL_ADMIN_PASSWORD
        ):
            user = await _create_user(config.INITIAL_ADMIN_USERNAME, config.INITIAL_ADMIN_PASSWORD, is_admin=True)
            return _login_response(user)
        raise HTTPException(status_code=401, detail="Invalid username or password")
    if not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return _login_response(user)


@router.post("/register", response_model=LoginResponse)
async def register(body: LoginRequest):
    """Self-registration. New accounts are never admins."""
    _check_credentials(body.username, body.password)
    if body.username == config.INITIAL_ADMIN_USERNAME:
        async with async_session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(User))
        if not count:
            raise HTTPException(400, "This username is reserved for the initial administrator")
    user = await _create_user(body.username, body.password, is_admin=False)
    return _login_response(user)


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(require_user)):
    """Get current authenticated user."""
    return _user_response(user)


@router.get("/me/optional")
async def get_me_optional(user: Optional[User] = Depends(get_current_user)):
    """Get current user if logged in, else null. For frontend auth check."""
    if not user:
        return None
    return _user_response(user).model_dump()


@router.get("/users", response_model=list[UserResponse])
async def list_users(admin: User = Depends(require_admin_user)):
    """List all users (admin only)."""
    async with async_session_factory() as session:
        result = await session.execute(select(User).order_by(User.username))
        return [_user_response(u) for u in result.scalars().all()]


@router.post("/users", response_model=UserResponse)
async def create_user(body: CreateUserRequest, admin: User = Depends(require_admin_user)):
    """Create a new user (admin only)."""
    _check_credentials(body.username, body.password)
    user = await _create_user(body.username, body.password, body.is_admin)
    return _user_response(user)


class UpdateUserRequest(BaseModel):
    password: Optional[str] = None
    is_admin: Optional[bool] = None


@router.patch("/users/{username}")
async def update_user(username: str, body: UpdateUserRequest, admin: User = Depends(require_admin_user)):
    """Update user password or admin flag (admin only)."""
    if body.is_admin is False and username == admin.username:
        raise HTTPException(400, "Cannot remove your own admin access")
    async with async_session_factory() as session:
        result = await session.execute(select(User).where(User.username == username))
        user = result.scalar_one_or_none()
        if not user:
            raise HTTPException(404, "User not found")
        if body.password is not None:
            _check_credentials(username, body.password)
            user.password_hash = hash_password(body.password)
        if body.is_admin is not None:
            user.is_admin = body.is_admin
        await session.commit()
        return {"ok": True}


@router.delete("/users/{username}")
async def delete_user(username: str, admin: User = Depends(require_admin_user)):
    """Delete a user (admin only). Cannot delete self."""
    if username == admin.username:
        raise HTTPException(400, "Cannot delete your own account")
    async with async_session_factory() as session:
        result = await session.execute(select(User).where(User.username == username))
        user = result.scalar_one_or_none()
        if not user:
            raise HTTPException(404, "User not found")
        await session.delete(user)
        await session.commit()
        return {"ok": True}
