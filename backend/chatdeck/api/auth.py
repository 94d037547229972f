import asyncpg
from fastapi import APIRouter, HTTPException, status, Depends
from loguru import logger

from chatdeck.models.auth import LoginRequest, RegisterRequest, TokenResponse, UserOut
from chatdeck.core.security import (
    create_access_token,
    get_current_user,
    hash_password,
    verify_password,
)
from chatdeck.db import postgres

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=UserOut, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest) -> UserOut:
    """Create a regular account. Admins are promoted in the database, never here."""
    try:
        row = await postgres.fetch_one(
            """INSERT INTO users (username, hashed_password, role)
               VALUES ($1, $2, 'user')
               RETURNING id, username, role, created_at""",
            body.username,
            hash_password(body.password),
        )
    except asyncpg.UniqueViolationError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Username already taken",
        ) from e
    logger.info(f"Registered user {body.username!r}")
    return UserOut(**dict(row))


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest) -> TokenResponse:
    user = await postgres.fetch_one(
        "SELECT id, username, hashed_password FROM users WHERE username = $1",
        body.username,
    )
    if not user or not verify_password(body.password, user["hashed_password"]):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )
    token = create_access_token({"sub": user["username"]})
    logger.info(f"User {body.username!r} logged in")
    return TokenResponse(access_token=token)


@router.get("/me", response_model=UserOut)
async def me(current_user: dict = Depends(get_current_user)) -> UserOut:
    # Missing or unknown roles read as a plain user.
    role = current_user.get("role")
    if role not in ("admin", "user"):
        role = "user"
    return UserOut(**{**current_user, "role": role})
