import logging
import os

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel

from database import get_db, check_connection
from models.user import User
from services.activity_log import log_activity
from .jwt import CurrentUser, create_access_token, get_current_user

logger = logging.getLogger(__name__)
router = APIRouter()

EMERGENCY_KEY = os.getenv("KDS_EMERGENCY_KEY", "911")
EMERGENCY_USER_ID = "emergency"
EMERGENCY_USER_NAME = "Emergency"


class LoginRequest(BaseModel):
    password: str


class UserResponse(BaseModel):
    id: str
    name: str
    is_emergency: bool = False


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


def _token_for(user_id: str, name: str, emergency: bool = False) -> TokenResponse:
    access_token = create_access_token(data={"sub": user_id, "name": name, "emergency": emergency})
    return TokenResponse(
        access_token=access_token,
        user=UserResponse(id=user_id, name=name, is_emergency=emergency),
    )


@router.post("/login", response_model=TokenResponse)
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """
    Login with a cashier key.

    The emergency key only works while the database cannot be reached, so a
    display can still be operated during an outage.
    """
    database_up = await check_connection()

    if not database_up:
        if request.password == EMERGENCY_KEY:
            logger.warning("Emergency login used while the database is unreachable")
            return _token_for(EMERGENCY_USER_ID, EMERGENCY_USER_NAME, emergency=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable. Use the emergency key to log in.",
        )

    try:
        result = await db.execute(select(User).where(User.casher_key == request.password))
        user = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Login lookup failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cashier key",
        )

    user_name = user.user_name or user.casher_key
    await log_activity(db, user.casher_key, user_name, "LOGIN", component="auth")
    logger.info(f"User {user_name} logged in")
    return _token_for(user.casher_key, user_name)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: CurrentUser = Depends(get_current_user)):
    """Get current user info"""
    return UserResponse(
        id=current_user.id,
        name=current_user.name,
        is_emergency=current_user.is_emergency,
    )
