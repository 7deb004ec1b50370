from dataclasses import dataclass
from typing import Optional
from fastapi import HTTPException, status, Request
from jose import JWTError
from app.core.security import verify_token
from app.services.registry import ControllerRegistry


@dataclass
class CurrentUser:
    id: str
    email: Optional[str]
    access_token: str


async def get_current_user(request: Request) -> CurrentUser:
    """
    Extract and validate JWT token from Authorization Bearer header.

    The raw token is kept so backend calls can be made on behalf of the user.

    Args:
        request: FastAPI Request to extract Authorization header

    Returns:
        CurrentUser with the token claims and the raw token

    Raises:
        HTTPException: If token is missing or invalid
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        # Extract token from Authorization header
        authorization = request.headers.get("Authorization")
        if not authorization or not authorization.startswith("Bearer "):
            raise credentials_exception

        token = authorization.replace("Bearer ", "")

        payload = verify_token(token)
        user_id = payload.get("id")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    return CurrentUser(id=str(user_id), email=payload.get("email"), access_token=token)


def get_registry(request: Request) -> ControllerRegistry:
    """Controller registry created in the application lifespan."""
    return request.app.state.registry
