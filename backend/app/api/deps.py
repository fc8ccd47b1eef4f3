"""API dependencies - authentication, authorization and CSRF"""

from dataclasses import dataclass
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional

from app.config import settings
from app.core.database import get_db
from app.core.exceptions import AuthenticationError, AuthorizationError
from app.core.transport import StarletteTransport, get_client_ip, get_user_agent
from app.models.user import User
from app.services.csrf_guard import csrf_guard
from app.services.token_service import AccessClaims, token_service
from app.services.user_service import user_service

# Bearer header is optional; the access cookie is accepted as well
security = HTTPBearer(auto_error=False)


@dataclass
class ClientInfo:
    ip_address: str
    user_agent: str


def get_client_info(request: Request) -> ClientInfo:
    transport = StarletteTransport(request)
    return ClientInfo(ip_address=get_client_ip(transport), user_agent=get_user_agent(transport))


async def get_access_claims(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AccessClaims:
    """
    Verified access token claims from the Authorization header or access cookie

    Raises:
        AuthenticationError: No token presented
        TokenExpiredError / TokenInvalidError: Token rejected
    """
    token = credentials.credentials if credentials else request.cookies.get(settings.ACCESS_COOKIE_NAME)
    if not token:
        raise AuthenticationError("Not authenticated")
    return token_service.access_claims(token)


async def get_current_user(
    claims: AccessClaims = Depends(get_access_claims),
    db: Session = Depends(get_db)
) -> User:
    """
    Get current authenticated user from the access token

    Raises:
        AuthenticationError: If user not found or disabled
    """
    user = user_service.get_user_by_id(db, claims.user_id)
    if not user:
        raise AuthenticationError("User not found")

    if not user.is_active:
        raise AuthenticationError("User account is disabled")

    return user


async def get_current_admin_user(
    current_user: User = Depends(get_current_user)
) -> User:
    """
    Get current admin user (authorization check)

    Raises:
        AuthorizationError: If user is not admin
    """
    if not current_user.is_admin:
        raise AuthorizationError("Admin access required")
    return current_user


def require_csrf(request: Request) -> None:
    """Double-submit check; attach to every mutating route."""
    csrf_guard.enforce(StarletteTransport(request))
