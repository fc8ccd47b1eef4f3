"""Authentication routes"""

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.config import settings
from app.core import clock
from app.core.database import get_db
from app.core.transport import StarletteTransport, TransportContext
from app.schemas.user import (
    LoginRequest,
    LogoutRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from app.services.auth_service import auth_service
from app.services.csrf_guard import csrf_guard
from app.services.token_service import AccessClaims, TokenPair, token_service
from app.services.user_service import user_service
from app.api.deps import ClientInfo, get_access_claims, get_client_info, get_current_user, require_csrf
from app.models.user import User

router = APIRouter()

PASSWORD_RESET_REQUESTED_MESSAGE = "If the account exists, a password reset email has been sent"


def _set_session_cookies(transport: TransportContext, tokens: TokenPair) -> None:
    refresh_max_age = max(0, int((tokens.refresh_expires_at - clock.utcnow()).total_seconds()))
    transport.set_cookie(
        settings.ACCESS_COOKIE_NAME,
        tokens.access_token,
        max_age=tokens.expires_in,
        path="/",
        http_only=True,
        secure=settings.is_production,
        same_site=settings.COOKIE_SAMESITE,
    )
    transport.set_cookie(
        settings.REFRESH_COOKIE_NAME,
        tokens.refresh_token,
        max_age=refresh_max_age,
        path=settings.REFRESH_COOKIE_PATH,
        http_only=True,
        secure=settings.is_production,
        same_site=settings.COOKIE_SAMESITE,
    )


def _clear_session_cookies(transport: TransportContext) -> None:
    transport.delete_cookie(settings.ACCESS_COOKIE_NAME, path="/")
    transport.delete_cookie(settings.REFRESH_COOKIE_NAME, path=settings.REFRESH_COOKIE_PATH)


def _token_response(tokens: TokenPair, user: User) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        token_type="bearer",
        expires_in=tokens.expires_in,
        refresh_expires_at=tokens.refresh_expires_at,
        user=UserResponse.model_validate(user),
    )


@router.get("/csrf")
def issue_csrf_token(request: Request, response: Response):
    """
    Issue a CSRF token

    The token is set as a readable cookie and returned in the body; clients
    echo it in the ``x-csrf-token`` header on mutating requests.
    """
    token = csrf_guard.issue_token(StarletteTransport(request, response))
    return {"csrf_token": token}


@router.post(
    "/login",
    response_model=TokenResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_csrf)],
)
def login(
    credentials: LoginRequest,
    request: Request,
    response: Response,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    """
    Login endpoint - authenticate and start a session

    Args:
        credentials: Email, password and remember-me flag
        db: Database session

    Returns:
        Access token and user info; both tokens are also set as cookies
    """
    result = auth_service.login(
        db,
        credentials.email,
        credentials.password,
        remember_me=credentials.remember_me,
        ip_address=client.ip_address,
        user_agent=client.user_agent,
    )
    _set_session_cookies(StarletteTransport(request, response), result.tokens)
    return _token_response(result.tokens, result.user)


@router.post("/refresh", response_model=TokenResponse, dependencies=[Depends(require_csrf)])
def refresh_token(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
):
    """
    Rotate the refresh token and issue a new access token

    The refresh token is read from the body when given, otherwise from the
    refresh cookie.
    """
    transport = StarletteTransport(request, response)
    presented = (body.refresh_token if body else None) or transport.get_cookie(settings.REFRESH_COOKIE_NAME)
    tokens = auth_service.refresh(
        db, presented, ip_address=client.ip_address, user_agent=client.user_agent
    )
    user = user_service.get_user_by_id(db, tokens.session.user_id)
    _set_session_cookies(transport, tokens)
    return _token_response(tokens, user)


@router.post("/logout", status_code=status.HTTP_200_OK, dependencies=[Depends(require_csrf)])
def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db)
):
    """
    Logout endpoint - revoke the current session and clear cookies
    """
    transport = StarletteTransport(request, response)
    presented = (body.refresh_token if body else None) or transport.get_cookie(settings.REFRESH_COOKIE_NAME)
    revoked = auth_service.logout(
        db, presented, ip_address=client.ip_address, user_agent=client.user_agent
    )
    _clear_session_cookies(transport)

    return {
        "success": True,
        "message": "Logged out successfully",
        "session_revoked": revoked
    }


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """
    Get current user information
    """
    return UserResponse.model_validate(current_user)


@router.get("/sessions", response_model=List[SessionResponse])
def list_sessions(
    claims: AccessClaims = Depends(get_access_claims),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Active sessions (devices) of the current user"""
    sessions = token_service.list_active_sessions(db, current_user.id)
    return [
        SessionResponse.model_validate(session).model_copy(
            update={"current": session.id == claims.session_id}
        )
        for session in sessions
    ]


@router.delete("/sessions/{session_id}", dependencies=[Depends(require_csrf)])
def revoke_session(
    session_id: int,
    current_user: User = Depends(get_current_user),
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
):
    """Sign out one device of the current user"""
    revoked = auth_service.revoke_session(
        db,
        current_user.id,
        session_id,
        ip_address=client.ip_address,
        user_agent=client.user_agent,
    )
    return {"success": True, "session_revoked": revoked}


@router.post("/sessions/revoke-all", dependencies=[Depends(require_csrf)])
def revoke_other_sessions(
    claims: AccessClaims = Depends(get_access_claims),
    current_user: User = Depends(get_current_user),
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
):
    """Sign out every other device; the calling session stays active"""
    revoked = auth_service.revoke_all_sessions(
        db,
        current_user.id,
        except_session_id=claims.session_id,
        ip_address=client.ip_address,
        user_agent=client.user_agent,
    )
    return {"success": True, "sessions_revoked": revoked}


@router.post(
    "/password-reset/request",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_csrf)],
)
def request_password_reset(
    body: PasswordResetRequest,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
):
    """
    Request a password reset email

    The response is the same whether or not the account exists.
    """
    auth_service.request_password_reset(
        db, body.email, ip_address=client.ip_address, user_agent=client.user_agent
    )
    return {"success": True, "message": PASSWORD_RESET_REQUESTED_MESSAGE}


@router.post("/password-reset/confirm", dependencies=[Depends(require_csrf)])
def confirm_password_reset(
    body: PasswordResetConfirm,
    request: Request,
    response: Response,
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
):
    """Set a new password from a reset token; every session is signed out"""
    auth_service.complete_password_reset(
        db,
        body.token,
        body.new_password,
        ip_address=client.ip_address,
        user_agent=client.user_agent,
    )
    _clear_session_cookies(StarletteTransport(request, response))
    return {"success": True, "message": "Password has been reset. Please sign in again."}
