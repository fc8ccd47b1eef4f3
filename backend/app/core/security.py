"""Security utilities - JWT, password hashing, opaque token helpers"""

from datetime import timedelta
from typing import Optional, Dict, Any
from jose import ExpiredSignatureError, JWTError, jwt
import base64
import bcrypt
import hashlib
import hmac
import secrets

from app.config import settings
from app.core import clock
from app.core.exceptions import TokenExpiredError, TokenInvalidError

ACCESS_TOKEN_TYPE = "access"

# Compared against when no user or password hash exists so that the response
# time of a login does not reveal whether the account exists.
_DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"authcore-dummy-password", bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        return False


def verify_password_or_dummy(plain_password: str, hashed_password: Optional[str]) -> bool:
    """
    Verify a password, running a full bcrypt check even when there is no hash.

    Returns:
        bool: True only if a real hash exists and matches
    """
    if not hashed_password:
        verify_password(plain_password, _DUMMY_PASSWORD_HASH)
        return False
    return verify_password(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt()
    ).decode('utf-8')


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token

    Args:
        data: Data to encode in token (``sub`` and ``sid``)
        expires_delta: Token expiration time

    Returns:
        str: Encoded JWT token
    """
    to_encode = data.copy()
    now = clock.utcnow()

    if expires_delta is not None:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({
        "typ": ACCESS_TOKEN_TYPE,
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16)
    })

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_access_token(token: str) -> Dict[str, Any]:
    """
    Verify signature, expiry and token type of an access token.

    Raises:
        TokenExpiredError: Signature valid but ``exp`` has passed
        TokenInvalidError: Anything else
    """
    if not token:
        raise TokenInvalidError()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        raise TokenExpiredError()
    except JWTError:
        raise TokenInvalidError()
    if payload.get("typ") != ACCESS_TOKEN_TYPE or not payload.get("sub"):
        raise TokenInvalidError()
    return payload


def generate_refresh_token() -> str:
    """Random refresh token (32 bytes, urlsafe)."""
    return secrets.token_urlsafe(32)


def derive_rotated_refresh_token(refresh_token: str) -> str:
    """
    Successor refresh token for a rotation.

    Keyed with SECRET_KEY so that only the server can compute it; a repeated
    rotation of the same token yields the same successor.
    """
    digest = hmac.new(
        settings.SECRET_KEY.encode("utf-8"),
        b"refresh-rotation:" + refresh_token.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def hash_token(token: str) -> str:
    """One-way hash for high-entropy opaque tokens (storage and lookup)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_csrf_token() -> str:
    """
    Generate CSRF token

    Returns:
        str: Random CSRF token
    """
    return secrets.token_urlsafe(32)


def generate_reset_token() -> str:
    return secrets.token_urlsafe(32)


def generate_token_family() -> str:
    return secrets.token_urlsafe(32)


def constant_time_equals(left: str, right: str) -> bool:
    """Compare two secrets without leaking the position of the first mismatch."""
    left_bytes = left.encode("utf-8")
    right_bytes = right.encode("utf-8")
    if len(left_bytes) != len(right_bytes):
        return False
    return hmac.compare_digest(left_bytes, right_bytes)
