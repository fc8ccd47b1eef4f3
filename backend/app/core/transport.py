"""Transport context: the cookie/header capability the security core needs.

Services never touch framework request/response objects directly. Routes wrap
them in ``StarletteTransport``; tests use ``InMemoryTransport``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from fastapi import Request, Response


class TransportContext(Protocol):
    def get_cookie(self, name: str) -> Optional[str]: ...

    def set_cookie(
        self,
        name: str,
        value: str,
        *,
        max_age: Optional[int] = None,
        path: str = "/",
        http_only: bool = True,
        secure: bool = False,
        same_site: str = "lax",
    ) -> None: ...

    def delete_cookie(self, name: str, *, path: str = "/") -> None: ...

    def get_header(self, name: str) -> Optional[str]: ...

    @property
    def client_host(self) -> Optional[str]: ...


class StarletteTransport:
    """Production adapter over a FastAPI request and the response being built."""

    def __init__(self, request: Request, response: Optional[Response] = None) -> None:
        self._request = request
        self._response = response

    def get_cookie(self, name: str) -> Optional[str]:
        return self._request.cookies.get(name)

    def set_cookie(
        self,
        name: str,
        value: str,
        *,
        max_age: Optional[int] = None,
        path: str = "/",
        http_only: bool = True,
        secure: bool = False,
        same_site: str = "lax",
    ) -> None:
        if self._response is None:
            raise RuntimeError("Transport has no response to attach cookies to")
        self._response.set_cookie(
            key=name,
            value=value,
            max_age=max_age,
            path=path,
            httponly=http_only,
            secure=secure,
            samesite=same_site,
        )

    def delete_cookie(self, name: str, *, path: str = "/") -> None:
        if self._response is None:
            raise RuntimeError("Transport has no response to attach cookies to")
        self._response.delete_cookie(key=name, path=path)

    def get_header(self, name: str) -> Optional[str]:
        return self._request.headers.get(name)

    @property
    def client_host(self) -> Optional[str]:
        return self._request.client.host if self._request.client else None


@dataclass
class CookieRecord:
    value: str
    max_age: Optional[int]
    path: str
    http_only: bool
    secure: bool
    same_site: str


@dataclass
class InMemoryTransport:
    """Test adapter: request cookies/headers in, response cookies recorded."""

    headers: Dict[str, str] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)
    host: Optional[str] = "127.0.0.1"
    set_cookies: Dict[str, CookieRecord] = field(default_factory=dict)
    deleted_cookies: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.headers = {key.lower(): value for key, value in self.headers.items()}

    def get_cookie(self, name: str) -> Optional[str]:
        return self.cookies.get(name)

    def set_cookie(
        self,
        name: str,
        value: str,
        *,
        max_age: Optional[int] = None,
        path: str = "/",
        http_only: bool = True,
        secure: bool = False,
        same_site: str = "lax",
    ) -> None:
        self.set_cookies[name] = CookieRecord(value, max_age, path, http_only, secure, same_site)

    def delete_cookie(self, name: str, *, path: str = "/") -> None:
        self.deleted_cookies[name] = path
        self.set_cookies.pop(name, None)

    def get_header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @property
    def client_host(self) -> Optional[str]:
        return self.host


def get_client_ip(transport: TransportContext) -> str:
    """Client address, honouring the first hop of X-Forwarded-For."""
    forwarded = transport.get_header("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = transport.get_header("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return transport.client_host or "unknown"


def get_user_agent(transport: TransportContext) -> str:
    return (transport.get_header("user-agent") or "unknown")[:512]
