"""Session cookie attributes."""

from typing import Any

from sessiongate.core import settings


def session_cookie_kwargs(credential: str, max_age: int | None = None) -> dict[str, Any]:
    """Keyword arguments for ``Response.set_cookie`` carrying a credential."""
    return {
        "key": settings.session_cookie_name,
        "value": credential,
        "max_age": max_age if max_age is not None else settings.session_ttl_seconds,
        "httponly": True,
        "secure": settings.session_cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs() -> dict[str, Any]:
    """Keyword arguments for ``Response.set_cookie`` that expire the credential."""
    return {
        "key": settings.session_cookie_name,
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": settings.session_cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
