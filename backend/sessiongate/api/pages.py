"""Navigation endpoints behind the route gate.

Rendering is left to the frontend; these return the minimal data each page
needs so the gate has real routes to protect.
"""

from typing import Any

from fastapi import APIRouter, Request

from sessiongate.core import settings

router = APIRouter(tags=["pages"])


@router.get("/")
async def landing(request: Request) -> dict[str, Any]:
    """Landing page for a signed-in user."""
    claims = getattr(request.state, "session_claims", None)
    return {
        "name": settings.app_name,
        "page": "landing",
        "uid": claims.uid if claims else None,
    }


@router.get("/login")
async def login_page(redirect: str | None = None) -> dict[str, Any]:
    """Login page; ``redirect`` is where to resume after sign-in."""
    return {
        "name": settings.app_name,
        "page": "login",
        "redirect": redirect,
    }
