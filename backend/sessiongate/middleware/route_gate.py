"""Route gate middleware.

Applies the RouteGate policy to every HTTP request before routing. The gate
itself lives on ``app.state.route_gate`` so the verifier (in-process store or
remote verification endpoint) is chosen once at app construction.
"""

import logging

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import RedirectResponse

from sessiongate.core import settings
from sessiongate.services.cookies import clear_session_cookie_kwargs
from sessiongate.services.route_gate import RouteGate

logger = logging.getLogger(__name__)


class RouteGateMiddleware(BaseHTTPMiddleware):
    """Redirects unauthenticated navigation to login and signed-in users away from it.

    - Verified claims are exposed as ``request.state.session_claims``
    - Redirects use 307 so the method is preserved after login
    - A rejected credential is cleared on the redirect response
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # CORS preflight is answered by CORSMiddleware
        if request.method == "OPTIONS":
            return await call_next(request)

        gate: RouteGate | None = getattr(request.app.state, "route_gate", None)
        if gate is None:
            return await call_next(request)

        path = request.url.path
        credential = request.cookies.get(settings.session_cookie_name)
        decision = await gate.decide(path, credential, request.url.query)

        if decision.allowed:
            request.state.session_claims = decision.claims
            return await call_next(request)

        logger.debug(
            f"Route gate redirect {request.method} {path} -> {decision.location}",
            extra={
                "method": request.method,
                "path": path,
                "location": decision.location,
                "reason": decision.reason,
            },
        )
        response = RedirectResponse(url=decision.location or gate.login_path, status_code=307)
        if decision.clear_cookie:
            response.set_cookie(**clear_session_cookie_kwargs())
        return response
