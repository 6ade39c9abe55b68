"""
JWT extraction middleware for FastAPI.

The token is taken from the Authorization header ("Bearer <token>") or, when
there is none, from the "jwt" cookie, and stored on request.state.jwt_token.
Requests are never rejected here: every endpoint operation decides access
from the groupings in the token.
"""

import structlog
from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = structlog.get_logger(__name__)

JWT_COOKIE_NAME = "jwt"


def extract_token(request: Request) -> Optional[str]:
    """
    Extract the JWT from a request.

    Returns:
        The token, or None if the request carries none
    """
    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
        logger.debug("auth_invalid_scheme", scheme=scheme)

    cookie_token = request.cookies.get(JWT_COOKIE_NAME)
    if cookie_token:
        return cookie_token.strip('"')

    return None


class JwtAuthMiddleware(BaseHTTPMiddleware):
    """Middleware that attaches the request's JWT, if any, to request.state."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request and extract the token.

        Args:
            request: HTTP request
            call_next: Next middleware in chain

        Returns:
            HTTP response
        """
        request.state.jwt_token = extract_token(request)

        if request.state.jwt_token:
            logger.debug("request_token_found", path=request.url.path)

        return await call_next(request)
