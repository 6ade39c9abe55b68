"""FastAPI middleware components.

This package contains custom middleware for request processing.
"""

from api.src.middleware.auth import JWT_COOKIE_NAME, JwtAuthMiddleware, extract_token

__all__ = [
    "JWT_COOKIE_NAME",
    "JwtAuthMiddleware",
    "extract_token",
]
