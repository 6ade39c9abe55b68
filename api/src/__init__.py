"""FastAPI web service for data-model-driven applications.

This package exposes the endpoints of every configured package over HTTP,
issues and inspects JWTs and wires the ORM to the configured databases.
"""

__version__ = "0.1.0"
