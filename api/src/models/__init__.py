"""Data models for the FastAPI service.

This package contains Pydantic models describing endpoint operations,
their parameters and the requests handed to them.
"""
