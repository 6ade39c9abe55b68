"""Endpoint base classes for package endpoints."""
