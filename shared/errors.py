"""Exception hierarchy shared by the ORM, the web service and the code generator."""

from typing import Any, Dict, List, Optional


class DxError(Exception):
    """Base class for all framework errors.

    Attributes:
        message: Human readable message, safe to return to API clients
        details: Optional structured context for logs
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ConfigurationError(DxError):
    """Configuration file missing, malformed or referencing unknown names."""


class DataModelError(DxError):
    """Data model is inconsistent (duplicate or missing entities, unknown entity)."""


class DatabaseError(DxError):
    """A database statement failed or did not affect any rows."""


class QueryBuildError(DxError):
    """A query could not be assembled from the given options."""


class ObjectValidationError(DxError):
    """Data assigned to an ORM object does not match its entity schema."""


class LockingConstraintError(DxError):
    """The row was modified by someone else after it was loaded."""


class DataSeriesConfigError(DxError):
    """A data series configuration is invalid.

    Attributes:
        errors: Every problem found, in the order it was detected
    """

    def __init__(self, errors: List[str]):
        super().__init__(errors[0] if errors else "Invalid data series configuration")
        self.errors = list(errors)
        self.details = {"errors": self.errors}
