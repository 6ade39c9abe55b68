"""
Endpoint contract models.

Provides Pydantic models for:
- Operation declarations (name, request type, access, schemas)
- Input parameter descriptions
- Cookies set by operations
- JWT payloads
- The request handed to endpoint operations
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


# ============================================================================
# Request Types
# ============================================================================


class RequestType(str, Enum):
    """HTTP methods an operation can be declared for."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


ANONYMOUS_GROUPING = "anonymous"
SUPER_USER_GROUPING = "super user"

DEFAULT_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "message": {"type": "string"},
    },
}


# ============================================================================
# Operation Declarations
# ============================================================================


class InputParameter(BaseModel):
    """A query, path or header parameter accepted by an operation."""

    in_: str = Field("query", alias="in", description="query|path|header|cookie")
    name: str = Field("param")
    required: bool = False
    description: str = ""
    schema_: Dict[str, Any] = Field(default_factory=lambda: {"type": "string"}, alias="schema")
    example: Any = None

    model_config = {
        "populate_by_name": True,
    }


class OperationDefinition(BaseModel):
    """
    Declaration of an endpoint operation.

    An operation is open to the groupings listed in allowedAccess. Listing
    "anonymous" makes it available without authentication.
    """

    operation_name: str = Field(..., alias="operationName", min_length=1)
    allowed_access: List[str] = Field(..., alias="allowedAccess")
    request_type: RequestType = Field(RequestType.GET, alias="requestType")
    requires_authentication: bool = Field(True, alias="requiresAuthentication")
    description: str = ""
    parameters: List[InputParameter] = Field(default_factory=list)
    request_schema: Dict[str, Any] = Field(default_factory=dict, alias="requestSchema")
    response_schema: Dict[str, Any] = Field(
        default_factory=lambda: dict(DEFAULT_RESPONSE_SCHEMA),
        alias="responseSchema",
    )
    success_status_code: int = Field(200, alias="successStatusCode", ge=100, lt=600)
    handler: Optional[Callable[..., Any]] = Field(None, exclude=True)
    disable_swagger_doc: bool = Field(False, alias="disableSwaggerDoc")

    model_config = {
        "populate_by_name": True,
        "arbitrary_types_allowed": True,
    }

    @model_validator(mode="after")
    def set_anonymous_access(self) -> "OperationDefinition":
        """Anonymous operations never require authentication."""
        if ANONYMOUS_GROUPING in [access.lower() for access in self.allowed_access]:
            self.requires_authentication = False
        return self

    @property
    def path_parameters(self) -> List[InputParameter]:
        return [parameter for parameter in self.parameters if parameter.in_ == "path"]


class CookieDefinition(BaseModel):
    """A cookie to set on the response."""

    name: str
    data: Any = None
    secure: bool = True
    http_only: bool = Field(True, alias="httpOnly")
    max_age: int = Field(0, alias="maxAge", description="Lifetime in milliseconds")

    model_config = {
        "populate_by_name": True,
    }


# ============================================================================
# Tokens and Requests
# ============================================================================


class JwtPayload(BaseModel):
    """Claims carried by application tokens."""

    global_identifier: Optional[str] = Field(None, alias="globalIdentifier")
    global_identifier_groupings: List[str] = Field(default_factory=list, alias="globalIdentifierGroupings")
    is_super_user: bool = Field(False, alias="isSuperUser")
    iss: Optional[str] = None
    iat: Optional[int] = None
    exp: Optional[int] = None

    model_config = {
        "populate_by_name": True,
    }


class EndpointRequest(BaseModel):
    """The parts of an HTTP request an endpoint operation can see."""

    method: RequestType = RequestType.GET
    path: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)
    body: Any = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)
    path_params: Dict[str, str] = Field(default_factory=dict)
    jwt_token: Optional[str] = None
