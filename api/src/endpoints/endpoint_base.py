"""
Endpoint base class.

An endpoint groups the operations of one package under /{endpoint_name}.
Subclasses declare their operations and implement them as handlers:

    class CrmEndpoint(EndpointBase):
        endpoint_name = "crm"

        async def list_accounts(self, request: EndpointRequest) -> None:
            ...
            self.add_result_detail({"accounts": accounts})
            self.set_result(True)

        declared_operations = EndpointBase.declared_operations + [
            OperationDefinition(
                operation_name="listAccounts",
                allowed_access=["administrators"],
                handler=list_accounts,
            ),
        ]

A new endpoint instance handles every request. Operations report their
outcome through the result helpers; the web service turns the result into
the HTTP response.
"""

import json
import structlog
import time
from typing import Any, Dict, Iterable, List, Optional, Union

from api.src.models.endpoint import (
    ANONYMOUS_GROUPING,
    SUPER_USER_GROUPING,
    CookieDefinition,
    EndpointRequest,
    InputParameter,
    OperationDefinition,
    RequestType,
)
from orm.src.data_series import DataSeriesConfig
from shared.errors import DataSeriesConfigError

logger = structlog.get_logger(__name__)

ECHO_OPERATION = OperationDefinition(
    operation_name="echo",
    allowed_access=[ANONYMOUS_GROUPING],
    request_type=RequestType.GET,
    description="Returns the current timestamp",
    response_schema={
        "type": "object",
        "properties": {"timestamp": {"type": "number", "format": "integer"}},
    },
)

DATA_SERIES_QUERY_PARAMETERS = ("searchValue", "limit", "offset", "sort", "filter")


def _request_type_name(request_type: Union[RequestType, str]) -> str:
    if isinstance(request_type, RequestType):
        return request_type.value
    return str(request_type).upper()


class EndpointBase:
    """Base class for package endpoints."""

    DEFAULT_ERROR_MESSAGE = "Something went wrong. Please try again"
    DEFAULT_SUCCESS_MESSAGE = "Successfully completed operation"

    endpoint_name: Optional[str] = None
    endpoint_description: str = ""
    declared_operations: List[OperationDefinition] = [ECHO_OPERATION]
    declared_schemas: List[str] = []
    hidden_operations: List[str] = []

    def __init__(self, dx_app=None, package_name: Optional[str] = None):
        """
        Initialize the endpoint.

        Args:
            dx_app: Framework instance providing the JWT wrapper and data layer
            package_name: Package the endpoint belongs to; the default endpoint name
        """
        self.dx_app = dx_app
        self.endpoint_name = self.endpoint_name or package_name

        self.declared_operations = list(type(self).declared_operations)
        self.declared_schemas = list(type(self).declared_schemas)
        self.hidden_operations = list(type(self).hidden_operations)

        self.current_request: Optional[EndpointRequest] = None
        self.current_global_identifier: Any = -1
        self.current_global_identifier_groupings: List[str] = []
        self.provided_identifier_groupings: List[str] = [ANONYMOUS_GROUPING]

        self.reset_result_detail()

    # ========================================================================
    # Definition Helpers
    # ========================================================================

    @staticmethod
    def get_operation_definition(definition: Union[Dict[str, Any], OperationDefinition]) -> OperationDefinition:
        """
        Build an operation definition, filling in defaults.

        Raises:
            ValueError: If operationName or allowedAccess is missing
        """
        if isinstance(definition, OperationDefinition):
            return definition

        if not definition.get("operationName", definition.get("operation_name")):
            raise ValueError("No operation name provided")
        if definition.get("allowedAccess", definition.get("allowed_access")) is None:
            raise ValueError(f"No allowed access provided for operation '{definition.get('operationName')}'")

        return OperationDefinition.model_validate(definition)

    @staticmethod
    def get_schema(properties: Dict[str, Any]) -> Dict[str, Any]:
        """
        Build an object schema from a {name: type} mapping.

        Dict values are used as the property schema unchanged.
        """
        schema: Dict[str, Any] = {"type": "object", "properties": {}}

        for name, property_type in properties.items():
            if isinstance(property_type, dict):
                schema["properties"][name] = property_type
                continue

            type_name = str(property_type).lower()
            if type_name == "date":
                definition = {"type": "string", "format": "date"}
            elif type_name in ("datetime", "date-time"):
                definition = {"type": "string", "format": "date-time"}
            elif type_name in ("int", "integer"):
                definition = {"type": "number", "format": "integer"}
            elif type_name in ("float", "double"):
                definition = {"type": "number", "format": type_name}
            elif type_name == "file":
                definition = {"type": "string", "format": "binary"}
            elif type_name == "boolean":
                definition = {"type": "boolean"}
            elif type_name == "array":
                definition = {"type": "array", "example": []}
            elif type_name == "object":
                definition = {"type": "object", "example": {}}
            else:
                definition = {"type": "string"}

            schema["properties"][name] = definition

        return schema

    @staticmethod
    def get_array_schema(item_schema: Dict[str, Any], wrapper_key: Optional[str] = None) -> Dict[str, Any]:
        """Schema for an array of item_schema, optionally wrapped in an object under wrapper_key."""
        array_schema = {"type": "array", "items": item_schema}
        if not wrapper_key:
            return array_schema
        return {"type": "object", "properties": {wrapper_key: array_schema}}

    @staticmethod
    def get_enum_schema(options: Iterable[Any], default: Any = None) -> Dict[str, Any]:
        options = list(options)
        return {
            "type": "string",
            "enum": options,
            "default": default if default is not None else (options[0] if options else None),
        }

    @staticmethod
    def get_input_parameter(**kwargs: Any) -> InputParameter:
        return InputParameter.model_validate(kwargs)

    # ========================================================================
    # Result Helpers
    # ========================================================================

    def set_result(self, success: bool = False, message: Optional[str] = None) -> None:
        """Set success and message, using the default messages when none is given."""
        self.result["success"] = success
        if message:
            self.result["message"] = message
        else:
            self.result["message"] = self.DEFAULT_SUCCESS_MESSAGE if success else self.DEFAULT_ERROR_MESSAGE

    def set_status_code(self, status_code: int = 400) -> None:
        self.status_code = status_code

    def set_result_not_authorized(self, message: str = "Not authorized") -> None:
        """Fail the operation with a 401 status."""
        self.result["success"] = False
        self.result["unauthorized"] = True
        self.result["message"] = message
        self.status_code = 401

    def add_result_detail(self, detail: Optional[Dict[str, Any]] = None) -> None:
        """Merge detail into the result."""
        for key, value in (detail or {}).items():
            self.result[key] = value

    def force_result(self, data: Any, status_code: Optional[int] = 200) -> None:
        """Replace the result with data, bypassing set_result and add_result_detail."""
        self.result = data
        if status_code is not None:
            self.status_code = status_code

    def reset_result_detail(self) -> None:
        self.result: Any = {
            "success": False,
            "message": "none",
            "unauthorized": False,
        }
        self.status_code: Optional[int] = None
        self.cookie: Optional[CookieDefinition] = None

    def set_cookie(
        self,
        name: str = "cookie",
        data: Any = "",
        secure: bool = True,
        http_only: bool = True,
        expiry_in_days: int = 30,
    ) -> None:
        """Ask the web service to send a cookie with the response."""
        self.cookie = CookieDefinition(
            name=name,
            data=data,
            secure=secure,
            http_only=http_only,
            max_age=expiry_in_days * 24 * 60 * 60 * 1000,
        )

    # ========================================================================
    # Operation Registry
    # ========================================================================

    def declare_operations(self, operations: Iterable[Union[Dict[str, Any], OperationDefinition]]) -> None:
        """
        Add operations, replacing any declared operation with the same name
        and request type.
        """
        for operation in operations:
            definition = self.get_operation_definition(operation)
            for index, declared in enumerate(self.declared_operations):
                if (
                    declared.operation_name == definition.operation_name
                    and declared.request_type == definition.request_type
                ):
                    self.declared_operations[index] = definition
                    break
            else:
                self.declared_operations.append(definition)

    def hide_operations(self, operation_names: Iterable[str]) -> None:
        """Remove operations from the endpoint, whatever their request type."""
        for operation_name in operation_names:
            if operation_name not in self.hidden_operations:
                self.hidden_operations.append(operation_name)
        self.declared_operations = [
            operation
            for operation in self.declared_operations
            if operation.operation_name not in self.hidden_operations
        ]

    def get_declared_operation(
        self,
        operation_name: str,
        request_type: Union[RequestType, str, None] = None,
    ) -> Optional[OperationDefinition]:
        """Find a declared operation by name and, when given, request type."""
        for operation in self.declared_operations:
            if operation.operation_name != operation_name:
                continue
            if request_type is None or operation.request_type.value == _request_type_name(request_type):
                return operation
        return None

    def get_declared_operations(self) -> List[OperationDefinition]:
        return [
            operation
            for operation in self.declared_operations
            if operation.operation_name not in self.hidden_operations
        ]

    def declare_entity_schemas(self, entity_names: Iterable[str]) -> None:
        for entity_name in entity_names:
            if entity_name not in self.declared_schemas:
                self.declared_schemas.append(entity_name)

    # ========================================================================
    # Access Control
    # ========================================================================

    def is_access_allowed(
        self,
        operation_name: str,
        request_type: Union[RequestType, str],
        groupings: Iterable[str],
    ) -> bool:
        """
        Check whether any of the groupings may run the operation.

        The super user grouping may run every operation.
        """
        groupings = list(groupings)
        if SUPER_USER_GROUPING in groupings:
            return True

        request_type = _request_type_name(request_type)
        allowed_access: List[str] = []
        for operation in self.get_declared_operations():
            if operation.operation_name != operation_name or not operation.allowed_access:
                continue
            if operation.request_type.value == request_type:
                allowed_access = [access.lower() for access in operation.allowed_access]

        return any(grouping.lower() in allowed_access for grouping in groupings)

    def get_current_information_from_jwt(self, jwt_token: Optional[str]) -> None:
        """
        Set the current global identifier and its groupings from a token.

        provided_identifier_groupings always contains "anonymous", plus the
        lowercased token groupings and "super user" for super users.
        """
        self.current_global_identifier = -1
        self.current_global_identifier_groupings = []
        self.provided_identifier_groupings = [ANONYMOUS_GROUPING]

        if not jwt_token or self.dx_app is None:
            return

        jwt_wrapper = self.dx_app.jwt_wrapper
        global_identifier = jwt_wrapper.get_jwt_global_identifier(jwt_token)
        self.current_global_identifier = global_identifier if global_identifier is not None else -1
        self.current_global_identifier_groupings = jwt_wrapper.get_jwt_global_identifier_groupings(jwt_token)

        for grouping in self.current_global_identifier_groupings:
            self.provided_identifier_groupings.append(str(grouping).lower())

        if jwt_wrapper.is_super_user(jwt_token):
            self.provided_identifier_groupings.append(SUPER_USER_GROUPING)

    # ========================================================================
    # Execution
    # ========================================================================

    async def on_before_execute_operation(self, operation_name: str, request: EndpointRequest) -> bool:
        """
        Prepare for an operation and check access.

        Returns:
            False only if access was denied
        """
        self.reset_result_detail()
        self.current_request = request

        self.get_current_information_from_jwt(request.jwt_token)

        if not self.is_access_allowed(operation_name, request.method, self.provided_identifier_groupings):
            logger.info(
                "operation_not_authorized",
                endpoint=self.endpoint_name,
                operation=operation_name,
                method=request.method.value,
                global_identifier=self.current_global_identifier,
            )
            self.set_result_not_authorized()
            return False

        return True

    async def execute_operation(self, operation_name: str, request: EndpointRequest) -> bool:
        """
        Run an operation.

        Returns:
            False if access was denied, True otherwise
        """
        if not await self.on_before_execute_operation(operation_name, request):
            return False

        if operation_name == "echo":
            await self.echo()
            return True

        operation = self.get_declared_operation(operation_name, request.method)
        if operation is not None and operation.handler is not None:
            await operation.handler(self, request)
            return True

        self.set_result(False, "Invalid operation provided")
        return True

    async def echo(self) -> None:
        self.force_result({"timestamp": int(time.time() * 1000)}, 200)

    # ========================================================================
    # Data Series Parameters
    # ========================================================================

    def get_data_series_query_param_definitions(self) -> List[InputParameter]:
        return [
            self.get_input_parameter(name="searchValue", description="String value that will be searched on"),
            self.get_input_parameter(
                name="limit",
                description="Maximum entries to load for the given query",
                example=10,
            ),
            self.get_input_parameter(
                name="offset",
                description="Number of entries to skip before starting to return results",
            ),
            self.get_input_parameter(
                name="sort",
                description='Attributes to sort by, as JSON: {"attributeName": "asc"}',
            ),
            self.get_input_parameter(
                name="filter",
                description='Attributes to filter by, as JSON: {"attributeName": {"like": "value"}}',
            ),
        ]

    def get_data_series_config(
        self,
        request: EndpointRequest,
        entity_name: Optional[str] = None,
    ) -> DataSeriesConfig:
        """
        Build a data series configuration from the request's query parameters.

        Raises:
            DataSeriesConfigError: If sort or filter is not valid JSON
        """
        config: Dict[str, Any] = {"entityName": entity_name}

        for name in DATA_SERIES_QUERY_PARAMETERS:
            value = request.query.get(name)
            if value is None or value == "":
                continue
            if name in ("sort", "filter") and isinstance(value, str):
                try:
                    value = json.loads(value)
                except ValueError as e:
                    raise DataSeriesConfigError([f"'{name}' query parameter is not valid JSON"]) from e
            config[name] = value

        return DataSeriesConfig.model_validate(config)
