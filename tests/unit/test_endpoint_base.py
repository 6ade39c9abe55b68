"""
Unit tests for the endpoint base class.

Tests cover:
- Operation definitions and schema helpers
- Result, status code and cookie helpers
- Declaring and hiding operations
- Access control from JWT groupings
- Operation execution and data series parameters
"""

from unittest.mock import MagicMock

import pytest

from api.src.endpoints.endpoint_base import EndpointBase
from api.src.models.endpoint import EndpointRequest, OperationDefinition, RequestType
from shared.errors import DataSeriesConfigError


class CrmEndpoint(EndpointBase):
    endpoint_name = "crm"

    async def list_accounts(self, request: EndpointRequest) -> None:
        self.add_result_detail({"accounts": [{"id": 1}]})
        self.set_result(True)

    async def close_account(self, request: EndpointRequest) -> None:
        self.set_result(True, "Closed")

    declared_operations = EndpointBase.declared_operations + [
        OperationDefinition(operation_name="listAccounts", allowed_access=["Sales"], handler=list_accounts),
        OperationDefinition(
            operation_name="closeAccount",
            allowed_access=["managers"],
            request_type=RequestType.POST,
            handler=close_account,
        ),
    ]


def make_dx_app(global_identifier="abc", groupings=None, is_super_user=False):
    dx_app = MagicMock()
    dx_app.jwt_wrapper.get_jwt_global_identifier.return_value = global_identifier
    dx_app.jwt_wrapper.get_jwt_global_identifier_groupings.return_value = groupings or []
    dx_app.jwt_wrapper.is_super_user.return_value = is_super_user
    return dx_app


# ============================================================================
# DEFINITIONS
# ============================================================================


class TestDefinitions:
    """Test operation and schema helpers."""

    def test_operation_from_dict(self):
        """Test camelCase dicts become definitions with defaults."""
        definition = EndpointBase.get_operation_definition(
            {"operationName": "listAccounts", "allowedAccess": ["sales"]}
        )

        assert definition.request_type == RequestType.GET
        assert definition.requires_authentication is True
        assert definition.success_status_code == 200

    @pytest.mark.parametrize("definition", [
        {"allowedAccess": ["sales"]},
        {"operationName": "listAccounts"},
    ])
    def test_operation_requires_name_and_access(self, definition):
        with pytest.raises(ValueError):
            EndpointBase.get_operation_definition(definition)

    def test_anonymous_operation_needs_no_authentication(self):
        definition = OperationDefinition(operation_name="ping", allowed_access=["Anonymous"])
        assert definition.requires_authentication is False

    def test_get_schema(self):
        """Test simple type names map to schema properties."""
        schema = EndpointBase.get_schema({
            "name": "string",
            "age": "int",
            "born": "date",
            "active": "boolean",
            "tags": "array",
            "custom": {"type": "string", "maxLength": 5},
        })

        assert schema["type"] == "object"
        assert schema["properties"]["age"] == {"type": "number", "format": "integer"}
        assert schema["properties"]["born"] == {"type": "string", "format": "date"}
        assert schema["properties"]["active"] == {"type": "boolean"}
        assert schema["properties"]["tags"]["type"] == "array"
        assert schema["properties"]["custom"]["maxLength"] == 5

    def test_array_and_enum_schemas(self):
        item = {"type": "string"}

        assert EndpointBase.get_array_schema(item) == {"type": "array", "items": item}
        assert EndpointBase.get_array_schema(item, "names")["properties"]["names"]["items"] == item
        assert EndpointBase.get_enum_schema(["a", "b"])["default"] == "a"


# ============================================================================
# RESULTS
# ============================================================================


class TestResults:
    """Test result helpers."""

    def test_default_result(self):
        endpoint = CrmEndpoint()
        assert endpoint.result == {"success": False, "message": "none", "unauthorized": False}
        assert endpoint.status_code is None

    def test_set_result_default_messages(self):
        endpoint = CrmEndpoint()

        endpoint.set_result(True)
        assert endpoint.result["message"] == EndpointBase.DEFAULT_SUCCESS_MESSAGE

        endpoint.set_result(False)
        assert endpoint.result["message"] == EndpointBase.DEFAULT_ERROR_MESSAGE

    def test_not_authorized(self):
        endpoint = CrmEndpoint()
        endpoint.set_result_not_authorized()

        assert endpoint.status_code == 401
        assert endpoint.result["unauthorized"] is True

    def test_force_result(self):
        endpoint = CrmEndpoint()
        endpoint.force_result(["raw"], 202)

        assert endpoint.result == ["raw"]
        assert endpoint.status_code == 202

    def test_set_cookie(self):
        endpoint = CrmEndpoint()
        endpoint.set_cookie("session", "xyz", expiry_in_days=1)

        assert endpoint.cookie.name == "session"
        assert endpoint.cookie.max_age == 24 * 60 * 60 * 1000


# ============================================================================
# REGISTRY
# ============================================================================


class TestRegistry:
    """Test declaring and hiding operations."""

    def test_endpoint_name_defaults_to_package(self):
        assert EndpointBase(package_name="billing").endpoint_name == "billing"
        assert CrmEndpoint(package_name="other").endpoint_name == "crm"

    def test_declare_operations_replaces_same_name_and_type(self):
        """Test redeclaring an operation replaces it."""
        endpoint = CrmEndpoint()
        endpoint.declare_operations([{"operationName": "listAccounts", "allowedAccess": ["support"]}])

        operation = endpoint.get_declared_operation("listAccounts", "get")
        assert operation.allowed_access == ["support"]
        assert len([op for op in endpoint.declared_operations if op.operation_name == "listAccounts"]) == 1

    def test_instances_do_not_share_operations(self):
        CrmEndpoint().declare_operations([{"operationName": "extra", "allowedAccess": ["sales"]}])
        assert CrmEndpoint().get_declared_operation("extra") is None

    def test_hide_operations(self):
        endpoint = CrmEndpoint()
        endpoint.hide_operations(["echo"])

        assert "echo" not in [op.operation_name for op in endpoint.get_declared_operations()]

    def test_get_declared_operation_by_type(self):
        endpoint = CrmEndpoint()

        assert endpoint.get_declared_operation("closeAccount", RequestType.POST) is not None
        assert endpoint.get_declared_operation("closeAccount", "GET") is None


# ============================================================================
# ACCESS CONTROL
# ============================================================================


class TestAccessControl:
    """Test access decisions."""

    def test_grouping_match_is_case_insensitive(self):
        endpoint = CrmEndpoint()
        assert endpoint.is_access_allowed("listAccounts", "GET", ["sales"]) is True
        assert endpoint.is_access_allowed("listAccounts", "GET", ["support"]) is False

    def test_request_type_must_match(self):
        assert CrmEndpoint().is_access_allowed("closeAccount", "GET", ["managers"]) is False

    def test_super_user_allowed_everything(self):
        assert CrmEndpoint().is_access_allowed("closeAccount", "POST", ["super user"]) is True

    def test_current_information_from_jwt(self):
        """Test groupings are lowercased and super users flagged."""
        endpoint = CrmEndpoint(make_dx_app(groupings=["Sales"], is_super_user=True))

        endpoint.get_current_information_from_jwt("token")

        assert endpoint.current_global_identifier == "abc"
        assert endpoint.provided_identifier_groupings == ["anonymous", "sales", "super user"]

    def test_no_token_is_anonymous(self):
        endpoint = CrmEndpoint(make_dx_app())

        endpoint.get_current_information_from_jwt(None)

        assert endpoint.current_global_identifier == -1
        assert endpoint.provided_identifier_groupings == ["anonymous"]


# ============================================================================
# EXECUTION
# ============================================================================


class TestExecution:
    """Test running operations."""

    @pytest.mark.asyncio
    async def test_echo_is_anonymous(self):
        endpoint = CrmEndpoint(make_dx_app())

        assert await endpoint.execute_operation("echo", EndpointRequest()) is True
        assert "timestamp" in endpoint.result
        assert endpoint.status_code == 200

    @pytest.mark.asyncio
    async def test_handler_runs_when_allowed(self):
        endpoint = CrmEndpoint(make_dx_app(groupings=["sales"]))

        allowed = await endpoint.execute_operation("listAccounts", EndpointRequest(jwt_token="token"))

        assert allowed is True
        assert endpoint.result["success"] is True
        assert endpoint.result["accounts"] == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_denied_without_grouping(self):
        """Test a caller without an allowed grouping gets a 401."""
        endpoint = CrmEndpoint(make_dx_app(groupings=["support"]))

        allowed = await endpoint.execute_operation("listAccounts", EndpointRequest(jwt_token="token"))

        assert allowed is False
        assert endpoint.status_code == 401

    @pytest.mark.asyncio
    async def test_operation_without_handler(self):
        endpoint = CrmEndpoint(make_dx_app(is_super_user=True))
        endpoint.declare_operations([{"operationName": "todo", "allowedAccess": ["sales"]}])

        await endpoint.execute_operation("todo", EndpointRequest(jwt_token="token"))

        assert endpoint.result["message"] == "Invalid operation provided"


# ============================================================================
# DATA SERIES PARAMETERS
# ============================================================================


class TestDataSeriesConfig:
    """Test data series configuration from query parameters."""

    def test_query_parameters(self):
        """Test sort and filter are decoded from JSON."""
        request = EndpointRequest(query={
            "searchValue": "jo",
            "limit": "20",
            "offset": "",
            "sort": '{"lastName": "asc"}',
            "filter": '{"age": {"gte": "18"}}',
        })

        config = CrmEndpoint().get_data_series_config(request, "account")

        assert config.entity_name == "account"
        assert config.search_value == "jo"
        assert config.limit == "20"
        assert config.offset is None
        assert config.sort == {"lastName": "asc"}
        assert config.filter == {"age": {"gte": "18"}}

    def test_invalid_json(self):
        request = EndpointRequest(query={"sort": "{lastName"})

        with pytest.raises(DataSeriesConfigError):
            CrmEndpoint().get_data_series_config(request, "account")

    def test_parameter_definitions(self):
        names = [parameter.name for parameter in CrmEndpoint().get_data_series_query_param_definitions()]
        assert names == ["searchValue", "limit", "offset", "sort", "filter"]
