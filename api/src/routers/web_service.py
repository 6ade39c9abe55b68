"""
Web service router.

Every configured package exposes its endpoint under the API prefix:

    {api_prefix}/{endpoint}                      -> {"message": "No operation provided"}
    {api_prefix}/{endpoint}/{operation}          -> declared operation
    {api_prefix}/{endpoint}/{operation}/{param}  -> operation with a path parameter

A fresh endpoint instance handles every request. The endpoint's result
becomes the JSON body; "success", "unauthorized" and "statusCode" only
drive the status code and are not returned.
"""

import json
import structlog
from typing import Any, Callable, Dict, List, Optional, Type

from fastapi import APIRouter, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from api.src.endpoints.endpoint_base import EndpointBase
from api.src.middleware.auth import extract_token
from api.src.models.endpoint import EndpointRequest, OperationDefinition, RequestType
from shared.errors import DxError

logger = structlog.get_logger(__name__)

ALL_REQUEST_TYPES = [request_type.value for request_type in RequestType]
RESULT_CONTROL_KEYS = ("statusCode", "success", "unauthorized")


# ============================================================================
# Request Conversion
# ============================================================================


async def build_endpoint_request(request: Request) -> EndpointRequest:
    """
    Convert an incoming request into the request passed to endpoints.

    The body is decoded as JSON when possible, then as form data; an empty
    body becomes {}.

    Raises:
        DxError: If a JSON body cannot be decoded
    """
    body: Any = {}
    content_type = request.headers.get("content-type", "")
    raw_body = await request.body()

    if raw_body:
        if "application/json" in content_type:
            try:
                body = json.loads(raw_body)
            except ValueError as e:
                raise DxError("Request body is not valid JSON") from e
        elif "form" in content_type:
            body = dict(await request.form())
        else:
            try:
                body = json.loads(raw_body)
            except ValueError:
                body = raw_body.decode("utf-8", errors="replace")

    jwt_token = getattr(request.state, "jwt_token", None)
    if jwt_token is None:
        jwt_token = extract_token(request)

    return EndpointRequest(
        method=RequestType(request.method.upper()),
        path=request.url.path,
        headers=dict(request.headers),
        query=dict(request.query_params),
        body=body,
        cookies=dict(request.cookies),
        path_params=dict(request.path_params),
        jwt_token=jwt_token,
    )


# ============================================================================
# Response Conversion
# ============================================================================


def get_response_status_code(endpoint: EndpointBase, operation: OperationDefinition) -> int:
    """
    Status code for an endpoint result.

    400 unless the result reports success, in which case the operation's
    success status code. A status code set on the endpoint overrides both,
    and a "statusCode" in the result overrides everything.
    """
    result = endpoint.result if isinstance(endpoint.result, dict) else {}

    status_code = operation.success_status_code if result.get("success") is True else 400
    if endpoint.status_code:
        status_code = endpoint.status_code
    if result.get("statusCode"):
        status_code = int(result["statusCode"])
    return status_code


def build_response(endpoint: EndpointBase, operation: OperationDefinition, powered_by: str) -> JSONResponse:
    """Turn an endpoint's result, status code and cookie into a JSON response."""
    status_code = get_response_status_code(endpoint, operation)

    body = endpoint.result
    if isinstance(body, dict):
        body = {key: value for key, value in body.items() if key not in RESULT_CONTROL_KEYS}

    response = JSONResponse(
        content=jsonable_encoder(body),
        status_code=status_code,
        headers={"x-powered-by": powered_by},
    )

    if endpoint.cookie is not None:
        cookie = endpoint.cookie
        response.set_cookie(
            key=cookie.name,
            value=json.dumps(jsonable_encoder(cookie.data)),
            max_age=cookie.max_age // 1000,
            secure=cookie.secure,
            httponly=cookie.http_only,
        )

    return response


def _get_openapi_parameters(operation: OperationDefinition) -> List[Dict[str, Any]]:
    return [parameter.model_dump(by_alias=True, exclude_none=True) for parameter in operation.parameters]


# ============================================================================
# Route Handlers
# ============================================================================


def make_operation_handler(
    dx_app,
    package_name: str,
    endpoint_class: Type[EndpointBase],
    operation: OperationDefinition,
) -> Callable:
    """Create the route handler for one declared operation."""

    async def handle_operation(request: Request) -> JSONResponse:
        endpoint = endpoint_class(dx_app, package_name)
        try:
            endpoint_request = await build_endpoint_request(request)
            await endpoint.execute_operation(operation.operation_name, endpoint_request)
        except DxError as e:
            logger.warning(
                "operation_failed",
                endpoint=endpoint.endpoint_name,
                operation=operation.operation_name,
                error=e.message,
                error_type=type(e).__name__,
            )
            endpoint.set_result(False, e.message)
            if getattr(e, "errors", None):
                endpoint.add_result_detail({"errors": e.errors})

        return build_response(endpoint, operation, dx_app.settings.powered_by)

    handle_operation.__name__ = f"{package_name}_{operation.operation_name}_{operation.request_type.value.lower()}"
    return handle_operation


def make_no_operation_handler(powered_by: str) -> Callable:
    async def handle_no_operation() -> JSONResponse:
        return JSONResponse({"message": "No operation provided"}, headers={"x-powered-by": powered_by})

    return handle_no_operation


def build_api_router(dx_app, prefix: Optional[str] = None) -> APIRouter:
    """
    Build the router for every package endpoint.

    Args:
        dx_app: Framework instance
        prefix: URL prefix; defaults to the configured API prefix

    Returns:
        Router to include in the FastAPI application
    """
    settings = dx_app.settings
    router = APIRouter(prefix=prefix if prefix is not None else settings.api_prefix)

    for package_name, endpoint_class in dx_app.get_endpoint_classes():
        prototype = endpoint_class(dx_app, package_name)
        endpoint_name = prototype.endpoint_name
        tags = [endpoint_name]

        router.add_api_route(
            f"/{endpoint_name}",
            make_no_operation_handler(settings.powered_by),
            methods=ALL_REQUEST_TYPES,
            include_in_schema=False,
        )

        for operation in prototype.get_declared_operations():
            handler = make_operation_handler(dx_app, package_name, endpoint_class, operation)
            route_options = {
                "methods": [operation.request_type.value],
                "tags": tags,
                "summary": operation.operation_name,
                "description": operation.description,
                "include_in_schema": not operation.disable_swagger_doc,
                "openapi_extra": {"parameters": _get_openapi_parameters(operation)} if operation.parameters else None,
            }

            router.add_api_route(f"/{endpoint_name}/{operation.operation_name}", handler, **route_options)
            for parameter in operation.path_parameters:
                router.add_api_route(
                    f"/{endpoint_name}/{operation.operation_name}/{{{parameter.name}}}",
                    handler,
                    **route_options,
                )

            logger.debug(
                "operation_route_registered",
                endpoint=endpoint_name,
                operation=operation.operation_name,
                method=operation.request_type.value,
            )

        logger.info(
            "endpoint_registered",
            package=package_name,
            endpoint=endpoint_name,
            operations=len(prototype.get_declared_operations()),
        )

    return router
