"""
Tool factories — ready-made tools for the common shapes of preparation work.

  create_data_enrichment  derive new collected fields from existing ones
  create_validation       check collected fields, report issues
  create_computation      pure calculation over input fields
  create_api_call         call an external HTTP endpoint (httpx)

Each factory validates its configuration up front and raises
ToolCreationError for malformed definitions.
"""
from __future__ import annotations

import inspect
from typing import Any, Callable, Optional, Union

import httpx
import structlog
from pydantic import BaseModel

from core.errors import ToolCreationError, ToolExecutionError
from tools.models import Tool, ToolCategory, ToolContext, ToolResult

logger = structlog.get_logger()

_HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _pick(ctx: ToolContext, fields: list[str]) -> dict[str, Any]:
    return {f: ctx.get_field(f) for f in fields if ctx.get_field(f) is not None}


def _check(tool_id: str, kind: str, errors: list[str]):
    if not tool_id:
        errors.insert(0, "tool id is required")
    if errors:
        raise ToolCreationError(
            f"{kind} configuration validation failed: {'; '.join(errors)}",
            tool_id=tool_id or "unknown",
        )


def _fields_param(key: str, fields: list[str], verb: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            key: {
                "type": "array",
                "items": {"type": "string"},
                "description": f"{verb}: {', '.join(fields)}",
            }
        },
    }


# ──────────────────────────────────────────────────────
#  Data enrichment
# ──────────────────────────────────────────────────────

def create_data_enrichment(
    id: str,
    fields: list[str],
    enricher: Callable[[dict[str, Any], dict[str, Any]], Any],
    name: str = "",
    description: str = "",
) -> Tool:
    """enricher(context, field_values) returns a dict merged into collected data."""
    errors = []
    if not fields or not isinstance(fields, list):
        errors.append("Data enrichment fields must be a non-empty list")
    if not callable(enricher):
        errors.append("Data enrichment enricher must be callable")
    _check(id, "Data enrichment", errors)

    async def handler(ctx: ToolContext) -> ToolResult:
        try:
            enriched = await _maybe_await(enricher(ctx.context, _pick(ctx, fields)))
        except Exception as e:
            logger.error("data_enrichment_failed", tool_id=id, error=str(e))
            raise ToolExecutionError(f"Data enrichment failed: {e}", tool_id=id,
                                     execution_context={"fields": fields}, cause=e) from e
        logger.debug("data_enrichment_completed", tool_id=id, fields=fields)
        return ToolResult(data=enriched, data_update=enriched if isinstance(enriched, dict) else None)

    return Tool(
        id=id,
        name=name or f"Data Enrichment: {id}",
        description=description or f"Enriches data fields: {', '.join(fields)}",
        parameters=_fields_param("fields", fields, "Fields to enrich"),
        category=ToolCategory.ENRICHMENT,
        handler=handler,
    )


# ──────────────────────────────────────────────────────
#  Validation
# ──────────────────────────────────────────────────────

class ValidationIssue(BaseModel):
    field: str
    message: str
    value: Any = None


class ValidationResult(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []


def _as_validation_result(raw: Any) -> ValidationResult:
    if isinstance(raw, ValidationResult):
        return raw
    if isinstance(raw, bool):
        return ValidationResult(valid=raw)
    if isinstance(raw, dict):
        return ValidationResult(**raw)
    raise TypeError(f"validator returned {type(raw).__name__}; expected ValidationResult, dict or bool")


def create_validation(
    id: str,
    fields: list[str],
    validator: Callable[[dict[str, Any], dict[str, Any]], Any],
    name: str = "",
    description: str = "",
) -> Tool:
    """
    validator(context, field_values) returns a ValidationResult, a dict of
    the same shape, or a bool. Validator exceptions become a failed
    ValidationResult rather than a tool failure.
    """
    errors = []
    if not fields or not isinstance(fields, list):
        errors.append("Validation fields must be a non-empty list")
    if not callable(validator):
        errors.append("Validation validator must be callable")
    _check(id, "Validation", errors)

    async def handler(ctx: ToolContext) -> ToolResult:
        try:
            result = _as_validation_result(await _maybe_await(validator(ctx.context, _pick(ctx, fields))))
        except Exception as e:
            logger.warning("validation_tool_error", tool_id=id, error=str(e))
            result = ValidationResult(
                valid=False,
                errors=[ValidationIssue(field="validation", message=f"Validation error: {e}")],
            )
        logger.debug("validation_completed", tool_id=id, valid=result.valid)
        return ToolResult(data=result.model_dump(), meta={"valid": result.valid})

    return Tool(
        id=id,
        name=name or f"Validation: {id}",
        description=description or f"Validates data fields: {', '.join(fields)}",
        parameters=_fields_param("fields", fields, "Fields to validate"),
        category=ToolCategory.VALIDATION,
        handler=handler,
    )


# ──────────────────────────────────────────────────────
#  Computation
# ──────────────────────────────────────────────────────

def create_computation(
    id: str,
    inputs: list[str],
    compute: Callable[[dict[str, Any], dict[str, Any], dict[str, Any]], Any],
    output_field: str = "",
    name: str = "",
    description: str = "",
) -> Tool:
    """compute(context, inputs, args); with output_field set the result is also collected."""
    errors = []
    if not inputs or not isinstance(inputs, list):
        errors.append("Computation inputs must be a non-empty list")
    if not callable(compute):
        errors.append("Computation compute function is required")
    _check(id, "Computation", errors)

    async def handler(ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        try:
            value = await _maybe_await(compute(ctx.context, _pick(ctx, inputs), args))
        except Exception as e:
            logger.error("computation_failed", tool_id=id, error=str(e))
            raise ToolExecutionError(f"Computation failed: {e}", tool_id=id,
                                     execution_context={"inputs": inputs, "args": args}, cause=e) from e
        logger.debug("computation_completed", tool_id=id)
        return ToolResult(data=value, data_update={output_field: value} if output_field else None)

    return Tool(
        id=id,
        name=name or f"Computation: {id}",
        description=description or f"Performs computation on inputs: {', '.join(inputs)}",
        parameters=_fields_param("inputs", inputs, "Input fields"),
        category=ToolCategory.COMPUTATION,
        handler=handler,
    )


# ──────────────────────────────────────────────────────
#  API call
# ──────────────────────────────────────────────────────

Resolvable = Union[str, Callable[..., Any]]


def create_api_call(
    id: str,
    endpoint: Resolvable,
    method: str = "GET",
    headers: Union[dict[str, str], Callable[[dict[str, Any]], dict[str, str]], None] = None,
    body: Optional[Callable[[dict[str, Any], dict[str, Any], dict[str, Any]], Any]] = None,
    transform: Optional[Callable[[Any], Any]] = None,
    result_field: str = "",
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = 30.0,
    name: str = "",
    description: str = "",
) -> Tool:
    """
    endpoint may be a URL or endpoint(context, data) -> URL. body(context,
    data, args) supplies the JSON payload for POST/PUT/PATCH. A supplied
    client is reused and never closed here.
    """
    method = (method or "GET").upper()
    errors = []
    if not endpoint:
        errors.append("API call endpoint is required")
    elif not isinstance(endpoint, str) and not callable(endpoint):
        errors.append("API call endpoint must be a string or callable")
    if method not in _HTTP_METHODS:
        errors.append(f"API call method must be one of: {', '.join(_HTTP_METHODS)}")
    if headers is not None and not isinstance(headers, dict) and not callable(headers):
        errors.append("API call headers must be a dict or callable")
    if body is not None and not callable(body):
        errors.append("API call body must be callable")
    if transform is not None and not callable(transform):
        errors.append("API call transform must be callable")
    _check(id, "API call", errors)

    async def _send(http: httpx.AsyncClient, url: str, hdrs: dict[str, str], payload: Any) -> httpx.Response:
        kwargs: dict[str, Any] = {"headers": {"Content-Type": "application/json", **hdrs}}
        if payload is not None:
            kwargs["json"] = payload
        return await http.request(method, url, **kwargs)

    async def handler(ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        url = endpoint(ctx.context, ctx.data) if callable(endpoint) else endpoint
        hdrs = headers(ctx.context) if callable(headers) else dict(headers or {})
        payload = body(ctx.context, ctx.data, args) if body and method in ("POST", "PUT", "PATCH") else None

        try:
            if client is not None:
                response = await _send(client, url, hdrs, payload)
            else:
                async with httpx.AsyncClient(timeout=timeout_seconds) as http:
                    response = await _send(http, url, hdrs, payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error("api_call_failed", tool_id=id, url=url, status=status)
            raise ToolExecutionError(f"API call failed: HTTP {status}: {e.response.reason_phrase}",
                                     tool_id=id, execution_context={"endpoint": url, "method": method},
                                     cause=e) from e
        except httpx.HTTPError as e:
            logger.error("api_call_failed", tool_id=id, url=url, error=str(e))
            raise ToolExecutionError(f"API call failed: network error: {e}", tool_id=id,
                                     execution_context={"endpoint": url, "method": method},
                                     cause=e) from e

        if "application/json" in response.headers.get("content-type", ""):
            data = response.json()
        else:
            data = response.text
        if transform is not None:
            data = transform(data)

        logger.debug("api_call_completed", tool_id=id, url=url, status=response.status_code)
        return ToolResult(data=data, data_update={result_field: data} if result_field else None)

    return Tool(
        id=id,
        name=name or f"API Call: {id}",
        description=description or "Makes API call to external service",
        parameters={
            "type": "object",
            "properties": {
                "endpoint": {"type": "string", "description": "API endpoint URL"},
                "method": {"type": "string", "enum": list(_HTTP_METHODS), "description": "HTTP method"},
            },
        },
        category=ToolCategory.DATA_FETCH,
        timeout_seconds=timeout_seconds,
        handler=handler,
    )
