"""Standardized error responses.

Every error body has the same shape::

    {"type": "validation_error", "errors": [{"code": ..., "detail": ..., "attr": ...}]}

``type`` is ``validation_error`` for field validation failures,
``client_error`` for other 4xx and ``server_error`` for 5xx.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from rest_framework import exceptions
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = structlog.get_logger(__name__)

VALIDATION_ERROR = "validation_error"
CLIENT_ERROR = "client_error"
SERVER_ERROR = "server_error"


def error_body(
    error_type: str, code: str, detail: str, attr: Optional[str] = None
) -> Dict[str, Any]:
    return {"type": error_type, "errors": [{"code": code, "detail": detail, "attr": attr}]}


def error_response(
    status_code: int,
    code: str,
    detail: str,
    error_type: Optional[str] = None,
    attr: Optional[str] = None,
) -> Response:
    if error_type is None:
        error_type = SERVER_ERROR if status_code >= 500 else CLIENT_ERROR
    return Response(error_body(error_type, code, detail, attr), status=status_code)


def _flatten(detail: Any, attr: Optional[str] = None) -> List[Dict[str, Any]]:
    if isinstance(detail, dict):
        errors: List[Dict[str, Any]] = []
        for key, value in detail.items():
            name = key if attr is None else f"{attr}.{key}"
            errors.extend(_flatten(value, None if key == "non_field_errors" else name))
        return errors
    if isinstance(detail, list):
        errors = []
        for index, value in enumerate(detail):
            name = attr
            if isinstance(value, (dict, list)) and attr is not None:
                name = f"{attr}.{index}"
            errors.extend(_flatten(value, name))
        return errors
    return [
        {
            "code": getattr(detail, "code", "error"),
            "detail": str(detail),
            "attr": attr,
        }
    ]


def standardized_exception_handler(exc: Exception, context: Dict[str, Any]) -> Optional[Response]:
    """DRF ``EXCEPTION_HANDLER`` producing the standardized error shape."""
    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, exceptions.ValidationError):
        error_type = VALIDATION_ERROR
        errors = _flatten(exc.detail)
    else:
        error_type = SERVER_ERROR if response.status_code >= 500 else CLIENT_ERROR
        detail = getattr(exc, "detail", str(exc))
        errors = _flatten(detail)

    logger.info(
        "api.error_response",
        status_code=response.status_code,
        error_type=error_type,
        codes=[error["code"] for error in errors],
    )
    response.data = {"type": error_type, "errors": errors}
    return response
