# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared constants, status mapping, and exception for the HTTP transport layer."""

from __future__ import annotations

from http import HTTPStatus

from lro_rpc.messages import StatusCode

_ARROW_CONTENT_TYPE = "application/vnd.apache.arrow.stream"
_REQUEST_ID_HEADER = "X-Request-ID"
DEFAULT_PREFIX = "/lro"

_HTTP_FOR_STATUS: dict[StatusCode, HTTPStatus] = {
    StatusCode.OK: HTTPStatus.OK,
    StatusCode.INVALID_ARGUMENT: HTTPStatus.BAD_REQUEST,
    StatusCode.UNAUTHENTICATED: HTTPStatus.UNAUTHORIZED,
    StatusCode.PERMISSION_DENIED: HTTPStatus.FORBIDDEN,
    StatusCode.NOT_FOUND: HTTPStatus.NOT_FOUND,
    StatusCode.UNIMPLEMENTED: HTTPStatus.NOT_IMPLEMENTED,
    StatusCode.UNAVAILABLE: HTTPStatus.SERVICE_UNAVAILABLE,
}


def http_status_for(status_code: StatusCode) -> HTTPStatus:
    """HTTP status used to carry *status_code*; anything unmapped is a 500."""
    return _HTTP_FOR_STATUS.get(status_code, HTTPStatus.INTERNAL_SERVER_ERROR)


def status_code_for_http(http_status: int) -> StatusCode:
    """Best-effort status for an HTTP response that carried no Arrow error stream."""
    if http_status == HTTPStatus.UNAUTHORIZED:
        return StatusCode.UNAUTHENTICATED
    if http_status == HTTPStatus.FORBIDDEN:
        return StatusCode.PERMISSION_DENIED
    if http_status == HTTPStatus.NOT_FOUND:
        return StatusCode.UNIMPLEMENTED
    if http_status in (HTTPStatus.REQUEST_TIMEOUT, HTTPStatus.GATEWAY_TIMEOUT):
        return StatusCode.DEADLINE_EXCEEDED
    if http_status == HTTPStatus.TOO_MANY_REQUESTS:
        return StatusCode.RESOURCE_EXHAUSTED
    if http_status in (HTTPStatus.BAD_GATEWAY, HTTPStatus.SERVICE_UNAVAILABLE):
        return StatusCode.UNAVAILABLE
    if 400 <= http_status < 500:
        return StatusCode.INVALID_ARGUMENT
    if http_status >= 500:
        return StatusCode.INTERNAL
    return StatusCode.UNKNOWN


class _RpcHttpError(Exception):
    """Internal exception for HTTP-layer errors that never reach the servicer."""

    __slots__ = ("error_type", "message", "status_code")

    def __init__(self, status_code: StatusCode, message: str, error_type: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.error_type = error_type
