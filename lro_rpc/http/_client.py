# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""HTTP client transport using httpx."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from io import BytesIO
from typing import TYPE_CHECKING

import httpx
import pyarrow as pa

from lro_rpc.messages import StatusCode
from lro_rpc.rpc._common import TransportError, _generate_request_id
from lro_rpc.rpc._debug import wire_http_logger
from lro_rpc.rpc._transport import CallHandle
from lro_rpc.rpc._wire import _read_response, _write_request

from ._common import _ARROW_CONTENT_TYPE, _REQUEST_ID_HEADER, DEFAULT_PREFIX, status_code_for_http
from ._retry import _body_preview, _post_with_retry

if TYPE_CHECKING:
    from lro_rpc.rpc._methods import MethodInfo
    from lro_rpc.rpc._options import CallOptions
    from lro_rpc.utils import ArrowSerializableDataclass

    from ._testing import _SyncTestClient

type TokenSource = str | Callable[[], str]


class HttpTransport:
    """Transport that POSTs each call to ``{prefix}/{method}``.

    Safe for concurrent use when the underlying ``httpx.Client`` is.  Retry
    policy comes from ``CallOptions.retry`` and is executed here.
    """

    __slots__ = ("_client", "_headers", "_own_client", "_prefix", "_token")

    def __init__(
        self,
        base_url: str | None = None,
        *,
        prefix: str = DEFAULT_PREFIX,
        client: httpx.Client | _SyncTestClient | None = None,
        token: TokenSource | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize with a server URL or a pre-built client.

        Args:
            base_url: Base URL of the server (e.g. ``http://localhost:8000``).
                Required when *client* is ``None``; ignored otherwise.
            prefix: URL prefix matching the server's prefix (default ``/lro``).
            client: Optional HTTP client: ``httpx.Client`` for production,
                or a ``_SyncTestClient`` from ``make_sync_client()`` for testing.
                A caller-supplied client is not closed by ``close()``.
            token: Bearer token, or a zero-argument callable returning one,
                sent as ``Authorization: Bearer <token>`` on every request.
            headers: Extra headers sent on every request.

        Raises:
            ValueError: If *base_url* is ``None`` and *client* is ``None``.

        """
        self._own_client = client is None
        if client is None:
            if base_url is None:
                raise ValueError("base_url is required when client is not provided")
            client = httpx.Client(base_url=base_url, follow_redirects=True)
        self._client = client
        self._prefix = prefix.rstrip("/")
        self._token = token
        self._headers = dict(headers or {})

    @property
    def prefix(self) -> str:
        """URL prefix for RPC endpoints."""
        return self._prefix

    def _request_headers(self, request_id: str) -> dict[str, str]:
        headers = {
            **self._headers,
            "Content-Type": _ARROW_CONTENT_TYPE,
            _REQUEST_ID_HEADER: request_id,
        }
        if self._token is not None:
            token = self._token() if callable(self._token) else self._token
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def invoke(
        self,
        method: MethodInfo,
        request: ArrowSerializableDataclass,
        options: CallOptions,
    ) -> tuple[ArrowSerializableDataclass, CallHandle]:
        """POST one request stream and decode the response stream.

        Raises:
            TransportError: On a server error status (with that status),
                exhausted retries or connection failures (``UNAVAILABLE``),
                or a timeout (``DEADLINE_EXCEEDED``).

        """
        request_id = _generate_request_id()
        url = f"{self._prefix}/{method.name}"
        req_buf = BytesIO()
        _write_request(req_buf, method, request, options, request_id)
        if wire_http_logger.isEnabledFor(logging.DEBUG):
            wire_http_logger.debug("HTTP call: POST %s, request_id=%s", url, request_id)

        start = time.monotonic()
        try:
            resp, attempts = _post_with_retry(
                self._client,
                url,
                method=method.name,
                content=req_buf.getvalue(),
                headers=self._request_headers(request_id),
                config=options.retry,
                timeout=options.timeout,
                request_id=request_id,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(
                method.name, StatusCode.DEADLINE_EXCEEDED, f"HTTP request timed out: {exc}", request_id=request_id
            ) from exc
        except httpx.TransportError as exc:
            raise TransportError(
                method.name, StatusCode.UNAVAILABLE, f"HTTP connection failed: {exc}", request_id=request_id
            ) from exc
        duration_ms = (time.monotonic() - start) * 1000

        if wire_http_logger.isEnabledFor(logging.DEBUG):
            wire_http_logger.debug(
                "HTTP response: method=%s, status=%d, size=%d, attempts=%d",
                method.name,
                resp.status_code,
                len(resp.content),
                attempts,
            )

        try:
            envelope = _read_response(BytesIO(resp.content), method)
        except (pa.ArrowInvalid, StopIteration, EOFError) as exc:
            raise TransportError(
                method.name,
                status_code_for_http(resp.status_code),
                f"HTTP {resp.status_code}: response is not a valid Arrow IPC stream "
                f"(first 200 bytes: {_body_preview(resp.content)!r})",
                error_type="HttpError",
                request_id=request_id,
            ) from exc

        handle = CallHandle(
            method=method.name,
            request_id=request_id,
            status_code=envelope.status_code,
            status_message=envelope.status_message,
            trailing_metadata=envelope.trailing_metadata,
            attempts=attempts,
            duration_ms=duration_ms,
            server_id=envelope.server_id,
        )
        if envelope.response is None:
            raise TransportError(
                method.name,
                envelope.status_code,
                envelope.status_message,
                error_type=envelope.error_type or "TransportError",
                request_id=request_id,
                call_handle=handle,
            )
        return envelope.response, handle

    def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._own_client:
            self._client.close()
