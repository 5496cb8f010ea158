# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Retrying POSTs for the HTTP transport.

The ``RetryConfig`` from ``CallOptions.retry`` is applied here and nowhere
else.  A response whose HTTP status is in
``RetryConfig.retryable_status_codes`` and, optionally, an
``httpx.ConnectError`` or ``httpx.TimeoutException`` is retried after a
jittered exponential backoff.  Running out of attempts on a retryable
status raises ``HttpTransientError``; running out on a connection failure
re-raises the ``httpx`` exception for the transport to map.

Logger: ``lro_rpc.http.retry`` (DEBUG, one line per retry).
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING

import httpx

from lro_rpc.messages import StatusCode
from lro_rpc.rpc._common import TransportError

if TYPE_CHECKING:
    from lro_rpc.http._testing import _SyncTestClient, _SyncTestResponse
    from lro_rpc.rpc._options import RetryConfig

    type _Response = httpx.Response | _SyncTestResponse

_logger = logging.getLogger("lro_rpc.http.retry")

_PREVIEW_BYTES = 200


def _body_preview(content: bytes) -> str:
    return content[:_PREVIEW_BYTES].decode(errors="replace")


class HttpTransientError(TransportError):
    """Retries ran out while the server kept answering with a retryable status.

    Carries status ``UNAVAILABLE``.

    Attributes:
        http_status: HTTP status of the final response.
        retry_after: ``Retry-After`` of the final response in seconds, or ``None``.
        attempts: Number of POSTs made.

    """

    def __init__(
        self,
        method: str,
        http_status: int,
        body_preview: str,
        retry_after: float | None = None,
        *,
        attempts: int = 1,
        request_id: str = "",
    ) -> None:
        """Record the final HTTP status and build an ``UNAVAILABLE`` error."""
        self.http_status = http_status
        self.retry_after = retry_after
        self.attempts = attempts
        super().__init__(
            method,
            StatusCode.UNAVAILABLE,
            f"HTTP {http_status} after {attempts} attempts (body: {body_preview!r})",
            error_type="HttpTransientError",
            request_id=request_id,
        )


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


def _parse_retry_after(header_value: str) -> float | None:
    """Read a ``Retry-After`` value given as delta-seconds or an HTTP-date.

    Returns:
        Seconds to wait (never negative), or ``None`` when the value is
        neither form.

    """
    try:
        return float(header_value)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(header_value)
    except (ValueError, TypeError):
        return None
    return max(0.0, (when - datetime.now(tz=UTC)).total_seconds())


def _get_retry_after(headers: object) -> float | None:
    """``Retry-After`` from ``httpx.Headers`` or a plain mapping, parsed."""
    if not isinstance(headers, Mapping):
        return None
    raw = headers.get("Retry-After", headers.get("retry-after"))
    return None if raw is None else _parse_retry_after(raw)


def _compute_delay(attempt: int, config: RetryConfig, retry_after: float | None) -> float:
    """Seconds to sleep before retry number ``attempt + 1``.

    Full jitter over ``backoff_base * 2**attempt``, capped at ``backoff_max``.
    With ``respect_retry_after`` the server's ``Retry-After`` acts as a
    floor, itself capped at ``backoff_max``.
    """
    ceiling = config.backoff_base * (2**attempt)
    delay = min(random.uniform(0, ceiling), config.backoff_max)
    if config.respect_retry_after and retry_after is not None:
        delay = max(delay, min(retry_after, config.backoff_max))
    return delay


# ---------------------------------------------------------------------------
# POST loop
# ---------------------------------------------------------------------------


def _post_with_retry(
    client: httpx.Client | _SyncTestClient,
    url: str,
    *,
    method: str,
    content: bytes,
    headers: dict[str, str],
    config: RetryConfig | None,
    timeout: float | None = None,
    request_id: str = "",
    _sleep: Callable[[float], object] = time.sleep,
) -> tuple[_Response, int]:
    """POST *content* to *url*, retrying transient failures per *config*.

    Args:
        client: ``httpx.Client`` or the in-process test client.
        url: Request URL.
        method: RPC method name, used in errors and log lines.
        content: Request body.
        headers: Request headers.
        config: Retry policy, or ``None`` for exactly one attempt.
        timeout: Per-request timeout in seconds; ``None`` keeps the
            client's default.
        request_id: Correlation ID put on a raised ``HttpTransientError``.
        _sleep: Sleep function, replaced in tests.

    Returns:
        The final response and the number of attempts made.

    Raises:
        HttpTransientError: Every attempt got a retryable status.
        httpx.ConnectError: Connection failures outlasted the retries,
            or are not retried.
        httpx.TimeoutException: Same, for timeouts.

    """

    def post() -> _Response:
        if timeout is None:
            return client.post(url, content=content, headers=headers)
        return client.post(url, content=content, headers=headers, timeout=timeout)

    if config is None:
        return post(), 1

    total = config.max_retries + 1
    attempt = 0
    while True:
        try:
            resp = post()
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            if not config.retry_on_connection_error or attempt == config.max_retries:
                raise
            reason = type(exc).__name__
            retry_after = None
        else:
            if resp.status_code not in config.retryable_status_codes:
                return resp, attempt + 1
            retry_after = _get_retry_after(resp.headers)
            if attempt == config.max_retries:
                raise HttpTransientError(
                    method,
                    resp.status_code,
                    _body_preview(resp.content),
                    retry_after,
                    attempts=total,
                    request_id=request_id,
                )
            reason = f"HTTP {resp.status_code}"

        delay = _compute_delay(attempt, config, retry_after)
        _logger.debug(
            "%s on POST %s (attempt %d/%d), retrying in %.2fs",
            reason,
            url,
            attempt + 1,
            total,
            delay,
        )
        _sleep(delay)
        attempt += 1
