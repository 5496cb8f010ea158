# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Per-call options: timeout, retry policy, and call metadata."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

# HTTP statuses that proxies and rate limiters use for "try again later".
_DEFAULT_RETRYABLE: frozenset[int] = frozenset({429, 502, 503, 504})

_EMPTY_METADATA: Mapping[str, str] = MappingProxyType({})


@dataclass(frozen=True)
class RetryConfig:
    """How a transport retries a call that failed transiently.

    Only transports act on this (the HTTP transport today); the dispatcher
    makes exactly one ``invoke`` per call.

    Attributes:
        max_retries: Extra attempts after the first, so a call makes at
            most ``max_retries + 1`` attempts.
        backoff_base: Delay scale in seconds; retry ``n`` (from 0) sleeps
            a random time up to ``backoff_base * 2**n``.
        backoff_max: Upper bound on any single sleep, in seconds.
        retryable_status_codes: HTTP statuses that trigger a retry.
        retry_on_connection_error: Also retry when the connection fails
            or times out.
        respect_retry_after: Treat a response's ``Retry-After`` as the
            minimum sleep (still capped by ``backoff_max``).

    Raises:
        ValueError: If any count or delay is negative.

    """

    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    retryable_status_codes: frozenset[int] = field(default_factory=lambda: _DEFAULT_RETRYABLE)
    retry_on_connection_error: bool = True
    respect_retry_after: bool = True

    def __post_init__(self) -> None:
        """Reject negative counts and delays."""
        for name in ("max_retries", "backoff_base", "backoff_max"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")


@dataclass(frozen=True)
class CallOptions:
    """Transport-level options for a single call.

    Options never change what is requested, only how the call is carried.

    When layered over client or per-method defaults (see ``merged_over``),
    ``None`` means "not set here" and inherits the default; an explicit
    ``CallOptions(timeout=None)`` cannot clear a default timeout or retry
    policy.  Build the client without that default instead.

    Attributes:
        timeout: Seconds to wait for the response, or ``None`` to inherit
            the default (waiting indefinitely when there is none).  Expiry
            surfaces as ``TransportError`` with ``DEADLINE_EXCEEDED``.
        retry: Retry policy applied by the transport, or ``None`` to
            inherit the default (a single attempt when there is none).
        metadata: String key/value pairs sent alongside the request.

    """

    timeout: float | None = None
    retry: RetryConfig | None = None
    metadata: Mapping[str, str] = field(default_factory=lambda: _EMPTY_METADATA)

    def __post_init__(self) -> None:
        """Validate the timeout and freeze the metadata mapping."""
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        if not isinstance(self.metadata, Mapping):
            raise TypeError(f"call metadata must be a mapping, got {type(self.metadata).__name__}")
        for k, v in self.metadata.items():
            if not isinstance(k, str) or not isinstance(v, str):
                raise TypeError(f"call metadata must map str to str, got {k!r}: {v!r}")
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        """Names accepted when options are given as a mapping."""
        return ("timeout", "retry", "metadata")

    def merged_over(self, defaults: CallOptions) -> CallOptions:
        """Return these options with unset values taken from *defaults*.

        Metadata entries are merged; keys set here win.
        """
        kwargs: dict[str, Any] = {
            "timeout": self.timeout if self.timeout is not None else defaults.timeout,
            "retry": self.retry if self.retry is not None else defaults.retry,
            "metadata": {**defaults.metadata, **self.metadata},
        }
        return CallOptions(**kwargs)
