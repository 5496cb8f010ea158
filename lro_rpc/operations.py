# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client facade for the long-running operations service.

``OperationsClient`` exposes ``list_operations``, ``get_operation``,
``delete_operation`` and ``cancel_operation``.  Each method accepts its
request as a request message, a mapping of field names, or keyword fields,
optionally followed by call options (a ``CallOptions`` or a mapping of its
fields) and an optional ``callback``::

    client.get_operation(GetOperationRequest(name="operations/1"))
    client.get_operation({"name": "operations/1"}, {"timeout": 5.0})
    client.get_operation(name="operations/1", callback=on_done)

The callback receives ``(result, call_handle)`` exactly once, after the call
succeeded, and the same result is returned.

Per call: coerce → dispatch (exactly one transport call) → adapt → deliver.
A failure at any stage raises and nothing is delivered.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType, TracebackType
from typing import TYPE_CHECKING, Any

from lro_rpc.http import DEFAULT_PREFIX, HttpTransport, TokenSource
from lro_rpc.messages import Empty
from lro_rpc.rpc import (
    OPERATIONS_METHODS,
    CallDispatcher,
    CallHandle,
    CallOptions,
    InvalidRequestShape,
    ListOperationsPager,
    OperationHandle,
    OperationsServer,
    OperationsServicer,
    Transport,
    adapt,
    coerce,
    make_pipe_pair,
)
from lro_rpc.rpc._debug import wire_transport_logger

if TYPE_CHECKING:
    import httpx

    from lro_rpc.http import _SyncTestClient
    from lro_rpc.rpc import AdaptedResult, MethodInfo

type Credentials = Transport | TokenSource
type Callback[R] = Callable[[R, CallHandle], object]


# ---------------------------------------------------------------------------
# ClientConfig
# ---------------------------------------------------------------------------


@dataclass
class ClientConfig:
    """Construction-time configuration of an ``OperationsClient``.

    Mutable while being built (see ``OperationsClient.configure``); the
    client keeps a frozen copy.

    Attributes:
        credentials: A ``Transport`` (used as the channel directly), or a
            bearer token / zero-argument token source for the HTTP
            transport.  ``None`` means an unauthenticated HTTP transport.
        endpoint: Base URL of the HTTP server.  Required unless
            *credentials* is a ``Transport`` or *http_client* is given.
        prefix: URL prefix of the operations endpoints.
        default_options: Options applied to every call underneath explicit
            call options.
        method_options: Per-method defaults layered over *default_options*,
            keyed by method name.
        http_client: Pre-built ``httpx.Client`` (or test client) for the
            HTTP transport.

    """

    credentials: Credentials | None = None
    endpoint: str | None = None
    prefix: str = DEFAULT_PREFIX
    default_options: CallOptions = field(default_factory=CallOptions)
    method_options: Mapping[str, CallOptions] = field(default_factory=dict)
    http_client: httpx.Client | _SyncTestClient | None = None

    def validate(self) -> None:
        """Check field types and method names.

        Raises:
            TypeError: If an option value is not a ``CallOptions``.
            ValueError: If *method_options* names an unknown method.

        """
        if not isinstance(self.default_options, CallOptions):
            raise TypeError(f"default_options must be CallOptions, got {type(self.default_options).__name__}")
        for name, opts in self.method_options.items():
            if name not in OPERATIONS_METHODS:
                raise ValueError(
                    f"method_options: unknown method {name!r}; expected one of {sorted(OPERATIONS_METHODS)}"
                )
            if not isinstance(opts, CallOptions):
                raise TypeError(f"method_options[{name!r}] must be CallOptions, got {type(opts).__name__}")

    def frozen(self) -> ClientConfig:
        """Return a validated copy whose mappings are read-only."""
        self.validate()
        return replace(self, method_options=MappingProxyType(dict(self.method_options)))


def _build_transport(config: ClientConfig) -> tuple[Transport, bool]:
    """Return ``(transport, owned)`` for *config*."""
    credentials = config.credentials
    if isinstance(credentials, Transport):
        return credentials, False
    if credentials is not None and not isinstance(credentials, str) and not callable(credentials):
        raise TypeError(
            f"credentials must be a Transport, a token string, or a token source, got {type(credentials).__name__}"
        )
    if config.endpoint is None and config.http_client is None:
        raise ValueError("endpoint is required unless credentials is a Transport or http_client is given")
    transport = HttpTransport(
        config.endpoint,
        prefix=config.prefix,
        client=config.http_client,
        token=credentials,
    )
    return transport, True


# ---------------------------------------------------------------------------
# OperationsClient
# ---------------------------------------------------------------------------


class OperationsClient:
    """Client for the operations service.

    Safe to share across threads when its transport is; no state changes
    after construction.
    """

    __slots__ = ("_config", "_defaults", "_dispatcher", "_owns_transport", "_transport")

    def __init__(self, config: ClientConfig | None = None, **kwargs: Any) -> None:
        """Initialize from a ``ClientConfig`` or from ``ClientConfig`` keyword fields."""
        if config is None:
            config = ClientConfig(**kwargs)
        elif kwargs:
            raise TypeError("pass either a ClientConfig or keyword fields, not both")
        self._config = config.frozen()
        self._transport, self._owns_transport = _build_transport(self._config)
        self._dispatcher = CallDispatcher(self._transport)
        self._defaults: Mapping[str, CallOptions] = MappingProxyType(
            {
                name: self._config.method_options.get(name, CallOptions()).merged_over(self._config.default_options)
                for name in OPERATIONS_METHODS
            }
        )
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug(
                "OperationsClient open: transport=%s, owned=%s",
                type(self._transport).__name__,
                self._owns_transport,
            )

    @classmethod
    def configure(cls, fn: Callable[[ClientConfig], object] | None = None, **kwargs: Any) -> OperationsClient:
        """Build a client by letting *fn* fill in a fresh ``ClientConfig``.

        Example::

            client = OperationsClient.configure(lambda c: setattr(c, "credentials", transport))

        """
        config = ClientConfig(**kwargs)
        if fn is not None:
            fn(config)
        return cls(config)

    @property
    def config(self) -> ClientConfig:
        """The frozen configuration."""
        return self._config

    @property
    def transport(self) -> Transport:
        """The transport every call goes through."""
        return self._transport

    @property
    def dispatcher(self) -> CallDispatcher:
        """The call dispatcher."""
        return self._dispatcher

    def defaults_for(self, method: str) -> CallOptions:
        """Call options applied to *method* when the caller passes none."""
        return self._defaults[method]

    # -- the four methods -----------------------------------------------------

    def list_operations(
        self,
        request: object = None,
        options: object = None,
        *,
        callback: Callback[ListOperationsPager] | None = None,
        **fields: Any,
    ) -> ListOperationsPager:
        """List operations that match the request's ``name`` prefix and ``filter``.

        Returns:
            A pager over the matching operations; further pages are fetched
            on iteration.

        """
        result = self._call(OPERATIONS_METHODS["list_operations"], request, options, callback, fields)
        assert isinstance(result, ListOperationsPager)
        return result

    def get_operation(
        self,
        request: object = None,
        options: object = None,
        *,
        callback: Callback[OperationHandle] | None = None,
        **fields: Any,
    ) -> OperationHandle:
        """Get the latest state of an operation, wrapped in an ``OperationHandle``."""
        result = self._call(OPERATIONS_METHODS["get_operation"], request, options, callback, fields)
        assert isinstance(result, OperationHandle)
        return result

    def delete_operation(
        self,
        request: object = None,
        options: object = None,
        *,
        callback: Callback[Empty] | None = None,
        **fields: Any,
    ) -> Empty:
        """Delete an operation record."""
        result = self._call(OPERATIONS_METHODS["delete_operation"], request, options, callback, fields)
        assert isinstance(result, Empty)
        return result

    def cancel_operation(
        self,
        request: object = None,
        options: object = None,
        *,
        callback: Callback[Empty] | None = None,
        **fields: Any,
    ) -> Empty:
        """Start asynchronous cancellation of an operation."""
        result = self._call(OPERATIONS_METHODS["cancel_operation"], request, options, callback, fields)
        assert isinstance(result, Empty)
        return result

    def _call(
        self,
        info: MethodInfo,
        request: object,
        options: object,
        callback: Callable[[Any, CallHandle], object] | None,
        fields: Mapping[str, Any],
    ) -> AdaptedResult:
        if fields:
            if request is not None:
                raise InvalidRequestShape(info.name, "pass either a request or keyword fields, not both")
            request = fields
        elif request is None:
            request = {}
        if callback is not None and not callable(callback):
            raise InvalidRequestShape(info.name, f"callback must be callable, got {type(callback).__name__}")

        canonical, resolved = coerce(info, request, options, defaults=self._defaults[info.name])
        raw, handle = self._dispatcher.dispatch_with_handle(info, canonical, resolved)
        result = adapt(info, canonical, raw, handle, dispatcher=self._dispatcher, options=resolved)
        if callback is not None:
            callback(result, handle)
        return result

    # -- lifecycle ------------------------------------------------------------

    def close(self) -> None:
        """Close the transport if this client created it."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("OperationsClient close: owned=%s", self._owns_transport)
        if self._owns_transport:
            self._transport.close()

    def __enter__(self) -> OperationsClient:
        """Return the client."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the client."""
        self.close()


# ---------------------------------------------------------------------------
# serve_pipe
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def serve_pipe(
    servicer: OperationsServicer,
    *,
    default_options: CallOptions | None = None,
    server_id: str | None = None,
) -> Iterator[OperationsClient]:
    """Start an in-process pipe server and yield a client connected to it.

    Useful for tests and demos; no subprocess needed.  A background thread
    runs ``OperationsServer.serve()`` on the server side of a pipe pair.

    Args:
        servicer: The operations implementation to serve.
        default_options: Default call options for the client.
        server_id: Optional server identifier.

    Yields:
        An ``OperationsClient`` using the client side of the pipe.

    """
    client_transport, server_transport = make_pipe_pair()
    server = OperationsServer(servicer, server_id=server_id)
    thread = threading.Thread(target=server.serve, args=(server_transport,), daemon=True)
    thread.start()
    try:
        config = ClientConfig(credentials=client_transport)
        if default_options is not None:
            config.default_options = default_options
        with OperationsClient(config) as client:
            yield client
    finally:
        client_transport.close()
        thread.join(timeout=5)
        server_transport.close()
