# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request coercion: caller input shapes to one canonical request.

Callers may pass a request message, a mapping of field names to values, or
either of those together with call options (a ``CallOptions`` or a mapping of
its fields).  ``coerce`` decodes the input into exactly one tagged case,
validates it, and builds the canonical request message for the method.  It
performs no I/O and has no side effects.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any, get_type_hints

from lro_rpc.rpc._common import InvalidRequestShape, UnknownField
from lro_rpc.rpc._debug import fmt_kwargs, fmt_options, wire_request_logger
from lro_rpc.rpc._methods import MethodInfo, method_info
from lro_rpc.rpc._options import CallOptions, RetryConfig
from lro_rpc.utils import ArrowSerializableDataclass, _is_optional_type

# ---------------------------------------------------------------------------
# Tagged input cases
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _StructuredInput:
    """The caller passed a request message instance."""

    request: ArrowSerializableDataclass


@dataclass(frozen=True)
class _MappingInput:
    """The caller passed field names mapped to values."""

    values: Mapping[str, Any]


type _RequestInput = _StructuredInput | _MappingInput


def _classify(info: MethodInfo, request: object) -> _RequestInput:
    """Tag *request* as one of the supported shapes or raise ``InvalidRequestShape``."""
    if isinstance(request, ArrowSerializableDataclass):
        if not isinstance(request, info.request_type):
            raise InvalidRequestShape(
                info.name,
                f"expected {info.request_type.__name__} or a mapping of its fields, got {type(request).__name__}",
            )
        return _StructuredInput(request)
    if isinstance(request, Mapping):
        return _MappingInput(request)
    raise InvalidRequestShape(
        info.name,
        f"expected {info.request_type.__name__} or a mapping of its fields, got {type(request).__name__}",
    )


_SCALAR_TYPES = (str, int, float, bool, bytes)


def _check_value(info: MethodInfo, name: str, value: object, hint: object) -> None:
    """Reject a mapping value whose Python type does not match the field annotation."""
    expected, nullable = _is_optional_type(hint)
    if value is None:
        if not nullable:
            raise InvalidRequestShape(info.name, f"field {name!r} may not be None")
        return
    if expected in _SCALAR_TYPES:
        # bool is an int subclass; don't let True pass as a page size
        if expected is int and isinstance(value, bool):
            raise InvalidRequestShape(info.name, f"field {name!r} expects int, got bool")
        if not isinstance(value, expected):  # type: ignore[arg-type]
            raise InvalidRequestShape(
                info.name,
                f"field {name!r} expects {expected.__name__}, got {type(value).__name__}",  # type: ignore[union-attr]
            )


def _build_request(info: MethodInfo, case: _RequestInput) -> ArrowSerializableDataclass:
    match case:
        case _StructuredInput(request=request):
            return request
        case _MappingInput(values=values):
            allowed = info.field_names
            for key in values:
                if key not in allowed:
                    raise UnknownField(info.name, str(key), allowed)
            hints = get_type_hints(info.request_type)
            for key, value in values.items():
                _check_value(info, key, value, hints[key])
            return info.request_type(**values)
        case _:
            raise InvalidRequestShape(info.name, f"unsupported request case {type(case).__name__}")


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


def _coerce_options(info: MethodInfo, options: object, defaults: CallOptions) -> CallOptions:
    if options is None:
        return defaults
    if isinstance(options, CallOptions):
        return options.merged_over(defaults)
    if isinstance(options, Mapping):
        allowed = CallOptions.field_names()
        for key in options:
            if key not in allowed:
                raise UnknownField(info.name, str(key), allowed)
        retry = options.get("retry")
        if retry is not None and not isinstance(retry, RetryConfig):
            raise InvalidRequestShape(info.name, f"options 'retry' expects RetryConfig, got {type(retry).__name__}")
        try:
            explicit = CallOptions(**options)
        except (TypeError, ValueError) as exc:
            raise InvalidRequestShape(info.name, f"invalid call options: {exc}") from exc
        return explicit.merged_over(defaults)
    raise InvalidRequestShape(
        info.name, f"expected CallOptions or a mapping of its fields, got {type(options).__name__}"
    )


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def coerce(
    method: str | MethodInfo,
    request: object,
    options: object = None,
    *,
    defaults: CallOptions | None = None,
) -> tuple[ArrowSerializableDataclass, CallOptions]:
    """Normalize caller input into ``(canonical_request, call_options)``.

    Args:
        method: Method name or its ``MethodInfo``.
        request: A request message of the method's type, or a mapping of
            its field names to values.
        options: ``None``, a ``CallOptions``, or a mapping of
            ``CallOptions`` fields.
        defaults: Options used when *options* is ``None`` and underneath
            explicit options; ``CallOptions()`` when omitted.

    Returns:
        The canonical request message and the resolved call options.

    Raises:
        InvalidRequestShape: If *request* or *options* has an unsupported form.
        UnknownField: If a mapping contains a key outside the schema.

    """
    info = method if isinstance(method, MethodInfo) else method_info(method)
    case = _classify(info, request)
    canonical = _build_request(info, case)
    resolved = _coerce_options(info, options, defaults if defaults is not None else CallOptions())
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Coerced request: method=%s, shape=%s, fields={%s}, options=%s",
            info.name,
            type(case).__name__,
            fmt_kwargs({f.name: getattr(canonical, f.name) for f in fields(canonical)}),  # type: ignore[arg-type]
            fmt_options(resolved),
        )
    return canonical, resolved
