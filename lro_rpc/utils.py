# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Arrow IPC codec for RPC messages.

Every request and response message in ``lro_rpc`` is a frozen dataclass that
mixes in ``ArrowSerializableDataclass``.  The mixin derives an Arrow schema
from the field annotations and (de)serializes an instance as a single-row
``RecordBatch``.  Messages without fields (e.g. ``Empty``) travel as a
zero-row batch on the empty schema.

Supported field annotations: ``str``, ``bytes``, ``int``, ``float``,
``bool``, ``X | None`` (nullable), ``list[X]`` and nested message classes
(Arrow structs).  ``Annotated[T, ArrowType(...)]`` overrides the inferred
Arrow type.

KEY FUNCTIONS
-------------
serialize_record_batch(dest, batch, metadata) : Write one batch as a complete IPC stream
serialize_record_batch_bytes(batch, metadata) : Same, returning bytes
deserialize_record_batch(data) : Read the first batch (and its metadata) from IPC bytes
empty_batch(schema) : Zero-row batch conforming to a schema

"""

import functools
import os
import sys
from dataclasses import MISSING, dataclass
from dataclasses import fields as dataclass_fields
from io import BytesIO, IOBase
from types import UnionType
from typing import (
    Annotated,
    Any,
    ClassVar,
    Self,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

import pyarrow as pa
import structlog
from pyarrow import ipc

from lro_rpc.metadata import decode_metadata

__all__ = [
    "ArrowSerializableDataclass",
    "ArrowType",
    "IPCError",
    "deserialize_record_batch",
    "empty_batch",
    "serialize_record_batch",
    "serialize_record_batch_bytes",
]

# IPC debug logging - enable with LRO_IPC_DEBUG=1
_IPC_DEBUG = os.environ.get("LRO_IPC_DEBUG", "").lower() in ("1", "true", "yes")
_ipc_log: structlog.stdlib.BoundLogger | None = None


def _get_ipc_log() -> structlog.stdlib.BoundLogger:
    """Get or create the IPC debug logger, configured to write to stderr."""
    global _ipc_log
    if _ipc_log is None:
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        )
        _ipc_log = structlog.get_logger().bind(component="ipc")
    return _ipc_log


def _column_types(schema: pa.Schema) -> dict[str, str]:
    return {f.name: str(f.type) for f in schema}


class IPCError(Exception):
    """Error during IPC message reading or writing."""


def empty_batch(schema: pa.Schema) -> pa.RecordBatch:
    """Return a zero-row batch conforming to *schema*."""
    return pa.RecordBatch.from_arrays([pa.array([], type=f.type) for f in schema], schema=schema)


def serialize_record_batch(
    destination: IOBase,
    batch: pa.RecordBatch,
    custom_metadata: pa.KeyValueMetadata | None = None,
) -> None:
    """Write *batch* to *destination* as a complete IPC stream (schema + batch + EOS)."""
    with ipc.new_stream(destination, batch.schema) as writer:
        writer.write_batch(batch, custom_metadata=custom_metadata)
    if _IPC_DEBUG:
        _get_ipc_log().debug(
            "ipc_write",
            rows=batch.num_rows,
            columns=_column_types(batch.schema),
            metadata=decode_metadata(custom_metadata),
        )


def serialize_record_batch_bytes(
    batch: pa.RecordBatch,
    custom_metadata: pa.KeyValueMetadata | None = None,
) -> bytes:
    """Serialize *batch* to Arrow IPC stream bytes, EOS marker included."""
    buffer = BytesIO()
    serialize_record_batch(buffer, batch, custom_metadata)
    return buffer.getvalue()


def deserialize_record_batch(data: bytes) -> tuple[pa.RecordBatch, pa.KeyValueMetadata | None]:
    """Read the first RecordBatch and its custom metadata from IPC stream bytes.

    Raises:
        IPCError: If the stream contains no batch.

    """
    with ipc.open_stream(pa.BufferReader(data)) as reader:
        try:
            batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
        except StopIteration:
            raise IPCError("IPC stream ended before the first RecordBatch") from None
    if _IPC_DEBUG:
        _get_ipc_log().debug(
            "ipc_read",
            rows=batch.num_rows,
            columns=_column_types(batch.schema),
            metadata=decode_metadata(custom_metadata),
            nbytes=len(data),
        )
    return batch, custom_metadata


# =============================================================================
# Field annotations -> Arrow types
# =============================================================================


@dataclass(frozen=True)
class ArrowType:
    """Annotation marker to specify explicit Arrow type for a field.

    Use with Annotated to override the default inferred Arrow type:

        @dataclass(frozen=True)
        class ListOperationsRequest(ArrowSerializableDataclass):
            page_size: Annotated[int, ArrowType(pa.int32())] = 0

    """

    arrow_type: pa.DataType


_SCALAR_ARROW_TYPES: dict[type, pa.DataType] = {
    str: pa.string(),
    bytes: pa.binary(),
    int: pa.int64(),
    float: pa.float64(),
    bool: pa.bool_(),
}


def _is_optional_type(python_type: Any) -> tuple[Any, bool]:
    """Split ``X | None`` into ``(X, True)``; any other type gives ``(type, False)``."""
    if get_origin(python_type) in (UnionType, Union):
        args = get_args(python_type)
        rest = [t for t in args if t is not type(None)]
        if len(args) == 2 and len(rest) == 1:
            return rest[0], True
    return python_type, False


def _strip_annotated(python_type: Any) -> Any:
    return get_args(python_type)[0] if get_origin(python_type) is Annotated else python_type


def _is_message_type(python_type: Any) -> bool:
    return isinstance(python_type, type) and issubclass(python_type, ArrowSerializableDataclass)


def _infer_arrow_type(python_type: Any) -> pa.DataType:
    """Map a field annotation to its Arrow type.

    Raises:
        TypeError: If the annotation is not supported and carries no
            ``ArrowType`` override.

    """
    if get_origin(python_type) is Annotated:
        for extra in get_args(python_type)[1:]:
            if isinstance(extra, ArrowType):
                return extra.arrow_type
        python_type = get_args(python_type)[0]

    inner, nullable = _is_optional_type(python_type)
    if nullable:
        return _infer_arrow_type(inner)
    if _is_message_type(python_type):
        return pa.struct(list(python_type.ARROW_SCHEMA))
    if get_origin(python_type) is list:
        (item_type,) = get_args(python_type) or (str,)
        return pa.list_(_infer_arrow_type(item_type))
    if python_type in _SCALAR_ARROW_TYPES:
        return _SCALAR_ARROW_TYPES[python_type]
    raise TypeError(
        f"Cannot infer Arrow type for: {python_type}. "
        f"Use Annotated[T, ArrowType(...)] to specify the Arrow type explicitly."
    )


@dataclass(frozen=True)
class _FieldSpec:
    """One dataclass field as the codec sees it."""

    name: str
    python_type: Any
    arrow_field: pa.Field
    required: bool


@functools.cache
def _field_specs(cls: type) -> tuple[_FieldSpec, ...]:
    """Resolve the annotations of *cls* once; shared by schema generation and decoding."""
    hints = get_type_hints(cls, include_extras=True)
    specs: list[_FieldSpec] = []
    for f in dataclass_fields(cls):
        annotation = hints.get(f.name, f.type)
        python_type = _strip_annotated(annotation)
        _, nullable = _is_optional_type(python_type)
        try:
            arrow_type = _infer_arrow_type(annotation)
        except TypeError as e:
            raise TypeError(f"Cannot generate Arrow schema for {cls.__name__}.{f.name}: {e}") from e
        specs.append(
            _FieldSpec(
                name=f.name,
                python_type=python_type,
                arrow_field=pa.field(f.name, arrow_type, nullable=nullable),
                required=f.default is MISSING and f.default_factory is MISSING,
            )
        )
    return tuple(specs)


class _ArrowSchemaDescriptor:
    """Class-level ``ARROW_SCHEMA``, built from the field specs on first access."""

    def __get__(self, instance: object | None, owner: type) -> pa.Schema:
        return pa.schema([spec.arrow_field for spec in _field_specs(owner)])


# =============================================================================
# ArrowSerializableDataclass
# =============================================================================


def _to_arrow(value: Any) -> Any:
    if isinstance(value, ArrowSerializableDataclass):
        return value._to_row()
    if isinstance(value, list | tuple):
        return [_to_arrow(v) for v in value]
    return value


def _from_arrow(value: Any, python_type: Any) -> Any:
    if value is None:
        return None
    inner, _ = _is_optional_type(python_type)
    if _is_message_type(inner) and isinstance(value, dict):
        return inner._from_row(value)
    if get_origin(inner) is list and isinstance(value, list):
        (item_type,) = get_args(inner) or (Any,)
        return [_from_arrow(v, item_type) for v in value]
    return value


class ArrowSerializableDataclass:
    """Mixin for dataclasses with automatic Arrow IPC serialization.

    Optional fields (annotated with ``| None``) are nullable columns; nested
    messages become struct columns and ``list[...]`` fields list columns.

    Attributes:
        ARROW_SCHEMA: Schema generated from the field annotations.

    """

    ARROW_SCHEMA: ClassVar[pa.Schema] = _ArrowSchemaDescriptor()  # type: ignore[assignment]

    def _to_row(self) -> dict[str, Any]:
        return {spec.name: _to_arrow(getattr(self, spec.name)) for spec in _field_specs(type(self))}

    @classmethod
    def _from_row(cls, row: dict[str, Any]) -> Self:
        kwargs = {
            spec.name: _from_arrow(row[spec.name], spec.python_type) for spec in _field_specs(cls) if spec.name in row
        }
        return cls(**kwargs)

    def to_batch(self) -> pa.RecordBatch:
        """Return this instance as a single-row RecordBatch (zero rows for field-less messages)."""
        schema = self.ARROW_SCHEMA
        if len(schema) == 0:
            return empty_batch(schema)
        return pa.RecordBatch.from_pylist([self._to_row()], schema=schema)

    def serialize(self, dest: IOBase) -> None:
        """Serialize this instance to an Arrow IPC stream on *dest*."""
        serialize_record_batch(dest, self.to_batch())

    def serialize_to_bytes(self) -> bytes:
        """Serialize this instance to Arrow IPC bytes."""
        return serialize_record_batch_bytes(self.to_batch())

    @classmethod
    def deserialize_from_batch(cls, batch: pa.RecordBatch) -> Self:
        """Decode an instance from a single-row batch.

        Columns absent from the batch fall back to the dataclass defaults.
        A field-less message accepts any batch.

        Raises:
            ValueError: If the batch has the wrong row count or lacks a
                column for a required field.

        """
        specs = _field_specs(cls)
        if not specs:
            return cls()
        if batch.num_rows != 1:
            if batch.num_rows == 0:
                raise ValueError(f"Cannot deserialize {cls.__name__} from empty RecordBatch")
            raise ValueError(f"Expected single-row RecordBatch for {cls.__name__}, got {batch.num_rows} rows")
        present = set(batch.schema.names)
        missing = [spec.name for spec in specs if spec.required and spec.name not in present]
        if missing:
            raise ValueError(f"Missing fields in {cls.__name__} RecordBatch: {missing}. Found: {sorted(present)}")
        return cls._from_row(batch.to_pylist()[0])

    @classmethod
    def deserialize_from_bytes(cls, data: bytes) -> Self:
        """Decode an instance from Arrow IPC bytes."""
        batch, _ = deserialize_record_batch(data)
        return cls.deserialize_from_batch(batch)
