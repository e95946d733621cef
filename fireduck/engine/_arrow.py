from __future__ import annotations

from typing import Any

import pyarrow as pa

from fireduck.firestore import (
    DOCUMENT_ID_COLUMN,
    Column,
    LogicalType,
    LogicalTypeId,
)
from fireduck.firestore._settings import STANDARD_VECTOR_SIZE

GEOPOINT_TYPE = pa.struct([("lat", pa.float64()), ("lng", pa.float64())])

_SCALAR_ARROW_TYPES = {
    LogicalTypeId.VARCHAR: pa.string(),
    LogicalTypeId.BIGINT: pa.int64(),
    LogicalTypeId.DOUBLE: pa.float64(),
    LogicalTypeId.BOOLEAN: pa.bool_(),
    LogicalTypeId.TIMESTAMP: pa.timestamp("us"),
    LogicalTypeId.BLOB: pa.binary(),
    LogicalTypeId.GEOPOINT: GEOPOINT_TYPE,
}


def arrow_type(logical_type: LogicalType) -> pa.DataType:
    if logical_type.id == LogicalTypeId.LIST:
        child = logical_type.child or LogicalType.varchar()
        return pa.list_(arrow_type(child))
    if logical_type.id == LogicalTypeId.ARRAY:
        child = logical_type.child or LogicalType.double()
        return pa.list_(arrow_type(child), logical_type.size or 0)
    return _SCALAR_ARROW_TYPES[logical_type.id]


def logical_type_from_arrow(dtype: pa.DataType) -> LogicalType | None:
    """Column type for an input Arrow type, None when values should be
    encoded by their Python type."""
    if pa.types.is_string(dtype) or pa.types.is_large_string(dtype):
        return LogicalType.varchar()
    if pa.types.is_boolean(dtype):
        return LogicalType.boolean()
    if pa.types.is_integer(dtype):
        return LogicalType.bigint()
    if pa.types.is_floating(dtype) or pa.types.is_decimal(dtype):
        return LogicalType.double()
    if pa.types.is_timestamp(dtype) or pa.types.is_date(dtype):
        return LogicalType.timestamp()
    if pa.types.is_binary(dtype) or pa.types.is_large_binary(dtype):
        return LogicalType.blob()
    if pa.types.is_struct(dtype):
        names = {dtype.field(i).name for i in range(dtype.num_fields)}
        if names == {"lat", "lng"}:
            return LogicalType.geopoint()
        return None
    if pa.types.is_fixed_size_list(dtype):
        child = logical_type_from_arrow(dtype.value_type) or LogicalType.double()
        return LogicalType.array_of(child, dtype.list_size)
    if pa.types.is_list(dtype) or pa.types.is_large_list(dtype):
        child = logical_type_from_arrow(dtype.value_type)
        if child is None or child.id in (LogicalTypeId.LIST, LogicalTypeId.ARRAY):
            return None
        return LogicalType.list_of(child)
    return None


def arrow_schema(projection: list[str], columns: list[Column]) -> pa.Schema:
    types = {c.name: c.type for c in columns}
    fields = []
    for name in projection:
        if name == DOCUMENT_ID_COLUMN:
            fields.append(pa.field(name, pa.string()))
        else:
            fields.append(pa.field(name, arrow_type(types[name])))
    return pa.schema(fields)


class ArrowBatchSink:
    """Row-wise batch sink producing Arrow record batches."""

    schema: pa.Schema
    capacity: int

    _columns: list[list[Any]]

    def __init__(self, schema: pa.Schema, capacity: int = STANDARD_VECTOR_SIZE):
        self.schema = schema
        self.capacity = capacity
        self.reset()

    def append_row(self, values: list[Any]) -> None:
        for column, value in zip(self._columns, values):
            column.append(value)

    def reset(self):
        self._columns = [[] for _ in self.schema]

    def __len__(self) -> int:
        return len(self._columns[0]) if self._columns else 0

    def to_record_batch(self) -> pa.RecordBatch:
        arrays = [
            pa.array(values, type=field.type)
            for values, field in zip(self._columns, self.schema)
        ]
        return pa.RecordBatch.from_arrays(arrays, schema=self.schema)
