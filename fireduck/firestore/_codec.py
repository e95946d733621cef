from __future__ import annotations

import base64
import json
import math
import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

from fireduck.core._log_helper import get_logger
from fireduck.core.exceptions import ErrorCode, TypeConversionError

from ._models import LogicalType, LogicalTypeId, ValueKind, VECTOR_TYPE_VALUE

logger = get_logger(__name__)

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_TIMESTAMP_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})"
    r"(?:[T ](\d{2}):(\d{2})(?::(\d{2})(?:\.(\d+))?)?)?"
    r"\s*(Z|z|[+-]\d{2}:?\d{2})?$"
)

_SCALAR_TYPES: dict[ValueKind, Callable[[], LogicalType]] = {
    ValueKind.NULL: LogicalType.varchar,
    ValueKind.STRING: LogicalType.varchar,
    ValueKind.REFERENCE: LogicalType.varchar,
    ValueKind.MAP: LogicalType.varchar,
    ValueKind.INTEGER: LogicalType.bigint,
    ValueKind.DOUBLE: LogicalType.double,
    ValueKind.BOOLEAN: LogicalType.boolean,
    ValueKind.TIMESTAMP: LogicalType.timestamp,
    ValueKind.BYTES: LogicalType.blob,
    ValueKind.GEOPOINT: LogicalType.geopoint,
}

_KINDS_FOR_TYPE: dict[LogicalTypeId, ValueKind] = {
    LogicalTypeId.VARCHAR: ValueKind.STRING,
    LogicalTypeId.BIGINT: ValueKind.INTEGER,
    LogicalTypeId.DOUBLE: ValueKind.DOUBLE,
    LogicalTypeId.BOOLEAN: ValueKind.BOOLEAN,
    LogicalTypeId.TIMESTAMP: ValueKind.TIMESTAMP,
    LogicalTypeId.BLOB: ValueKind.BYTES,
    LogicalTypeId.GEOPOINT: ValueKind.GEOPOINT,
    LogicalTypeId.LIST: ValueKind.ARRAY,
    LogicalTypeId.ARRAY: ValueKind.VECTOR,
}


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp into a naive UTC datetime.

    Accepts a T or space separator, any number of fractional digits
    (truncated to microseconds), and a Z or numeric offset.
    """
    match = _TIMESTAMP_RE.match(text.strip())
    if match is None:
        raise ValueError(f"Invalid timestamp: {text}")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micros = 0
    if fraction:
        micros = int(fraction[:6].ljust(6, "0"))
    value = datetime(
        int(year),
        int(month),
        int(day),
        int(hour or 0),
        int(minute or 0),
        int(second or 0),
        micros,
    )
    if offset and offset not in ("Z", "z"):
        sign = 1 if offset[0] == "+" else -1
        digits = offset[1:].replace(":", "")
        delta_minutes = sign * (int(digits[:2]) * 60 + int(digits[2:]))
        tz = timezone(timedelta(minutes=delta_minutes))
        value = value.replace(tzinfo=tz).astimezone(timezone.utc)
        value = value.replace(tzinfo=None)
    return value


def format_timestamp(value: datetime | date) -> str:
    """Format a datetime as RFC 3339 with a trailing Z.

    Naive datetimes are taken to be UTC.
    """
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text = f"{text}.{value.microsecond:06d}"
    return f"{text}Z"


def decode_bytes(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    if "-" in text or "_" in text:
        return base64.urlsafe_b64decode(padded)
    return base64.b64decode(padded, validate=True)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    return str(value)


def _check_int64(value: int) -> int:
    if value < INT64_MIN or value > INT64_MAX:
        raise OverflowError(f"Integer {value} out of int64 range")
    return value


class ValueCodec:
    """Maps typed value envelopes to column values and back.

    Decoding goes through one explicit matrix keyed by
    (envelope kind, target type); pairs absent from the matrix decode
    to None. Counters track values that were nulled.
    """

    mismatches: int
    failures: int

    def __init__(self):
        self.mismatches = 0
        self.failures = 0

    @staticmethod
    def kind_of(envelope: Any) -> ValueKind | None:
        if not isinstance(envelope, dict) or len(envelope) == 0:
            return None
        if "mapValue" in envelope:
            fields = (envelope["mapValue"] or {}).get("fields") or {}
            marker = fields.get("__type__")
            if (
                isinstance(marker, dict)
                and marker.get("stringValue") == VECTOR_TYPE_VALUE
                and "value" in fields
            ):
                return ValueKind.VECTOR
            return ValueKind.MAP
        for key in envelope:
            try:
                return ValueKind(key)
            except ValueError:
                continue
        return None

    @staticmethod
    def logical_type_of(kind: ValueKind) -> LogicalType:
        """Scalar column type for an envelope kind.

        Arrays default to a list of strings and vectors to a list of
        doubles; the schema inferencer refines both.
        """
        if kind == ValueKind.ARRAY:
            return LogicalType.list_of(LogicalType.varchar())
        if kind == ValueKind.VECTOR:
            return LogicalType.list_of(LogicalType.double())
        return _SCALAR_TYPES[kind]()

    @staticmethod
    def kind_for_type(logical_type: LogicalType) -> ValueKind:
        return _KINDS_FOR_TYPE[logical_type.id]

    @staticmethod
    def vector_values(envelope: dict) -> list:
        fields = envelope["mapValue"]["fields"]
        return (fields["value"].get("arrayValue") or {}).get("values") or []

    @staticmethod
    def array_values(envelope: dict) -> list:
        return (envelope.get("arrayValue") or {}).get("values") or []

    def decode(self, envelope: Any, target: LogicalType) -> Any:
        kind = self.kind_of(envelope)
        if kind is None:
            self.failures += 1
            logger.debug(
                "%s: unknown value envelope %r",
                ErrorCode.TYPE_UNKNOWN_ENVELOPE.name,
                envelope,
            )
            return None
        if kind == ValueKind.NULL:
            return None
        decoder = _DECODERS.get((kind, target.id))
        if decoder is None:
            self.mismatches += 1
            logger.debug(
                "%s: %s value does not fit %s column",
                ErrorCode.TYPE_CONVERSION_FAILED.name,
                kind.value,
                target,
            )
            return None
        if kind == ValueKind.VECTOR:
            raw = self.vector_values(envelope)
        else:
            raw = envelope[kind.value]
        try:
            return decoder(self, raw, target)
        except (
            ValueError,
            TypeError,
            KeyError,
            AttributeError,
            OverflowError,
        ) as e:
            self.failures += 1
            logger.debug(
                "%s: could not decode %s as %s: %s",
                ErrorCode.TYPE_CONVERSION_FAILED.name,
                kind.value,
                target,
                e,
            )
            return None

    def _decode_element(self, element: Any, child: LogicalType) -> Any:
        if child.id == LogicalTypeId.VARCHAR and self.kind_of(element) in (
            ValueKind.ARRAY,
            ValueKind.VECTOR,
        ):
            return json.dumps(
                self.to_python(element), default=_json_default
            )
        return self.decode(element, child)

    def _decode_list(self, raw: Any, target: LogicalType) -> list:
        child = target.child or LogicalType.varchar()
        values = (raw or {}).get("values") or []
        return [self._decode_element(v, child) for v in values]

    def _decode_fixed(self, values: list, target: LogicalType) -> list:
        child = target.child or LogicalType.double()
        size = target.size or 0
        decoded = [self._decode_element(v, child) for v in values[:size]]
        if len(decoded) < size:
            decoded.extend([None] * (size - len(decoded)))
        return decoded

    @staticmethod
    def to_python(envelope: Any) -> Any:
        """Unwrap an envelope into plain Python values."""
        kind = ValueCodec.kind_of(envelope)
        if kind is None or kind == ValueKind.NULL:
            return None
        raw = envelope.get(kind.value) if kind != ValueKind.VECTOR else None
        if kind == ValueKind.INTEGER:
            return int(raw)
        if kind == ValueKind.DOUBLE:
            return float(raw)
        if kind == ValueKind.TIMESTAMP:
            return parse_timestamp(raw)
        if kind == ValueKind.BYTES:
            return decode_bytes(raw)
        if kind == ValueKind.GEOPOINT:
            return {
                "lat": float(raw.get("latitude", 0.0)),
                "lng": float(raw.get("longitude", 0.0)),
            }
        if kind == ValueKind.ARRAY:
            return [
                ValueCodec.to_python(v) for v in ValueCodec.array_values(envelope)
            ]
        if kind == ValueKind.VECTOR:
            return [
                ValueCodec.to_python(v)
                for v in ValueCodec.vector_values(envelope)
            ]
        if kind == ValueKind.MAP:
            fields = (raw or {}).get("fields") or {}
            return {k: ValueCodec.to_python(v) for k, v in fields.items()}
        return raw

    def encode(self, value: Any, kind: ValueKind | None = None) -> dict:
        """Encode a Python value as a typed value envelope.

        Args:
            value:
                Value to encode.
            kind:
                Expected envelope kind. Needed to produce vectors,
                geopoints and references; inferred from the Python
                type otherwise.
        """
        if value is None:
            return {"nullValue": None}
        if kind == ValueKind.VECTOR:
            return {
                "mapValue": {
                    "fields": {
                        "__type__": {"stringValue": VECTOR_TYPE_VALUE},
                        "value": {
                            "arrayValue": {
                                "values": [
                                    self._encode_double(float(v))
                                    for v in value
                                ]
                            }
                        },
                    }
                }
            }
        if kind == ValueKind.GEOPOINT and isinstance(value, dict):
            lat = value.get("lat", value.get("latitude"))
            lng = value.get("lng", value.get("longitude"))
            return {
                "geoPointValue": {
                    "latitude": float(lat or 0.0),
                    "longitude": float(lng or 0.0),
                }
            }
        if kind == ValueKind.REFERENCE and isinstance(value, str):
            return {"referenceValue": value}
        if kind == ValueKind.TIMESTAMP and isinstance(value, str):
            try:
                return {"timestampValue": format_timestamp(parse_timestamp(value))}
            except ValueError:
                return {"stringValue": value}
        if kind == ValueKind.BYTES and isinstance(value, str):
            return {"bytesValue": value}
        if kind == ValueKind.DOUBLE and isinstance(value, int) and not isinstance(
            value, bool
        ):
            return self._encode_double(float(value))
        if isinstance(value, bool):
            return {"booleanValue": value}
        if isinstance(value, int):
            return {"integerValue": str(_check_int64(value))}
        if isinstance(value, float):
            return self._encode_double(value)
        if isinstance(value, Decimal):
            return self._encode_double(float(value))
        if isinstance(value, str):
            return {"stringValue": value}
        if isinstance(value, (datetime, date)):
            return {"timestampValue": format_timestamp(value)}
        if isinstance(value, (bytes, bytearray, memoryview)):
            return {
                "bytesValue": base64.b64encode(bytes(value)).decode("ascii")
            }
        if isinstance(value, dict):
            return {
                "mapValue": {
                    "fields": {str(k): self.encode(v) for k, v in value.items()}
                }
            }
        if isinstance(value, (list, tuple)):
            return self.encode_array(value)
        return {"stringValue": str(value)}

    def encode_array(
        self, values: list | tuple, element_kind: ValueKind | None = None
    ) -> dict:
        encoded = []
        for v in values:
            if isinstance(v, (list, tuple)):
                raise TypeConversionError(
                    "Arrays cannot directly contain arrays",
                    ErrorCode.TYPE_NESTED_ARRAY,
                )
            encoded.append(self.encode(v, element_kind))
        return {"arrayValue": {"values": encoded}}

    def encode_for_type(self, value: Any, logical_type: LogicalType) -> dict:
        """Encode a value destined for a column of the given type."""
        if value is None:
            return {"nullValue": None}
        kind = self.kind_for_type(logical_type)
        if kind == ValueKind.ARRAY and isinstance(value, (list, tuple)):
            child = logical_type.child
            element_kind = self.kind_for_type(child) if child else None
            if element_kind in (ValueKind.ARRAY, ValueKind.VECTOR):
                element_kind = None
            return self.encode_array(value, element_kind)
        if kind == ValueKind.VECTOR and isinstance(value, (list, tuple)):
            return self.encode(value, ValueKind.VECTOR)
        if kind in (ValueKind.ARRAY, ValueKind.VECTOR):
            return self.encode(value)
        return self.encode(value, kind)

    @staticmethod
    def _encode_double(value: float) -> dict:
        if math.isnan(value):
            return {"doubleValue": "NaN"}
        if math.isinf(value):
            return {"doubleValue": "Infinity" if value > 0 else "-Infinity"}
        return {"doubleValue": value}


def _string(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    if not isinstance(raw, str):
        raise TypeError(f"Expected string, got {type(raw).__name__}")
    return raw


def _map_json(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return json.dumps(
        ValueCodec.to_python({"mapValue": raw}), default=_json_default
    )


def _int(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return _check_int64(int(str(raw).strip()))


def _double(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return float(str(raw).strip()) if isinstance(raw, str) else float(raw)


def _int_to_double(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return float(int(raw))


def _bool(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    if not isinstance(raw, bool):
        raise TypeError(f"Expected boolean, got {type(raw).__name__}")
    return raw


def _timestamp(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return parse_timestamp(raw)


def _bytes(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return decode_bytes(raw)


def _geopoint(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return {
        "lat": float(raw.get("latitude", 0.0)),
        "lng": float(raw.get("longitude", 0.0)),
    }


def _list(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return codec._decode_list(raw, target)


def _array_fixed(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return codec._decode_fixed((raw or {}).get("values") or [], target)


def _vector_fixed(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return codec._decode_fixed(raw, target)


def _vector_list(codec: ValueCodec, raw: Any, target: LogicalType) -> Any:
    return codec._decode_list({"values": raw}, target)


_DECODERS: dict[
    tuple[ValueKind, LogicalTypeId],
    Callable[[ValueCodec, Any, LogicalType], Any],
] = {
    (ValueKind.STRING, LogicalTypeId.VARCHAR): _string,
    (ValueKind.REFERENCE, LogicalTypeId.VARCHAR): _string,
    (ValueKind.MAP, LogicalTypeId.VARCHAR): _map_json,
    (ValueKind.STRING, LogicalTypeId.BIGINT): _int,
    (ValueKind.STRING, LogicalTypeId.DOUBLE): _double,
    (ValueKind.STRING, LogicalTypeId.TIMESTAMP): _timestamp,
    (ValueKind.INTEGER, LogicalTypeId.BIGINT): _int,
    (ValueKind.INTEGER, LogicalTypeId.DOUBLE): _int_to_double,
    (ValueKind.DOUBLE, LogicalTypeId.DOUBLE): _double,
    (ValueKind.BOOLEAN, LogicalTypeId.BOOLEAN): _bool,
    (ValueKind.TIMESTAMP, LogicalTypeId.TIMESTAMP): _timestamp,
    (ValueKind.BYTES, LogicalTypeId.BLOB): _bytes,
    (ValueKind.GEOPOINT, LogicalTypeId.GEOPOINT): _geopoint,
    (ValueKind.ARRAY, LogicalTypeId.LIST): _list,
    (ValueKind.ARRAY, LogicalTypeId.ARRAY): _array_fixed,
    (ValueKind.VECTOR, LogicalTypeId.ARRAY): _vector_fixed,
    (ValueKind.VECTOR, LogicalTypeId.LIST): _vector_list,
}
