from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import ConfigDict

from fireduck.core.data_model import DataModel
from fireduck.core.exceptions import ErrorCode, ScanError

DEFAULT_DATABASE = "(default)"
DOCUMENT_ID_COLUMN = "__document_id"
NAME_FIELD = "__name__"
COLLECTION_GROUP_PREFIX = "~"
VECTOR_TYPE_VALUE = "__vector__"


class ValueKind(str, Enum):
    """Typed value envelope variant.

    VECTOR has no wire key of its own: it is a mapValue carrying
    ``__type__ = "__vector__"``.
    """

    NULL = "nullValue"
    STRING = "stringValue"
    INTEGER = "integerValue"
    DOUBLE = "doubleValue"
    BOOLEAN = "booleanValue"
    TIMESTAMP = "timestampValue"
    BYTES = "bytesValue"
    REFERENCE = "referenceValue"
    GEOPOINT = "geoPointValue"
    ARRAY = "arrayValue"
    MAP = "mapValue"
    VECTOR = "vectorValue"


class LogicalTypeId(str, Enum):
    VARCHAR = "VARCHAR"
    BIGINT = "BIGINT"
    DOUBLE = "DOUBLE"
    BOOLEAN = "BOOLEAN"
    TIMESTAMP = "TIMESTAMP"
    BLOB = "BLOB"
    GEOPOINT = "GEOPOINT"
    LIST = "LIST"
    ARRAY = "ARRAY"


class LogicalType(DataModel):
    """Columnar logical type.

    Attributes:
        id: Type id.
        child: Element type for LIST and ARRAY.
        size: Fixed dimension for ARRAY.
    """

    model_config = ConfigDict(frozen=True)

    id: LogicalTypeId
    child: LogicalType | None = None
    size: int | None = None

    @staticmethod
    def varchar() -> LogicalType:
        return LogicalType(id=LogicalTypeId.VARCHAR)

    @staticmethod
    def bigint() -> LogicalType:
        return LogicalType(id=LogicalTypeId.BIGINT)

    @staticmethod
    def double() -> LogicalType:
        return LogicalType(id=LogicalTypeId.DOUBLE)

    @staticmethod
    def boolean() -> LogicalType:
        return LogicalType(id=LogicalTypeId.BOOLEAN)

    @staticmethod
    def timestamp() -> LogicalType:
        return LogicalType(id=LogicalTypeId.TIMESTAMP)

    @staticmethod
    def blob() -> LogicalType:
        return LogicalType(id=LogicalTypeId.BLOB)

    @staticmethod
    def geopoint() -> LogicalType:
        return LogicalType(id=LogicalTypeId.GEOPOINT)

    @staticmethod
    def list_of(child: LogicalType) -> LogicalType:
        return LogicalType(id=LogicalTypeId.LIST, child=child)

    @staticmethod
    def array_of(child: LogicalType, size: int) -> LogicalType:
        return LogicalType(id=LogicalTypeId.ARRAY, child=child, size=size)

    def __str__(self) -> str:
        if self.id == LogicalTypeId.GEOPOINT:
            return "STRUCT(lat DOUBLE, lng DOUBLE)"
        if self.id == LogicalTypeId.LIST and self.child is not None:
            return f"{self.child}[]"
        if self.id == LogicalTypeId.ARRAY and self.child is not None:
            return f"{self.child}[{self.size}]"
        return self.id.value


class Column(DataModel):
    """Inferred column.

    Attributes:
        name: Field name.
        type: Logical type.
        nullable: True when some sampled documents lack a value.
        observed_count: Number of sampled documents carrying the field.
        kind: Majority envelope kind, None when only nulls were seen.
    """

    name: str
    type: LogicalType
    nullable: bool = True
    observed_count: int = 0
    kind: ValueKind | None = None


class Document(DataModel):
    """Document.

    Attributes:
        path: Full resource name, projects/P/databases/D/documents/...
        id: Final path segment.
        fields: Field name to typed value envelope.
        create_time: Creation time (RFC 3339).
        update_time: Last update time (RFC 3339).
    """

    path: str
    id: str
    fields: dict[str, Any] = {}
    create_time: str | None = None
    update_time: str | None = None

    @property
    def relative_path(self) -> str:
        """Path below /documents/."""
        marker = "/documents/"
        index = self.path.find(marker)
        if index < 0:
            return self.path
        return self.path[index + len(marker) :]

    @staticmethod
    def parse(obj: dict) -> Document:
        path = obj.get("name", "")
        return Document(
            path=path,
            id=path.rsplit("/", 1)[-1],
            fields=obj.get("fields", {}),
            create_time=obj.get("createTime"),
            update_time=obj.get("updateTime"),
        )


class ListResponse(DataModel):
    """Page of a list call.

    Attributes:
        documents: Documents in service order.
        next_page_token: Continuation token, None at the end.
    """

    documents: list[Document] = []
    next_page_token: str | None = None


class BatchWriteResult(DataModel):
    """Per-write outcome of a batch write.

    Attributes:
        status_codes: RPC status code per write, 0 is OK.
        messages: Status message per write.
    """

    status_codes: list[int] = []
    messages: list[str | None] = []

    @property
    def succeeded(self) -> int:
        return sum(1 for code in self.status_codes if code == RpcCode.OK)

    def failed_indexes(self, code: int | None = None) -> list[int]:
        return [
            i
            for i, c in enumerate(self.status_codes)
            if c != RpcCode.OK and (code is None or c == code)
        ]


class RpcCode:
    OK = 0
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    FAILED_PRECONDITION = 9


class BatchOperationResult(DataModel):
    """Summary of a write family run.

    Attributes:
        total: Operations attempted.
        succeeded: Operations that took effect.
        not_found: Operations whose document did not exist.
        downgraded: True when per-operation fallback was used.
    """

    total: int = 0
    succeeded: int = 0
    not_found: int = 0
    downgraded: bool = False


class CollectionRef(DataModel):
    """Collection identifier.

    Attributes:
        path: Path without the collection-group marker.
        is_group: True for ``~name`` collection-group references.
    """

    path: str
    is_group: bool = False

    @property
    def collection_id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def parent_path(self) -> str:
        """Document path owning the collection, empty for root ones."""
        if self.is_group or "/" not in self.path:
            return ""
        return self.path.rsplit("/", 1)[0]

    @staticmethod
    def parse(collection: str) -> CollectionRef:
        text = (collection or "").strip()
        is_group = text.startswith(COLLECTION_GROUP_PREFIX)
        if is_group:
            text = text[len(COLLECTION_GROUP_PREFIX) :]
        text = text.strip("/")
        if not text:
            raise ScanError(
                "Collection name is required",
                ErrorCode.SCAN_COLLECTION_REQUIRED,
            )
        segments = text.split("/")
        if any(s == "" for s in segments):
            raise ScanError(
                f"Invalid collection path: {collection}",
                ErrorCode.SCAN_COLLECTION_REQUIRED,
            )
        if is_group and len(segments) != 1:
            raise ScanError(
                f"Collection group takes a single name: {collection}",
                ErrorCode.SCAN_COLLECTION_REQUIRED,
            )
        if len(segments) % 2 == 0:
            raise ScanError(
                f"Path points at a document, not a collection: {collection}",
                ErrorCode.SCAN_COLLECTION_REQUIRED,
            )
        return CollectionRef(path=text, is_group=is_group)

    def __str__(self) -> str:
        if self.is_group:
            return f"{COLLECTION_GROUP_PREFIX}{self.path}"
        return self.path


class IndexScope(str, Enum):
    COLLECTION = "COLLECTION"
    COLLECTION_GROUP = "COLLECTION_GROUP"


class IndexState(str, Enum):
    CREATING = "CREATING"
    READY = "READY"
    NEEDS_REPAIR = "NEEDS_REPAIR"


class IndexFieldMode(str, Enum):
    ASC = "ASCENDING"
    DESC = "DESCENDING"
    ARRAY_CONTAINS = "CONTAINS"


class IndexField(DataModel):
    """Index field."""

    path: str
    """Field path."""

    mode: IndexFieldMode = IndexFieldMode.ASC
    """Index mode."""


class Index(DataModel):
    """Index record."""

    name: str
    """Index name, the last segment of the resource name."""

    scope: IndexScope = IndexScope.COLLECTION
    """Query scope."""

    state: IndexState = IndexState.READY
    """Build state."""

    fields: list[IndexField] = []
    """Indexed fields, excluding __name__."""

    @property
    def single_field(self) -> bool:
        return len(self.fields) == 1

    @property
    def ready(self) -> bool:
        return self.state == IndexState.READY

    def field_paths(self) -> set[str]:
        return {f.path for f in self.fields}


class IndexCatalog(DataModel):
    """Index metadata for one collection."""

    composite_indexes: list[Index] = []
    """Ready and non-ready composite indexes."""

    single_field_indexes: list[Index] = []
    """Explicit single-field indexes."""

    default_single_field_enabled: bool = True
    """Whether automatic single-field indexing is on."""

    fetch_succeeded: bool = False
    """Whether the admin metadata could be read."""


class FilterOp(str, Enum):
    EQ = "EQUAL"
    NEQ = "NOT_EQUAL"
    LT = "LESS_THAN"
    LTE = "LESS_THAN_OR_EQUAL"
    GT = "GREATER_THAN"
    GTE = "GREATER_THAN_OR_EQUAL"
    IN = "IN"
    NIN = "NOT_IN"


class UnaryOp(str, Enum):
    IS_NULL = "IS_NULL"
    IS_NOT_NULL = "IS_NOT_NULL"


class PushdownFilter(DataModel):
    """Filter the service can evaluate.

    Attributes:
        field: Field path.
        op: Binary op, None for unary filters.
        value: Encoded envelope for single-value ops.
        values: Encoded envelopes for IN and NOT_IN.
        unary: Unary op.
    """

    field: str
    op: FilterOp | None = None
    value: dict | None = None
    values: list[dict] | None = None
    unary: UnaryOp | None = None

    @property
    def is_equality(self) -> bool:
        if self.unary is not None:
            return self.unary == UnaryOp.IS_NULL
        return self.op in (FilterOp.EQ, FilterOp.IN)

    def to_filter(self) -> dict:
        field = {"fieldPath": self.field}
        if self.unary is not None:
            return {"unaryFilter": {"field": field, "op": self.unary.value}}
        if self.op in (FilterOp.IN, FilterOp.NIN):
            value: dict = {"arrayValue": {"values": list(self.values or [])}}
        else:
            value = self.value if self.value is not None else {"nullValue": None}
        return {
            "fieldFilter": {
                "field": field,
                "op": self.op.value if self.op else FilterOp.EQ.value,
                "value": value,
            }
        }


class ArrayTransformKind(str, Enum):
    UNION = "union"
    REMOVE = "remove"
    APPEND = "append"


LogicalType.model_rebuild()
