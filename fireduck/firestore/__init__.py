from ._auth import CredentialKind, Credentials, TokenExchanger
from ._cache import (
    SchemaCache,
    SchemaCacheEntry,
    SessionRegistry,
    schema_cache,
    session_registry,
)
from ._client import DocumentClient, quote_field_path
from ._codec import ValueCodec, format_timestamp, parse_timestamp
from ._index import IndexHelper, IndexMatcher, load_index_catalog
from ._models import (
    COLLECTION_GROUP_PREFIX,
    DEFAULT_DATABASE,
    DOCUMENT_ID_COLUMN,
    ArrayTransformKind,
    BatchOperationResult,
    BatchWriteResult,
    CollectionRef,
    Column,
    Document,
    FilterOp,
    Index,
    IndexCatalog,
    IndexField,
    IndexFieldMode,
    IndexScope,
    IndexState,
    ListResponse,
    LogicalType,
    LogicalTypeId,
    PushdownFilter,
    RpcCode,
    UnaryOp,
    ValueKind,
)
from ._pushdown import (
    ConjunctionAndFilter,
    ConjunctionOrFilter,
    ConstantFilter,
    FilterConverter,
    InFilter,
    IsNotNullFilter,
    IsNullFilter,
    PushdownPlanner,
    TableFilter,
    table_filters_to_expression,
)
from ._scan import (
    BatchSink,
    ListBatchSink,
    ScanBindData,
    ScanExecutor,
    ScanState,
)
from ._schema import SchemaInferencer
from ._secrets import (
    CredentialCache,
    CredentialResolver,
    FirestoreSecret,
    SecretStore,
    credential_cache,
    default_secret_store,
)
from ._settings import Settings
from ._writer import WritePlanner

__all__ = [
    "COLLECTION_GROUP_PREFIX",
    "DEFAULT_DATABASE",
    "DOCUMENT_ID_COLUMN",
    "ArrayTransformKind",
    "BatchOperationResult",
    "BatchSink",
    "BatchWriteResult",
    "CollectionRef",
    "Column",
    "ConjunctionAndFilter",
    "ConjunctionOrFilter",
    "ConstantFilter",
    "CredentialCache",
    "CredentialKind",
    "CredentialResolver",
    "Credentials",
    "Document",
    "DocumentClient",
    "FilterConverter",
    "FilterOp",
    "FirestoreSecret",
    "InFilter",
    "Index",
    "IndexCatalog",
    "IndexField",
    "IndexFieldMode",
    "IndexHelper",
    "IndexMatcher",
    "IndexScope",
    "IndexState",
    "IsNotNullFilter",
    "IsNullFilter",
    "ListBatchSink",
    "ListResponse",
    "LogicalType",
    "LogicalTypeId",
    "PushdownFilter",
    "PushdownPlanner",
    "RpcCode",
    "ScanBindData",
    "ScanExecutor",
    "ScanState",
    "SchemaCache",
    "SchemaCacheEntry",
    "SchemaInferencer",
    "SecretStore",
    "SessionRegistry",
    "Settings",
    "TableFilter",
    "TokenExchanger",
    "UnaryOp",
    "ValueCodec",
    "WritePlanner",
    "credential_cache",
    "default_secret_store",
    "format_timestamp",
    "load_index_catalog",
    "parse_timestamp",
    "quote_field_path",
    "schema_cache",
    "session_registry",
]
