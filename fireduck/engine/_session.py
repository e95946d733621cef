from __future__ import annotations

import threading
import uuid
from typing import Any, Iterable, Iterator

import duckdb
import pyarrow as pa

from fireduck.core._log_helper import get_logger
from fireduck.core.exceptions import ConfigError, ErrorCode, ErrorContext, NotFoundError
from fireduck.firestore import (
    DOCUMENT_ID_COLUMN,
    ArrayTransformKind,
    CollectionRef,
    Credentials,
    CredentialResolver,
    DocumentClient,
    FilterConverter,
    FirestoreSecret,
    PushdownPlanner,
    ScanBindData,
    ScanExecutor,
    SchemaCacheEntry,
    SchemaInferencer,
    SecretStore,
    Settings,
    TableFilter,
    WritePlanner,
    credential_cache,
    load_index_catalog,
    schema_cache,
    session_registry,
    table_filters_to_expression,
)
from fireduck.firestore._models import NAME_FIELD
from fireduck.ql import Expression, OrderBy, QLParser

from ._arrow import ArrowBatchSink, arrow_schema, logical_type_from_arrow

logger = get_logger(__name__)

FILTER_VIEW = "__fireduck_batch"

Predicate = str | Expression | dict[str, TableFilter] | None
TableInput = (
    pa.Table | pa.RecordBatchReader | duckdb.DuckDBPyRelation | str | list[dict]
)


class FireDuck:
    """DuckDB session over Firestore collections.

    Every function takes the credential options project_id,
    credentials (service account file), api_key and database.
    """

    session_id: str
    connection: duckdb.DuckDBPyConnection
    settings: Settings
    secrets: SecretStore
    resolver: CredentialResolver
    nparams: dict[str, Any]

    _owns_connection: bool

    def __init__(
        self,
        connection: duckdb.DuckDBPyConnection | None = None,
        settings: Settings | None = None,
        secrets: SecretStore | None = None,
        nparams: dict[str, Any] = dict(),
    ):
        """Initialize.

        Args:
            connection:
                DuckDB connection. An in-memory one is created when
                omitted.
            settings:
                Runtime settings. Defaults to Settings.from_env().
                An explicit schema_cache_ttl applies process-wide.
            secrets:
                Secret store. Defaults to the process-wide store.
            nparams:
                Native params to httpx client.
        """
        self.session_id = str(uuid.uuid4())
        self._owns_connection = connection is None
        self.connection = connection if connection is not None else duckdb.connect()
        self.settings = settings if settings is not None else Settings.from_env()
        self.resolver = CredentialResolver(secrets=secrets)
        self.secrets = self.resolver.secrets
        self.nparams = nparams
        if "schema_cache_ttl" in self.settings.model_fields_set:
            schema_cache.set_ttl(self.settings.schema_cache_ttl)

    def _credentials(
        self,
        project_id: str | None = None,
        credentials: str | None = None,
        api_key: str | None = None,
        database: str | None = None,
    ) -> Credentials:
        return self.resolver.resolve(
            project_id=project_id,
            credentials=credentials,
            api_key=api_key,
            database=database,
            session_database=session_registry.get(self.session_id),
        )

    def _client(self, **options) -> DocumentClient:
        return DocumentClient(
            self._credentials(**options), self.settings, self.nparams
        )

    def _schema(
        self, client: DocumentClient, collection_ref: CollectionRef
    ) -> SchemaCacheEntry:
        credentials = client.credentials
        key = str(collection_ref)
        entry = schema_cache.get(
            credentials.project_id, credentials.database_id, key
        )
        if entry is not None:
            return entry
        columns, sampled = SchemaInferencer(client).infer_sample(
            key, self.settings.sample_size
        )
        if sampled == 0:
            raise NotFoundError(
                f"Collection {key} is empty or does not exist",
                ErrorCode.NOT_FOUND_COLLECTION,
                ErrorContext(
                    operation="scan",
                    collection=key,
                    project_id=credentials.project_id,
                    database_id=credentials.database_id,
                ),
            )
        catalog = load_index_catalog(client, collection_ref.collection_id)
        return schema_cache.put(
            credentials.project_id, credentials.database_id, key, columns, catalog
        )

    @staticmethod
    def _predicate(where: Predicate) -> tuple[Expression | None, dict | None]:
        if where is None:
            return None, None
        if isinstance(where, str):
            return QLParser.parse_where(where), None
        if isinstance(where, dict):
            return table_filters_to_expression(where), where
        return where, None

    @staticmethod
    def _order_by(order_by: str | OrderBy | None) -> OrderBy | None:
        if order_by is None:
            return None
        if isinstance(order_by, str):
            order_by = QLParser.parse_order_by(order_by)
        else:
            order_by = order_by.model_copy(deep=True)
        for term in order_by.terms:
            if term.field == DOCUMENT_ID_COLUMN:
                term.field = NAME_FIELD
        return order_by

    def _bind(
        self,
        client: DocumentClient,
        collection: str,
        expression: Expression | None,
        table_filters: dict | None,
        limit: int | None,
        order_by: str | OrderBy | None,
    ) -> ScanBindData:
        collection_ref = CollectionRef.parse(collection)
        entry = self._schema(client, collection_ref)
        converter = FilterConverter(entry.columns)
        if table_filters is not None:
            candidates = converter.from_table_filters(table_filters)
        else:
            candidates = converter.from_expression(expression)
        pushed = []
        if candidates and entry.index_catalog is not None:
            planner = PushdownPlanner(entry.index_catalog, collection_ref.is_group)
            pushed = planner.plan(candidates)
        return ScanBindData(
            collection=collection_ref,
            columns=entry.columns,
            pushed_filters=pushed,
            order_by=self._order_by(order_by),
            limit=limit,
        )

    def _filter_batch(
        self, batch: pa.RecordBatch, expression: Expression | None
    ) -> pa.Table:
        table = pa.Table.from_batches([batch], schema=batch.schema)
        if expression is None:
            return table
        cursor = self.connection.cursor()
        try:
            cursor.register(FILTER_VIEW, table)
            result = cursor.execute(
                f"SELECT * FROM {FILTER_VIEW} WHERE {expression}"
            ).fetch_arrow_table()
        finally:
            cursor.close()
        return result.cast(batch.schema)

    def scan_reader(
        self,
        collection: str,
        where: Predicate = None,
        *,
        columns: list[str] | None = None,
        project_id: str | None = None,
        credentials: str | None = None,
        api_key: str | None = None,
        database: str | None = None,
        limit: int | None = None,
        order_by: str | OrderBy | None = None,
        cancel: threading.Event | None = None,
    ) -> pa.RecordBatchReader:
        """Stream a collection as Arrow record batches.

        Pages are fetched as batches are pulled. The predicate is
        pushed to the service where indexes allow and always applied
        again locally.

        Args:
            collection:
                Collection path, or ~name for a collection group.
            where:
                Filter text, ql expression, or per-column filters.
            columns:
                Output columns. Defaults to __document_id followed by
                every inferred column.
            project_id:
                Project id.
            credentials:
                Service account file.
            api_key:
                API key.
            database:
                Database id.
            limit:
                Maximum documents to read.
            order_by:
                Order by text, e.g. "age desc".
            cancel:
                Event that stops the scan between pages.
        """
        client = self._client(
            project_id=project_id,
            credentials=credentials,
            api_key=api_key,
            database=database,
        )
        try:
            expression, table_filters = self._predicate(where)
            bind = self._bind(
                client, collection, expression, table_filters, limit, order_by
            )
            executor = ScanExecutor(
                client,
                bind,
                page_size=self.settings.page_size,
                vector_size=self.settings.vector_size,
                cancel=cancel,
            )
            output = executor.resolve_projection(columns)
        except BaseException:
            client.close()
            raise
        schema = arrow_schema(executor.projection, bind.columns)
        output_schema = pa.schema([schema.field(name) for name in output])

        def batches() -> Iterator[pa.RecordBatch]:
            sink = ArrowBatchSink(schema, self.settings.vector_size)
            try:
                while True:
                    sink.reset()
                    if executor.next_batch(sink) == 0:
                        return
                    table = self._filter_batch(sink.to_record_batch(), expression)
                    for batch in table.select(output).to_batches():
                        yield batch
            finally:
                client.close()

        return pa.RecordBatchReader.from_batches(output_schema, batches())

    def scan_table(self, collection: str, where: Predicate = None, **options) -> pa.Table:
        """Read a collection into an Arrow table. See scan_reader."""
        return self.scan_reader(collection, where, **options).read_all()

    def scan(
        self, collection: str, where: Predicate = None, **options
    ) -> duckdb.DuckDBPyRelation:
        """Read a collection into a DuckDB relation. See scan_reader."""
        return self.connection.from_arrow(
            self.scan_table(collection, where, **options)
        )

    def register(
        self, view: str, collection: str, where: Predicate = None, **options
    ) -> duckdb.DuckDBPyRelation:
        """Expose a scan as a named view on the session connection."""
        self.connection.register(view, self.scan_table(collection, where, **options))
        return self.connection.view(view)

    def _table_input(self, data: TableInput) -> pa.Table | pa.RecordBatchReader:
        if isinstance(data, str):
            data = self.connection.sql(data)
        if isinstance(data, duckdb.DuckDBPyRelation):
            return data.fetch_arrow_table()
        if isinstance(data, list):
            return pa.Table.from_pylist(data)
        if isinstance(data, (pa.Table, pa.RecordBatchReader)):
            return data
        raise ConfigError(
            f"Unsupported insert input: {type(data).__name__}",
            ErrorCode.CONFIG_INVALID_OPTION,
        )

    def _planner(
        self,
        collection: str,
        cancel: threading.Event | None = None,
        **options,
    ) -> WritePlanner:
        return WritePlanner(
            self._client(**options),
            collection,
            batch_size=self.settings.batch_size,
            cancel=cancel,
        )

    @staticmethod
    def _field_values(field_values: tuple) -> dict[str, Any]:
        if len(field_values) % 2 != 0:
            raise ConfigError(
                "Expected field/value pairs",
                ErrorCode.CONFIG_INVALID_OPTION,
            )
        values = {}
        for i in range(0, len(field_values), 2):
            name = field_values[i]
            if not isinstance(name, str):
                raise ConfigError(
                    f"Field name must be a string, got {name!r}",
                    ErrorCode.CONFIG_INVALID_OPTION,
                )
            values[name] = field_values[i + 1]
        return values

    def insert(
        self,
        collection: str,
        data: TableInput,
        document_id: str | None = None,
        cancel: threading.Event | None = None,
        **options,
    ) -> int:
        """Insert rows as documents.

        Args:
            collection:
                Collection path.
            data:
                Arrow table or reader, DuckDB relation, SQL query text,
                or a list of dicts.
            document_id:
                Column holding document ids. Rows with an id are
                upserted in batches, rows without get generated ids.

        Returns:
            Documents written.
        """
        source = self._table_input(data)
        types = {
            field.name: logical_type_from_arrow(field.type)
            for field in source.schema
        }
        types = {k: v for k, v in types.items() if v is not None}

        def rows() -> Iterable[dict]:
            batches = (
                source.to_batches(max_chunksize=self.settings.batch_size)
                if isinstance(source, pa.Table)
                else source
            )
            for batch in batches:
                yield from batch.to_pylist()

        planner = self._planner(collection, cancel, **options)
        with planner.client:
            return planner.insert(rows(), document_id, types)

    def update(
        self, collection: str, document_id: str, *field_values: Any, **options
    ) -> int:
        """Update fields of one document.

        Example: update("users", "u1", "age", 31, "active", True)
        """
        values = self._field_values(field_values)
        planner = self._planner(collection, **options)
        with planner.client:
            return planner.update(document_id, values)

    def delete(self, collection: str, document_id: str, **options) -> int:
        planner = self._planner(collection, **options)
        with planner.client:
            return planner.delete(document_id)

    def update_batch(
        self,
        collection: str,
        document_ids: list[str],
        *field_values: Any,
        **options,
    ) -> int:
        values = self._field_values(field_values)
        planner = self._planner(collection, **options)
        with planner.client:
            return planner.update_batch(document_ids, values)

    def delete_batch(
        self, collection: str, document_ids: list[str], **options
    ) -> int:
        planner = self._planner(collection, **options)
        with planner.client:
            return planner.delete_batch(document_ids)

    def _array_transform(
        self,
        kind: ArrayTransformKind,
        collection: str,
        document_id: str,
        field: str,
        elements: list[Any],
        **options,
    ) -> int:
        planner = self._planner(collection, **options)
        with planner.client:
            return planner.array_transform(document_id, field, elements, kind)

    def array_union(
        self,
        collection: str,
        document_id: str,
        field: str,
        elements: list[Any],
        **options,
    ) -> int:
        """Add elements not already present."""
        return self._array_transform(
            ArrayTransformKind.UNION,
            collection,
            document_id,
            field,
            elements,
            **options,
        )

    def array_remove(
        self,
        collection: str,
        document_id: str,
        field: str,
        elements: list[Any],
        **options,
    ) -> int:
        """Remove every occurrence of the elements."""
        return self._array_transform(
            ArrayTransformKind.REMOVE,
            collection,
            document_id,
            field,
            elements,
            **options,
        )

    def array_append(
        self,
        collection: str,
        document_id: str,
        field: str,
        elements: list[Any],
        **options,
    ) -> int:
        """Append elements, keeping duplicates. Not atomic."""
        return self._array_transform(
            ArrayTransformKind.APPEND,
            collection,
            document_id,
            field,
            elements,
            **options,
        )

    def connect(self, database_id: str) -> bool:
        """Use database_id for later calls that do not name a database."""
        if not database_id:
            raise ConfigError(
                "database_id is required", ErrorCode.CONFIG_INVALID_OPTION
            )
        session_registry.connect(self.session_id, database_id)
        logger.debug("Session %s connected to %s", self.session_id, database_id)
        return True

    def disconnect(self) -> bool:
        session_registry.disconnect(self.session_id)
        return True

    @property
    def database(self) -> str | None:
        """Connected database, if any."""
        return session_registry.get(self.session_id)

    def clear_cache(self, collection: str | None = None) -> bool:
        """Drop cached schemas of one collection, or all cached state."""
        if collection is None:
            schema_cache.purge()
            credential_cache.clear()
        else:
            schema_cache.purge(str(CollectionRef.parse(collection)))
        return True

    def set_schema_cache_ttl(self, seconds: int):
        schema_cache.set_ttl(seconds)

    def create_secret(self, name: str, **kwargs) -> FirestoreSecret:
        return self.secrets.create_secret(name, **kwargs)

    def drop_secret(self, name: str) -> bool:
        return self.secrets.drop_secret(name)

    def close(self):
        session_registry.disconnect(self.session_id)
        if self._owns_connection:
            self.connection.close()

    def __enter__(self) -> FireDuck:
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
