from __future__ import annotations

import threading
from typing import Any, Callable, Iterable

from fireduck.core._log_helper import get_logger, warn
from fireduck.core.exceptions import (
    ErrorCode,
    ErrorContext,
    NotFoundError,
    PermissionDeniedError,
    WriteError,
)

from ._client import DocumentClient, quote_field_path
from ._codec import ValueCodec
from ._models import (
    ArrayTransformKind,
    BatchOperationResult,
    CollectionRef,
    LogicalType,
    RpcCode,
)
from ._settings import MAX_BATCH_SIZE

logger = get_logger(__name__)


class _PendingWrite:
    write: dict
    fallback: Callable[[], Any]
    document_id: str

    def __init__(self, write: dict, fallback: Callable[[], Any], document_id: str):
        self.write = write
        self.fallback = fallback
        self.document_id = document_id


class WritePlanner:
    """Turns rows and ids into batch writes.

    Writes are buffered and flushed in batches. When the batch endpoint
    is denied, the planner switches to per-document calls for the rest
    of its lifetime, replaying the batch that was denied. Documents that
    do not exist are logged and count as zero.
    """

    client: DocumentClient
    collection: CollectionRef
    codec: ValueCodec
    batch_size: int
    cancel: threading.Event | None

    downgraded: bool
    stats: BatchOperationResult

    _buffer: list[_PendingWrite]

    def __init__(
        self,
        client: DocumentClient,
        collection: str | CollectionRef,
        codec: ValueCodec | None = None,
        batch_size: int = MAX_BATCH_SIZE,
        cancel: threading.Event | None = None,
    ):
        self.client = client
        if isinstance(collection, str):
            collection = CollectionRef.parse(collection)
        self.collection = collection
        self.codec = codec if codec is not None else ValueCodec()
        self.batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        self.cancel = cancel
        self.downgraded = False
        self.stats = BatchOperationResult()
        self._buffer = []

    def _context(self, operation: str, document_id: str | None = None) -> ErrorContext:
        return ErrorContext(
            operation=operation,
            collection=str(self.collection),
            document_id=document_id,
            project_id=self.client.credentials.project_id,
            database_id=self.client.credentials.database_id,
        )

    def document_path(self, document_id: Any) -> str:
        """Path below /documents/ of a document in this collection.

        For collection groups the id is itself the full relative path.
        """
        if isinstance(document_id, int) and not isinstance(document_id, bool):
            document_id = str(document_id)
        if (
            not isinstance(document_id, str)
            or not document_id.strip()
            or not document_id.strip("/")
        ):
            raise WriteError(
                f"Invalid document id: {document_id!r}",
                ErrorCode.WRITE_DOCUMENT_ID_INVALID,
                self._context("resolve_document"),
            )
        document_id = document_id.strip("/")
        if self.collection.is_group:
            segments = document_id.split("/")
            if len(segments) % 2 != 0 or "" in segments:
                raise WriteError(
                    "Collection group writes need the full document path, "
                    f"got {document_id}",
                    ErrorCode.WRITE_DOCUMENT_ID_INVALID,
                    self._context("resolve_document", document_id),
                )
            return document_id
        if "/" in document_id:
            raise WriteError(
                f"Document id must be a single path segment: {document_id}",
                ErrorCode.WRITE_DOCUMENT_ID_INVALID,
                self._context("resolve_document", document_id),
            )
        return f"{self.collection.path}/{document_id}"

    def document_name(self, document_id: Any) -> str:
        return self.client.document_name(self.document_path(document_id))

    def encode_fields(
        self,
        values: dict[str, Any],
        types: dict[str, LogicalType] | None = None,
    ) -> dict[str, dict]:
        fields = {}
        for name, value in values.items():
            if not isinstance(name, str) or not name:
                raise WriteError(
                    f"Invalid field name: {name!r}",
                    ErrorCode.WRITE_FIELD_NAME_INVALID,
                    self._context("encode"),
                )
            logical_type = (types or {}).get(name)
            if logical_type is not None:
                fields[name] = self.codec.encode_for_type(value, logical_type)
            else:
                fields[name] = self.codec.encode(value)
        return fields

    def _check_cancelled(self, operation: str):
        if self.cancel is not None and self.cancel.is_set():
            self._buffer = []
            raise WriteError(
                "Write cancelled",
                ErrorCode.WRITE_CANCELLED,
                self._context(operation),
            )

    def _downgrade(self, reason: Exception | str):
        if not self.downgraded:
            warn(
                f"Batch write to {self.collection} denied, "
                f"falling back to per-document writes: {reason}"
            )
        self.downgraded = True
        self.stats.downgraded = True

    def _add(self, pending: _PendingWrite) -> int:
        self.stats.total += 1
        if self.downgraded:
            return self._run_individually([pending])
        self._buffer.append(pending)
        if len(self._buffer) >= self.batch_size:
            return self.flush()
        return 0

    def flush(self) -> int:
        """Send buffered writes.

        Returns:
            Writes that took effect.
        """
        pending, self._buffer = self._buffer, []
        if not pending:
            return 0
        self._check_cancelled("batch_write")
        if self.downgraded:
            return self._run_individually(pending)
        try:
            result = self.client.batch_write([p.write for p in pending])
        except PermissionDeniedError as e:
            self._downgrade(e)
            return self._run_individually(pending)
        codes = result.status_codes
        if codes and all(c == RpcCode.PERMISSION_DENIED for c in codes):
            self._downgrade("every write was denied")
            return self._run_individually(pending)
        for i in result.failed_indexes(RpcCode.NOT_FOUND):
            warn(f"Document not found during batch write: {pending[i].document_id}")
            self.stats.not_found += 1
        failed = [
            i
            for i in result.failed_indexes()
            if codes[i] != RpcCode.NOT_FOUND
        ]
        if failed:
            index = failed[0]
            message = result.messages[index] if index < len(result.messages) else None
            raise WriteError(
                f"{len(failed)} of {len(pending)} writes failed: "
                f"{message or codes[index]}",
                ErrorCode.WRITE_BATCH_PARTIAL_FAILURE,
                self._context("batch_write", pending[index].document_id).with_updates(
                    batch_index=index
                ),
            )
        succeeded = result.succeeded
        self.stats.succeeded += succeeded
        return succeeded

    def _run_individually(self, pending: list[_PendingWrite]) -> int:
        count = 0
        for p in pending:
            self._check_cancelled("write")
            if self._run_one(p.fallback, p.document_id):
                count += 1
        return count

    def _run_one(self, operation: Callable[[], Any], document_id: str) -> bool:
        try:
            operation()
        except NotFoundError:
            warn(f"Document not found: {document_id}")
            self.stats.not_found += 1
            return False
        except PermissionDeniedError as e:
            warn(f"Write to {document_id} denied: {e}")
            return False
        self.stats.succeeded += 1
        return True

    def insert(
        self,
        rows: Iterable[dict[str, Any]],
        document_id_column: str | None = None,
        types: dict[str, LogicalType] | None = None,
    ) -> int:
        """Insert rows as documents.

        Args:
            rows:
                Rows as field name to value mappings.
            document_id_column:
                Column holding the document id. Without it every row
                is created individually with a service generated id.
            types:
                Column types used to encode values.

        Returns:
            Documents written.
        """
        count = 0
        if document_id_column is None:
            if self.collection.is_group:
                raise WriteError(
                    "Inserting into a collection group needs document_id",
                    ErrorCode.WRITE_DOCUMENT_ID_INVALID,
                    self._context("insert"),
                )
            for row in rows:
                self._check_cancelled("insert")
                fields = self.encode_fields(row, types)
                self.stats.total += 1
                self.client.create(self.collection.path, fields)
                self.stats.succeeded += 1
                count += 1
            return count
        for row in rows:
            values = dict(row)
            if document_id_column not in values:
                raise WriteError(
                    f"Column {document_id_column} not found in input",
                    ErrorCode.WRITE_DOCUMENT_ID_INVALID,
                    self._context("insert"),
                )
            document_id = values.pop(document_id_column)
            path = self.document_path(document_id)
            fields = self.encode_fields(values, types)
            write = {
                "update": {
                    "name": self.client.document_name(path),
                    "fields": fields,
                }
            }
            count += self._add(
                _PendingWrite(
                    write,
                    lambda path=path, fields=fields: self.client.update(
                        path, fields
                    ),
                    path,
                )
            )
        return count + self.flush()

    def update(self, document_id: str, values: dict[str, Any]) -> int:
        """Update fields of one document. Returns 0 when it is missing."""
        fields = self._update_fields(values)
        path = self.document_path(document_id)
        self.stats.total += 1
        return int(
            self._run_one(
                lambda: self.client.update(
                    path, fields, field_mask=list(fields), must_exist=True
                ),
                path,
            )
        )

    def delete(self, document_id: str) -> int:
        path = self.document_path(document_id)
        self.stats.total += 1
        return int(
            self._run_one(
                lambda: self.client.delete(path, must_exist=True), path
            )
        )

    def update_batch(
        self, document_ids: Iterable[str], values: dict[str, Any]
    ) -> int:
        """Set the same fields on many documents."""
        fields = self._update_fields(values)
        mask = [quote_field_path(name) for name in fields]
        count = 0
        for document_id in document_ids:
            path = self.document_path(document_id)
            write = {
                "update": {
                    "name": self.client.document_name(path),
                    "fields": fields,
                },
                "updateMask": {"fieldPaths": mask},
                "currentDocument": {"exists": True},
            }
            count += self._add(
                _PendingWrite(
                    write,
                    lambda path=path: self.client.update(
                        path, fields, field_mask=list(fields), must_exist=True
                    ),
                    path,
                )
            )
        return count + self.flush()

    def delete_batch(self, document_ids: Iterable[str]) -> int:
        count = 0
        for document_id in document_ids:
            path = self.document_path(document_id)
            write = {
                "delete": self.client.document_name(path),
                "currentDocument": {"exists": True},
            }
            count += self._add(
                _PendingWrite(
                    write,
                    lambda path=path: self.client.delete(path, must_exist=True),
                    path,
                )
            )
        return count + self.flush()

    def array_transform(
        self,
        document_id: str,
        field: str,
        elements: list[Any],
        kind: ArrayTransformKind | str,
    ) -> int:
        """Union, remove or append array elements.

        Returns:
            1 when the document was changed, 0 when it is missing.
        """
        kind = ArrayTransformKind(kind)
        if not field:
            raise WriteError(
                "Array field name is required",
                ErrorCode.WRITE_FIELD_NAME_INVALID,
                self._context(f"array_{kind.value}", document_id),
            )
        path = self.document_path(document_id)
        encoded = ValueCodec.array_values(self.codec.encode_array(list(elements)))
        self.stats.total += 1
        return int(
            self._run_one(
                lambda: self.client.array_transform(path, field, encoded, kind),
                path,
            )
        )

    def _update_fields(self, values: dict[str, Any]) -> dict[str, dict]:
        if not values:
            raise WriteError(
                "Update needs at least one field",
                ErrorCode.WRITE_UPDATE_NO_FIELDS,
                self._context("update"),
            )
        return self.encode_fields(values)
