from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Iterator, Protocol

from fireduck.core._log_helper import get_logger, warn
from fireduck.core.data_model import DataModel
from fireduck.core.exceptions import BaseError, ErrorCode, ErrorContext, ScanError
from fireduck.ql import OrderBy, OrderByDirection

from ._client import DocumentClient, quote_field_path
from ._codec import ValueCodec
from ._models import (
    DOCUMENT_ID_COLUMN,
    CollectionRef,
    Column,
    Document,
    PushdownFilter,
)
from ._pushdown import PushdownPlanner
from ._settings import MAX_PAGE_SIZE, STANDARD_VECTOR_SIZE

logger = get_logger(__name__)

ROW_ID_COLUMN = "rowid"


class ScanBindData(DataModel):
    """Everything a scan needs, fixed at bind time."""

    collection: CollectionRef
    """Scanned collection."""

    columns: list[Column]
    """Inferred columns, without __document_id."""

    pushed_filters: list[PushdownFilter] = []
    """Filters sent to the service."""

    order_by: OrderBy | None = None
    """Caller ordering."""

    limit: int | None = None
    """Maximum rows to emit."""


class ScanState(str, Enum):
    INIT = "init"
    FIRST_FETCH = "first_fetch"
    STREAMING_LIST = "streaming_list"
    STREAMING_QUERY = "streaming_query"
    END = "end"


class BatchSink(Protocol):
    capacity: int

    def append_row(self, values: list[Any]) -> None: ...


class ListBatchSink:
    """Collects rows as lists."""

    capacity: int
    rows: list[list[Any]]

    def __init__(self, capacity: int = STANDARD_VECTOR_SIZE):
        self.capacity = capacity
        self.rows = []

    def append_row(self, values: list[Any]) -> None:
        self.rows.append(values)

    def reset(self):
        self.rows = []


class ScanExecutor:
    """Streams the documents of one scan into row batches.

    The executor is driven by the caller: each next_batch call fetches
    pages on the calling thread until the batch is full or the scan
    ends. Rows come out in the order the service returns them.
    """

    max_threads = 1

    client: DocumentClient
    bind: ScanBindData
    projection: list[str]
    page_size: int
    vector_size: int
    cancel: threading.Event | None
    codec: ValueCodec

    state: ScanState
    pushed_filters: list[PushdownFilter]
    downgraded: bool
    pages_fetched: int
    rows_emitted: int

    _columns: dict[str, Column]
    _documents: list[Document]
    _position: int
    _next_page_token: str | None
    _last_page_was_full: bool
    _order_by: list[dict]

    def __init__(
        self,
        client: DocumentClient,
        bind: ScanBindData,
        projection: list[str] | None = None,
        page_size: int = MAX_PAGE_SIZE,
        vector_size: int = STANDARD_VECTOR_SIZE,
        cancel: threading.Event | None = None,
        codec: ValueCodec | None = None,
    ):
        """Initialize.

        Args:
            client:
                Document client.
            bind:
                Bind data.
            projection:
                Output column names. Defaults to __document_id followed
                by every inferred column. rowid maps to __document_id.
            page_size:
                Documents per page, capped at 1000 and at the limit.
            vector_size:
                Default batch capacity.
            cancel:
                Event checked before every page fetch.
            codec:
                Value codec.
        """
        if bind.limit is not None and bind.limit < 0:
            raise ScanError(
                f"limit must not be negative, got {bind.limit}",
                ErrorCode.SCAN_INVALID_LIMIT,
            )
        self.client = client
        self.bind = bind
        self._columns = {c.name: c for c in bind.columns}
        self.projection = self.resolve_projection(projection)
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        if bind.limit:
            self.page_size = min(self.page_size, bind.limit)
        self.vector_size = vector_size
        self.cancel = cancel
        self.codec = codec if codec is not None else ValueCodec()
        self.state = ScanState.INIT
        self.pushed_filters = list(bind.pushed_filters)
        self.downgraded = False
        self.pages_fetched = 0
        self.rows_emitted = 0
        self._documents = []
        self._position = 0
        self._next_page_token = None
        self._last_page_was_full = False
        self._order_by = []

    def resolve_projection(self, projection: list[str] | None) -> list[str]:
        if projection is None:
            return [DOCUMENT_ID_COLUMN] + [c.name for c in self.bind.columns]
        resolved = []
        for name in projection:
            if name == ROW_ID_COLUMN:
                name = DOCUMENT_ID_COLUMN
            if name != DOCUMENT_ID_COLUMN and name not in self._columns:
                raise ScanError(
                    f"Unknown column {name}",
                    ErrorCode.SCAN_INVALID_PROJECTION,
                    ErrorContext(collection=str(self.bind.collection)),
                )
            resolved.append(name)
        return resolved

    @property
    def uses_query(self) -> bool:
        return self.state == ScanState.STREAMING_QUERY

    def _check_cancelled(self):
        if self.cancel is not None and self.cancel.is_set():
            self.state = ScanState.END
            raise ScanError(
                "Scan cancelled",
                ErrorCode.SCAN_CANCELLED,
                ErrorContext(collection=str(self.bind.collection)),
            )

    def _list_order_by(self) -> str | None:
        order_by = self.bind.order_by
        if order_by is None or not order_by.terms:
            return None
        parts = []
        for term in order_by.terms:
            part = quote_field_path(term.field)
            if term.direction == OrderByDirection.DESC:
                part = f"{part} desc"
            parts.append(part)
        return ", ".join(parts)

    def _query(self, start_after: Document | None = None) -> dict:
        collection = self.bind.collection
        start_at = None
        if start_after is not None:
            start_at = PushdownPlanner.build_start_at(start_after, self._order_by)
        return PushdownPlanner.build_structured_query(
            collection,
            where=PushdownPlanner.build_where(self.pushed_filters),
            order_by=self._order_by,
            limit=self.page_size,
            start_at=start_at,
        )

    def _run_query(self, start_after: Document | None = None) -> list[Document]:
        self._check_cancelled()
        documents = self.client.run_query(
            self.bind.collection.parent_path, self._query(start_after)
        )
        self.pages_fetched += 1
        self._last_page_was_full = len(documents) >= self.page_size
        return documents

    def _list(self, page_token: str | None = None) -> list[Document]:
        self._check_cancelled()
        response = self.client.list(
            self.bind.collection.path,
            self.page_size,
            order_by=self._list_order_by(),
            page_token=page_token,
        )
        self.pages_fetched += 1
        self._next_page_token = response.next_page_token
        return response.documents

    def _start_query(self):
        self._order_by = PushdownPlanner.build_order_by(
            self.pushed_filters, self.bind.order_by
        )
        self.state = ScanState.STREAMING_QUERY

    def _first_fetch(self):
        self.state = ScanState.FIRST_FETCH
        collection = self.bind.collection
        if not self.pushed_filters and not collection.is_group:
            self.state = ScanState.STREAMING_LIST
            self._documents = self._list()
            return
        self._start_query()
        try:
            self._documents = self._run_query()
            return
        except BaseError as e:
            if not self.pushed_filters:
                raise
            warn(
                f"Filtered query on {collection} failed, "
                f"scanning without pushdown: {e}"
            )
        self.pushed_filters = []
        self.downgraded = True
        if collection.is_group:
            self._start_query()
            self._documents = self._run_query()
        else:
            self.state = ScanState.STREAMING_LIST
            self._documents = self._list()

    def _fetch_next(self):
        previous = self._documents
        self._documents = []
        self._position = 0
        if self.state == ScanState.STREAMING_LIST:
            if not self._next_page_token:
                self.state = ScanState.END
                return
            self._documents = self._list(self._next_page_token)
        elif self.state == ScanState.STREAMING_QUERY:
            if not self._last_page_was_full or not previous:
                self.state = ScanState.END
                return
            self._documents = self._run_query(start_after=previous[-1])
        else:
            self.state = ScanState.END

    def _limit_reached(self) -> bool:
        limit = self.bind.limit
        return limit is not None and self.rows_emitted >= limit

    def document_id(self, document: Document) -> str:
        if self.bind.collection.is_group:
            return document.relative_path
        return document.id

    def _row(self, document: Document) -> list[Any]:
        values = []
        for name in self.projection:
            if name == DOCUMENT_ID_COLUMN:
                values.append(self.document_id(document))
                continue
            envelope = document.fields.get(name)
            if envelope is None:
                values.append(None)
            else:
                values.append(self.codec.decode(envelope, self._columns[name].type))
        return values

    def next_batch(self, sink: BatchSink) -> int:
        """Fill the sink with up to sink.capacity rows.

        Returns:
            Rows appended. 0 means the scan has ended.
        """
        if self.state == ScanState.INIT:
            if self._limit_reached():
                self.state = ScanState.END
                return 0
            self._first_fetch()
        count = 0
        while count < sink.capacity and self.state != ScanState.END:
            if self._limit_reached():
                self.state = ScanState.END
                break
            if self._position >= len(self._documents):
                self._fetch_next()
                continue
            document = self._documents[self._position]
            self._position += 1
            sink.append_row(self._row(document))
            count += 1
            self.rows_emitted += 1
        if self.state == ScanState.END:
            self._documents = []
        return count

    def iter_rows(self) -> Iterator[list[Any]]:
        sink = ListBatchSink(self.vector_size)
        while True:
            sink.reset()
            if self.next_batch(sink) == 0:
                return
            yield from sink.rows
