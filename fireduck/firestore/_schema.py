from __future__ import annotations

from collections import Counter
from typing import Any

from fireduck.core._log_helper import get_logger

from ._codec import ValueCodec
from ._models import (
    CollectionRef,
    Column,
    Document,
    LogicalType,
    ValueKind,
)
from ._pushdown import PushdownPlanner
from ._settings import MAX_SAMPLE_SIZE

logger = get_logger(__name__)

_KIND_ORDER = {kind: i for i, kind in enumerate(ValueKind)}

_ELEMENT_KINDS = {
    ValueKind.STRING,
    ValueKind.INTEGER,
    ValueKind.DOUBLE,
    ValueKind.BOOLEAN,
    ValueKind.TIMESTAMP,
    ValueKind.BYTES,
    ValueKind.GEOPOINT,
}


def _vote(counts: Counter) -> ValueKind | None:
    """Most frequent kind. Ties go to string, then declaration order."""
    if not counts:
        return None
    return min(
        counts,
        key=lambda kind: (
            -counts[kind],
            kind != ValueKind.STRING,
            _KIND_ORDER[kind],
        ),
    )


class _FieldStats:
    occurrences: int
    kinds: Counter
    elements: Counter
    vector_size: int | None

    def __init__(self):
        self.occurrences = 0
        self.kinds = Counter()
        self.elements = Counter()
        self.vector_size = None

    def observe(self, envelope: Any):
        self.occurrences += 1
        kind = ValueCodec.kind_of(envelope)
        if kind is None or kind == ValueKind.NULL:
            return
        self.kinds[kind] += 1
        if kind == ValueKind.ARRAY:
            for element in ValueCodec.array_values(envelope):
                element_kind = ValueCodec.kind_of(element)
                if element_kind is None or element_kind == ValueKind.NULL:
                    continue
                if element_kind not in _ELEMENT_KINDS:
                    element_kind = ValueKind.STRING
                self.elements[element_kind] += 1
        elif kind == ValueKind.VECTOR and not self.vector_size:
            self.vector_size = len(ValueCodec.vector_values(envelope))

    def column(self, name: str, total: int) -> Column:
        kind = _vote(self.kinds)
        if kind is None:
            logical_type = LogicalType.varchar()
        elif kind == ValueKind.ARRAY:
            element_kind = _vote(self.elements) or ValueKind.STRING
            logical_type = LogicalType.list_of(
                ValueCodec.logical_type_of(element_kind)
            )
        elif kind == ValueKind.VECTOR:
            if self.vector_size:
                logical_type = LogicalType.array_of(
                    LogicalType.double(), self.vector_size
                )
            else:
                logical_type = LogicalType.list_of(LogicalType.double())
        else:
            logical_type = ValueCodec.logical_type_of(kind)
        return Column(
            name=name,
            type=logical_type,
            nullable=sum(self.kinds.values()) < total,
            observed_count=self.occurrences,
            kind=kind,
        )


class SchemaInferencer:
    """Derives a column list from a sample of documents."""

    client: Any

    def __init__(self, client: Any):
        self.client = client

    def sample(self, collection: str, sample_size: int = 100) -> list[Document]:
        collection_ref = CollectionRef.parse(collection)
        page_size = max(1, min(sample_size, MAX_SAMPLE_SIZE))
        if collection_ref.is_group:
            query = PushdownPlanner.build_structured_query(
                collection_ref, limit=page_size
            )
            return self.client.run_query("", query)
        return self.client.list(collection_ref.path, page_size).documents

    def infer(self, collection: str, sample_size: int = 100) -> list[Column]:
        """Infer the columns of a collection.

        Args:
            collection:
                Collection path, or ~name for a collection group.
            sample_size:
                Documents to sample, capped at 1000.

        Returns:
            Columns sorted by name. Empty when the collection has no
            documents, or when the sampled documents carry no fields.
        """
        columns, _ = self.infer_sample(collection, sample_size)
        return columns

    def infer_sample(
        self, collection: str, sample_size: int = 100
    ) -> tuple[list[Column], int]:
        """Infer the columns of a collection and count the sample.

        Returns:
            Columns sorted by name and the number of sampled documents.
            A count of 0 means the collection has no documents.
        """
        documents = self.sample(collection, sample_size)
        columns = self.infer_from_documents(documents)
        logger.debug(
            "Inferred %d fields from %d documents of %s",
            len(columns),
            len(documents),
            collection,
        )
        return columns, len(documents)

    @staticmethod
    def infer_from_documents(documents: list[Document]) -> list[Column]:
        stats: dict[str, _FieldStats] = {}
        for document in documents:
            for name, envelope in document.fields.items():
                if not name:
                    continue
                stats.setdefault(name, _FieldStats()).observe(envelope)
        return [
            stats[name].column(name, len(documents)) for name in sorted(stats)
        ]
