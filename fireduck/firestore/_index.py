from __future__ import annotations

from typing import Any

from fireduck.core._log_helper import get_logger
from fireduck.core.exceptions import BaseError

from ._models import (
    NAME_FIELD,
    Index,
    IndexCatalog,
    IndexField,
    IndexFieldMode,
    IndexScope,
    IndexState,
    PushdownFilter,
)

logger = get_logger(__name__)


class IndexHelper:
    @staticmethod
    def _get_index_name(path: str) -> str:
        return path.split("/")[-1]

    @staticmethod
    def _get_scope(value: str | None) -> IndexScope:
        if value == IndexScope.COLLECTION_GROUP.value:
            return IndexScope.COLLECTION_GROUP
        return IndexScope.COLLECTION

    @staticmethod
    def _get_state(value: str | None) -> IndexState:
        try:
            return IndexState(value)
        except ValueError:
            return IndexState.CREATING

    @staticmethod
    def _convert_field(gfield: dict) -> IndexField | None:
        path = gfield.get("fieldPath")
        if not path or path == NAME_FIELD:
            return None
        if "order" in gfield:
            if gfield["order"] == "DESCENDING":
                return IndexField(path=path, mode=IndexFieldMode.DESC)
            return IndexField(path=path, mode=IndexFieldMode.ASC)
        if "arrayConfig" in gfield:
            return IndexField(path=path, mode=IndexFieldMode.ARRAY_CONTAINS)
        return None

    @staticmethod
    def parse_index(gindex: dict) -> Index | None:
        """Convert an admin index resource, skipping __name__ fields."""
        gname = gindex.get("name", "")
        fields = []
        for gfield in gindex.get("fields", []):
            field = IndexHelper._convert_field(gfield)
            if field is not None:
                fields.append(field)
        if not fields:
            logger.debug("Skipping index %s without usable fields", gname)
            return None
        return Index(
            name=IndexHelper._get_index_name(gname),
            scope=IndexHelper._get_scope(gindex.get("queryScope")),
            state=IndexHelper._get_state(gindex.get("state")),
            fields=fields,
        )

    @staticmethod
    def parse_field_override(gfield: dict) -> list[Index]:
        """Single-field indexes declared by a field override.

        Override names end in .../fields/{field_path}.
        """
        gname = gfield.get("name", "")
        path = gname.split("/fields/", 1)[-1] if "/fields/" in gname else ""
        if not path or path == "*":
            return []
        indexes = []
        config: dict[str, Any] = gfield.get("indexConfig") or {}
        for gindex in config.get("indexes", []):
            entries = gindex.get("fields") or [{}]
            mode = None
            for entry in entries:
                converted = IndexHelper._convert_field(
                    {**entry, "fieldPath": path}
                )
                if converted is not None:
                    mode = converted.mode
                    break
            if mode is None:
                continue
            indexes.append(
                Index(
                    name=path,
                    scope=IndexHelper._get_scope(gindex.get("queryScope")),
                    state=IndexHelper._get_state(gindex.get("state")),
                    fields=[IndexField(path=path, mode=mode)],
                )
            )
        return indexes


def load_index_catalog(client: Any, collection_id: str) -> IndexCatalog:
    """Fetch the index catalog of a collection.

    Never raises: when the admin surface is unavailable the catalog is
    returned with fetch_succeeded False and default indexing assumed on.

    Args:
        client:
            Document client.
        collection_id:
            Final collection path segment.
    """
    try:
        indexes = client.fetch_indexes(collection_id)
    except BaseError as e:
        logger.debug(
            "Index metadata unavailable for %s, pushing down optimistically: %s",
            collection_id,
            e,
        )
        return IndexCatalog(fetch_succeeded=False)
    composite = [i for i in indexes if not i.single_field]
    single = [i for i in indexes if i.single_field]
    try:
        single.extend(client.fetch_field_overrides(collection_id))
    except BaseError as e:
        logger.debug("Field overrides unavailable for %s: %s", collection_id, e)
    catalog = IndexCatalog(
        composite_indexes=composite,
        single_field_indexes=single,
        default_single_field_enabled=client.check_default_single_field(),
        fetch_succeeded=True,
    )
    logger.debug(
        "Index catalog for %s: %d composite, %d single-field, defaults %s",
        collection_id,
        len(composite),
        len(single),
        catalog.default_single_field_enabled,
    )
    return catalog


class IndexMatcher:
    """Selects the filters the service can answer with its indexes.

    Only READY indexes of the query's scope count. Filters that are
    not selected stay with the caller for local evaluation.
    """

    catalog: IndexCatalog
    scope: IndexScope

    def __init__(self, catalog: IndexCatalog, is_group: bool = False):
        self.catalog = catalog
        self.scope = (
            IndexScope.COLLECTION_GROUP if is_group else IndexScope.COLLECTION
        )

    def has_single_field_index(self, field: str) -> bool:
        if self.catalog.default_single_field_enabled:
            return True
        for index in self.catalog.single_field_indexes:
            if (
                index.scope == self.scope
                and index.ready
                and index.single_field
                and index.fields[0].path == field
            ):
                return True
        return False

    def find_composite_index(
        self, equality_fields: set[str], range_field: str
    ) -> Index | None:
        required = equality_fields | {range_field}
        for index in self.catalog.composite_indexes:
            if index.scope != self.scope or not index.ready:
                continue
            if required <= index.field_paths():
                return index
        return None

    def match(self, candidates: list[PushdownFilter]) -> list[PushdownFilter]:
        """Return the pushable subset of the candidates, in input order."""
        if not candidates:
            return []
        equality = [f for f in candidates if f.is_equality]
        ranges = [f for f in candidates if not f.is_equality]

        if not ranges:
            return self._match_equalities(equality)

        range_fields = sorted({f.field for f in ranges})
        primary = range_fields[0]
        if len(range_fields) > 1:
            logger.debug(
                "Inequalities on %s; only %s can be pushed",
                ", ".join(range_fields),
                primary,
            )

        if not equality:
            if not self.has_single_field_index(primary):
                logger.debug("No single-field index for range on %s", primary)
                return []
            return [f for f in ranges if f.field == primary]

        equality_fields = {f.field for f in equality}
        index = self.find_composite_index(equality_fields, primary)
        if index is not None:
            logger.debug(
                "Composite index %s covers %s and %s",
                index.name,
                ", ".join(sorted(equality_fields)),
                primary,
            )
            return [
                f
                for f in candidates
                if f.is_equality or f.field == primary
            ]
        logger.debug(
            "No composite index for %s with range on %s; pushing equalities only",
            ", ".join(sorted(equality_fields)),
            primary,
        )
        return self._match_equalities(equality)

    def _match_equalities(
        self, filters: list[PushdownFilter]
    ) -> list[PushdownFilter]:
        pushed = []
        for f in filters:
            if self.has_single_field_index(f.field):
                pushed.append(f)
            else:
                logger.debug("No single-field index for equality on %s", f.field)
        return pushed
