from __future__ import annotations

from datetime import date, datetime
from typing import Any, Union

from fireduck.core._log_helper import get_logger
from fireduck.core.data_model import DataModel
from fireduck.core.exceptions import ErrorCode, TypeConversionError
from fireduck.ql import (
    And,
    Comparison,
    ComparisonOp,
    Expression,
    Field,
    Function,
    Not,
    Or,
    OrderBy,
    OrderByDirection,
    QueryFunction,
    QueryFunctionName,
)

from ._codec import ValueCodec, parse_timestamp
from ._index import IndexMatcher
from ._models import (
    DOCUMENT_ID_COLUMN,
    NAME_FIELD,
    CollectionRef,
    Column,
    Document,
    FilterOp,
    IndexCatalog,
    LogicalTypeId,
    PushdownFilter,
    UnaryOp,
    ValueKind,
)
from ._settings import MAX_IN_VALUES

logger = get_logger(__name__)

_COMPARISON_OPS = {
    ComparisonOp.EQ: FilterOp.EQ,
    ComparisonOp.NEQ: FilterOp.NEQ,
    ComparisonOp.LT: FilterOp.LT,
    ComparisonOp.LTE: FilterOp.LTE,
    ComparisonOp.GT: FilterOp.GT,
    ComparisonOp.GTE: FilterOp.GTE,
}

# Envelope kinds whose values compare the same way in DuckDB and the
# service once decoded into their column type.
_PUSHABLE_KINDS = {
    LogicalTypeId.VARCHAR: {ValueKind.STRING},
    LogicalTypeId.BIGINT: {ValueKind.INTEGER},
    LogicalTypeId.DOUBLE: {ValueKind.DOUBLE},
    LogicalTypeId.BOOLEAN: {ValueKind.BOOLEAN},
    LogicalTypeId.TIMESTAMP: {ValueKind.TIMESTAMP},
    LogicalTypeId.BLOB: {ValueKind.BYTES},
}


class ConstantFilter(DataModel):
    """Column compared against a constant."""

    op: ComparisonOp
    value: Any

    def to_expression(self, column: str) -> Expression:
        return Comparison(lexpr=Field(path=column), op=self.op, rexpr=self.value)


class InFilter(DataModel):
    """Column value in a list of constants."""

    values: list[Any]

    def to_expression(self, column: str) -> Expression:
        return Comparison(
            lexpr=Field(path=column), op=ComparisonOp.IN, rexpr=self.values
        )


class IsNullFilter(DataModel):
    def to_expression(self, column: str) -> Expression:
        return QueryFunction.is_null(column)


class IsNotNullFilter(DataModel):
    def to_expression(self, column: str) -> Expression:
        return QueryFunction.is_not_null(column)


class ConjunctionAndFilter(DataModel):
    """All child filters hold."""

    children: list[TableFilter]

    def to_expression(self, column: str) -> Expression:
        return _fold(And, [c.to_expression(column) for c in self.children])


class ConjunctionOrFilter(DataModel):
    """Any child filter holds."""

    children: list[TableFilter]

    def to_expression(self, column: str) -> Expression:
        return _fold(Or, [c.to_expression(column) for c in self.children])


TableFilter = Union[
    ConstantFilter,
    InFilter,
    IsNullFilter,
    IsNotNullFilter,
    ConjunctionAndFilter,
    ConjunctionOrFilter,
]

ConjunctionAndFilter.model_rebuild()
ConjunctionOrFilter.model_rebuild()


def _fold(cls: type, expressions: list[Expression]) -> Expression:
    result = expressions[0]
    for expr in expressions[1:]:
        result = cls(lexpr=result, rexpr=expr)
    return result


def table_filters_to_expression(
    filters: dict[str, TableFilter],
) -> Expression | None:
    """Combine per-column filters into one predicate."""
    expressions = [f.to_expression(c) for c, f in filters.items()]
    if not expressions:
        return None
    return _fold(And, expressions)


class FilterConverter:
    """Turns predicates into service filters.

    Predicates that cannot be expressed are skipped; they are still
    evaluated locally by the caller.
    """

    columns: dict[str, Column]
    codec: ValueCodec

    def __init__(self, columns: list[Column], codec: ValueCodec | None = None):
        self.columns = {c.name: c for c in columns}
        self.codec = codec if codec is not None else ValueCodec()

    def from_table_filters(
        self, filters: dict[str, TableFilter]
    ) -> list[PushdownFilter]:
        result: list[PushdownFilter] = []
        for column, table_filter in filters.items():
            result.extend(self._convert_table_filter(column, table_filter))
        return result

    def _convert_table_filter(
        self, column: str, table_filter: TableFilter
    ) -> list[PushdownFilter]:
        if isinstance(table_filter, ConstantFilter):
            converted = self._comparison(column, table_filter.op, table_filter.value)
            return [converted] if converted else []
        if isinstance(table_filter, InFilter):
            converted = self._in(column, FilterOp.IN, table_filter.values)
            return [converted] if converted else []
        if isinstance(table_filter, IsNullFilter):
            converted = self._unary(column, UnaryOp.IS_NULL)
            return [converted] if converted else []
        if isinstance(table_filter, IsNotNullFilter):
            converted = self._unary(column, UnaryOp.IS_NOT_NULL)
            return [converted] if converted else []
        if isinstance(table_filter, ConjunctionAndFilter):
            result = []
            for child in table_filter.children:
                result.extend(self._convert_table_filter(column, child))
            return result
        if isinstance(table_filter, ConjunctionOrFilter):
            values = []
            for child in table_filter.children:
                if (
                    not isinstance(child, ConstantFilter)
                    or child.op != ComparisonOp.EQ
                ):
                    return []
                values.append(child.value)
            converted = self._in(column, FilterOp.IN, values)
            return [converted] if converted else []
        return []

    def from_expression(self, expr: Expression | None) -> list[PushdownFilter]:
        if expr is None:
            return []
        result: list[PushdownFilter] = []
        for conjunct in self._conjuncts(expr):
            result.extend(self._convert_expression(conjunct))
        return result

    @staticmethod
    def _conjuncts(expr: Expression) -> list[Expression]:
        if isinstance(expr, And):
            return FilterConverter._conjuncts(
                expr.lexpr
            ) + FilterConverter._conjuncts(expr.rexpr)
        return [expr]

    @staticmethod
    def _disjuncts(expr: Expression) -> list[Expression]:
        if isinstance(expr, Or):
            return FilterConverter._disjuncts(
                expr.lexpr
            ) + FilterConverter._disjuncts(expr.rexpr)
        return [expr]

    def _convert_expression(self, expr: Expression) -> list[PushdownFilter]:
        if isinstance(expr, Comparison):
            return self._convert_comparison(expr)
        if isinstance(expr, Function):
            if len(expr.args) == 1 and isinstance(expr.args[0], Field):
                unary = (
                    UnaryOp.IS_NULL
                    if expr.name == QueryFunctionName.IS_NULL
                    else UnaryOp.IS_NOT_NULL
                    if expr.name == QueryFunctionName.IS_NOT_NULL
                    else None
                )
                if unary is not None:
                    converted = self._unary(expr.args[0].path, unary)
                    return [converted] if converted else []
            return []
        if isinstance(expr, Not):
            inner = expr.expr
            if (
                isinstance(inner, Function)
                and inner.name == QueryFunctionName.IS_NULL
                and len(inner.args) == 1
                and isinstance(inner.args[0], Field)
            ):
                converted = self._unary(inner.args[0].path, UnaryOp.IS_NOT_NULL)
                return [converted] if converted else []
            return []
        if isinstance(expr, Or):
            return self._convert_or(expr)
        return []

    def _convert_comparison(self, expr: Comparison) -> list[PushdownFilter]:
        op = expr.op
        if isinstance(expr.lexpr, Field) and not isinstance(expr.rexpr, Field):
            column, value = expr.lexpr.path, expr.rexpr
        elif isinstance(expr.rexpr, Field) and not isinstance(expr.lexpr, Field):
            if op in (ComparisonOp.IN, ComparisonOp.NIN, ComparisonOp.BETWEEN):
                return []
            column, value = expr.rexpr.path, expr.lexpr
            op = Comparison.reverse_op(op)
        else:
            return []
        if op == ComparisonOp.IN or op == ComparisonOp.NIN:
            if not isinstance(value, list):
                return []
            filter_op = FilterOp.IN if op == ComparisonOp.IN else FilterOp.NIN
            converted = self._in(column, filter_op, value)
            return [converted] if converted else []
        if op == ComparisonOp.BETWEEN:
            if not isinstance(value, list) or len(value) != 2:
                return []
            low = self._comparison(column, ComparisonOp.GTE, value[0])
            high = self._comparison(column, ComparisonOp.LTE, value[1])
            if low is None or high is None:
                return []
            return [low, high]
        converted = self._comparison(column, op, value)
        return [converted] if converted else []

    def _convert_or(self, expr: Or) -> list[PushdownFilter]:
        column = None
        values: list[Any] = []
        for disjunct in self._disjuncts(expr):
            if not isinstance(disjunct, Comparison):
                return []
            if isinstance(disjunct.lexpr, Field):
                field, value = disjunct.lexpr, disjunct.rexpr
            elif isinstance(disjunct.rexpr, Field):
                field, value = disjunct.rexpr, disjunct.lexpr
            else:
                return []
            if column is not None and field.path != column:
                return []
            column = field.path
            if disjunct.op == ComparisonOp.EQ and not isinstance(value, list):
                values.append(value)
            elif disjunct.op == ComparisonOp.IN and isinstance(value, list):
                values.extend(value)
            else:
                return []
        if column is None:
            return []
        converted = self._in(column, FilterOp.IN, values)
        return [converted] if converted else []

    def _pushable_column(self, name: str) -> Column | None:
        if name == DOCUMENT_ID_COLUMN:
            return None
        column = self.columns.get(name)
        if column is None:
            return None
        kinds = _PUSHABLE_KINDS.get(column.type.id)
        if kinds is None or column.kind not in kinds:
            return None
        return column

    def _encode(self, column: Column, value: Any) -> dict | None:
        if not self._fits(column.type.id, value):
            return None
        try:
            return self.codec.encode_for_type(value, column.type)
        except (TypeConversionError, ValueError, OverflowError) as e:
            logger.debug("Constant %r not pushable on %s: %s", value, column.name, e)
            return None

    @staticmethod
    def _fits(type_id: LogicalTypeId, value: Any) -> bool:
        if value is None:
            return False
        if type_id == LogicalTypeId.VARCHAR:
            return isinstance(value, str)
        if type_id in (LogicalTypeId.BIGINT, LogicalTypeId.DOUBLE):
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if type_id == LogicalTypeId.BOOLEAN:
            return isinstance(value, bool)
        if type_id == LogicalTypeId.TIMESTAMP:
            if isinstance(value, (datetime, date)):
                return True
            if isinstance(value, str):
                try:
                    parse_timestamp(value)
                except ValueError:
                    return False
                return True
            return False
        if type_id == LogicalTypeId.BLOB:
            return isinstance(value, bytes)
        return False

    def _comparison(
        self, name: str, op: ComparisonOp, value: Any
    ) -> PushdownFilter | None:
        filter_op = _COMPARISON_OPS.get(op)
        column = self._pushable_column(name)
        if filter_op is None or column is None:
            return None
        encoded = self._encode(column, value)
        if encoded is None:
            return None
        return PushdownFilter(field=name, op=filter_op, value=encoded)

    def _in(
        self, name: str, op: FilterOp, values: list[Any]
    ) -> PushdownFilter | None:
        column = self._pushable_column(name)
        if column is None or not values:
            return None
        if len(values) > MAX_IN_VALUES:
            logger.debug(
                "%s: %s with %d values on %s exceeds %d",
                ErrorCode.INDEX_FILTER_REJECTED.name,
                op.value,
                len(values),
                name,
                MAX_IN_VALUES,
            )
            return None
        encoded = []
        for value in values:
            envelope = self._encode(column, value)
            if envelope is None:
                return None
            encoded.append(envelope)
        return PushdownFilter(field=name, op=op, values=encoded)

    def _unary(self, name: str, op: UnaryOp) -> PushdownFilter | None:
        if name == DOCUMENT_ID_COLUMN or name not in self.columns:
            return None
        return PushdownFilter(field=name, unary=op)


class PushdownPlanner:
    """Builds the structured query for a scan."""

    catalog: IndexCatalog
    is_group: bool

    def __init__(self, catalog: IndexCatalog, is_group: bool = False):
        self.catalog = catalog
        self.is_group = is_group

    def plan(self, candidates: list[PushdownFilter]) -> list[PushdownFilter]:
        pushed = IndexMatcher(self.catalog, self.is_group).match(candidates)
        if pushed:
            logger.debug(
                "Pushing %d of %d filters: %s",
                len(pushed),
                len(candidates),
                ", ".join(f.field for f in pushed),
            )
        return pushed

    @staticmethod
    def build_where(filters: list[PushdownFilter]) -> dict | None:
        if not filters:
            return None
        converted = [f.to_filter() for f in filters]
        if len(converted) == 1:
            return converted[0]
        return {"compositeFilter": {"op": "AND", "filters": converted}}

    @staticmethod
    def build_order_by(
        filters: list[PushdownFilter], order_by: OrderBy | None = None
    ) -> list[dict]:
        """Ordering for a structured query.

        A caller ordering is used as given. Otherwise every inequality
        field is ordered ascending, followed by __name__.
        """
        if order_by is not None and order_by.terms:
            return [
                {
                    "field": {"fieldPath": term.field},
                    "direction": "DESCENDING"
                    if term.direction == OrderByDirection.DESC
                    else "ASCENDING",
                }
                for term in order_by.terms
            ]
        fields: list[str] = []
        for f in filters:
            if not f.is_equality and f.field not in fields:
                fields.append(f.field)
        fields.append(NAME_FIELD)
        return [
            {"field": {"fieldPath": field}, "direction": "ASCENDING"}
            for field in fields
        ]

    @staticmethod
    def build_start_at(document: Document, order_by: list[dict]) -> dict:
        """Cursor positioned just after a document."""
        values = []
        for term in order_by:
            path = term["field"]["fieldPath"]
            if path == NAME_FIELD:
                continue
            values.append(document.fields.get(path, {"nullValue": None}))
        values.append({"referenceValue": document.path})
        return {"values": values, "before": False}

    @staticmethod
    def build_structured_query(
        collection_ref: CollectionRef,
        where: dict | None = None,
        order_by: list[dict] | None = None,
        limit: int | None = None,
        start_at: dict | None = None,
    ) -> dict:
        query: dict[str, Any] = {
            "from": [
                {
                    "collectionId": collection_ref.collection_id,
                    "allDescendants": collection_ref.is_group,
                }
            ]
        }
        if where:
            query["where"] = where
        if order_by:
            query["orderBy"] = order_by
        if limit is not None:
            query["limit"] = limit
        if start_at:
            query["startAt"] = start_at
        return query
