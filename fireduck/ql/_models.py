from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Union

from fireduck.core.data_model import DataModel


def _quote_identifier(name: str) -> str:
    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def _str_value(value: Any) -> str:
    """Render a value as a DuckDB SQL literal or sub-expression."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("'", "''")
        return f"'{escaped}'"
    if isinstance(value, datetime):
        return f"TIMESTAMP '{value.isoformat(sep=' ')}'"
    if isinstance(value, date):
        return f"DATE '{value.isoformat()}'"
    if isinstance(value, bytes):
        hexed = "".join(f"\\x{b:02X}" for b in value)
        return f"'{hexed}'::BLOB"
    if isinstance(value, (list, tuple)):
        return f"[{', '.join(_str_value(v) for v in value)}]"
    return str(value)


class Field(DataModel):
    """Field.

    Attributes:
        path: Field path (column name).
    """

    path: str

    def __str__(self) -> str:
        return _quote_identifier(self.path)


class Function(DataModel):
    """Function.

    Attributes:
        name: Function name.
        args: Function args.
    """

    name: str
    args: list = []

    def __str__(self) -> str:
        from ._functions import QueryFunctionName

        if self.name == QueryFunctionName.IS_NULL:
            return f"({_str_value(self.args[0])} IS NULL)"
        if self.name == QueryFunctionName.IS_NOT_NULL:
            return f"({_str_value(self.args[0])} IS NOT NULL)"
        return f"{self.name}({', '.join(_str_value(a) for a in self.args)})"


class Comparison(DataModel):
    """Comparison expression.

    Attributes:
        lexpr: Left expression.
        op: Comparison op.
        rexpr: Right expression.
    """

    lexpr: Expression
    op: ComparisonOp
    rexpr: Expression

    def __str__(self) -> str:
        str = f"{_str_value(self.lexpr)} {self.op.sql} "
        if self.op == ComparisonOp.BETWEEN and isinstance(self.rexpr, list):
            str = f"""{str}{_str_value(
                self.rexpr[0])} AND {_str_value(self.rexpr[1])}"""
        elif (
            self.op == ComparisonOp.IN or self.op == ComparisonOp.NIN
        ) and isinstance(self.rexpr, list):
            str = f"""{str}({', '.join(_str_value(i) for i in self.rexpr)})"""
        else:
            str = str + _str_value(self.rexpr)
        return f"({str})"

    @staticmethod
    def reverse_op(op: ComparisonOp) -> ComparisonOp:
        if op == ComparisonOp.GT:
            return ComparisonOp.LT
        if op == ComparisonOp.GTE:
            return ComparisonOp.LTE
        if op == ComparisonOp.LT:
            return ComparisonOp.GT
        if op == ComparisonOp.LTE:
            return ComparisonOp.GTE
        return op


class ComparisonOp(str, Enum):
    """Comparison op.

    Attributes:
        LT: Less than.
        LTE: Less than equals.
        GT: Greater than.
        GTE: Greater than equals.
        EQ: Equals.
        NEQ: Not equals.
        IN: In.
        NIN: Not in.
        BETWEEN: Between.
    """

    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    EQ = "="
    NEQ = "!="
    IN = "in"
    NIN = "not in"
    BETWEEN = "between"

    @property
    def sql(self) -> str:
        if self in (ComparisonOp.IN, ComparisonOp.NIN, ComparisonOp.BETWEEN):
            return self.value.upper()
        return self.value


class And(DataModel):
    """And expression.

    Attributes:
        lexpr: Left expression.
        rexpr: Right expression.
    """

    lexpr: Expression
    rexpr: Expression

    def __str__(self) -> str:
        return f"({_str_value(self.lexpr)} AND {_str_value(self.rexpr)})"


class Or(DataModel):
    """Or expression.

    Attributes:
        lexpr: Left expression.
        rexpr: Right expression.
    """

    lexpr: Expression
    rexpr: Expression

    def __str__(self) -> str:
        return f"({_str_value(self.lexpr)} OR {_str_value(self.rexpr)})"


class Not(DataModel):
    """Not expression.

    Attributes:
        expr: Expression.
    """

    expr: Expression

    def __str__(self) -> str:
        return f"(NOT {_str_value(self.expr)})"


class OrderBy(DataModel):
    """Order by.

    Attributes:
        terms: Order by terms.
    """

    terms: list[OrderByTerm] = []

    def add_field(
        self,
        field: str,
        direction: OrderByDirection | None = None,
    ) -> OrderBy:
        self.terms.append(OrderByTerm(field=field, direction=direction))
        return self

    def __str__(self) -> str:
        return ", ".join([str(t) for t in self.terms])


class OrderByTerm(DataModel):
    """Order by term.

    Attributes:
        field: Order by field.
        direction: Order by direction.
    """

    field: str
    direction: OrderByDirection | None = None

    def __str__(self) -> str:
        str = self.field
        if self.direction:
            str = f"{str} {self.direction.value}"
        return str


class OrderByDirection(str, Enum):
    """Order by direction.

    Attributes:
        ASC: Ascending.
        DESC: Descending.
    """

    ASC = "asc"
    DESC = "desc"


Value = Union[str, int, float, bool, bytes, datetime, date, list, None]
Expression = Union[Comparison, And, Or, Not, Function, Field, Value]

Comparison.model_rebuild()
And.model_rebuild()
Or.model_rebuild()
Not.model_rebuild()
OrderBy.model_rebuild()
OrderByTerm.model_rebuild()
