from ._functions import QueryFunction, QueryFunctionName
from ._models import (
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
    OrderByTerm,
    Value,
)
from ._ql_parser import QLParser

__all__ = [
    "And",
    "Comparison",
    "ComparisonOp",
    "Expression",
    "Field",
    "Function",
    "Not",
    "Or",
    "OrderBy",
    "OrderByDirection",
    "OrderByTerm",
    "QLParser",
    "QueryFunction",
    "QueryFunctionName",
    "Value",
]
