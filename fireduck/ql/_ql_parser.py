import copy
from functools import lru_cache
from typing import Any

from lark import Lark, Token, Transformer
from lark.exceptions import LarkError

from fireduck.core.exceptions import ConfigError, ErrorCode, ScanError

from ._functions import QueryFunctionName
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
)

GRAMMAR = r"""
where: expr
order_by: order_term ("," order_term)*
order_term: field DIRECTION?

?expr: and_expr
    | expr _OR and_expr                         -> or_
?and_expr: not_expr
    | and_expr _AND not_expr                    -> and_
?not_expr: predicate
    | _NOT not_expr                             -> not_
?predicate: operand COMP_OP operand             -> comparison
    | operand _IS _NULL                         -> is_null
    | operand _IS _NOT _NULL                    -> is_not_null
    | operand _IN "(" value_list ")"            -> in_
    | operand _NOT _IN "(" value_list ")"       -> not_in
    | operand _BETWEEN operand _AND operand     -> between
    | "(" expr ")"

value_list: value ("," value)*
?operand: field | value
field: NAME | QUOTED_NAME
?value: STRING                                  -> string
    | NUMBER                                    -> number
    | _TRUE                                     -> true
    | _FALSE                                    -> false
    | _NULL                                     -> null
    | "[" [value ("," value)*] "]"              -> array

DIRECTION.2: /\b(asc|desc)\b/i
_OR.2: /\bor\b/i
_AND.2: /\band\b/i
_NOT.2: /\bnot\b/i
_IS.2: /\bis\b/i
_IN.2: /\bin\b/i
_BETWEEN.2: /\bbetween\b/i
_NULL.2: /\bnull\b/i
_TRUE.2: /\btrue\b/i
_FALSE.2: /\bfalse\b/i
COMP_OP: "<=" | ">=" | "!=" | "<>" | "==" | "=" | "<" | ">"
NAME: /[A-Za-z_][A-Za-z0-9_$]*/
QUOTED_NAME: /"(?:[^"]|"")*"/
STRING: /'(?:[^']|'')*'/
NUMBER: /-?\d+(\.\d+)?([eE][+-]?\d+)?/

%import common.WS
%ignore WS
"""

_OPS = {
    "=": ComparisonOp.EQ,
    "==": ComparisonOp.EQ,
    "!=": ComparisonOp.NEQ,
    "<>": ComparisonOp.NEQ,
    "<": ComparisonOp.LT,
    "<=": ComparisonOp.LTE,
    ">": ComparisonOp.GT,
    ">=": ComparisonOp.GTE,
}


class QLTransformer(Transformer):
    """Builds ql models from the lark parse tree."""

    def where(self, items):
        return items[0]

    def or_(self, items):
        return Or(lexpr=items[0], rexpr=items[1])

    def and_(self, items):
        return And(lexpr=items[0], rexpr=items[1])

    def not_(self, items):
        return Not(expr=items[0])

    def comparison(self, items):
        lexpr, op, rexpr = items
        return Comparison(lexpr=lexpr, op=_OPS[str(op)], rexpr=rexpr)

    def is_null(self, items):
        return Function(name=QueryFunctionName.IS_NULL, args=[items[0]])

    def is_not_null(self, items):
        return Function(name=QueryFunctionName.IS_NOT_NULL, args=[items[0]])

    def in_(self, items):
        return Comparison(lexpr=items[0], op=ComparisonOp.IN, rexpr=items[1])

    def not_in(self, items):
        return Comparison(lexpr=items[0], op=ComparisonOp.NIN, rexpr=items[1])

    def between(self, items):
        return Comparison(
            lexpr=items[0],
            op=ComparisonOp.BETWEEN,
            rexpr=[items[1], items[2]],
        )

    def value_list(self, items):
        return list(items)

    def field(self, items):
        token: Token = items[0]
        name = str(token)
        if token.type == "QUOTED_NAME":
            name = name[1:-1].replace('""', '"')
        return Field(path=name)

    def string(self, items):
        return str(items[0])[1:-1].replace("''", "'")

    def number(self, items):
        text = str(items[0])
        if any(c in text for c in ".eE"):
            return float(text)
        return int(text)

    def true(self, items):
        return True

    def false(self, items):
        return False

    def null(self, items):
        return None

    def array(self, items):
        if items == [None]:
            return []
        return list(items)

    def order_by(self, items):
        return OrderBy(terms=list(items))

    def order_term(self, items):
        field: Field = items[0]
        direction = OrderByDirection.ASC
        if len(items) > 1 and str(items[1]).lower() == "desc":
            direction = OrderByDirection.DESC
        return OrderByTerm(field=field.path, direction=direction)


_parser = Lark(GRAMMAR, start=["where", "order_by"], parser="lalr")


class QLParser:
    @lru_cache
    @staticmethod
    def parse(str: str, type: str) -> Any:
        tree = _parser.parse(str, start=type)
        return QLTransformer().transform(tree)

    @staticmethod
    def parse_where(str: str) -> Expression:
        try:
            return copy.deepcopy(QLParser.parse(str, "where"))
        except LarkError as e:
            raise ConfigError(
                f"Could not parse filter {str!r}: {e}",
                ErrorCode.CONFIG_INVALID_OPTION,
            ) from e

    @staticmethod
    def parse_order_by(str: str) -> OrderBy:
        try:
            return copy.deepcopy(QLParser.parse(str, "order_by"))
        except LarkError as e:
            raise ScanError(
                f"Invalid order_by {str!r}: {e}",
                ErrorCode.SCAN_INVALID_ORDER_BY,
            ) from e
