from ._arrow import (
    ArrowBatchSink,
    arrow_schema,
    arrow_type,
    logical_type_from_arrow,
)
from ._session import FireDuck

__all__ = [
    "ArrowBatchSink",
    "FireDuck",
    "arrow_schema",
    "arrow_type",
    "logical_type_from_arrow",
]
