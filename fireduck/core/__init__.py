from ._log_helper import configure_logging, get_logger, warn
from .data_model import DataModel
from .exceptions import (
    AuthError,
    BaseError,
    ConfigError,
    ErrorCategory,
    ErrorCode,
    ErrorContext,
    IndexMetadataError,
    InternalError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RequestError,
    ScanError,
    TypeConversionError,
    WriteError,
)
from .time import Time

__all__ = [
    "AuthError",
    "BaseError",
    "ConfigError",
    "DataModel",
    "ErrorCategory",
    "ErrorCode",
    "ErrorContext",
    "IndexMetadataError",
    "InternalError",
    "NetworkError",
    "NotFoundError",
    "PermissionDeniedError",
    "RequestError",
    "ScanError",
    "Time",
    "TypeConversionError",
    "WriteError",
    "configure_logging",
    "get_logger",
    "warn",
]
