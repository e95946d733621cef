from .core import (
    AuthError,
    BaseError,
    ConfigError,
    ErrorCategory,
    ErrorCode,
    ErrorContext,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RequestError,
    ScanError,
    TypeConversionError,
    WriteError,
    configure_logging,
)
from .engine import FireDuck
from .firestore import (
    CollectionRef,
    Column,
    ConjunctionAndFilter,
    ConjunctionOrFilter,
    ConstantFilter,
    Credentials,
    DocumentClient,
    InFilter,
    IsNotNullFilter,
    IsNullFilter,
    LogicalType,
    SecretStore,
    Settings,
)

__all__ = [
    "AuthError",
    "BaseError",
    "CollectionRef",
    "Column",
    "ConfigError",
    "ConjunctionAndFilter",
    "ConjunctionOrFilter",
    "ConstantFilter",
    "Credentials",
    "DocumentClient",
    "ErrorCategory",
    "ErrorCode",
    "ErrorContext",
    "FireDuck",
    "InFilter",
    "IsNotNullFilter",
    "IsNullFilter",
    "LogicalType",
    "NetworkError",
    "NotFoundError",
    "PermissionDeniedError",
    "RequestError",
    "ScanError",
    "SecretStore",
    "Settings",
    "TypeConversionError",
    "WriteError",
    "configure_logging",
]
