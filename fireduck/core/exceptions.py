from __future__ import annotations

__all__ = [
    "AuthError",
    "BaseError",
    "ConfigError",
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
    "TypeConversionError",
    "WriteError",
    "error_for_status",
    "format_error_code",
    "is_transient",
]

from enum import IntEnum

from .data_model import DataModel

MAX_RESPONSE_BODY = 1024
MAX_URL_LENGTH = 100


class ErrorCategory(IntEnum):
    """Error category, stored in the top byte of every error code."""

    AUTH = 0x01
    PERMISSION = 0x02
    NOT_FOUND = 0x03
    NETWORK = 0x04
    REQUEST = 0x05
    CONFIG = 0x06
    TYPE = 0x07
    WRITE = 0x08
    SCAN = 0x09
    INDEX = 0x0A
    INTERNAL = 0xFF


class ErrorCode(IntEnum):
    """Stable error codes.

    Layout is ``category << 24 | subcategory << 16 | specific``. Codes are
    never reassigned.
    """

    # auth
    AUTH_CREDENTIALS_MISSING = 0x01010001
    AUTH_SERVICE_ACCOUNT_FILE = 0x01010002
    AUTH_SERVICE_ACCOUNT_PARSE = 0x01010003
    AUTH_SERVICE_ACCOUNT_FIELDS = 0x01010004
    AUTH_PRIVATE_KEY_INVALID = 0x01020001
    AUTH_JWT_CREATION_FAILED = 0x01020002
    AUTH_SIGNING_FAILED = 0x01020003
    AUTH_TOKEN_EXCHANGE_FAILED = 0x01030001
    AUTH_TOKEN_PARSE_FAILED = 0x01030002
    AUTH_TOKEN_MISSING = 0x01030003
    AUTH_TOKEN_EXPIRED = 0x01030004
    AUTH_API_KEY_INVALID = 0x01040001
    AUTH_INVALID_TYPE = 0x01040002

    # permission
    PERMISSION_DENIED = 0x02010001
    PERMISSION_INSUFFICIENT = 0x02010002
    PERMISSION_SECURITY_RULES = 0x02010003

    # not found
    NOT_FOUND_DOCUMENT = 0x03010001
    NOT_FOUND_COLLECTION = 0x03010002
    NOT_FOUND_PROJECT = 0x03010003
    NOT_FOUND_DATABASE = 0x03010004

    # network
    NETWORK_REQUEST_INIT = 0x04010001
    NETWORK_REQUEST_FAILED = 0x04010002
    NETWORK_TIMEOUT = 0x04010003
    NETWORK_DNS_RESOLUTION = 0x04010004
    NETWORK_CONNECTION_REFUSED = 0x04010005
    NETWORK_SSL_ERROR = 0x04020001

    # request
    REQUEST_INVALID_URL = 0x05010001
    REQUEST_BAD_REQUEST = 0x05010002
    REQUEST_RESPONSE_PARSE = 0x05020001
    REQUEST_UNEXPECTED_FORMAT = 0x05020002
    REQUEST_RATE_LIMITED = 0x05030001
    REQUEST_QUOTA_EXCEEDED = 0x05030002
    REQUEST_SERVER_ERROR = 0x05040001
    REQUEST_UNEXPECTED_STATUS = 0x05040002

    # config
    CONFIG_MISSING_PROJECT_ID = 0x06010001
    CONFIG_MISSING_CREDENTIALS = 0x06010002
    CONFIG_MISSING_API_KEY = 0x06010003
    CONFIG_SECRET_INVALID = 0x06020001
    CONFIG_SECRET_AUTH_TYPE = 0x06020002
    CONFIG_INVALID_OPTION = 0x06030001

    # type
    TYPE_CONVERSION_FAILED = 0x07010001
    TYPE_TIMESTAMP_PARSE = 0x07010002
    TYPE_INTEGER_OVERFLOW = 0x07010003
    TYPE_DOUBLE_PARSE = 0x07010004
    TYPE_UNKNOWN_ENVELOPE = 0x07020001
    TYPE_UNSUPPORTED = 0x07020002
    TYPE_NESTED_ARRAY = 0x07020003

    # write
    WRITE_FIELD_NAME_INVALID = 0x08010001
    WRITE_FIELD_VALUE_INVALID = 0x08010002
    WRITE_DOCUMENT_ID_INVALID = 0x08010003
    WRITE_BATCH_EMPTY = 0x08020001
    WRITE_BATCH_TOO_LARGE = 0x08020002
    WRITE_BATCH_PARTIAL_FAILURE = 0x08020003
    WRITE_UPDATE_NO_FIELDS = 0x08030001
    WRITE_INSERT_FAILED = 0x08040001
    WRITE_UPDATE_FAILED = 0x08040002
    WRITE_DELETE_FAILED = 0x08040003
    WRITE_CANCELLED = 0x08040004
    WRITE_ALREADY_EXISTS = 0x08040005

    # scan
    SCAN_COLLECTION_REQUIRED = 0x09010001
    SCAN_SCHEMA_INFERENCE = 0x09010002
    SCAN_INVALID_LIMIT = 0x09010003
    SCAN_INVALID_ORDER_BY = 0x09010004
    SCAN_CANCELLED = 0x09010005
    SCAN_INVALID_PROJECTION = 0x09010006

    # index
    INDEX_FETCH_FAILED = 0x0A010001
    INDEX_PARSE_FAILED = 0x0A010002
    INDEX_ADMIN_API_UNAVAILABLE = 0x0A010003
    INDEX_QUERY_REJECTED = 0x0A020001
    INDEX_FILTER_REJECTED = 0x0A020002

    # internal
    INTERNAL_UNEXPECTED = 0xFF000001

    @property
    def category(self) -> ErrorCategory:
        return ErrorCategory((self.value >> 24) & 0xFF)


TRANSIENT_CODES = frozenset(
    [
        ErrorCode.NETWORK_TIMEOUT,
        ErrorCode.NETWORK_CONNECTION_REFUSED,
        ErrorCode.REQUEST_RATE_LIMITED,
        ErrorCode.REQUEST_SERVER_ERROR,
    ]
)


def format_error_code(code: ErrorCode | int) -> str:
    return f"FS_{int(code):08X}"


def is_transient(code: ErrorCode | int) -> bool:
    return code in TRANSIENT_CODES


class ErrorContext(DataModel):
    """Context attached to a raised error.

    Attributes:
        operation: Operation name, e.g. list or batch_write.
        collection: Collection path.
        document_id: Document id or path.
        project_id: Project id.
        database_id: Database id.
        http_method: HTTP method.
        url: Request URL.
        http_status: HTTP status code.
        response_body: Response body, truncated.
        batch_index: Index of the failing operation in a batch.
    """

    operation: str | None = None
    collection: str | None = None
    document_id: str | None = None
    project_id: str | None = None
    database_id: str | None = None
    http_method: str | None = None
    url: str | None = None
    http_status: int | None = None
    response_body: str | None = None
    batch_index: int | None = None

    def with_response(
        self, http_status: int, response_body: str | None
    ) -> ErrorContext:
        if response_body is not None and len(response_body) > MAX_RESPONSE_BODY:
            response_body = response_body[:MAX_RESPONSE_BODY] + "..."
        return self.with_updates(
            http_status=http_status, response_body=response_body
        )

    def __str__(self) -> str:
        parts = []
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.collection:
            parts.append(f"collection={self.collection}")
        if self.document_id:
            parts.append(f"document_id={self.document_id}")
        if self.http_method:
            parts.append(f"method={self.http_method}")
        if self.http_status is not None:
            parts.append(f"status={self.http_status}")
        if self.url:
            url = self.url
            if len(url) > MAX_URL_LENGTH:
                url = url[:MAX_URL_LENGTH] + "..."
            parts.append(f"url={url}")
        if self.project_id:
            parts.append(f"project={self.project_id}")
        if self.database_id:
            parts.append(f"database={self.database_id}")
        if self.batch_index is not None:
            parts.append(f"batch_index={self.batch_index}")
        if not parts:
            return ""
        return "{" + ", ".join(parts) + "}"


class BaseError(Exception):
    status_code: int | None = None
    default_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED

    code: ErrorCode
    message: str
    context: ErrorContext

    def __init__(
        self,
        message: str = "",
        code: ErrorCode | None = None,
        context: ErrorContext | None = None,
    ):
        self.code = code if code is not None else self.default_code
        self.message = message
        self.context = context if context is not None else ErrorContext()
        super().__init__(self.formatted_message)

    @property
    def category(self) -> ErrorCategory:
        return self.code.category

    @property
    def is_transient(self) -> bool:
        return is_transient(self.code)

    @property
    def formatted_message(self) -> str:
        text = f"[{format_error_code(self.code)}] {self.message}"
        context = str(self.context)
        if context:
            text = f"{text} {context}"
        return text

    def __str__(self) -> str:
        return self.formatted_message


class AuthError(BaseError):
    status_code = 401
    default_code = ErrorCode.AUTH_TOKEN_EXPIRED


class PermissionDeniedError(BaseError):
    status_code = 403
    default_code = ErrorCode.PERMISSION_DENIED


class NotFoundError(BaseError):
    status_code = 404
    default_code = ErrorCode.NOT_FOUND_DOCUMENT


class NetworkError(BaseError):
    status_code = 503
    default_code = ErrorCode.NETWORK_REQUEST_FAILED


class RequestError(BaseError):
    status_code = 400
    default_code = ErrorCode.REQUEST_UNEXPECTED_STATUS


class ConfigError(BaseError):
    status_code = 400
    default_code = ErrorCode.CONFIG_MISSING_CREDENTIALS


class TypeConversionError(BaseError):
    status_code = 400
    default_code = ErrorCode.TYPE_CONVERSION_FAILED


class WriteError(BaseError):
    status_code = 400
    default_code = ErrorCode.WRITE_UPDATE_FAILED


class ScanError(BaseError):
    status_code = 400
    default_code = ErrorCode.SCAN_SCHEMA_INFERENCE


class IndexMetadataError(BaseError):
    status_code = 500
    default_code = ErrorCode.INDEX_FETCH_FAILED


class InternalError(BaseError):
    status_code = 500
    default_code = ErrorCode.INTERNAL_UNEXPECTED


def error_for_status(
    status_code: int,
    message: str,
    context: ErrorContext | None = None,
) -> BaseError:
    if status_code == 400:
        return RequestError(message, ErrorCode.REQUEST_BAD_REQUEST, context)
    elif status_code == 401:
        return AuthError(message, ErrorCode.AUTH_TOKEN_EXPIRED, context)
    elif status_code == 403:
        return PermissionDeniedError(
            message, ErrorCode.PERMISSION_DENIED, context
        )
    elif status_code == 404:
        return NotFoundError(message, ErrorCode.NOT_FOUND_DOCUMENT, context)
    elif status_code == 409:
        return WriteError(message, ErrorCode.WRITE_ALREADY_EXISTS, context)
    elif status_code == 429:
        return RequestError(message, ErrorCode.REQUEST_RATE_LIMITED, context)
    elif status_code >= 500:
        return RequestError(message, ErrorCode.REQUEST_SERVER_ERROR, context)
    return RequestError(
        f"{status_code}: {message}", ErrorCode.REQUEST_UNEXPECTED_STATUS, context
    )
