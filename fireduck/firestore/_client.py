from __future__ import annotations

import re
from typing import Any

import httpx

from fireduck.core._log_helper import get_logger
from fireduck.core.exceptions import (
    AuthError,
    BaseError,
    ErrorCode,
    ErrorContext,
    NetworkError,
    NotFoundError,
    RequestError,
    WriteError,
    error_for_status,
)
from fireduck.core.time import Time

from ._auth import CredentialKind, Credentials
from ._codec import ValueCodec
from ._index import IndexHelper
from ._models import (
    ArrayTransformKind,
    BatchWriteResult,
    Document,
    Index,
    ListResponse,
    ValueKind,
)
from ._settings import MAX_BATCH_SIZE, Settings

logger = get_logger(__name__)

MAX_ERROR_BODY = 500

_SIMPLE_FIELD_PATH = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")
_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "no address associated",
)
_SSL_MARKERS = ("ssl", "certificate", "tls")


def quote_field_path(name: str) -> str:
    """Quote a field name for use in masks and transforms."""
    if _SIMPLE_FIELD_PATH.match(name):
        return name
    escaped = name.replace("\\", "\\\\").replace("`", "\\`")
    return f"`{escaped}`"


class DocumentClient:
    """REST client for the documents and admin endpoints.

    The client holds no per-call state and may be shared across
    threads. Token refresh is serialized inside the credential.
    """

    credentials: Credentials
    settings: Settings
    nparams: dict[str, Any]

    _http: httpx.Client

    def __init__(
        self,
        credentials: Credentials,
        settings: Settings | None = None,
        nparams: dict[str, Any] = dict(),
    ):
        """Initialize.

        Args:
            credentials:
                Credential record to authenticate with.
            settings:
                Runtime settings. Defaults to Settings.from_env().
            nparams:
                Native params to httpx client.
        """
        self.credentials = credentials
        self.settings = settings if settings is not None else Settings.from_env()
        self.nparams = nparams
        self._http = httpx.Client(
            timeout=httpx.Timeout(
                self.settings.timeout, connect=self.settings.connect_timeout
            ),
            **nparams,
        )

    @property
    def database_url(self) -> str:
        return (
            f"{self.settings.scheme}://{self.settings.host}/v1/"
            f"projects/{self.credentials.project_id}/"
            f"databases/{self.credentials.database_id}"
        )

    def documents_url(self, path: str = "") -> str:
        if path:
            return f"{self.database_url}/documents/{path}"
        return f"{self.database_url}/documents"

    def document_name(self, path: str) -> str:
        return self.credentials.document_name(path)

    def _context(self, operation: str, **kwargs) -> ErrorContext:
        return ErrorContext(
            operation=operation,
            project_id=self.credentials.project_id,
            database_id=self.credentials.database_id,
            **kwargs,
        )

    def _send(
        self,
        method: str,
        url: str,
        params: list[tuple[str, Any]],
        json: Any,
        context: ErrorContext,
    ) -> httpx.Response:
        token = self.credentials.ensure_token(self._http)
        headers = self.credentials.request_headers()
        all_params = list(params) + list(
            self.credentials.request_params().items()
        )
        start = Time.monotonic()
        try:
            response = self._http.request(
                method,
                url,
                params=all_params,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Request timed out: {e}", ErrorCode.NETWORK_TIMEOUT, context
            ) from e
        except httpx.ConnectError as e:
            raise NetworkError(
                f"Connection failed: {e}", self._connect_error_code(e), context
            ) from e
        except httpx.UnsupportedProtocol as e:
            raise RequestError(
                f"Invalid URL: {e}", ErrorCode.REQUEST_INVALID_URL, context
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(
                f"Request failed: {e}", ErrorCode.NETWORK_REQUEST_FAILED, context
            ) from e
        except httpx.InvalidURL as e:
            raise RequestError(
                f"Invalid URL: {e}", ErrorCode.REQUEST_INVALID_URL, context
            ) from e
        logger.debug(
            "%s %s -> %s (%.1f ms)",
            method,
            url,
            response.status_code,
            (Time.monotonic() - start) * 1000,
        )
        if (
            response.status_code == 401
            and self.credentials.kind == CredentialKind.SERVICE_ACCOUNT
        ):
            self.credentials.invalidate(token)
        return response

    @staticmethod
    def _connect_error_code(error: httpx.ConnectError) -> ErrorCode:
        text = str(error).lower()
        if "refused" in text:
            return ErrorCode.NETWORK_CONNECTION_REFUSED
        if any(marker in text for marker in _DNS_MARKERS):
            return ErrorCode.NETWORK_DNS_RESOLUTION
        if any(marker in text for marker in _SSL_MARKERS):
            return ErrorCode.NETWORK_SSL_ERROR
        return ErrorCode.NETWORK_REQUEST_FAILED

    def _request(
        self,
        method: str,
        url: str,
        context: ErrorContext,
        params: list[tuple[str, Any]] | None = None,
        json: Any = None,
    ) -> Any:
        params = params or []
        context = context.with_updates(http_method=method, url=url)
        response = self._send(method, url, params, json, context)
        if (
            response.status_code == 401
            and self.credentials.kind == CredentialKind.SERVICE_ACCOUNT
        ):
            logger.debug("Token rejected, refreshing and retrying once")
            response = self._send(method, url, params, json, context)
        if response.status_code >= 400:
            raise self.handle_http_error(response, context)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise RequestError(
                f"Response is not JSON: {e}",
                ErrorCode.REQUEST_RESPONSE_PARSE,
                context.with_response(response.status_code, response.text),
            ) from e

    def handle_http_error(
        self, response: httpx.Response, context: ErrorContext
    ) -> BaseError:
        body = response.text
        if len(body) > MAX_ERROR_BODY:
            body = body[:MAX_ERROR_BODY] + "..."
        message = self._error_message(response)
        context = context.with_response(response.status_code, body)
        if response.status_code == 401:
            code = (
                ErrorCode.AUTH_API_KEY_INVALID
                if self.credentials.kind == CredentialKind.API_KEY
                else ErrorCode.AUTH_TOKEN_EXPIRED
            )
            error: BaseError = AuthError(message, code, context)
        else:
            error = error_for_status(response.status_code, message, context)
        if response.status_code >= 500:
            logger.error("%s", error)
        else:
            logger.debug("%s", error)
        return error

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, list) and body:
            body = body[0]
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            error = body["error"]
            status = error.get("status")
            message = error.get("message") or response.reason_phrase
            return f"{status}: {message}" if status else message
        return f"HTTP {response.status_code} {response.reason_phrase}"

    def list(
        self,
        path: str,
        page_size: int,
        order_by: str | None = None,
        page_token: str | None = None,
    ) -> ListResponse:
        """List one page of a collection.

        Args:
            path:
                Collection path.
            page_size:
                Maximum documents in the page.
            order_by:
                Order by clause, e.g. "age desc".
            page_token:
                Continuation token from the previous page.
        """
        params: list[tuple[str, Any]] = [("pageSize", page_size)]
        if order_by:
            params.append(("orderBy", order_by))
        if page_token:
            params.append(("pageToken", page_token))
        body = self._request(
            "GET",
            self.documents_url(path),
            self._context("list", collection=path),
            params=params,
        )
        return ListResponse(
            documents=[Document.parse(d) for d in body.get("documents", [])],
            next_page_token=body.get("nextPageToken") or None,
        )

    def get(self, path: str) -> Document:
        context = self._context("get", document_id=path)
        try:
            body = self._request("GET", self.documents_url(path), context)
        except NotFoundError as e:
            raise NotFoundError(
                f"Document {path} not found",
                ErrorCode.NOT_FOUND_DOCUMENT,
                e.context,
            ) from e
        return Document.parse(body)

    def run_query(
        self, parent_path: str, structured_query: dict
    ) -> list[Document]:
        """Run a structured query.

        Args:
            parent_path:
                Document path owning the queried collection, empty for
                root collections and collection groups.
            structured_query:
                Structured query JSON.
        """
        url = f"{self.documents_url(parent_path)}:runQuery"
        logger.debug("runQuery %s: %s", parent_path or "/", structured_query)
        collection = None
        sources = structured_query.get("from") or []
        if sources:
            collection = sources[0].get("collectionId")
        body = self._request(
            "POST",
            url,
            self._context("run_query", collection=collection),
            json={"structuredQuery": structured_query},
        )
        if isinstance(body, dict):
            body = [body]
        return [
            Document.parse(item["document"])
            for item in body
            if isinstance(item, dict) and item.get("document")
        ]

    def create(
        self,
        parent_path: str,
        fields: dict[str, Any],
        document_id: str | None = None,
    ) -> Document:
        """Create a document in a collection.

        Args:
            parent_path:
                Collection path.
            fields:
                Encoded field envelopes.
            document_id:
                Document id. The service assigns one when omitted.
        """
        params: list[tuple[str, Any]] = []
        if document_id:
            params.append(("documentId", document_id))
        body = self._request(
            "POST",
            self.documents_url(parent_path),
            self._context(
                "create", collection=parent_path, document_id=document_id
            ),
            params=params,
            json={"fields": fields},
        )
        return Document.parse(body)

    def update(
        self,
        doc_path: str,
        fields: dict[str, Any],
        field_mask: list[str] | None = None,
        must_exist: bool = False,
    ) -> Document:
        """Patch a document.

        Args:
            doc_path:
                Document path below /documents/.
            fields:
                Encoded field envelopes.
            field_mask:
                Fields to update. Without a mask the document is
                replaced.
            must_exist:
                Fail with not found instead of creating the document.
        """
        params: list[tuple[str, Any]] = []
        for name in field_mask or []:
            params.append(("updateMask.fieldPaths", quote_field_path(name)))
        if must_exist:
            params.append(("currentDocument.exists", "true"))
        body = self._request(
            "PATCH",
            self.documents_url(doc_path),
            self._context("update", document_id=doc_path),
            params=params,
            json={"fields": fields},
        )
        return Document.parse(body)

    def delete(self, doc_path: str, must_exist: bool = False) -> None:
        params: list[tuple[str, Any]] = []
        if must_exist:
            params.append(("currentDocument.exists", "true"))
        self._request(
            "DELETE",
            self.documents_url(doc_path),
            self._context("delete", document_id=doc_path),
            params=params,
        )

    def batch_write(self, writes: list[dict]) -> BatchWriteResult:
        """Apply writes through the non-atomic batch endpoint.

        Args:
            writes:
                Write JSON objects, at most 500.

        Returns:
            Per-write status codes.
        """
        context = self._context("batch_write")
        if not writes:
            raise WriteError(
                "Batch write needs at least one write",
                ErrorCode.WRITE_BATCH_EMPTY,
                context,
            )
        if len(writes) > MAX_BATCH_SIZE:
            raise WriteError(
                f"Batch write takes at most {MAX_BATCH_SIZE} writes, "
                f"got {len(writes)}",
                ErrorCode.WRITE_BATCH_TOO_LARGE,
                context,
            )
        body = self._request(
            "POST",
            f"{self.documents_url()}:batchWrite",
            context,
            json={"writes": writes},
        )
        statuses = body.get("status") or []
        if not statuses:
            return BatchWriteResult(
                status_codes=[0] * len(writes), messages=[None] * len(writes)
            )
        return BatchWriteResult(
            status_codes=[int(s.get("code") or 0) for s in statuses],
            messages=[s.get("message") for s in statuses],
        )

    def commit(self, writes: list[dict]) -> dict:
        """Apply writes atomically through the commit endpoint."""
        return self._request(
            "POST",
            f"{self.documents_url()}:commit",
            self._context("commit"),
            json={"writes": writes},
        )

    def array_transform(
        self,
        doc_path: str,
        field: str,
        elements: list[dict],
        kind: ArrayTransformKind,
    ) -> None:
        """Apply an array transform to one field of a document.

        Union and remove run server side. Append reads the document,
        extends the array and writes it back; this is not atomic.

        Args:
            doc_path:
                Document path below /documents/.
            field:
                Array field name.
            elements:
                Encoded element envelopes.
            kind:
                union, remove or append.
        """
        if kind == ArrayTransformKind.APPEND:
            document = self.get(doc_path)
            current = document.fields.get(field)
            values: list[dict] = []
            if ValueCodec.kind_of(current) == ValueKind.ARRAY:
                values = list(ValueCodec.array_values(current))
            values.extend(elements)
            self.update(
                doc_path,
                {field: {"arrayValue": {"values": values}}},
                field_mask=[field],
                must_exist=True,
            )
            return
        transform_key = (
            "appendMissingElements"
            if kind == ArrayTransformKind.UNION
            else "removeAllFromArray"
        )
        write = {
            "transform": {
                "document": self.document_name(doc_path),
                "fieldTransforms": [
                    {
                        "fieldPath": quote_field_path(field),
                        transform_key: {"values": elements},
                    }
                ],
            },
            "currentDocument": {"exists": True},
        }
        try:
            self.commit([write])
        except NotFoundError as e:
            raise NotFoundError(
                f"Document {doc_path} not found",
                ErrorCode.NOT_FOUND_DOCUMENT,
                e.context,
            ) from e

    def fetch_indexes(self, collection_id: str) -> list[Index]:
        """Composite and explicit indexes of a collection group."""
        url = f"{self.database_url}/collectionGroups/{collection_id}/indexes"
        context = self._context("fetch_indexes", collection=collection_id)
        indexes: list[Index] = []
        page_token = None
        while True:
            params = [("pageToken", page_token)] if page_token else []
            body = self._request("GET", url, context, params=params)
            for item in body.get("indexes", []):
                index = IndexHelper.parse_index(item)
                if index is not None:
                    indexes.append(index)
            page_token = body.get("nextPageToken")
            if not page_token:
                break
        return indexes

    def fetch_field_overrides(self, collection_id: str) -> list[Index]:
        """Single-field indexes from explicit field overrides."""
        url = f"{self.database_url}/collectionGroups/{collection_id}/fields"
        context = self._context("fetch_field_overrides", collection=collection_id)
        indexes: list[Index] = []
        page_token = None
        while True:
            params: list[tuple[str, Any]] = [
                ("filter", "indexConfig.usesAncestorConfig=false")
            ]
            if page_token:
                params.append(("pageToken", page_token))
            body = self._request("GET", url, context, params=params)
            for item in body.get("fields", []):
                indexes.extend(IndexHelper.parse_field_override(item))
            page_token = body.get("nextPageToken")
            if not page_token:
                break
        return indexes

    def check_default_single_field(self) -> bool:
        """Whether automatic single-field indexing is enabled.

        Failures answer True, the service default.
        """
        url = f"{self.database_url}/collectionGroups/__default__/fields/*"
        try:
            body = self._request(
                "GET", url, self._context("check_default_indexes")
            )
        except BaseError as e:
            logger.debug(
                "Could not read default index config, assuming enabled: %s", e
            )
            return True
        indexes = (body.get("indexConfig") or {}).get("indexes")
        enabled = isinstance(indexes, list) and len(indexes) > 0
        logger.debug("Default single-field indexing enabled: %s", enabled)
        return enabled

    def close(self):
        self._http.close()

    def __enter__(self) -> DocumentClient:
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
