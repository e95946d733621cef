# type: ignore
import json
from functools import cmp_to_key, lru_cache
from typing import Any

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from fireduck.firestore import (
    Credentials,
    DocumentClient,
    Settings,
    ValueCodec,
    ValueKind,
)

PROJECT = "test-project"
DATABASE = "(default)"
API_KEY = "test-api-key"
READ_TIME = "2024-01-01T00:00:00.000000Z"
TOKEN_URL = "https://oauth2.googleapis.com/token"
CLIENT_EMAIL = "loader@test-project.iam.gserviceaccount.com"
KEY_ID = "key-1"


@lru_cache(maxsize=1)
def rsa_key_pair() -> tuple[str, str]:
    """PEM private and public key, generated once per test run."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    public = (
        key.public_key()
        .public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )
    return private, public


def service_account_info(project: str = PROJECT) -> dict:
    return {
        "type": "service_account",
        "project_id": project,
        "private_key_id": KEY_ID,
        "private_key": rsa_key_pair()[0],
        "client_email": CLIENT_EMAIL,
        "token_uri": TOKEN_URL,
    }

_RANKS = {
    ValueKind.NULL: 0,
    ValueKind.BOOLEAN: 1,
    ValueKind.INTEGER: 2,
    ValueKind.DOUBLE: 2,
    ValueKind.TIMESTAMP: 3,
    ValueKind.STRING: 4,
    ValueKind.BYTES: 5,
    ValueKind.REFERENCE: 6,
    ValueKind.GEOPOINT: 7,
    ValueKind.ARRAY: 8,
    ValueKind.VECTOR: 9,
    ValueKind.MAP: 10,
}


def _sort_value(envelope: dict) -> tuple:
    kind = ValueCodec.kind_of(envelope)
    value = ValueCodec.to_python(envelope)
    if kind in (ValueKind.ARRAY, ValueKind.VECTOR):
        value = tuple(
            _sort_value(v)
            for v in (
                ValueCodec.array_values(envelope)
                if kind == ValueKind.ARRAY
                else ValueCodec.vector_values(envelope)
            )
        )
    elif kind in (ValueKind.MAP, ValueKind.GEOPOINT):
        value = json.dumps(value, sort_keys=True, default=str)
    elif kind == ValueKind.NULL:
        value = 0
    return (_RANKS[kind], value)


def _cmp(a: tuple, b: tuple) -> int:
    return (a > b) - (a < b)


def _unquote(path: str) -> str:
    if path.startswith("`") and path.endswith("`"):
        return path[1:-1].replace("\\`", "`").replace("\\\\", "\\")
    return path


class FakeFirestore:
    """In-process stand-in for the Firestore REST surface."""

    def __init__(self, project: str = PROJECT, database: str = DATABASE):
        self.project = project
        self.database = database
        self.codec = ValueCodec()
        self.documents = dict()
        self.indexes = dict()
        self.field_overrides = dict()
        self.default_indexes_enabled = True
        self.failures = dict()
        self.batch_statuses = None
        self.rejected_tokens = set()
        self.api_key = None
        self.requests = []
        self.tokens_issued = 0
        self.assertions = []
        self._next_id = 0

    # data helpers

    def add(self, path: str, **values: Any) -> dict:
        return self.add_raw(
            path, {k: self.codec.encode(v) for k, v in values.items()}
        )

    def add_raw(self, path: str, fields: dict) -> dict:
        self.documents[path] = dict(fields)
        return self.documents[path]

    def values(self, path: str) -> dict | None:
        fields = self.documents.get(path)
        if fields is None:
            return None
        return {k: ValueCodec.to_python(v) for k, v in fields.items()}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, operation: str) -> list[httpx.Request]:
        return [r for r in self.requests if self._operation(r) == operation]

    def client(self, credentials: Credentials | None = None, **settings) -> DocumentClient:
        if credentials is None:
            credentials = Credentials.from_api_key(
                self.project, API_KEY, database_id=self.database
            )
        return DocumentClient(
            credentials,
            Settings(**settings),
            nparams={"transport": self.transport()},
        )

    def name(self, path: str) -> str:
        return f"projects/{self.project}/databases/{self.database}/documents/{path}"

    def _relative(self, name: str) -> str:
        return name.split("/documents/", 1)[1]

    def _document(self, path: str) -> dict:
        return {
            "name": self.name(path),
            "fields": self.documents[path],
            "createTime": READ_TIME,
            "updateTime": READ_TIME,
        }

    # routing

    def _split(self, request: httpx.Request) -> str:
        segments = request.url.path.split("/")
        return "/".join(segments[6:])

    def _operation(self, request: httpx.Request) -> str:
        if str(request.url).startswith(TOKEN_URL):
            return "token"
        rest = self._split(request)
        if rest.endswith(":runQuery"):
            return "run_query"
        if rest.endswith(":batchWrite"):
            return "batch_write"
        if rest.endswith(":commit"):
            return "commit"
        if rest.startswith("collectionGroups/__default__/fields"):
            return "default_fields"
        if rest.startswith("collectionGroups/") and rest.endswith("/indexes"):
            return "indexes"
        if rest.startswith("collectionGroups/") and rest.endswith("/fields"):
            return "fields"
        path = rest[len("documents/") :] if rest.startswith("documents/") else ""
        segments = path.split("/") if path else []
        if request.method == "GET":
            return "list" if len(segments) % 2 == 1 else "get"
        if request.method == "POST":
            return "create"
        if request.method == "PATCH":
            return "update"
        if request.method == "DELETE":
            return "delete"
        return "unknown"

    @staticmethod
    def error(status: int, grpc_status: str, message: str) -> httpx.Response:
        return httpx.Response(
            status,
            json={
                "error": {
                    "code": status,
                    "message": message,
                    "status": grpc_status,
                }
            },
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        operation = self._operation(request)
        if operation == "token":
            return self._token(request)
        failure = self._failure(operation, request)
        if failure is not None:
            return failure
        auth = self._check_auth(request)
        if auth is not None:
            return auth
        rest = self._split(request)
        path = rest[len("documents/") :] if rest.startswith("documents/") else ""
        if operation == "run_query":
            parent = rest[: -len(":runQuery")]
            parent = parent[len("documents") :].strip("/")
            return self._run_query(parent, json.loads(request.content))
        if operation == "batch_write":
            return self._batch_write(json.loads(request.content))
        if operation == "commit":
            return self._commit(json.loads(request.content))
        if operation == "indexes":
            collection_id = rest.split("/")[1]
            return httpx.Response(
                200, json={"indexes": self.indexes.get(collection_id, [])}
            )
        if operation == "fields":
            collection_id = rest.split("/")[1]
            return httpx.Response(
                200, json={"fields": self.field_overrides.get(collection_id, [])}
            )
        if operation == "default_fields":
            indexes = []
            if self.default_indexes_enabled:
                indexes = [
                    {"fields": [{"order": "ASCENDING"}], "queryScope": "COLLECTION"}
                ]
            return httpx.Response(
                200,
                json={
                    "name": "collectionGroups/__default__/fields/*",
                    "indexConfig": {"indexes": indexes},
                },
            )
        if operation == "list":
            return self._list(path, request.url.params)
        if operation == "get":
            if path not in self.documents:
                return self.error(404, "NOT_FOUND", f"No document to get: {path}")
            return httpx.Response(200, json=self._document(path))
        if operation == "create":
            return self._create(path, request)
        if operation == "update":
            return self._update(path, request)
        if operation == "delete":
            return self._delete(path, request.url.params)
        return self.error(400, "INVALID_ARGUMENT", f"Unsupported {request.url}")

    def _failure(self, operation: str, request: httpx.Request):
        failure = self.failures.get(operation)
        if failure is None and operation == "run_query":
            body = json.loads(request.content)
            if body.get("structuredQuery", {}).get("where"):
                failure = self.failures.get("filtered_query")
        if failure is None:
            return None
        if isinstance(failure, Exception):
            raise failure
        if failure == 403:
            return self.error(403, "PERMISSION_DENIED", "Missing permissions")
        if failure == 404:
            return self.error(404, "NOT_FOUND", "Not found")
        return self.error(failure, "INTERNAL", "Failure")

    def _check_auth(self, request: httpx.Request):
        header = request.headers.get("Authorization", "")
        if header.startswith("Bearer "):
            if header[len("Bearer ") :] in self.rejected_tokens:
                return self.error(
                    401, "UNAUTHENTICATED", "Request had invalid credentials"
                )
            return None
        if self.api_key is not None and request.url.params.get("key") != self.api_key:
            return self.error(401, "UNAUTHENTICATED", "API key not valid")
        return None

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(httpx.QueryParams(request.content.decode()))
        self.assertions.append(form.get("assertion"))
        self.tokens_issued += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"token-{self.tokens_issued}",
                "expires_in": 3600,
                "token_type": "Bearer",
            },
        )

    # documents

    def _children(self, collection_path: str) -> list[str]:
        depth = len(collection_path.split("/")) + 1
        return sorted(
            p
            for p in self.documents
            if p.startswith(f"{collection_path}/") and len(p.split("/")) == depth
        )

    def _list(self, collection_path: str, params: httpx.QueryParams) -> httpx.Response:
        paths = self._children(collection_path)
        order_by = params.get("orderBy")
        if order_by:
            for term in reversed([t.strip() for t in order_by.split(",")]):
                parts = term.split()
                field = _unquote(parts[0])
                descending = len(parts) > 1 and parts[1].lower() == "desc"
                if field == "__name__":
                    paths.sort(reverse=descending)
                    continue
                paths = [p for p in paths if field in self.documents[p]]
                paths.sort(
                    key=lambda p: _sort_value(self.documents[p][field]),
                    reverse=descending,
                )
        page_size = int(params.get("pageSize", 20))
        offset = int(params.get("pageToken") or 0)
        page = paths[offset : offset + page_size]
        body = {"documents": [self._document(p) for p in page]}
        if len(page) == page_size:
            body["nextPageToken"] = str(offset + page_size)
        return httpx.Response(200, json=body)

    def _field(self, path: str, field: str) -> dict | None:
        if field == "__name__":
            return {"referenceValue": self.name(path)}
        return self.documents[path].get(_unquote(field))

    def _matches(self, path: str, where: dict) -> bool:
        if "compositeFilter" in where:
            composite = where["compositeFilter"]
            results = [self._matches(path, f) for f in composite["filters"]]
            return all(results) if composite["op"] == "AND" else any(results)
        if "unaryFilter" in where:
            unary = where["unaryFilter"]
            actual = self._field(path, unary["field"]["fieldPath"])
            is_null = ValueCodec.kind_of(actual) == ValueKind.NULL
            if unary["op"] == "IS_NULL":
                return actual is not None and is_null
            return actual is not None and not is_null
        field_filter = where["fieldFilter"]
        actual = self._field(path, field_filter["field"]["fieldPath"])
        if actual is None:
            return False
        op = field_filter["op"]
        value = field_filter["value"]
        left = _sort_value(actual)
        if op in ("IN", "NOT_IN"):
            found = any(
                left == _sort_value(v) for v in ValueCodec.array_values(value)
            )
            if op == "IN":
                return found
            return left[0] != 0 and not found
        right = _sort_value(value)
        if op == "EQUAL":
            return left == right
        if op == "NOT_EQUAL":
            return left[0] != 0 and left != right
        if left[0] != right[0]:
            return False
        return {
            "LESS_THAN": left < right,
            "LESS_THAN_OR_EQUAL": left <= right,
            "GREATER_THAN": left > right,
            "GREATER_THAN_OR_EQUAL": left >= right,
        }[op]

    def _run_query(self, parent: str, body: dict) -> httpx.Response:
        query = body["structuredQuery"]
        source = query["from"][0]
        collection_id = source["collectionId"]
        if source.get("allDescendants"):
            prefix = f"{parent}/" if parent else ""
            paths = sorted(
                p
                for p in self.documents
                if p.startswith(prefix) and p.split("/")[-2] == collection_id
            )
        else:
            collection_path = f"{parent}/{collection_id}" if parent else collection_id
            paths = self._children(collection_path)
        where = query.get("where")
        if where:
            paths = [p for p in paths if self._matches(p, where)]
        order_by = list(query.get("orderBy") or [])
        if not order_by or order_by[-1]["field"]["fieldPath"] != "__name__":
            direction = order_by[-1]["direction"] if order_by else "ASCENDING"
            order_by.append(
                {"field": {"fieldPath": "__name__"}, "direction": direction}
            )
        terms = [
            (t["field"]["fieldPath"], t.get("direction") == "DESCENDING")
            for t in order_by
        ]
        paths = [
            p for p in paths if all(self._field(p, f) is not None for f, _ in terms)
        ]

        def compare(a: str, b: str) -> int:
            for field, descending in terms:
                result = _cmp(
                    _sort_value(self._field(a, field)),
                    _sort_value(self._field(b, field)),
                )
                if result:
                    return -result if descending else result
            return 0

        paths.sort(key=cmp_to_key(compare))
        start_at = query.get("startAt")
        if start_at:
            cursor = start_at["values"]

            def after_cursor(path: str) -> bool:
                for (field, descending), value in zip(terms, cursor):
                    result = _cmp(
                        _sort_value(self._field(path, field)), _sort_value(value)
                    )
                    if result:
                        return (result < 0) if descending else (result > 0)
                return bool(start_at.get("before"))

            paths = [p for p in paths if after_cursor(p)]
        limit = query.get("limit")
        if limit is not None:
            paths = paths[:limit]
        if not paths:
            return httpx.Response(200, json=[{"readTime": READ_TIME}])
        return httpx.Response(
            200,
            json=[
                {"document": self._document(p), "readTime": READ_TIME}
                for p in paths
            ],
        )

    def _create(self, collection_path: str, request: httpx.Request) -> httpx.Response:
        document_id = request.url.params.get("documentId")
        if not document_id:
            self._next_id += 1
            document_id = f"auto{self._next_id:04d}"
        path = f"{collection_path}/{document_id}"
        if path in self.documents:
            return self.error(409, "ALREADY_EXISTS", f"Document already exists: {path}")
        self.documents[path] = dict(json.loads(request.content).get("fields", {}))
        return httpx.Response(200, json=self._document(path))

    def _apply_update(self, path: str, fields: dict, mask: list[str] | None):
        if mask is None:
            self.documents[path] = dict(fields)
            return
        current = self.documents.setdefault(path, {})
        for field in mask:
            name = _unquote(field)
            if name in fields:
                current[name] = fields[name]
            else:
                current.pop(name, None)

    def _update(self, path: str, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        if params.get("currentDocument.exists") == "true" and path not in self.documents:
            return self.error(404, "NOT_FOUND", f"No document to update: {path}")
        mask = params.get_list("updateMask.fieldPaths") or None
        fields = json.loads(request.content).get("fields", {})
        self._apply_update(path, fields, mask)
        return httpx.Response(200, json=self._document(path))

    def _delete(self, path: str, params: httpx.QueryParams) -> httpx.Response:
        if params.get("currentDocument.exists") == "true" and path not in self.documents:
            return self.error(404, "NOT_FOUND", f"No document to update: {path}")
        self.documents.pop(path, None)
        return httpx.Response(200, json={})

    def _apply_write(self, write: dict) -> dict:
        if "update" in write:
            path = self._relative(write["update"]["name"])
        elif "delete" in write:
            path = self._relative(write["delete"])
        else:
            path = self._relative(write["transform"]["document"])
        exists = (write.get("currentDocument") or {}).get("exists")
        if exists is True and path not in self.documents:
            return {"code": 5, "message": f"No document to update: {path}"}
        if "update" in write:
            mask = (write.get("updateMask") or {}).get("fieldPaths")
            self._apply_update(path, write["update"].get("fields", {}), mask)
        elif "delete" in write:
            self.documents.pop(path, None)
        else:
            self._apply_transform(path, write["transform"]["fieldTransforms"])
        return {}

    def _apply_transform(self, path: str, transforms: list[dict]):
        fields = self.documents.setdefault(path, {})
        for transform in transforms:
            name = _unquote(transform["fieldPath"])
            current = list(ValueCodec.array_values(fields.get(name) or {}))
            keys = [_sort_value(v) for v in current]
            if "appendMissingElements" in transform:
                for element in transform["appendMissingElements"]["values"]:
                    if _sort_value(element) not in keys:
                        current.append(element)
                        keys.append(_sort_value(element))
            else:
                removed = {
                    _sort_value(v) for v in transform["removeAllFromArray"]["values"]
                }
                current = [v for v in current if _sort_value(v) not in removed]
            fields[name] = {"arrayValue": {"values": current}}

    def _batch_write(self, body: dict) -> httpx.Response:
        writes = body["writes"]
        if self.batch_statuses is not None:
            statuses = [{"code": code} for code in self.batch_statuses(writes)]
            return httpx.Response(
                200, json={"writeResults": [{} for _ in writes], "status": statuses}
            )
        statuses = [self._apply_write(w) for w in writes]
        return httpx.Response(
            200,
            json={
                "writeResults": [{"updateTime": READ_TIME} for _ in writes],
                "status": statuses,
            },
        )

    def _commit(self, body: dict) -> httpx.Response:
        for write in body["writes"]:
            status = self._apply_write(write)
            if status.get("code") == 5:
                return self.error(404, "NOT_FOUND", status["message"])
        return httpx.Response(
            200,
            json={
                "writeResults": [{"updateTime": READ_TIME} for _ in body["writes"]],
                "commitTime": READ_TIME,
            },
        )
