# type: ignore
import httpx
import pytest

from fireduck.core.exceptions import (
    ErrorCode,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RequestError,
    WriteError,
)
from fireduck.firestore import (
    ArrayTransformKind,
    Credentials,
    DocumentClient,
    Settings,
    quote_field_path,
)

from ._fake_firestore import API_KEY, PROJECT, FakeFirestore


@pytest.mark.parametrize(
    "status, error_type, code",
    [
        (400, RequestError, ErrorCode.REQUEST_BAD_REQUEST),
        (403, PermissionDeniedError, ErrorCode.PERMISSION_DENIED),
        (404, NotFoundError, ErrorCode.NOT_FOUND_DOCUMENT),
        (429, RequestError, ErrorCode.REQUEST_RATE_LIMITED),
        (500, RequestError, ErrorCode.REQUEST_SERVER_ERROR),
        (418, RequestError, ErrorCode.REQUEST_UNEXPECTED_STATUS),
    ],
)
def test_http_errors_are_mapped(status, error_type, code):
    fake = FakeFirestore()
    fake.failures["list"] = status
    with fake.client() as client:
        with pytest.raises(error_type) as e:
            client.list("users", 10)
    assert e.value.code == code
    context = e.value.context
    assert context.operation == "list"
    assert context.collection == "users"
    assert context.http_status == status
    assert context.http_method == "GET"
    assert context.project_id == PROJECT
    assert context.response_body


def test_error_message_carries_service_status():
    fake = FakeFirestore()
    fake.failures["list"] = 403
    with fake.client() as client:
        with pytest.raises(PermissionDeniedError) as e:
            client.list("users", 10)
    assert e.value.message == "PERMISSION_DENIED: Missing permissions"
    assert str(e.value).startswith("[FS_02010001] PERMISSION_DENIED")


@pytest.mark.parametrize(
    "error, code",
    [
        (httpx.ConnectError("connection refused"), ErrorCode.NETWORK_CONNECTION_REFUSED),
        (
            httpx.ConnectError("[Errno -2] Name or service not known"),
            ErrorCode.NETWORK_DNS_RESOLUTION,
        ),
        (
            httpx.ConnectError("SSL: CERTIFICATE_VERIFY_FAILED"),
            ErrorCode.NETWORK_SSL_ERROR,
        ),
        (httpx.ReadTimeout("timed out"), ErrorCode.NETWORK_TIMEOUT),
        (httpx.RemoteProtocolError("closed"), ErrorCode.NETWORK_REQUEST_FAILED),
    ],
)
def test_transport_errors_are_mapped(error, code):
    fake = FakeFirestore()
    fake.failures["get"] = error
    with fake.client() as client:
        with pytest.raises(NetworkError) as e:
            client.get("users/a")
    assert e.value.code == code
    assert e.value.context.operation == "get"


def test_list_and_get():
    fake = FakeFirestore()
    fake.add("users/a", age=1)
    fake.add("users/b", age=2)
    fake.add("users/a/pets/p", kind="cat")
    with fake.client() as client:
        page = client.list("users", 1)
        assert [d.id for d in page.documents] == ["a"]
        assert page.next_page_token == "1"
        page = client.list("users", 5, page_token=page.next_page_token)
        assert [d.id for d in page.documents] == ["b"]
        assert page.next_page_token is None
        document = client.get("users/b")
        assert document.relative_path == "users/b"
        assert document.fields == {"age": {"integerValue": "2"}}
        with pytest.raises(NotFoundError) as e:
            client.get("users/c")
    assert e.value.code == ErrorCode.NOT_FOUND_DOCUMENT
    assert fake.calls("list")[0].url.params["key"] == API_KEY


def test_run_query_skips_read_time_entries():
    fake = FakeFirestore()
    fake.add("users/a", age=1)
    query = {"from": [{"collectionId": "users", "allDescendants": False}]}
    with fake.client() as client:
        assert [d.id for d in client.run_query("", query)] == ["a"]
        query["where"] = {
            "fieldFilter": {
                "field": {"fieldPath": "age"},
                "op": "GREATER_THAN",
                "value": {"integerValue": "5"},
            }
        }
        assert client.run_query("", query) == []


def test_create_update_delete():
    fake = FakeFirestore()
    with fake.client() as client:
        document = client.create("users", {"age": {"integerValue": "1"}}, "a")
        assert document.id == "a"
        with pytest.raises(WriteError) as e:
            client.create("users", {}, "a")
        assert e.value.code == ErrorCode.WRITE_ALREADY_EXISTS
        client.update(
            "users/a", {"my field": {"stringValue": "x"}}, field_mask=["my field"]
        )
        assert fake.values("users/a") == {"age": 1, "my field": "x"}
        with pytest.raises(NotFoundError):
            client.update("users/b", {}, field_mask=["age"], must_exist=True)
        client.delete("users/a", must_exist=True)
        with pytest.raises(NotFoundError):
            client.delete("users/a", must_exist=True)
    request = fake.calls("update")[0]
    assert request.url.params.get_list("updateMask.fieldPaths") == ["`my field`"]


def test_batch_write_limits():
    fake = FakeFirestore()
    with fake.client() as client:
        with pytest.raises(WriteError) as e:
            client.batch_write([])
        assert e.value.code == ErrorCode.WRITE_BATCH_EMPTY
        with pytest.raises(WriteError) as e:
            client.batch_write([{"delete": "x"}] * 501)
        assert e.value.code == ErrorCode.WRITE_BATCH_TOO_LARGE
    assert fake.calls("batch_write") == []


def test_batch_write_status_codes():
    fake = FakeFirestore()
    fake.add("users/a", age=1)
    writes = [
        {"delete": fake.name("users/a"), "currentDocument": {"exists": True}},
        {"delete": fake.name("users/b"), "currentDocument": {"exists": True}},
    ]
    with fake.client() as client:
        result = client.batch_write(writes)
    assert result.status_codes == [0, 5]
    assert result.succeeded == 1
    assert result.failed_indexes() == [1]


def test_array_transform_missing_document():
    fake = FakeFirestore()
    with fake.client() as client:
        with pytest.raises(NotFoundError) as e:
            client.array_transform(
                "users/a", "tags", [{"stringValue": "x"}], ArrayTransformKind.UNION
            )
    assert e.value.code == ErrorCode.NOT_FOUND_DOCUMENT


def test_emulator_and_database_urls():
    credentials = Credentials.from_api_key(PROJECT, API_KEY, database_id="analytics")
    settings = Settings(emulator_host="localhost:8080")
    with DocumentClient(credentials, settings) as client:
        assert client.database_url == (
            f"http://localhost:8080/v1/projects/{PROJECT}/databases/analytics"
        )
        assert client.documents_url("users") == (
            f"{client.database_url}/documents/users"
        )


@pytest.mark.parametrize(
    "name, quoted",
    [
        ("age", "age"),
        ("_private", "_private"),
        ("first name", "`first name`"),
        ("a.b", "`a.b`"),
        ("tick`name", "`tick\\`name`"),
        ("1st", "`1st`"),
    ],
)
def test_quote_field_path(name, quoted):
    assert quote_field_path(name) == quoted


def test_default_single_field_check():
    fake = FakeFirestore()
    with fake.client() as client:
        assert client.check_default_single_field() is True
        fake.default_indexes_enabled = False
        assert client.check_default_single_field() is False
