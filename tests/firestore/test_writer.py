# type: ignore
import threading

import pytest

from fireduck.core.exceptions import ErrorCode, RequestError, WriteError
from fireduck.firestore import LogicalType, WritePlanner

from ._fake_firestore import FakeFirestore


@pytest.fixture
def users() -> FakeFirestore:
    fake = FakeFirestore()
    fake.add("users/u1", name="ann", status="new", tags=["x", "y"])
    fake.add("users/u2", name="bob", status="new")
    return fake


def test_update_batch_downgrades_when_denied(users):
    users.failures["batch_write"] = 403
    with users.client() as client:
        planner = WritePlanner(client, "users")
        count = planner.update_batch(["u1", "u2", "u3"], {"status": "done"})
    assert count == 2
    assert planner.downgraded
    assert planner.stats.downgraded
    assert planner.stats.total == 3
    assert planner.stats.succeeded == 2
    assert planner.stats.not_found == 1
    assert users.values("users/u1") == {
        "name": "ann",
        "status": "done",
        "tags": ["x", "y"],
    }
    assert users.values("users/u2")["status"] == "done"
    assert "users/u3" not in users.documents


def test_downgrade_is_sticky(users):
    users.failures["batch_write"] = 403
    with users.client() as client:
        planner = WritePlanner(client, "users")
        planner.update_batch(["u1"], {"status": "a"})
        planner.update_batch(["u2"], {"status": "b"})
    assert len(users.calls("batch_write")) == 1
    assert len(users.calls("update")) == 2


def test_all_writes_denied_downgrades(users):
    users.batch_statuses = lambda writes: [7] * len(writes)
    with users.client() as client:
        planner = WritePlanner(client, "users")
        assert planner.update_batch(["u1", "u2"], {"status": "done"}) == 2
    assert planner.downgraded
    assert users.values("users/u2")["status"] == "done"


def test_update_batch_through_batch_endpoint(users):
    with users.client() as client:
        planner = WritePlanner(client, "users")
        count = planner.update_batch(["u1", "u2"], {"first name": "x"})
    assert count == 2
    assert not planner.downgraded
    assert users.calls("update") == []
    assert users.values("users/u1")["first name"] == "x"
    assert users.values("users/u1")["name"] == "ann"


def test_batch_not_found_counts_zero(users):
    with users.client() as client:
        planner = WritePlanner(client, "users")
        assert planner.delete_batch(["u1", "gone"]) == 1
    assert planner.stats.not_found == 1
    assert "users/u1" not in users.documents
    assert "users/u2" in users.documents


def test_batch_partial_failure(users):
    users.batch_statuses = lambda writes: [0, 9]
    with users.client() as client:
        planner = WritePlanner(client, "users")
        with pytest.raises(WriteError) as e:
            planner.delete_batch(["u1", "u2"])
    assert e.value.code == ErrorCode.WRITE_BATCH_PARTIAL_FAILURE
    assert e.value.context.batch_index == 1


def test_other_batch_errors_propagate(users):
    users.failures["batch_write"] = 500
    with users.client() as client:
        planner = WritePlanner(client, "users")
        with pytest.raises(RequestError):
            planner.delete_batch(["u1"])
    assert not planner.downgraded


def test_insert_with_document_id_column():
    fake = FakeFirestore()
    rows = [{"id": "a", "age": 1, "score": 3}, {"id": "b", "age": 2, "score": 4}]
    with fake.client() as client:
        planner = WritePlanner(client, "people", batch_size=1)
        count = planner.insert(
            rows, document_id_column="id", types={"score": LogicalType.double()}
        )
    assert count == 2
    assert len(fake.calls("batch_write")) == 2
    assert fake.documents["people/a"] == {
        "age": {"integerValue": "1"},
        "score": {"doubleValue": 3.0},
    }
    assert fake.values("people/b") == {"age": 2, "score": 4.0}


def test_insert_batches_by_size():
    fake = FakeFirestore()
    rows = [{"id": f"d{i}", "n": i} for i in range(5)]
    with fake.client() as client:
        assert WritePlanner(client, "c", batch_size=2).insert(rows, "id") == 5
    assert len(fake.calls("batch_write")) == 3


def test_insert_without_id_uses_generated_ids():
    fake = FakeFirestore()
    with fake.client() as client:
        planner = WritePlanner(client, "people")
        assert planner.insert([{"age": 1}, {"age": 2}]) == 2
    assert sorted(fake.documents) == ["people/auto0001", "people/auto0002"]
    assert fake.calls("batch_write") == []


def test_insert_missing_id_column():
    fake = FakeFirestore()
    with fake.client() as client:
        with pytest.raises(WriteError) as e:
            WritePlanner(client, "people").insert([{"age": 1}], "id")
    assert e.value.code == ErrorCode.WRITE_DOCUMENT_ID_INVALID


def test_insert_into_group_needs_ids():
    fake = FakeFirestore()
    with fake.client() as client:
        with pytest.raises(WriteError):
            WritePlanner(client, "~orders").insert([{"amount": 1}])


def test_document_path():
    fake = FakeFirestore()
    with fake.client() as client:
        planner = WritePlanner(client, "users")
        assert planner.document_path("a") == "users/a"
        assert planner.document_name("a") == fake.name("users/a")
        group = WritePlanner(client, "~orders")
        assert group.document_path("users/u1/orders/o1") == "users/u1/orders/o1"
        assert planner.document_path(42) == "users/42"
        for bad in ["", "   ", "a/b", True, 1.5, None]:
            with pytest.raises(WriteError):
                planner.document_path(bad)
        with pytest.raises(WriteError):
            group.document_path("o1")


def test_update_single_document(users):
    with users.client() as client:
        planner = WritePlanner(client, "users")
        assert planner.update("u2", {"status": "done", "age": 40}) == 1
        assert planner.update("nobody", {"status": "done"}) == 0
    assert users.values("users/u2") == {"name": "bob", "status": "done", "age": 40}
    assert "users/nobody" not in users.documents
    assert planner.stats.not_found == 1


def test_update_needs_fields(users):
    with users.client() as client:
        with pytest.raises(WriteError) as e:
            WritePlanner(client, "users").update("u1", {})
    assert e.value.code == ErrorCode.WRITE_UPDATE_NO_FIELDS


def test_delete_single_document(users):
    with users.client() as client:
        planner = WritePlanner(client, "users")
        assert planner.delete("u1") == 1
        assert planner.delete("u1") == 0
    assert "users/u1" not in users.documents


@pytest.mark.parametrize(
    "kind, elements, expected",
    [
        ("union", ["y", "z"], ["x", "y", "z"]),
        ("remove", ["x"], ["y"]),
        ("append", ["x"], ["x", "y", "x"]),
    ],
)
def test_array_transform(users, kind, elements, expected):
    with users.client() as client:
        planner = WritePlanner(client, "users")
        assert planner.array_transform("u1", "tags", elements, kind) == 1
    assert users.values("users/u1")["tags"] == expected


def test_array_union_starts_missing_field(users):
    with users.client() as client:
        WritePlanner(client, "users").array_transform("u2", "tags", ["a"], "union")
    assert users.values("users/u2")["tags"] == ["a"]


@pytest.mark.parametrize("kind", ["union", "remove", "append"])
def test_array_transform_missing_document(users, kind):
    with users.client() as client:
        planner = WritePlanner(client, "users")
        assert planner.array_transform("nobody", "tags", ["a"], kind) == 0
    assert planner.stats.not_found == 1


def test_array_transform_needs_field(users):
    with users.client() as client:
        with pytest.raises(WriteError) as e:
            WritePlanner(client, "users").array_transform("u1", "", ["a"], "union")
    assert e.value.code == ErrorCode.WRITE_FIELD_NAME_INVALID


def test_cancelled_flush(users):
    cancel = threading.Event()
    cancel.set()
    with users.client() as client:
        planner = WritePlanner(client, "users", cancel=cancel)
        with pytest.raises(WriteError) as e:
            planner.delete_batch(["u1"])
    assert e.value.code == ErrorCode.WRITE_CANCELLED
    assert "users/u1" in users.documents
