# type: ignore
import json

import pytest

from fireduck.core.exceptions import AuthError, ConfigError, ErrorCode
from fireduck.firestore import (
    CredentialCache,
    CredentialKind,
    CredentialResolver,
    SecretStore,
)

from ._fake_firestore import API_KEY, CLIENT_EMAIL, PROJECT, service_account_info


@pytest.fixture
def service_account_file(tmp_path) -> str:
    path = tmp_path / "service-account.json"
    path.write_text(json.dumps(service_account_info()))
    return str(path)


def _resolver():
    return CredentialResolver(SecretStore(), CredentialCache())


def test_create_secret_derives_auth_type():
    store = SecretStore()
    secret = store.create_secret("k", project_id=PROJECT, api_key=API_KEY)
    assert secret.auth_type == CredentialKind.API_KEY
    secret = store.create_secret(
        "sa", project_id=PROJECT, service_account_json="/keys/sa.json"
    )
    assert secret.auth_type == CredentialKind.SERVICE_ACCOUNT
    assert [s.name for s in store.list_secrets()] == ["k", "sa"]


@pytest.mark.parametrize(
    "options, code",
    [
        ({"api_key": API_KEY}, ErrorCode.CONFIG_MISSING_PROJECT_ID),
        ({"project_id": PROJECT}, ErrorCode.CONFIG_SECRET_INVALID),
        (
            {"project_id": PROJECT, "api_key": API_KEY, "auth_type": "oauth"},
            ErrorCode.CONFIG_SECRET_AUTH_TYPE,
        ),
        (
            {"project_id": PROJECT, "api_key": API_KEY, "auth_type": "service_account"},
            ErrorCode.CONFIG_SECRET_INVALID,
        ),
        (
            {"project_id": PROJECT, "service_account_json": "x", "auth_type": "api_key"},
            ErrorCode.CONFIG_MISSING_API_KEY,
        ),
        (
            {"project_id": PROJECT, "api_key": API_KEY, "region": "eu"},
            ErrorCode.CONFIG_SECRET_INVALID,
        ),
    ],
)
def test_create_secret_validation(options, code):
    with pytest.raises(ConfigError) as e:
        SecretStore().create_secret("s", **options)
    assert e.value.code == code


def test_duplicate_and_drop():
    store = SecretStore()
    store.create_secret("k", project_id=PROJECT, api_key=API_KEY)
    with pytest.raises(ConfigError):
        store.create_secret("k", project_id=PROJECT, api_key="other")
    store.create_secret("k", project_id=PROJECT, api_key="other", replace=True)
    assert store.list_secrets()[0].api_key == "other"
    assert store.drop_secret("k")
    assert not store.drop_secret("k")
    assert store.list_secrets() == []


@pytest.mark.parametrize(
    "database, matches, misses",
    [
        (None, ["(default)"], ["analytics"]),
        ("analytics", ["analytics"], ["(default)"]),
        ("*", ["(default)", "analytics"], []),
        (["a", "b"], ["a", "b"], ["(default)", "c"]),
        (["a", "*"], ["a", "z"], []),
    ],
)
def test_secret_database_scope(database, matches, misses):
    store = SecretStore()
    store.create_secret("k", project_id=PROJECT, api_key=API_KEY, database=database)
    for database_id in matches:
        assert store.find(database_id) is not None
    for database_id in misses:
        assert store.find(database_id) is None


def test_resolve_explicit_file_first(service_account_file):
    resolver = _resolver()
    resolver.secrets.create_secret("k", project_id="other", api_key=API_KEY)
    credentials = resolver.resolve(
        credentials=service_account_file, api_key=API_KEY, project_id="override"
    )
    assert credentials.kind == CredentialKind.SERVICE_ACCOUNT
    assert credentials.project_id == "override"
    assert credentials.client_email == CLIENT_EMAIL


def test_resolve_api_key_needs_project():
    resolver = _resolver()
    credentials = resolver.resolve(api_key=API_KEY, project_id=PROJECT)
    assert credentials.kind == CredentialKind.API_KEY
    with pytest.raises(ConfigError) as e:
        resolver.resolve(api_key=API_KEY)
    assert e.value.code == ErrorCode.CONFIG_MISSING_PROJECT_ID


def test_resolve_from_secret_uses_database(service_account_file):
    resolver = _resolver()
    resolver.secrets.create_secret(
        "analytics",
        project_id="analytics-project",
        database="analytics",
        api_key=API_KEY,
    )
    resolver.secrets.create_secret(
        "main", project_id=PROJECT, service_account_json=service_account_file
    )
    credentials = resolver.resolve(session_database="analytics")
    assert credentials.project_id == "analytics-project"
    assert credentials.database_id == "analytics"
    credentials = resolver.resolve()
    assert credentials.kind == CredentialKind.SERVICE_ACCOUNT
    assert credentials.database_id == "(default)"
    assert resolver.resolve(database="analytics", session_database="x").api_key == (
        API_KEY
    )


def test_secret_with_inline_json():
    resolver = _resolver()
    resolver.secrets.create_secret(
        "inline",
        project_id="inline-project",
        service_account_json=json.dumps(service_account_info()),
    )
    credentials = resolver.resolve()
    assert credentials.project_id == "inline-project"
    assert credentials.source == "secret:inline"


def test_resolved_credentials_are_cached(service_account_file):
    resolver = _resolver()
    first = resolver.resolve(credentials=service_account_file)
    second = resolver.resolve(credentials=service_account_file)
    other_database = resolver.resolve(
        credentials=service_account_file, database="analytics"
    )
    assert first is second
    assert other_database is not first
    assert len(resolver.cache) == 2
    resolver.cache.clear()
    assert resolver.resolve(credentials=service_account_file) is not first


def test_resolve_from_environment(monkeypatch, service_account_file):
    monkeypatch.setenv("GOOGLE_APPLICATION_CREDENTIALS", service_account_file)
    credentials = _resolver().resolve()
    assert credentials.project_id == PROJECT


def test_resolve_without_credentials(monkeypatch):
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
    with pytest.raises(ConfigError) as e:
        _resolver().resolve(project_id=PROJECT)
    assert e.value.code == ErrorCode.CONFIG_MISSING_CREDENTIALS


def test_missing_credentials_file():
    with pytest.raises(AuthError) as e:
        _resolver().resolve(credentials="/does/not/exist.json")
    assert e.value.code == ErrorCode.AUTH_SERVICE_ACCOUNT_FILE
