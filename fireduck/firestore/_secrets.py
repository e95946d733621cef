from __future__ import annotations

import os
import threading
from typing import Callable

from fireduck.core._log_helper import get_logger
from fireduck.core.data_model import DataModel
from fireduck.core.exceptions import ConfigError, ErrorCode

from ._auth import CredentialKind, Credentials
from ._models import DEFAULT_DATABASE

logger = get_logger(__name__)

SECRET_TYPE = "firestore"
GOOGLE_APPLICATION_CREDENTIALS_ENV = "GOOGLE_APPLICATION_CREDENTIALS"
WILDCARD_DATABASE = "*"


class FirestoreSecret(DataModel):
    """Secret of type firestore."""

    name: str
    """Secret name."""

    project_id: str
    """Project id."""

    database: str | list[str] | None = None
    """Database id, list of ids, or * for any database."""

    service_account_json: str | None = None
    """Path to a service account file, or the JSON itself."""

    api_key: str | None = None
    """API key."""

    auth_type: CredentialKind = CredentialKind.SERVICE_ACCOUNT
    """Derived from which credential key is set."""

    def matches_database(self, database_id: str) -> bool:
        if self.database is None:
            return database_id == DEFAULT_DATABASE
        if isinstance(self.database, str):
            return self.database in (WILDCARD_DATABASE, database_id)
        return WILDCARD_DATABASE in self.database or database_id in self.database

    def to_credentials(self, database_id: str) -> Credentials:
        if self.auth_type == CredentialKind.API_KEY:
            return Credentials.from_api_key(
                self.project_id,
                self.api_key,
                database_id=database_id,
                source=f"secret:{self.name}",
            )
        text = self.service_account_json or ""
        if text.lstrip().startswith("{"):
            credentials = Credentials.from_service_account_json(
                text, database_id=database_id, source=f"secret:{self.name}"
            )
        else:
            credentials = Credentials.from_service_account_file(
                text, database_id=database_id
            )
        credentials.project_id = self.project_id
        return credentials


class SecretStore:
    """In-process registry of firestore secrets."""

    _lock: threading.Lock
    _secrets: dict[str, FirestoreSecret]

    def __init__(self):
        self._lock = threading.Lock()
        self._secrets = dict()

    def create_secret(
        self,
        name: str,
        project_id: str | None = None,
        database: str | list[str] | None = None,
        service_account_json: str | None = None,
        api_key: str | None = None,
        auth_type: str | None = None,
        replace: bool = False,
        **kwargs,
    ) -> FirestoreSecret:
        """Create a secret.

        Args:
            name:
                Secret name.
            project_id:
                Project id. Required.
            database:
                Database id, list of ids, or "*".
            service_account_json:
                Service account file path or JSON text.
            api_key:
                API key.
            auth_type:
                service_account or api_key. Derived when omitted.
            replace:
                Overwrite an existing secret of the same name.
        """
        if kwargs:
            raise ConfigError(
                f"Unknown secret options: {', '.join(sorted(kwargs))}",
                ErrorCode.CONFIG_SECRET_INVALID,
            )
        if not project_id:
            raise ConfigError(
                "Firestore secret requires project_id",
                ErrorCode.CONFIG_MISSING_PROJECT_ID,
            )
        if auth_type is None:
            if service_account_json:
                auth_type = CredentialKind.SERVICE_ACCOUNT.value
            elif api_key:
                auth_type = CredentialKind.API_KEY.value
            else:
                raise ConfigError(
                    "Firestore secret requires service_account_json or api_key",
                    ErrorCode.CONFIG_SECRET_INVALID,
                )
        try:
            kind = CredentialKind(auth_type)
        except ValueError as e:
            raise ConfigError(
                f"Unknown auth_type: {auth_type}",
                ErrorCode.CONFIG_SECRET_AUTH_TYPE,
            ) from e
        if kind == CredentialKind.SERVICE_ACCOUNT and not service_account_json:
            raise ConfigError(
                "auth_type service_account requires service_account_json",
                ErrorCode.CONFIG_SECRET_INVALID,
            )
        if kind == CredentialKind.API_KEY and not api_key:
            raise ConfigError(
                "auth_type api_key requires api_key",
                ErrorCode.CONFIG_MISSING_API_KEY,
            )
        secret = FirestoreSecret(
            name=name,
            project_id=project_id,
            database=database,
            service_account_json=service_account_json,
            api_key=api_key,
            auth_type=kind,
        )
        with self._lock:
            if name in self._secrets and not replace:
                raise ConfigError(
                    f"Secret {name} already exists",
                    ErrorCode.CONFIG_SECRET_INVALID,
                )
            self._secrets[name] = secret
        return secret

    def drop_secret(self, name: str) -> bool:
        with self._lock:
            return self._secrets.pop(name, None) is not None

    def list_secrets(self) -> list[FirestoreSecret]:
        with self._lock:
            return list(self._secrets.values())

    def find(self, database_id: str) -> FirestoreSecret | None:
        with self._lock:
            for secret in self._secrets.values():
                if secret.matches_database(database_id):
                    return secret
        return None


class CredentialCache:
    """Process-wide credential records keyed by (source, database)."""

    _lock: threading.Lock
    _entries: dict[tuple[str, str], Credentials]

    def __init__(self):
        self._lock = threading.Lock()
        self._entries = dict()

    def get_or_create(
        self, source: str, database_id: str, factory: Callable[[], Credentials]
    ) -> Credentials:
        key = (source, database_id)
        with self._lock:
            credentials = self._entries.get(key)
        if credentials is not None:
            return credentials
        created = factory()
        with self._lock:
            return self._entries.setdefault(key, created)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


credential_cache = CredentialCache()
default_secret_store = SecretStore()


class CredentialResolver:
    secrets: SecretStore
    cache: CredentialCache

    def __init__(
        self,
        secrets: SecretStore | None = None,
        cache: CredentialCache | None = None,
    ):
        self.secrets = secrets if secrets is not None else default_secret_store
        self.cache = cache if cache is not None else credential_cache

    @staticmethod
    def effective_database(
        database: str | None, session_database: str | None
    ) -> str:
        return database or session_database or DEFAULT_DATABASE

    def resolve(
        self,
        project_id: str | None = None,
        credentials: str | None = None,
        api_key: str | None = None,
        database: str | None = None,
        session_database: str | None = None,
    ) -> Credentials:
        """Resolve credentials, first match wins.

        Order: explicit credentials path, explicit api_key with
        project_id, secret store filtered by database, then the
        GOOGLE_APPLICATION_CREDENTIALS environment variable.
        """
        database_id = self.effective_database(database, session_database)
        if credentials:
            return self._from_file(credentials, project_id, database_id)
        if api_key:
            if not project_id:
                raise ConfigError(
                    "api_key requires project_id",
                    ErrorCode.CONFIG_MISSING_PROJECT_ID,
                )
            return Credentials.from_api_key(
                project_id, api_key, database_id=database_id, source="api_key"
            )
        secret = self.secrets.find(database_id)
        if secret is not None:
            logger.debug("Using secret %s for %s", secret.name, database_id)
            return self.cache.get_or_create(
                f"secret:{secret.name}",
                database_id,
                lambda: secret.to_credentials(database_id),
            )
        path = os.environ.get(GOOGLE_APPLICATION_CREDENTIALS_ENV)
        if path:
            return self._from_file(path, project_id, database_id)
        raise ConfigError(
            "No credentials found. Pass credentials, api_key and project_id, "
            "create a firestore secret, or set "
            f"{GOOGLE_APPLICATION_CREDENTIALS_ENV}",
            ErrorCode.CONFIG_MISSING_CREDENTIALS,
        )

    def _from_file(
        self, path: str, project_id: str | None, database_id: str
    ) -> Credentials:
        source = f"{path}|{project_id}" if project_id else path

        def factory() -> Credentials:
            record = Credentials.from_service_account_file(
                path, database_id=database_id
            )
            if project_id:
                record.project_id = project_id
            return record

        return self.cache.get_or_create(source, database_id, factory)
