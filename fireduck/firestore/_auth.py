from __future__ import annotations

import json
import threading
from enum import Enum
from typing import Any

import httpx
import jwt

from fireduck.core._log_helper import get_logger
from fireduck.core.exceptions import (
    AuthError,
    ConfigError,
    ErrorCode,
    ErrorContext,
)
from fireduck.core.time import Time

from ._models import DEFAULT_DATABASE

logger = get_logger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
DATASTORE_SCOPE = "https://www.googleapis.com/auth/datastore"
JWT_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
TOKEN_LIFETIME = 3600
TOKEN_REFRESH_MARGIN = 300


class CredentialKind(str, Enum):
    SERVICE_ACCOUNT = "service_account"
    API_KEY = "api_key"


class Credentials:
    """Credential record shared by clients.

    Token refresh is serialized on a per-credential condition so that
    concurrent callers observing an invalid token wait for a single
    refresh.
    """

    kind: CredentialKind
    project_id: str
    database_id: str
    client_email: str | None
    private_key_id: str | None
    private_key: str | None
    api_key: str | None
    access_token: str | None
    expiry: float
    token_url: str
    source: str | None

    _condition: threading.Condition
    _refreshing: bool

    def __init__(
        self,
        kind: CredentialKind,
        project_id: str | None,
        database_id: str | None = DEFAULT_DATABASE,
        client_email: str | None = None,
        private_key_id: str | None = None,
        private_key: str | None = None,
        api_key: str | None = None,
        token_url: str = TOKEN_URL,
        source: str | None = None,
    ):
        """Initialize.

        Args:
            kind:
                Service account or API key.
            project_id:
                Project id.
            database_id:
                Database id. Defaults to "(default)".
            client_email:
                Service account email, JWT issuer.
            private_key_id:
                Service account key id, sent as the JWT kid.
            private_key:
                PEM encoded RSA private key.
            api_key:
                API key.
            token_url:
                OAuth2 token endpoint.
            source:
                Where the credential came from, used as cache key.
        """
        if not project_id:
            raise ConfigError(
                "project_id is required", ErrorCode.CONFIG_MISSING_PROJECT_ID
            )
        if kind == CredentialKind.SERVICE_ACCOUNT and not private_key:
            raise AuthError(
                "Service account credentials need a private key",
                ErrorCode.AUTH_PRIVATE_KEY_INVALID,
            )
        if kind == CredentialKind.API_KEY and not api_key:
            raise ConfigError(
                "API key credentials need an api_key",
                ErrorCode.CONFIG_MISSING_API_KEY,
            )
        self.kind = kind
        self.project_id = project_id
        self.database_id = database_id or DEFAULT_DATABASE
        self.client_email = client_email
        self.private_key_id = private_key_id
        self.private_key = private_key
        self.api_key = api_key
        self.access_token = None
        self.expiry = 0.0
        self.token_url = token_url
        self.source = source
        self._condition = threading.Condition()
        self._refreshing = False

    @staticmethod
    def from_api_key(
        project_id: str | None,
        api_key: str | None,
        database_id: str | None = None,
        source: str | None = None,
    ) -> Credentials:
        return Credentials(
            kind=CredentialKind.API_KEY,
            project_id=project_id,
            database_id=database_id,
            api_key=api_key,
            source=source,
        )

    @staticmethod
    def from_service_account_info(
        info: dict[str, Any],
        database_id: str | None = None,
        source: str | None = None,
    ) -> Credentials:
        missing = [
            key
            for key in ("project_id", "private_key", "client_email")
            if not info.get(key)
        ]
        if missing:
            raise AuthError(
                f"Service account is missing {', '.join(missing)}",
                ErrorCode.AUTH_SERVICE_ACCOUNT_FIELDS,
            )
        return Credentials(
            kind=CredentialKind.SERVICE_ACCOUNT,
            project_id=info["project_id"],
            database_id=database_id,
            client_email=info["client_email"],
            private_key_id=info.get("private_key_id"),
            private_key=info["private_key"],
            token_url=info.get("token_uri") or TOKEN_URL,
            source=source,
        )

    @staticmethod
    def from_service_account_json(
        text: str,
        database_id: str | None = None,
        source: str | None = None,
    ) -> Credentials:
        try:
            info = json.loads(text)
        except json.JSONDecodeError as e:
            raise AuthError(
                f"Service account JSON could not be parsed: {e}",
                ErrorCode.AUTH_SERVICE_ACCOUNT_PARSE,
            ) from e
        if not isinstance(info, dict):
            raise AuthError(
                "Service account JSON must be an object",
                ErrorCode.AUTH_SERVICE_ACCOUNT_PARSE,
            )
        return Credentials.from_service_account_info(
            info, database_id=database_id, source=source
        )

    @staticmethod
    def from_service_account_file(
        path: str, database_id: str | None = None
    ) -> Credentials:
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise AuthError(
                f"Service account file {path} could not be read: {e}",
                ErrorCode.AUTH_SERVICE_ACCOUNT_FILE,
            ) from e
        return Credentials.from_service_account_json(
            text, database_id=database_id, source=path
        )

    def with_database(self, database_id: str | None) -> Credentials:
        """Copy of this record bound to another database.

        The copy has its own token state.
        """
        return Credentials(
            kind=self.kind,
            project_id=self.project_id,
            database_id=database_id,
            client_email=self.client_email,
            private_key_id=self.private_key_id,
            private_key=self.private_key,
            api_key=self.api_key,
            token_url=self.token_url,
            source=self.source,
        )

    def is_token_valid(self, now: float | None = None) -> bool:
        if self.kind == CredentialKind.API_KEY:
            return True
        if not self.access_token:
            return False
        now = Time.now() if now is None else now
        return now < self.expiry - TOKEN_REFRESH_MARGIN

    def invalidate(self, token: str | None = None):
        """Mark the access token invalid.

        Args:
            token:
                Token observed as rejected. When another caller has
                refreshed in the meantime the newer token is kept.
        """
        with self._condition:
            if token is None or token == self.access_token:
                self.expiry = 0.0

    def ensure_token(self, http: httpx.Client) -> str | None:
        """Return a valid access token, refreshing inline if needed."""
        if self.kind == CredentialKind.API_KEY:
            return None
        with self._condition:
            while True:
                if self.is_token_valid():
                    return self.access_token
                if not self._refreshing:
                    self._refreshing = True
                    break
                self._condition.wait()
        try:
            access_token, expires_in = TokenExchanger.exchange(self, http)
            with self._condition:
                self.access_token = access_token
                self.expiry = Time.now() + expires_in
            logger.debug("Refreshed access token for %s", self.client_email)
            return access_token
        finally:
            with self._condition:
                self._refreshing = False
                self._condition.notify_all()

    def request_headers(self) -> dict[str, str]:
        if self.kind == CredentialKind.SERVICE_ACCOUNT and self.access_token:
            return {"Authorization": f"Bearer {self.access_token}"}
        return {}

    def request_params(self) -> dict[str, str]:
        if self.kind == CredentialKind.API_KEY and self.api_key:
            return {"key": self.api_key}
        return {}

    def document_name(self, relative_path: str = "") -> str:
        root = (
            f"projects/{self.project_id}/databases/{self.database_id}/documents"
        )
        if relative_path:
            return f"{root}/{relative_path}"
        return root


class TokenExchanger:
    @staticmethod
    def create_jwt(credentials: Credentials, now: int | None = None) -> str:
        issued_at = int(Time.now()) if now is None else now
        payload = {
            "iss": credentials.client_email,
            "scope": DATASTORE_SCOPE,
            "aud": credentials.token_url,
            "iat": issued_at,
            "exp": issued_at + TOKEN_LIFETIME,
        }
        headers = None
        if credentials.private_key_id:
            headers = {"kid": credentials.private_key_id}
        try:
            return jwt.encode(
                payload,
                credentials.private_key,
                algorithm="RS256",
                headers=headers,
            )
        except jwt.exceptions.PyJWTError as e:
            raise AuthError(
                f"JWT signing failed: {e}", ErrorCode.AUTH_SIGNING_FAILED
            ) from e
        except (ValueError, TypeError) as e:
            raise AuthError(
                f"Private key is not a valid RSA key: {e}",
                ErrorCode.AUTH_PRIVATE_KEY_INVALID,
            ) from e

    @staticmethod
    def exchange(
        credentials: Credentials, http: httpx.Client
    ) -> tuple[str, float]:
        assertion = TokenExchanger.create_jwt(credentials)
        context = ErrorContext(
            operation="token_exchange",
            project_id=credentials.project_id,
            http_method="POST",
            url=credentials.token_url,
        )
        try:
            response = http.post(
                credentials.token_url,
                data={"grant_type": JWT_GRANT_TYPE, "assertion": assertion},
            )
        except httpx.HTTPError as e:
            raise AuthError(
                f"Token exchange failed: {e}",
                ErrorCode.AUTH_TOKEN_EXCHANGE_FAILED,
                context,
            ) from e
        if response.status_code != 200:
            raise AuthError(
                "Token exchange was rejected",
                ErrorCode.AUTH_TOKEN_EXCHANGE_FAILED,
                context.with_response(response.status_code, response.text),
            )
        try:
            body = response.json()
        except ValueError as e:
            raise AuthError(
                "Token response is not JSON",
                ErrorCode.AUTH_TOKEN_PARSE_FAILED,
                context.with_response(response.status_code, response.text),
            ) from e
        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise AuthError(
                "Token response has no access_token",
                ErrorCode.AUTH_TOKEN_MISSING,
                context.with_response(response.status_code, response.text),
            )
        expires_in = float(body.get("expires_in") or TOKEN_LIFETIME)
        return access_token, expires_in
