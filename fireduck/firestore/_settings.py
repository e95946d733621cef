from __future__ import annotations

import os

from pydantic import field_validator

from fireduck.core._log_helper import warn
from fireduck.core.data_model import DataModel

EMULATOR_HOST_ENV = "EMULATOR_HOST"
FIRESTORE_EMULATOR_HOST_ENV = "FIRESTORE_EMULATOR_HOST"
SCHEMA_CACHE_TTL_ENV = "SCHEMA_CACHE_TTL"

DEFAULT_HOST = "firestore.googleapis.com"
MAX_PAGE_SIZE = 1000
MAX_SAMPLE_SIZE = 1000
MAX_BATCH_SIZE = 500
MAX_IN_VALUES = 30
STANDARD_VECTOR_SIZE = 2048


class Settings(DataModel):
    """Runtime settings.

    Attributes:
        schema_cache_ttl:
            Schema cache lifetime in seconds. 0 disables caching,
            negative values are treated as 0.
        sample_size:
            Documents sampled for schema inference.
        page_size:
            Documents requested per page.
        vector_size:
            Rows per output batch.
        batch_size:
            Operations per batch write.
        timeout:
            Read timeout per request in seconds.
        connect_timeout:
            Connect timeout per request in seconds.
        emulator_host:
            host:port of an emulator. Switches the scheme to http.
    """

    schema_cache_ttl: int = 3600
    sample_size: int = 100
    page_size: int = MAX_PAGE_SIZE
    vector_size: int = STANDARD_VECTOR_SIZE
    batch_size: int = MAX_BATCH_SIZE
    timeout: float = 30.0
    connect_timeout: float = 30.0
    emulator_host: str | None = None

    @field_validator("schema_cache_ttl")
    @classmethod
    def _clamp_ttl(cls, value: int) -> int:
        return max(value, 0)

    @field_validator("page_size")
    @classmethod
    def _clamp_page_size(cls, value: int) -> int:
        return min(max(value, 1), MAX_PAGE_SIZE)

    @field_validator("sample_size")
    @classmethod
    def _clamp_sample_size(cls, value: int) -> int:
        return min(max(value, 1), MAX_SAMPLE_SIZE)

    @field_validator("batch_size")
    @classmethod
    def _clamp_batch_size(cls, value: int) -> int:
        return min(max(value, 1), MAX_BATCH_SIZE)

    @field_validator("vector_size")
    @classmethod
    def _clamp_vector_size(cls, value: int) -> int:
        return max(value, 1)

    @property
    def scheme(self) -> str:
        return "http" if self.emulator_host else "https"

    @property
    def host(self) -> str:
        return self.emulator_host or DEFAULT_HOST

    @staticmethod
    def from_env(**kwargs) -> Settings:
        emulator_host = os.environ.get(EMULATOR_HOST_ENV) or os.environ.get(
            FIRESTORE_EMULATOR_HOST_ENV
        )
        if emulator_host and "emulator_host" not in kwargs:
            kwargs["emulator_host"] = emulator_host
        ttl = os.environ.get(SCHEMA_CACHE_TTL_ENV)
        if ttl and "schema_cache_ttl" not in kwargs:
            try:
                kwargs["schema_cache_ttl"] = int(ttl)
            except ValueError:
                warn(f"Ignoring invalid {SCHEMA_CACHE_TTL_ENV}={ttl!r}")
        return Settings(**kwargs)
