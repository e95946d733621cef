# type: ignore
import pytest

from fireduck.firestore import (
    credential_cache,
    default_secret_store,
    schema_cache,
)
from fireduck.firestore._cache import DEFAULT_SCHEMA_CACHE_TTL


@pytest.fixture(autouse=True)
def reset_process_state():
    schema_cache.set_ttl(DEFAULT_SCHEMA_CACHE_TTL)
    schema_cache.purge()
    credential_cache.clear()
    for secret in default_secret_store.list_secrets():
        default_secret_store.drop_secret(secret.name)
    yield
    schema_cache.purge()
    credential_cache.clear()
