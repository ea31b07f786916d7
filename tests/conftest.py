"""
Pytest configuration and fixtures for keyexchange tests.

Provides common fixtures and test utilities for unit and integration tests.
RSA keys are generated once per session at 2048 bits and password hashing
uses minimal Argon2 costs to keep the suite fast.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import mongomock
import pytest

from keyexchange import crypto
from keyexchange.directory import DirectoryService
from keyexchange.keys import KeyManager
from keyexchange.messenger import Messenger
from keyexchange.mongo_store import MongoStore
from keyexchange.passwords import PasswordHasher
from keyexchange.sqlite_store import SQLiteStore

TEST_KEY_SIZE = 2048
TEST_PASSPHRASE = "s3cret"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="keyexchange_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture(scope="session")
def key_material() -> dict:
    """
    Provide one RSA key pair with its sealed private key.

    Returns:
        dict: private_key, public_pem, sealed and passphrase
    """
    private_key = crypto.generate_private_key(TEST_KEY_SIZE)
    return {
        "private_key": private_key,
        "public_pem": crypto.public_key_to_pem(private_key.public_key()),
        "sealed": crypto.seal_private_key(private_key, TEST_PASSPHRASE),
        "passphrase": TEST_PASSPHRASE,
    }


@pytest.fixture(scope="session")
def other_key_material() -> dict:
    """Provide a second, unrelated RSA key pair."""
    private_key = crypto.generate_private_key(TEST_KEY_SIZE)
    return {
        "private_key": private_key,
        "public_pem": crypto.public_key_to_pem(private_key.public_key()),
    }


@pytest.fixture
def hasher() -> PasswordHasher:
    """Password hasher with the smallest Argon2 costs."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def sqlite_store() -> Generator[SQLiteStore, None, None]:
    """In-memory SQLite store."""
    store = SQLiteStore(":memory:")
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def mongo_store() -> Generator[MongoStore, None, None]:
    """MongoDB store backed by mongomock."""
    store = MongoStore(mongomock.MongoClient(), database="key_exchange_test")
    store.ensure_schema()
    try:
        yield store
    finally:
        store.close()


@pytest.fixture(params=["sqlite", "mongo"])
def store(request):
    """Each store backend in turn."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def key_manager(temp_dir: Path) -> KeyManager:
    """Key manager writing under a temporary keys directory."""
    return KeyManager(temp_dir / "keys")


@pytest.fixture
def directory(store, hasher: PasswordHasher) -> DirectoryService:
    """Directory service on the parametrized store."""
    return DirectoryService(store.users, hasher)


@pytest.fixture
def messenger(store, key_manager: KeyManager, directory: DirectoryService) -> Messenger:
    """Messenger wired to the parametrized store with 2048-bit keys."""
    return Messenger(store, key_manager, directory, key_size=TEST_KEY_SIZE)


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
