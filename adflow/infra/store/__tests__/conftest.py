"""
Pytest configuration for the SQL store tests.
"""
import pytest

from adflow.infra.store import SQLStore


@pytest.fixture
def store(tmp_path):
    """
    Create a temporary SQLite store.

    The database file is automatically cleaned up after the test
    thanks to pytest's tmp_path fixture.
    """
    store = SQLStore(f"sqlite:///{tmp_path / 'test_store.db'}")
    store.open()
    yield store
    store.close()
