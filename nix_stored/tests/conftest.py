import pytest
from fastapi.testclient import TestClient

from nix_stored.config import Credentials, Settings
from nix_stored.main import create_app


@pytest.fixture
def store_root(tmp_path):
    root = tmp_path / "store"
    (root / "nar").mkdir(parents=True)
    return root


@pytest.fixture
def make_app(store_root):
    """Build an app over the temporary store with optional credentials."""

    def _make(read=("", ""), write=("", ""), max_transfers=32):
        settings = Settings(
            store_path=store_root,
            user_read=Credentials(*read),
            user_write=Credentials(*write),
            max_transfers=max_transfers,
        )
        return create_app(settings)

    return _make


@pytest.fixture
def client(make_app):
    with TestClient(make_app()) as test_client:
        yield test_client
