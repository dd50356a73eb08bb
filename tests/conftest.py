import pytest
from fastapi.testclient import TestClient

from pixie.app import create_app
from pixie.settings import Settings
from pixie.store import MemoryStore

API_KEY = "test-secret"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings():
    return Settings(api_key=API_KEY, store_backend="memory", public_base_url=None, _env_file=None)


@pytest.fixture
def client(settings, store):
    return TestClient(create_app(settings, store))


@pytest.fixture
def created(client):
    resp = client.post(
        "/api/pixels",
        headers={"x-api-key": API_KEY},
        json={"label": "promo", "metadata": {"campaign": "fall"}},
    )
    assert resp.status_code == 201
    return resp.json()
