"""
Configuración de pytest para tests
"""
import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from app.db import get_db

from tests.helpers import register

@pytest.fixture
def mock_db():
    """Base de datos Mongo en memoria (una por test)"""
    return AsyncMongoMockClient()["curalink_test"]

@pytest.fixture
def test_app(mock_db):
    """App con la base de datos sustituida y sin rate limiting"""
    from app.main import app as fastapi_app

    async def _get_db():
        return mock_db

    fastapi_app.state.limiter = None
    fastapi_app.dependency_overrides[get_db] = _get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()

@pytest.fixture
def client(test_app):
    """Fixture para cliente de test de FastAPI"""
    with TestClient(test_app) as c:
        yield c

@pytest.fixture
def patient(client):
    return register(client, "Pat Patient", "patient@example.com", "patient")

@pytest.fixture
def researcher(client):
    return register(client, "Rae Researcher", "researcher@example.com", "researcher")

@pytest.fixture
def expert(client):
    return register(client, "Eli Expert", "expert@example.com", "health_expert")
