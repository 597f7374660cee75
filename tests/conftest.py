import pytest
from fastapi.testclient import TestClient

from pinrelay.sessions.in_memory import InMemorySessionRegistry
from pinrelay.settings import TestingSettings
from tests.utils import create_test_app


@pytest.fixture()
def settings():
    return TestingSettings()


@pytest.fixture()
def registry():
    return InMemorySessionRegistry(sweep_interval=0)


@pytest.fixture()
def application(settings, registry):
    return create_test_app(settings, registry)


@pytest.fixture()
def client(application):
    with TestClient(application) as client:
        yield client
