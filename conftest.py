import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.conversation import ConversationService
from app.main import app, get_service
from app.storage import memory_backend, open_backend


class FakeLLM:
    """Stands in for GeminiClient; records every turn list it is sent."""

    def __init__(self, reply="Drink fluids and rest."):
        self.reply = reply
        self.calls = []

    def generate(self, turns):
        self.calls.append(list(turns))
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


@pytest.fixture
def sql_backend():
    backend = open_backend(Settings(database_url="sqlite://"))
    assert backend.name == "database"
    yield backend
    backend.engine.dispose()


@pytest.fixture
def mem_backend():
    return memory_backend(Settings())


@pytest.fixture(params=["database", "memory"])
def backend(request):
    return request.getfixturevalue("sql_backend" if request.param == "database" else "mem_backend")


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def service(sql_backend, llm):
    return ConversationService(sql_backend, llm)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
