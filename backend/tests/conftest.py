import os
import tempfile

# The importable module-level app creates its upload directory on import.
os.environ.setdefault("UPLOAD_DIR", os.path.join(tempfile.gettempdir(), "smartfix-test-uploads"))

import pytest
from fastapi.testclient import TestClient

from fakes import ScriptedModel
from smartfix.gateway import AnalysisGateway
from smartfix.main import create_app
from smartfix.storage import MemStorage


@pytest.fixture
def model():
    return ScriptedModel()


@pytest.fixture
def storage():
    return MemStorage()


@pytest.fixture
def gateway(model):
    return AnalysisGateway(model)


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def app(storage, gateway, upload_dir):
    return create_app(storage=storage, gateway=gateway, upload_dir=str(upload_dir))


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
