"""Shared test fixtures and configuration for backend tests."""
import os
import tempfile
from pathlib import Path

import pytest

# Point the app at a throwaway settings file before it is imported, so the
# uploads directory never lands in the source tree.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="taskchat-tests-"))
(_TEST_ROOT / "taskchat.settings.yaml").write_text(
    "server:\n"
    "  public_base_url: http://testserver\n"
    "uploads:\n"
    "  dir: uploads\n",
    encoding="utf-8",
)
os.environ["TASKCHAT_SETTINGS"] = str(_TEST_ROOT / "taskchat.settings.yaml")
for _var in ("PORT", "APP_BASE_URL", "CORS_ORIGIN"):
    os.environ.pop(_var, None)

from fastapi.testclient import TestClient  # noqa: E402

from taskchat.chat.manager import manager  # noqa: E402
from taskchat.files.service import AttachmentService  # noqa: E402
from taskchat.main import app  # noqa: E402


@pytest.fixture(autouse=True)
def reset_manager():
    """Start every test with no connections and no rooms."""
    manager.clear()
    yield
    manager.clear()


@pytest.fixture
def api_client():
    """Provide a TestClient running the app lifespan.

    Used as a context manager so every WebSocket session shares one event
    loop, like connections do under uvicorn.
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture
def upload_service(tmp_path):
    """Install an AttachmentService writing into a per-test directory."""
    service = AttachmentService(
        upload_dir=str(tmp_path / "uploads"),
        base_url="http://testserver",
        url_prefix="uploads",
    )
    AttachmentService.set_instance(service)
    yield service
    AttachmentService.reset_instance()
