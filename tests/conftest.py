"""
Pytest configuration and fixtures for EasyPDF Backend tests.
"""

import base64
import io
from datetime import timedelta
from pathlib import Path

import fitz
import pytest
from fastapi.testclient import TestClient
from omegaconf import OmegaConf
from PIL import Image

from easypdf_backend.configuration import load_settings
from easypdf_backend.main import create_app
from easypdf_backend.ocr import OCREngine, OCRResult
from easypdf_backend.utils import utcnow

ADMIN_KEY = "test-admin-key-12345"


class FakeOCREngine(OCREngine):
    """Stands in for Tesseract: reports the PDF's own text layer."""

    def __init__(self, confidence: float = 91.5):
        self.confidence = confidence
        self.calls = []

    def recognize(self, pdf_path, options):
        self.calls.append((Path(pdf_path), options))
        with fitz.open(pdf_path) as doc:
            text = "\n".join(page.get_text().strip() for page in doc)
            return OCRResult(text=text, confidence=self.confidence, page_count=doc.page_count)


def pdf_bytes(pages: int = 1, label: str = "Page") -> bytes:
    doc = fitz.open()
    for number in range(1, pages + 1):
        page = doc.new_page()
        page.insert_text((72, 72), f"{label} {number}")
    data = doc.tobytes()
    doc.close()
    return data


def build_settings(tmp_path, extra=None):
    base = {
        "storage": {"root": str(tmp_path / "store")},
        "database": {"path": str(tmp_path / "db" / "easypdf.db")},
        "security": {"admin_api_key": ADMIN_KEY, "encryption_key": "test-encryption-key"},
        "rate_limits": {
            "upload": {"limit": 1000, "window_seconds": 60},
            "download": {"limit": 1000, "window_seconds": 60},
            "pdf": {"limit": 1000, "window_seconds": 60},
        },
        "jobs": {"operation_timeout_seconds": 30},
    }
    merged = OmegaConf.merge(OmegaConf.create(base), OmegaConf.create(extra or {}))
    return load_settings(overrides=OmegaConf.to_container(merged), use_env=False)


@pytest.fixture
def make_pdf():
    """Factory producing in-memory PDFs with ``pages`` labelled pages."""
    return pdf_bytes


@pytest.fixture
def signature_data():
    """A small PNG signature as a data URL."""
    buffer = io.BytesIO()
    Image.new("RGB", (120, 40), "navy").save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


@pytest.fixture
def settings(tmp_path):
    return build_settings(tmp_path)


@pytest.fixture
def ocr_engine():
    return FakeOCREngine()


@pytest.fixture
def make_app(tmp_path, ocr_engine):
    """Build an app with extra setting overrides; shut down after the test."""
    apps = []

    def _make(extra=None, **kwargs):
        kwargs.setdefault("ocr_engine", ocr_engine)
        application = create_app(build_settings(tmp_path, extra), **kwargs)
        apps.append(application)
        return application

    yield _make

    for application in apps:
        application.state.job_manager.shutdown()


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def issue_key(client, admin_headers):
    """Issue an API key for an email; returns the user id and auth headers."""

    def _issue(email: str, name: str = "Test User"):
        response = client.post("/admin/keys", json={"email": email, "name": name}, headers=admin_headers)
        assert response.status_code == 201
        data = response.json()
        return {"user_id": data["record"]["userId"], "headers": {"X-API-Key": data["apiKey"]}}

    return _issue


@pytest.fixture
def user(issue_key):
    return issue_key("user@example.com")


@pytest.fixture
def premium_user(issue_key, client, admin_headers):
    account = issue_key("premium@example.com", name="Premium User")
    response = client.post(
        "/admin/subscriptions",
        json={"userId": account["user_id"], "currentPeriodEnd": (utcnow() + timedelta(days=30)).isoformat()},
        headers=admin_headers,
    )
    assert response.status_code == 201
    return account


@pytest.fixture
def upload(client):
    """Upload one PDF through the API and return its file id."""

    def _upload(pages: int = 1, name: str = "document.pdf", headers=None, data: bytes = None) -> str:
        content = data if data is not None else pdf_bytes(pages)
        response = client.post(
            "/upload",
            files=[("files", (name, content, "application/pdf"))],
            headers=headers or {},
        )
        assert response.status_code == 200, response.text
        return response.json()["files"][0]["id"]

    return _upload
