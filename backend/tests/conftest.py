"""Shared test fixtures for the publish API test suite.

Tests run against a throwaway SQLite database created in a temp directory.
Tables are emptied before each test. Outbound integrations (object storage,
CDN purge, Upstash) are replaced by in-memory stores or httpx MockTransport,
so no test talks to the network.
"""

import os
import tempfile

# Point the app at a scratch database before any app imports.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="corner-test-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL",
    f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}",
)
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_FORMAT"] = "text"
os.environ["CLEANUP_PROBABILITY"] = "0"

import boto3
import pytest
from botocore.config import Config
from sqlalchemy import text
from fastapi.testclient import TestClient

from corner.database import SessionLocal, get_db, init_db
from corner.main import app
from corner.core.auth import CallerIdentity
from corner.core.components import Components
from corner.core.config import Settings, settings
from corner.core.token_factory import create_token
from corner.models.page import Page
from corner.models.user import User
from corner.services.admission import AdmissionController, MemoryCounterStore, build_quotas
from corner.services.artifact_publisher import ArtifactPublisher, MemoryObjectStore

init_db()

# Delete order matters for foreign keys.
_CLEAN_TABLES = ["pages", "users"]

PUBLIC_BASE_URL = "https://cdn.test"


@pytest.fixture(autouse=True)
def _clean_tables():
    """Empty all data tables before each test for isolation.

    Runs before the test (not after) so test failures leave data
    available for debugging.
    """
    db = SessionLocal()
    try:
        for table in _CLEAN_TABLES:
            db.execute(text(f"DELETE FROM {table}"))
        db.commit()
    finally:
        db.close()
    yield


@pytest.fixture()
def db():
    """Per-test database session."""
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def config() -> Settings:
    """Development settings with storage required (degraded publish off)."""
    return Settings(environment="development", allow_degraded_publish=False)


@pytest.fixture()
def object_store() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture()
def publisher(object_store) -> ArtifactPublisher:
    return ArtifactPublisher(object_store, public_base_url=PUBLIC_BASE_URL)


@pytest.fixture()
def components(publisher) -> Components:
    """In-memory collaborators installed on app.state for API tests."""
    return Components(
        publisher=publisher,
        invalidator=None,
        admission=AdmissionController(MemoryCounterStore(), build_quotas(settings)),
    )


@pytest.fixture()
def client(db, components):
    """FastAPI TestClient with the DB dependency overridden to use the test session."""

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.state.components = components
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def user(db) -> User:
    """A registered user whose id seeds the slug ``user-ab12cd34``."""
    u = User(id="ab12cd34ef567890", auth_subject="test|ab12cd34", email="owner@example.com")
    db.add(u)
    db.commit()
    return u


@pytest.fixture()
def other_user(db) -> User:
    u = User(id="ff00ee11dd223344", auth_subject="test|ff00ee11", email="other@example.com")
    db.add(u)
    db.commit()
    return u


@pytest.fixture()
def caller(user) -> CallerIdentity:
    return CallerIdentity(user_id=user.id, client_ip="127.0.0.1")


@pytest.fixture()
def auth_headers(user) -> dict:
    """Valid session token headers for ``user``."""
    token = create_token(user.id, secret=settings.jwt_secret_key)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def user_page(db, user) -> Page:
    """An unpublished page owned by ``user`` at revision 1."""
    page = Page(
        id="page_owned",
        owner_token=user.id,
        user_id=user.id,
        draft_content={"version": 1, "blocks": []},
        server_revision=1,
        is_published=False,
    )
    db.add(page)
    db.commit()
    return page


def make_block(n: int = 1, **overrides) -> dict:
    """Factory for a text block payload."""
    block = {
        "id": f"b{n}",
        "type": "text",
        "x": 10 * n,
        "y": 20 * n,
        "width": 200,
        "height": 40,
        "content": {"text": f"Block {n}"},
    }
    block.update(overrides)
    return block


def make_doc(blocks: int = 2, title: str = "My corner", **overrides) -> dict:
    """Factory for page documents with *blocks* text blocks."""
    doc = {
        "version": 1,
        "title": title,
        "blocks": [make_block(i + 1) for i in range(blocks)],
    }
    doc.update(overrides)
    return doc


def s3_client():
    """A real boto3 S3 client pointed at a fake endpoint; wrap it in a Stubber."""
    return boto3.client(
        "s3",
        endpoint_url="https://acct.r2.test",
        region_name="auto",
        aws_access_key_id="AKIDEXAMPLE",
        aws_secret_access_key="secret",
        config=Config(s3={"addressing_style": "path"}),
    )


class RaisingS3Client:
    """Stands in for a boto3 client whose transport fails with *exc*."""

    def __init__(self, exc: Exception):
        self.exc = exc

    def put_object(self, **kwargs):
        raise self.exc

    def close(self):
        pass
