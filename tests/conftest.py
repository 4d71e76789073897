"""
Shared fixtures: in-memory SQLite session, fake blob store, authenticated client.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SUPABASE_URL", "https://project.supabase.co")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rag_ingest.api.deps import get_blob_store, get_db, get_ingestion_config
from rag_ingest.core.auth import User, get_current_user
from rag_ingest.core.database import Base
from rag_ingest.core.errors import StorageReadError
from rag_ingest.core.ingestion import IngestionConfig
from rag_ingest.main import app
from rag_ingest.models import audit_log, chunk, document  # noqa: F401  (register tables)

USER_ID = "8d4f0c1e-user-0001"


class FakeBlobStore:
    """In-memory stand-in for SupabaseStorage that records every call."""

    def __init__(self, fail_remove: bool = False):
        self.objects = {}
        self.downloads = []
        self.removed = []
        self.fail_remove = fail_remove

    def put(self, path: str, data: bytes) -> str:
        self.objects[path] = data
        return path

    def download(self, path, timeout=None):
        self.downloads.append(path)
        if path not in self.objects:
            raise StorageReadError("Failed to download file from storage: object not found")
        return self.objects[path]

    def remove(self, path):
        self.removed.append(path)
        if self.fail_remove:
            raise RuntimeError("storage unavailable")
        self.objects.pop(path, None)

    def discard(self, path):
        try:
            self.remove(path)
        except Exception:
            pass


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def user():
    return User(user_id=USER_ID, email="owner@example.com")


@pytest.fixture
def blob_store():
    return FakeBlobStore()


@pytest.fixture
def config():
    return IngestionConfig()


@pytest.fixture
def client(db_session, blob_store, user, config):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_ingestion_config] = lambda: config
    app.dependency_overrides[get_current_user] = lambda: user
    yield TestClient(app)
    app.dependency_overrides.clear()


def words(prefix: str, count: int) -> str:
    return " ".join(f"{prefix}{i}" for i in range(count))
