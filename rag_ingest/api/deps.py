from typing import Generator

from sqlalchemy.orm import Session

from rag_ingest.core.config import settings
from rag_ingest.core.database import SessionLocal
from rag_ingest.core.ingestion import IngestionConfig
from rag_ingest.core.storage import BlobStore, SupabaseStorage


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_blob_store() -> BlobStore:
    return SupabaseStorage(
        url=settings.SUPABASE_URL,
        service_key=settings.SUPABASE_SERVICE_ROLE_KEY,
        bucket=settings.RAG_BUCKET,
        timeout=settings.STORAGE_TIMEOUT_SECONDS,
    )


def get_ingestion_config() -> IngestionConfig:
    return IngestionConfig.from_settings(settings)
