"""
RAG upload pipeline.

One synchronous run per request:

    access check -> extension gate -> download -> size guard -> quota guard
    -> sha256 dedup -> text extraction -> chunking -> persistence

The downloaded blob is removed on every exit path once it has been fetched
(see storage.transient_blob). Document and chunk rows are written in one
transaction, so a failed chunk insert leaves no document row behind.

Known races, accepted: two concurrent uploads near the quota ceiling can both
pass the quota check, and two concurrent uploads of identical bytes can both
pass the duplicate check. Neither is guarded by a lock or unique constraint.
"""
import hashlib
import logging
import re
import time
from typing import List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, model_validator
from sqlalchemy.exc import SQLAlchemyError

from rag_ingest.core.auth import User, ensure_path_owned
from rag_ingest.core.chunking import CHARS_PER_WORD, chunk_text
from rag_ingest.core.errors import (
    BadRequest,
    EmptyDocument,
    ExtractionFailed,
    IngestionError,
    NoChunksGenerated,
    PayloadTooLarge,
    PersistenceError,
    QuotaExceeded,
    StorageReadError,
    UnsupportedFileType,
)
from rag_ingest.core.extraction import MIME_TYPES, STRATEGIES, build_extractor, file_extension
from rag_ingest.core.repository import DocumentRepository
from rag_ingest.core.storage import BlobStore, transient_blob
from rag_ingest.schemas.rag import UploadResponse

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "File already indexed, skipping re-embedding."


class IngestionConfig(BaseModel):
    """Tunable policy for the upload pipeline."""
    model_config = ConfigDict(frozen=True)

    chunk_size: int = 800
    chunk_overlap: int = 150
    chars_per_word: float = CHARS_PER_WORD
    max_documents_per_user: int = 3
    max_file_size_bytes: int = 5 * 1024 * 1024
    allowed_extensions: Tuple[str, ...] = ("pdf", "txt", "docx")

    extraction_strategy: str = "heuristic"
    extraction_model: str = "gpt-4o-mini"
    extraction_timeout_seconds: float = 60.0
    openai_api_key: Optional[str] = None

    storage_timeout_seconds: float = 30.0
    request_timeout_seconds: float = 120.0

    @model_validator(mode="after")
    def validate_policy(self) -> "IngestionConfig":
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
        if self.extraction_strategy not in STRATEGIES:
            raise ValueError(f"extraction_strategy must be one of {', '.join(STRATEGIES)}")
        unknown = set(self.allowed_extensions) - set(MIME_TYPES)
        if unknown:
            raise ValueError(f"No extractor for extensions: {', '.join(sorted(unknown))}")
        return self

    @classmethod
    def from_settings(cls, settings) -> "IngestionConfig":
        return cls(
            chunk_size=settings.RAG_CHUNK_SIZE,
            chunk_overlap=settings.RAG_CHUNK_OVERLAP,
            max_documents_per_user=settings.RAG_MAX_DOCUMENTS_PER_USER,
            max_file_size_bytes=settings.RAG_MAX_FILE_SIZE_BYTES,
            extraction_strategy=settings.EXTRACTION_STRATEGY,
            extraction_model=settings.EXTRACTION_MODEL,
            extraction_timeout_seconds=settings.EXTRACTION_TIMEOUT_SECONDS,
            openai_api_key=settings.OPENAI_API_KEY,
            storage_timeout_seconds=settings.STORAGE_TIMEOUT_SECONDS,
            request_timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
        )


class Deadline:
    """Overall request budget; network steps get min(step timeout, time left)."""

    def __init__(self, seconds: float):
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return self._expires_at - time.monotonic()

    def clamp(self, timeout: float, error: Type[IngestionError], message: str) -> float:
        left = self.remaining()
        if left <= 0:
            raise error(message)
        return min(timeout, left)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w\s\-.]", re.ASCII)


def sanitize_filename(name: str) -> str:
    base = name.split("/")[-1].split("\\")[-1]
    return _UNSAFE_FILENAME_CHARS.sub("", base)[:255] or "unnamed"


def write_document(
    repository: DocumentRepository,
    user_id: str,
    file_name: str,
    file_hash: str,
    chunks: List[str],
) -> str:
    """Insert the document and its chunks in one transaction; return the document id."""
    safe_name = sanitize_filename(file_name)
    try:
        doc = repository.add_document(user_id, safe_name, file_hash)
        document_id = doc.id
    except SQLAlchemyError as e:
        repository.rollback()
        logger.error("Failed to create document: %s", e)
        raise PersistenceError(f"Failed to create document: {str(e)}")

    try:
        repository.add_chunks(document_id, user_id, chunks)
    except SQLAlchemyError as e:
        # Rolling back discards the document row flushed above
        repository.rollback()
        logger.error("Failed to store chunks for document %s: %s", document_id, e)
        raise PersistenceError(f"Failed to store chunks: {str(e)}")

    try:
        repository.commit()
    except SQLAlchemyError as e:
        repository.rollback()
        logger.error("Failed to commit document %s: %s", document_id, e)
        raise PersistenceError(f"Failed to save document: {str(e)}")

    return document_id


class IngestionPipeline:
    def __init__(
        self,
        repository: DocumentRepository,
        blob_store: BlobStore,
        config: Optional[IngestionConfig] = None,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.config = config or IngestionConfig()

    def run(self, user: User, file_name: Optional[str], file_path: Optional[str]) -> UploadResponse:
        try:
            return self._run(user, (file_name or "").strip(), (file_path or "").strip())
        except IngestionError as e:
            logger.warning("Upload rejected for user %s at step %s: %s", user.id, e.step, e.message)
            raise
        except Exception as e:
            logger.exception("Unexpected error during upload for user %s", user.id)
            raise IngestionError(f"Unexpected error: {str(e)}", step="internal")

    def _run(self, user: User, file_name: str, file_path: str) -> UploadResponse:
        if not file_name:
            raise BadRequest("Missing file_name")
        if not file_path:
            raise BadRequest("Missing file_path")

        ensure_path_owned(user.id, file_path)
        self.check_extension(file_name)

        logger.info("Upload started for %s (path %s)", file_name, file_path)
        deadline = Deadline(self.config.request_timeout_seconds)
        download_timeout = deadline.clamp(
            self.config.storage_timeout_seconds,
            StorageReadError,
            "Request deadline exceeded before download",
        )

        with transient_blob(self.blob_store, file_path, timeout=download_timeout) as data:
            self.check_size(data)
            self.check_quota(user.id)

            file_hash = content_hash(data)
            existing = self.find_duplicate(user.id, file_hash)
            if existing is not None:
                logger.info("Duplicate upload of %s, reusing document %s", file_name, existing)
                return UploadResponse(
                    success=True,
                    document_id=existing,
                    chunks_created=0,
                    duplicate=True,
                    message=DUPLICATE_MESSAGE,
                )

            text = self.extract(file_name, data, deadline)
            chunks = chunk_text(
                text,
                chunk_size=self.config.chunk_size,
                overlap=self.config.chunk_overlap,
                chars_per_word=self.config.chars_per_word,
            )
            if not chunks:
                raise NoChunksGenerated("No text chunks could be generated.")
            logger.info("Chunks: %d", len(chunks))

            document_id = write_document(self.repository, user.id, file_name, file_hash, chunks)

        logger.info("Upload complete. Document: %s Chunks: %d", document_id, len(chunks))
        return UploadResponse(success=True, document_id=document_id, chunks_created=len(chunks))

    # --- guards ---

    def check_extension(self, file_name: str) -> None:
        ext = file_extension(file_name)
        allowed = self.config.allowed_extensions
        if ext not in allowed:
            raise UnsupportedFileType(ext, ", ".join(e.upper() for e in allowed))

    def check_size(self, data: bytes) -> None:
        limit = self.config.max_file_size_bytes
        if len(data) > limit:
            raise PayloadTooLarge(
                f"File too large. Maximum allowed size is {limit / (1024 * 1024):g}MB."
            )

    def check_quota(self, user_id: str) -> None:
        try:
            count = self.repository.count_for_user(user_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error: {str(e)}", step="quota")
        limit = self.config.max_documents_per_user
        if count >= limit:
            raise QuotaExceeded(f"Document limit reached ({limit} files). Delete one first.")

    def find_duplicate(self, user_id: str, file_hash: str) -> Optional[str]:
        try:
            existing = self.repository.find_by_hash(user_id, file_hash)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error: {str(e)}", step="dedup")
        return existing.id if existing is not None else None

    # --- extraction ---

    def extract(self, file_name: str, data: bytes, deadline: Deadline) -> str:
        timeout = deadline.clamp(
            self.config.extraction_timeout_seconds,
            ExtractionFailed,
            "Request deadline exceeded before text extraction",
        )
        try:
            extractor = build_extractor(
                file_name,
                self.config.extraction_strategy,
                api_key=self.config.openai_api_key,
                model=self.config.extraction_model,
                timeout=timeout,
                deadline=deadline.remaining,
            )
            logger.info("Extracting text from %s with %s", file_name, extractor.name)
            text = extractor.extract(file_name, data)
        except ExtractionFailed:
            raise
        except Exception as e:
            raise ExtractionFailed(f"Text extraction failed: {str(e)}")

        if not text or not text.strip():
            raise EmptyDocument("File appears empty or contains no readable text.")
        return text
