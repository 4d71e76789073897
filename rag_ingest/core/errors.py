"""
Error taxonomy for the ingestion pipeline.

Every error carries the HTTP status it maps to and a `step` label naming the
pipeline stage that failed. main.py renders them as {"error": ..., "step": ...}.
"""
from typing import Optional


class IngestionError(Exception):
    status_code: int = 500
    default_step: Optional[str] = None

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step or self.default_step

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.step:
            body["step"] = self.step
        return body


class Unauthorized(IngestionError):
    status_code = 401
    default_step = "auth"


class Forbidden(IngestionError):
    status_code = 403
    default_step = "auth"


class BadRequest(IngestionError):
    status_code = 400
    default_step = "validate"


class UnsupportedFileType(BadRequest):
    def __init__(self, extension: str, allowed: Optional[str] = None):
        allowed = allowed or "PDF, TXT, DOCX"
        super().__init__(f"Unsupported file type '.{extension}'. Allowed: {allowed}")


class PayloadTooLarge(IngestionError):
    status_code = 413
    default_step = "size_check"


class QuotaExceeded(IngestionError):
    status_code = 429
    default_step = "quota"


class ExtractionFailed(IngestionError):
    status_code = 422
    default_step = "extract"


class EmptyDocument(IngestionError):
    status_code = 422
    default_step = "extract"


class NoChunksGenerated(IngestionError):
    status_code = 422
    default_step = "chunk"


class PersistenceError(IngestionError):
    status_code = 500
    default_step = "persist"


class StorageError(IngestionError):
    status_code = 500
    default_step = "download"


class StorageReadError(StorageError):
    """Blob missing or unreadable. Retrying is up to the caller."""
