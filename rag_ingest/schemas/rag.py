from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class UploadRequest(BaseModel):
    # Presence is checked by the pipeline so a missing field is a 400, not a 422
    file_name: Optional[str] = None
    file_path: Optional[str] = None  # must start with "{user_id}/"


class UploadResponse(BaseModel):
    success: bool = True
    document_id: str
    chunks_created: int
    duplicate: Optional[bool] = None
    message: Optional[str] = None


class DocumentOut(BaseModel):
    id: str
    file_name: str
    file_hash: str
    chunk_count: int
    created_at: Optional[datetime] = None


class DocumentListOut(BaseModel):
    documents: List[DocumentOut]


class DeleteDocumentOut(BaseModel):
    success: bool = True
    document_id: str
