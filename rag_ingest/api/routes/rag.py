"""
RAG document routes.

- POST /rag/upload: ingest a file the browser already put in the rag-files bucket.
- GET /rag/documents: list the caller's indexed documents.
- DELETE /rag/documents/{document_id}: remove a document and its chunks.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from rag_ingest.api.deps import get_blob_store, get_db, get_ingestion_config
from rag_ingest.core.audit import audit_document_event
from rag_ingest.core.auth import User, get_current_user
from rag_ingest.core.ingestion import IngestionConfig, IngestionPipeline
from rag_ingest.core.repository import DocumentRepository
from rag_ingest.core.storage import BlobStore
from rag_ingest.schemas.rag import (
    DeleteDocumentOut,
    DocumentListOut,
    DocumentOut,
    UploadRequest,
    UploadResponse,
)

router = APIRouter(prefix="/rag", tags=["rag"])


@router.post("/upload", response_model=UploadResponse, response_model_exclude_none=True)
def upload_document(
    payload: UploadRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store),
    config: IngestionConfig = Depends(get_ingestion_config),
):
    """
    Extract, chunk and store a previously uploaded file.

    Chunks are stored without embeddings; those are computed lazily at query time.
    Re-uploading byte-identical content returns the existing document with `duplicate: true`.
    """
    pipeline = IngestionPipeline(DocumentRepository(db), blob_store, config)
    result = pipeline.run(current_user, payload.file_name, payload.file_path)

    if not result.duplicate:
        audit_document_event(
            db,
            current_user,
            "created",
            result.document_id,
            f"Document uploaded: {payload.file_name} ({result.chunks_created} chunks)",
        )
    return result


@router.get("/documents", response_model=DocumentListOut)
def list_documents(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List the current user's documents, newest first."""
    rows = DocumentRepository(db).list_for_user(current_user.id)
    return DocumentListOut(
        documents=[
            DocumentOut(
                id=doc.id,
                file_name=doc.file_name,
                file_hash=doc.file_hash,
                chunk_count=chunk_count,
                created_at=doc.created_at,
            )
            for doc, chunk_count in rows
        ]
    )


@router.delete("/documents/{document_id}", response_model=DeleteDocumentOut)
def delete_document(
    document_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delete a document; its chunks go with it."""
    repository = DocumentRepository(db)
    doc = repository.get(document_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found.")
    if doc.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="You do not have access to this document.")

    file_name = doc.file_name
    repository.delete_document(doc)
    audit_document_event(db, current_user, "deleted", document_id, f"Document deleted: {file_name}")
    return DeleteDocumentOut(document_id=document_id)
