from typing import List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from rag_ingest.models.chunk import RagChunk
from rag_ingest.models.document import RagDocument


class DocumentRepository:
    """Document/chunk access for one request-scoped session."""

    def __init__(self, db: Session):
        self.db = db

    def count_for_user(self, user_id: str) -> int:
        return self.db.query(RagDocument).filter(RagDocument.user_id == user_id).count()

    def find_by_hash(self, user_id: str, file_hash: str) -> Optional[RagDocument]:
        return (
            self.db.query(RagDocument)
            .filter(RagDocument.user_id == user_id, RagDocument.file_hash == file_hash)
            .order_by(RagDocument.created_at)
            .first()
        )

    def get(self, document_id: str) -> Optional[RagDocument]:
        return self.db.query(RagDocument).filter(RagDocument.id == document_id).first()

    def list_for_user(self, user_id: str) -> List[tuple]:
        """(document, chunk_count) pairs, newest first."""
        return (
            self.db.query(RagDocument, func.count(RagChunk.id))
            .outerjoin(RagChunk, RagChunk.document_id == RagDocument.id)
            .filter(RagDocument.user_id == user_id)
            .group_by(RagDocument.id)
            .order_by(RagDocument.created_at.desc())
            .all()
        )

    def add_document(self, user_id: str, file_name: str, file_hash: str) -> RagDocument:
        doc = RagDocument(user_id=user_id, file_name=file_name, file_hash=file_hash)
        self.db.add(doc)
        self.db.flush()
        return doc

    def add_chunks(self, document_id: str, user_id: str, chunks: Sequence[str]) -> None:
        self.db.add_all(
            [
                RagChunk(
                    document_id=document_id,
                    user_id=user_id,
                    chunk_index=i,
                    chunk_text=text,
                    embedding_json="",
                )
                for i, text in enumerate(chunks)
            ]
        )
        self.db.flush()

    def delete_document(self, doc: RagDocument) -> None:
        self.db.delete(doc)
        self.db.commit()

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
