from uuid import uuid4

from sqlalchemy import Column, String, DateTime, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from rag_ingest.core.database import Base


class RagDocument(Base):
    __tablename__ = "rag_documents"
    # Not unique: duplicate detection is a lookup, not a constraint
    __table_args__ = (Index("ix_rag_documents_user_hash", "user_id", "file_hash"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    file_name = Column(String, nullable=False)
    file_hash = Column(String, nullable=False)      # hex sha256 of the raw upload
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    chunks = relationship(
        "RagChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="RagChunk.chunk_index",
    )
