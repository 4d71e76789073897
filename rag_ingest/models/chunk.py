from uuid import uuid4

from sqlalchemy import Column, String, Text, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from rag_ingest.core.database import Base


class RagChunk(Base):
    __tablename__ = "rag_chunks"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))

    document_id = Column(
        String, ForeignKey("rag_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    document = relationship("RagDocument", back_populates="chunks")

    user_id = Column(String, nullable=False, index=True)  # denormalized for per-user filtering
    chunk_index = Column(Integer, nullable=False)
    chunk_text = Column(Text, nullable=False)
    embedding_json = Column(Text, nullable=False, default="")  # filled lazily at query time

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
