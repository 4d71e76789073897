import logging
from typing import Optional

from rag_ingest.core.auth import User
from rag_ingest.models.audit_log import AuditLog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

DOCUMENT_STATUS = {"created": "indexed", "deleted": "deleted"}


def log_audit(
    db: Session,
    *,
    actor: User,
    action: str,
    entity_type: str,
    entity_id: str,
    source: str = "api",
    status: Optional[str] = None,
    description: Optional[str] = None,
) -> AuditLog:
    entry = AuditLog(
        actor_id=actor.id,
        actor_email=actor.email,
        actor_role=actor.role,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        source=source,
        status=status,
        description=description,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def audit_document_event(
    db: Session,
    actor: User,
    action: str,
    document_id: str,
    description: str,
) -> Optional[AuditLog]:
    """
    Record a document lifecycle event after the document change has committed.

    A failed audit write is rolled back and logged; it never turns a
    completed upload or delete into an error response.
    """
    try:
        return log_audit(
            db,
            actor=actor,
            action=action,
            entity_type="document",
            entity_id=document_id,
            status=DOCUMENT_STATUS.get(action),
            description=description,
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to write audit log for document %s (%s)", document_id, action)
        return None
