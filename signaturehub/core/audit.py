import uuid
from typing import Any, Dict, Optional
from loguru import logger
from sqlmodel import Session

from signaturehub.db.core import engine
from signaturehub.db.schema import AuditLog, AuditAction
from signaturehub.utils.dates import utc_now


def _perform_audit_log(
    tenant_id: Optional[uuid.UUID],
    entity_type: str,
    entity_id: uuid.UUID,
    action: AuditAction,
    changes: Dict[str, Any],
    ip_address: Optional[str] = None
):
    """
    Background worker.
    Creates its OWN session using the global engine, so it runs safely after
    the request session has been closed.
    """
    try:
        with Session(engine) as session:
            log_entry = AuditLog(
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                changes=changes,
                ip_address=ip_address,
                timestamp=utc_now()
            )
            session.add(log_entry)
            session.commit()

    except Exception as e:
        logger.error(f"Audit log failed for {entity_type} {entity_id}: {e}")
