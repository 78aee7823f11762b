import uuid
from typing import List, Optional
from fastapi import BackgroundTasks
from sqlmodel import Session, select

from signaturehub.core.audit import _perform_audit_log
from signaturehub.db.schema import AuditAction, JurisdictionAddendum
from signaturehub.models.jurisdiction import JurisdictionUpsert


class JurisdictionService:
    def __init__(self, session: Session):
        self.session = session

    def list_addenda(self, tenant_id: uuid.UUID) -> List[JurisdictionAddendum]:
        return self.session.exec(
            select(JurisdictionAddendum)
            .where(JurisdictionAddendum.tenant_id == tenant_id)
            .order_by(JurisdictionAddendum.jurisdiction_code)
        ).all()

    def upsert_addendum(
        self,
        tenant_id: uuid.UUID,
        jurisdiction_code: str,
        data: JurisdictionUpsert,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> JurisdictionAddendum:
        """
        Idempotent (Upsert):
        If the tenant already has an addendum for this code, UPDATE it.
        If not, CREATE it.
        """
        code = jurisdiction_code.strip().upper()
        addendum = self.session.exec(
            select(JurisdictionAddendum).where(
                JurisdictionAddendum.tenant_id == tenant_id,
                JurisdictionAddendum.jurisdiction_code == code
            )
        ).first()

        action = AuditAction.UPDATE
        if addendum:
            for key, value in data.model_dump().items():
                setattr(addendum, key, value)
        else:
            action = AuditAction.CREATE
            addendum = JurisdictionAddendum(
                tenant_id=tenant_id,
                jurisdiction_code=code,
                **data.model_dump()
            )

        self.session.add(addendum)
        self.session.commit()
        self.session.refresh(addendum)

        if background_tasks:
            background_tasks.add_task(
                _perform_audit_log,
                tenant_id=tenant_id,
                entity_type="JurisdictionAddendum",
                entity_id=addendum.id,
                action=action,
                changes=data.model_dump(mode="json", exclude={"addendum_html"}),
            )
        return addendum
