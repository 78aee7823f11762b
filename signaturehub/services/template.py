import uuid
from typing import List, Optional
from fastapi import BackgroundTasks
from loguru import logger
from sqlmodel import Session, select

from signaturehub.core.audit import _perform_audit_log
from signaturehub.core.exceptions import NotFoundError, StateConflictError
from signaturehub.db.schema import AuditAction, DocumentTemplate
from signaturehub.models.template import TemplateCreate, TemplateUpdate


class TemplateService:
    def __init__(self, session: Session):
        self.session = session

    def get_template(self, tenant_id: uuid.UUID, template_code: str) -> DocumentTemplate:
        template = self.session.exec(
            select(DocumentTemplate).where(
                DocumentTemplate.tenant_id == tenant_id,
                DocumentTemplate.template_code == template_code
            )
        ).first()
        if not template:
            raise NotFoundError("Template not found.")
        return template

    def list_templates(
        self,
        tenant_id: uuid.UUID,
        jurisdiction: Optional[str] = None,
        include_inactive: bool = False
    ) -> List[DocumentTemplate]:
        query = select(DocumentTemplate).where(DocumentTemplate.tenant_id == tenant_id)
        if jurisdiction:
            query = query.where(DocumentTemplate.jurisdiction == jurisdiction)
        if not include_inactive:
            query = query.where(DocumentTemplate.is_active == True)  # noqa: E712
        return self.session.exec(query.order_by(DocumentTemplate.name)).all()

    def create_template(
        self,
        tenant_id: uuid.UUID,
        data: TemplateCreate,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> DocumentTemplate:
        existing = self.session.exec(
            select(DocumentTemplate).where(
                DocumentTemplate.tenant_id == tenant_id,
                DocumentTemplate.template_code == data.template_code
            )
        ).first()
        if existing:
            raise StateConflictError(f"Template with code {data.template_code} already exists.")

        template = DocumentTemplate(**data.model_dump(), tenant_id=tenant_id, version=1)
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        logger.info(f"Template {template.template_code} created")

        if background_tasks:
            background_tasks.add_task(
                _perform_audit_log,
                tenant_id=tenant_id,
                entity_type="DocumentTemplate",
                entity_id=template.id,
                action=AuditAction.CREATE,
                changes=data.model_dump(mode="json", exclude={"html_content"}),
            )
        return template

    def update_template(
        self,
        tenant_id: uuid.UUID,
        template_code: str,
        data: TemplateUpdate,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> DocumentTemplate:
        """
        Partial update. A new body bumps the version; requests already created
        keep the version and snapshot they were resolved from.
        """
        template = self.get_template(tenant_id, template_code)

        changes = {}
        for key, value in data.model_dump(exclude_unset=True).items():
            if getattr(template, key) != value:
                changes[key] = value
                setattr(template, key, value)

        if "html_content" in changes:
            template.version += 1
            changes["html_content"] = f"<v{template.version}>"

        if changes:
            self.session.add(template)
            self.session.commit()
            self.session.refresh(template)
            logger.info(f"Template {template.template_code} updated (v{template.version})")

            if background_tasks:
                background_tasks.add_task(
                    _perform_audit_log,
                    tenant_id=tenant_id,
                    entity_type="DocumentTemplate",
                    entity_id=template.id,
                    action=AuditAction.UPDATE,
                    changes=changes,
                )
        return template

    def deactivate_template(
        self,
        tenant_id: uuid.UUID,
        template_code: str,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> DocumentTemplate:
        template = self.get_template(tenant_id, template_code)
        template.is_active = False
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)

        if background_tasks:
            background_tasks.add_task(
                _perform_audit_log,
                tenant_id=tenant_id,
                entity_type="DocumentTemplate",
                entity_id=template.id,
                action=AuditAction.UPDATE,
                changes={"is_active": False},
            )
        return template
