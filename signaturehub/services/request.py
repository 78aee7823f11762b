import uuid
from typing import Optional
from fastapi import BackgroundTasks
from loguru import logger
from sqlalchemy import func
from sqlmodel import Session, select

from signaturehub.core.audit import _perform_audit_log
from signaturehub.core.exceptions import NotFoundError, StateConflictError, ValidationError
from signaturehub.db.schema import AuditAction, RequestStatus, Signature, SignatureRequest
from signaturehub.models.package import SignerAssignment
from signaturehub.models.request import (
    RequestCreate, RequestCreateResponse, RequestFilter, RequestList, RequestRead
)
from signaturehub.services.content import ContentResolver, detect_verification_method
from signaturehub.services.lifecycle import LifecycleController, is_terminal
from signaturehub.services.notifier import Notifier, get_notifier
from signaturehub.services.package import send_link
from signaturehub.services.webhook import WebhookEvent, is_valid_callback_url, notify_request_event


class RequestService:
    """Standalone, single-signer requests for the tenant API."""

    def __init__(self, session: Session, notifier: Optional[Notifier] = None):
        self.session = session
        self.notifier = notifier or get_notifier()
        self.lifecycle = LifecycleController(session)
        self.resolver = ContentResolver(session)

    # ==========================================================================
    # CREATE
    # ==========================================================================

    def create_request(
        self,
        tenant_id: uuid.UUID,
        data: RequestCreate,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> RequestCreateResponse:
        if not (data.signer_email or data.signer_phone):
            raise ValidationError("Signer must have either an email or a phone number.")

        if not (data.document_content or data.document_url or data.template_code):
            raise ValidationError("One of document_content, document_url or template_code is required.")

        if data.callback_url and not is_valid_callback_url(data.callback_url):
            raise ValidationError("callback_url must be a public http(s) URL.")

        method = data.verification_method or detect_verification_method(data.signer_email, data.signer_phone)

        # Both passes run here too, so {{signerName}} works in standalone documents
        content = None
        document_name = data.document_name
        template_code = template_version = None
        if data.document_content or data.template_code:
            base = self.resolver.resolve_base(
                tenant_id, data.document_name, data.document_content, data.template_code,
                data.merge_variables, data.jurisdiction)
            signer = SignerAssignment(
                role="signer", name=data.signer_name,
                email=data.signer_email, phone=data.signer_phone)
            content, _ = self.resolver.resolve_for_signer(base.content, signer, [])
            document_name = base.document_name
            template_code, template_version = base.template_code, base.template_version
        elif not document_name:
            raise ValidationError("document_name is required.")

        request, token = self.lifecycle.create_request(
            tenant_id=tenant_id,
            document_name=document_name,
            signer_name=data.signer_name,
            signer_email=data.signer_email,
            signer_phone=data.signer_phone,
            verification_method=method,
            expires_at=data.expires_at,
            document_content=content,
            document_content_snapshot=content,
            document_url=data.document_url,
            template_code=template_code,
            template_version=template_version,
            jurisdiction=data.jurisdiction,
            merge_variables=data.merge_variables,
            external_ref=data.external_ref,
            external_type=data.external_type,
            callback_url=data.callback_url,
            created_by=data.created_by,
        )
        self.session.commit()
        self.session.refresh(request)

        sign_url = self.lifecycle.sign_url(token)
        sent = send_link(self.notifier, request, sign_url)
        if sent:
            self.lifecycle.mark_sent(request)
            self.session.refresh(request)

        if background_tasks:
            background_tasks.add_task(
                _perform_audit_log,
                tenant_id=tenant_id,
                entity_type="SignatureRequest",
                entity_id=request.id,
                action=AuditAction.CREATE,
                changes=data.model_dump(mode="json", exclude={"document_content"}),
            )

        return RequestCreateResponse(
            id=request.id,
            reference_code=request.reference_code,
            status=request.status,
            sign_url=sign_url,
            expires_at=request.expires_at,
            notification_sent=sent,
        )

    # ==========================================================================
    # READ
    # ==========================================================================

    def get_request(self, tenant_id: uuid.UUID, request_id: uuid.UUID) -> SignatureRequest:
        request = self.session.exec(
            select(SignatureRequest).where(
                SignatureRequest.id == request_id,
                SignatureRequest.tenant_id == tenant_id
            )
        ).first()
        if not request:
            raise NotFoundError("Signature request not found.")
        return request

    def get_by_reference(self, tenant_id: uuid.UUID, reference_code: str) -> SignatureRequest:
        request = self.session.exec(
            select(SignatureRequest).where(
                SignatureRequest.reference_code == reference_code,
                SignatureRequest.tenant_id == tenant_id
            )
        ).first()
        if not request:
            raise NotFoundError("Signature request not found.")
        return request

    def get_signature(self, tenant_id: uuid.UUID, request_id: uuid.UUID) -> Signature:
        request = self.get_request(tenant_id, request_id)
        signature = self.session.exec(
            select(Signature).where(Signature.request_id == request.id)
        ).first()
        if not signature:
            raise NotFoundError("This request has not been signed.")
        return signature

    def list_requests(self, tenant_id: uuid.UUID, filters: RequestFilter) -> RequestList:
        query = select(SignatureRequest).where(SignatureRequest.tenant_id == tenant_id)

        if filters.status:
            query = query.where(SignatureRequest.status == filters.status)
        if filters.external_ref:
            query = query.where(SignatureRequest.external_ref == filters.external_ref)
        if filters.external_type:
            query = query.where(SignatureRequest.external_type == filters.external_type)
        if filters.signer_email:
            query = query.where(func.lower(SignatureRequest.signer_email) == filters.signer_email.lower())
        if filters.created_by:
            query = query.where(SignatureRequest.created_by == filters.created_by)
        if filters.jurisdiction:
            query = query.where(SignatureRequest.jurisdiction == filters.jurisdiction)

        total = self.session.exec(select(func.count()).select_from(query.subquery())).one()
        rows = self.session.exec(
            query.order_by(SignatureRequest.created_at.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        ).all()

        return RequestList(items=[RequestRead.model_validate(r) for r in rows], total=total)

    # ==========================================================================
    # CANCEL
    # ==========================================================================

    def cancel_request(
        self,
        tenant_id: uuid.UUID,
        request_id: uuid.UUID,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> SignatureRequest:
        request = self.get_request(tenant_id, request_id)
        if is_terminal(request.status):
            raise StateConflictError(f"This signature request is already {request.status.value}.")

        self.lifecycle.transition(request, RequestStatus.CANCELLED)
        self.session.commit()
        self.session.refresh(request)
        logger.info(f"Request {request.reference_code} cancelled by tenant")

        notify_request_event(request, WebhookEvent.CANCELLED)
        self.notifier.send_cancellation(
            request.signer_email or request.signer_phone, request.signer_name, request.document_name)

        if background_tasks:
            background_tasks.add_task(
                _perform_audit_log,
                tenant_id=tenant_id,
                entity_type="SignatureRequest",
                entity_id=request.id,
                action=AuditAction.CANCEL,
                changes={"status": RequestStatus.CANCELLED.value},
            )

        return request
