from typing import Optional
from loguru import logger
from sqlmodel import Session, select

from signaturehub.core.config import settings
from signaturehub.core.exceptions import StateConflictError, ValidationError
from signaturehub.db.schema import (
    RequestStatus, RoleStatus, Signature, SignatureRequest, SignatureType,
    SigningPackage, SigningRole
)
from signaturehub.models.signing import (
    DeclineResponse, SigningPageData, SubmitSignatureRequest, SubmitSignatureResponse
)
from signaturehub.services.lifecycle import LifecycleController, ensure_mutable
from signaturehub.services.notifier import Notifier, get_notifier
from signaturehub.services.package import PackageService
from signaturehub.services.webhook import WebhookEvent, notify_request_event
from signaturehub.utils.dates import isoformat_z


class SigningService:
    """The signer-facing surface, addressed only by capability token."""

    def __init__(self, session: Session, notifier: Optional[Notifier] = None):
        self.session = session
        self.notifier = notifier or get_notifier()
        self.lifecycle = LifecycleController(session)
        self.packages = PackageService(session, notifier=self.notifier)

    def _roles_for(self, request: SignatureRequest):
        return self.session.exec(
            select(SigningRole).where(SigningRole.request_id == request.id)
        ).all()

    # ==========================================================================
    # PAGE DATA
    # ==========================================================================

    def get_page_data(self, token_value: str) -> SigningPageData:
        """Opening the page is the signer's first access: pending/sent become viewed."""
        request, token = self.lifecycle.access(token_value)

        roles = self._roles_for(request)
        is_admin = any(r.is_package_admin for r in roles)
        package = self.session.get(SigningPackage, request.package_id) if request.package_id else None

        return SigningPageData(
            reference_code=request.reference_code,
            document_name=request.document_name,
            document_content=request.document_content_snapshot or request.document_content,
            document_url=request.document_url,
            signer_name=request.signer_name,
            status=request.status,
            is_verified=token.is_verified,
            verification_method=request.verification_method,
            has_email=bool(request.signer_email),
            has_phone=bool(request.signer_phone),
            roles=[r.role_name for r in roles],
            is_package_admin=is_admin,
            package_code=package.package_code if package else None,
            package_roles=self.packages.list_role_reads(package.id) if package and is_admin else [],
            expires_at=request.expires_at,
            demo_mode=settings.demo_mode,
        )

    # ==========================================================================
    # SUBMIT
    # ==========================================================================

    def submit_signature(
        self,
        token_value: str,
        data: SubmitSignatureRequest,
        signer_ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> SubmitSignatureResponse:
        # 1. Re-read status at submission time; the expiry sweep may have run
        request, token = self.lifecycle.access(token_value)
        ensure_mutable(request)

        if not token.is_verified:
            raise StateConflictError("Identity must be verified before signing.")

        if data.signature_type == SignatureType.TYPED and not (data.typed_name or "").strip():
            raise ValidationError("typed_name is required for a typed signature.")
        if data.signature_type == SignatureType.DRAWN and not data.signature_image:
            raise ValidationError("signature_image is required for a drawn signature.")

        # 2. Status, consent record and package progress commit together
        if request.status == RequestStatus.VIEWED:
            # Verified token, but no delivered code was ever recorded on the request
            self.lifecycle.transition(request, RequestStatus.VERIFIED)
        self.lifecycle.transition(request, RequestStatus.SIGNED)
        self.session.add(Signature(
            request_id=request.id,
            signature_type=data.signature_type,
            typed_name=data.typed_name.strip() if data.typed_name else None,
            signature_image=data.signature_image,
            signer_ip=signer_ip,
            user_agent=user_agent,
            consent_text=data.consent_text,
            verification_method_used=token.code_channel,
            signed_at=request.signed_at,
        ))
        if request.package_id:
            self.packages.on_signature_completed(request.id)
        self.session.commit()
        self.session.refresh(request)
        logger.info(f"Request {request.reference_code} signed ({data.signature_type.value})")

        # 3. Best effort, after the commit
        notify_request_event(
            request, WebhookEvent.COMPLETED,
            signedAt=isoformat_z(request.signed_at),
            signatureType=data.signature_type.value,
        )
        destination = request.signer_email or request.signer_phone
        if destination:
            self.notifier.send_confirmation(
                destination, request.signer_name, request.document_name, request.reference_code)

        return SubmitSignatureResponse(
            request_id=request.id,
            reference_code=request.reference_code,
            status=request.status,
            signed_at=request.signed_at,
        )

    # ==========================================================================
    # DECLINE
    # ==========================================================================

    def decline(self, token_value: str, reason: Optional[str] = None) -> DeclineResponse:
        request, token = self.lifecycle.resolve_token(token_value)
        ensure_mutable(request)

        reason = (reason or "").strip()[:settings.decline_reason_max_length] or None

        self.lifecycle.transition(request, RequestStatus.DECLINED)
        request.decline_reason = reason
        roles = self._roles_for(request)
        for role in roles:
            role.status = RoleStatus.DECLINED
            self.session.add(role)
        self.session.commit()
        logger.info(f"Request {request.reference_code} declined")

        notify_request_event(request, WebhookEvent.DECLINED, declineReason=reason)

        admin_notified = False
        if request.package_id and not any(r.is_package_admin for r in roles):
            admin_notified = self._notify_package_admin(request, reason)

        return DeclineResponse(status=request.status, admin_notified=admin_notified)

    def _notify_package_admin(self, request: SignatureRequest, reason: Optional[str]) -> bool:
        """Tells the package admin, with a link to their own page where they can replace the signer."""
        admin_role = self.session.exec(
            select(SigningRole).where(
                SigningRole.package_id == request.package_id,
                SigningRole.is_package_admin == True  # noqa: E712
            )
        ).first()
        if not admin_role or not admin_role.request_id:
            return False

        admin_request = self.session.get(SignatureRequest, admin_role.request_id)
        admin_token = self.lifecycle.get_token_for_request(admin_role.request_id)
        destination = admin_role.signer_email or admin_role.signer_phone
        if not admin_request or not admin_token or not destination:
            return False

        return self.notifier.send_decline_notice(
            destination,
            request.signer_name,
            request.document_name,
            reason=reason,
            replacement_url=self.lifecycle.sign_url(admin_token),
        )
