import uuid
from typing import Optional
from fastapi import BackgroundTasks
from loguru import logger
from sqlmodel import Session, select

from signaturehub.core.audit import _perform_audit_log
from signaturehub.core.exceptions import (
    ForbiddenError, NotFoundError, StateConflictError, ValidationError
)
from signaturehub.db.schema import (
    AuditAction, PackageStatus, RequestStatus, RoleStatus, SignatureRequest,
    SigningPackage, SigningRole
)
from signaturehub.models.package import (
    ReplaceSignerRequest, ReplaceSignerResponse, SignerAssignment
)
from signaturehub.services.content import (
    ContentResolver, detect_verification_method, validate_ages
)
from signaturehub.services.lifecycle import LifecycleController, is_terminal
from signaturehub.services.notifier import Notifier, get_notifier
from signaturehub.services.package import PackageService, send_link
from signaturehub.services.webhook import WebhookEvent, notify_request_event


class SignerReplacementService:
    """
    Re-targets a role (and every sibling role of the same physical signer) to
    a new person. The old request is never edited: a new Request + Token is
    created and the old one is cancelled, so the history of who was asked
    first survives.
    """

    def __init__(self, session: Session, notifier: Optional[Notifier] = None):
        self.session = session
        self.notifier = notifier or get_notifier()
        self.lifecycle = LifecycleController(session)
        self.resolver = ContentResolver(session)
        self.packages = PackageService(session, notifier=self.notifier)

    def replace_signer(
        self,
        package: SigningPackage,
        data: ReplaceSignerRequest,
        background_tasks: Optional[BackgroundTasks] = None,
        actor: Optional[str] = None
    ) -> ReplaceSignerResponse:
        # 1. Preconditions
        if package.status in (PackageStatus.COMPLETE, PackageStatus.CANCELLED, PackageStatus.EXPIRED):
            raise StateConflictError(f"Cannot replace signer on a {package.status.value} package.")

        role = self.session.get(SigningRole, data.role_id)
        if not role or role.package_id != package.id:
            raise NotFoundError("Role not found in this package.")

        if role.status == RoleStatus.SIGNED:
            raise StateConflictError(
                f"Cannot replace signer - {role.signer_name} has already signed as {role.role_name}.")

        if not (data.new_signer_email or data.new_signer_phone):
            raise ValidationError("New signer must have either an email or a phone number.")

        siblings = self.session.exec(
            select(SigningRole)
            .where(SigningRole.consolidated_group == role.consolidated_group)
            .order_by(SigningRole.created_at)
        ).all()
        roles = [r.role_name for r in siblings]

        # 2. The new person must satisfy every role they inherit
        assignments = [
            SignerAssignment(
                role=name,
                name=data.new_signer_name,
                email=data.new_signer_email,
                phone=data.new_signer_phone,
                date_of_birth=data.new_signer_date_of_birth,
            )
            for name in roles
        ]
        age_errors = validate_ages(assignments, package.event_date)
        if age_errors:
            raise ValidationError("Age validation failed", age_errors)

        # 3. Same two-pass content as creation, on the package's base body
        content, _ = self.resolver.resolve_for_signer(
            package.document_content or "", assignments[0], roles, package.event_date)

        old_request_id = role.request_id
        previous_signer = role.signer_name

        new_request, new_token = self.lifecycle.create_request(
            tenant_id=package.tenant_id,
            document_name=package.document_name,
            signer_name=data.new_signer_name,
            signer_email=data.new_signer_email,
            signer_phone=data.new_signer_phone,
            verification_method=detect_verification_method(data.new_signer_email, data.new_signer_phone),
            expires_at=package.expires_at,
            document_content=content,
            document_content_snapshot=content,
            template_code=package.template_code,
            template_version=package.template_version,
            jurisdiction=package.jurisdiction,
            merge_variables=package.merge_variables,
            external_ref=package.external_ref,
            external_type=package.external_type,
            callback_url=package.callback_url,
            created_by=actor or package.created_by,
            package_id=package.id,
            roles_display=", ".join(roles),
        )

        # 4. Repoint every sibling; identity swapped in place
        for sibling in siblings:
            sibling.signer_name = data.new_signer_name
            sibling.signer_email = data.new_signer_email
            sibling.signer_phone = data.new_signer_phone
            sibling.date_of_birth = data.new_signer_date_of_birth
            sibling.is_minor = bool(assignments[0].is_minor)
            sibling.request_id = new_request.id
            sibling.status = RoleStatus.SENT
            sibling.signed_at = None
            self.session.add(sibling)

        # 5. Close the old request unless it already reached a terminal status
        old_request = self.session.get(SignatureRequest, old_request_id) if old_request_id else None
        cancelled_old = False
        if old_request and not is_terminal(old_request.status):
            self.lifecycle.transition(old_request, RequestStatus.CANCELLED)
            cancelled_old = True

        self.session.commit()
        self.session.refresh(new_request)
        logger.info(
            f"Package {package.package_code}: replaced {previous_signer} with "
            f"{data.new_signer_name} for roles {roles}")

        # 6. Best effort, after the commit
        if cancelled_old:
            notify_request_event(old_request, WebhookEvent.CANCELLED, reason="signer_replaced")

        sign_url = self.lifecycle.sign_url(new_token)
        sent = send_link(self.notifier, new_request, sign_url)
        if sent:
            self.lifecycle.mark_sent(new_request)

        if background_tasks:
            background_tasks.add_task(
                _perform_audit_log,
                tenant_id=package.tenant_id,
                entity_type="SigningRole",
                entity_id=role.id,
                action=AuditAction.REPLACE,
                changes={
                    "package_id": str(package.id),
                    "roles": roles,
                    "previous_signer": previous_signer,
                    "new_signer": data.new_signer_name,
                    "old_request_id": str(old_request_id) if old_request_id else None,
                    "new_request_id": str(new_request.id),
                    "reason": data.reason,
                    "actor": actor,
                },
            )

        return ReplaceSignerResponse(
            role_id=role.id,
            role_name=role.role_name,
            previous_signer=previous_signer,
            new_signer=data.new_signer_name,
            old_request_id=old_request_id,
            new_request_id=new_request.id,
            sign_url=sign_url,
            roles=roles,
            notification_sent=sent,
        )

    def replace_by_tenant(
        self,
        tenant_id: uuid.UUID,
        package_ref: str,
        data: ReplaceSignerRequest,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> ReplaceSignerResponse:
        package = self.packages.get_package(tenant_id, package_ref)
        return self.replace_signer(package, data, background_tasks, actor="api")

    def replace_by_admin(
        self,
        admin_token: str,
        data: ReplaceSignerRequest,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> ReplaceSignerResponse:
        """
        The package admin acts through their own signing token. The same token
        also lets them sign, so holding it grants both privileges.
        """
        admin_request, _ = self.lifecycle.resolve_token(admin_token)
        if not admin_request.package_id:
            raise ForbiddenError("Only the package admin can replace signers.")

        admin_roles = self.session.exec(
            select(SigningRole).where(SigningRole.request_id == admin_request.id)
        ).all()
        if not any(r.is_package_admin for r in admin_roles):
            raise ForbiddenError("Only the package admin can replace signers.")

        if any(r.id == data.role_id for r in admin_roles):
            raise ValidationError("The package admin cannot replace their own roles.")

        package = self.session.get(SigningPackage, admin_request.package_id)
        return self.replace_signer(package, data, background_tasks, actor=f"admin:{admin_request.signer_name}")
