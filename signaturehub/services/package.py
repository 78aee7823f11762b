import uuid
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from fastapi import BackgroundTasks
from loguru import logger
from sqlalchemy import func
from sqlmodel import Session, select

from signaturehub.core.audit import _perform_audit_log
from signaturehub.core.config import settings
from signaturehub.core.exceptions import NotFoundError, StateConflictError, ValidationError
from signaturehub.db.schema import (
    AuditAction, PackageStatus, RequestStatus, RoleStatus, Signature,
    SignatureRequest, SigningPackage, SigningRole, VerificationMethod
)
from signaturehub.models.package import (
    PackageCreate, PackageCreateResponse, PackageRead, PackageSignerLink,
    PackageSignerStatus, PackageStatusRead, PackageBatchResponse,
    PublicPackageStatus, PublicSignerStatus, RoleAgeRequirement, RoleRead
)
from signaturehub.services.content import (
    ContentResolver, consolidate, context_fields, detect_verification_method,
    validate_admin, validate_ages
)
from signaturehub.services.lifecycle import LifecycleController, generate_code, is_terminal
from signaturehub.services.notifier import Notifier, get_notifier
from signaturehub.services.webhook import WebhookEvent, is_valid_callback_url, notify_request_event
from signaturehub.utils.dates import as_utc, utc_now


BATCH_LIMIT = 50


def send_link(notifier: Notifier, request: SignatureRequest, url: str) -> bool:
    """
    Delivers the sign link on every channel the request allows.
    True when at least one channel succeeded.
    """
    sent = False
    method = request.verification_method

    if request.signer_email and method in (VerificationMethod.EMAIL, VerificationMethod.BOTH):
        sent = notifier.send_request_link(
            request.signer_email, request.signer_name, request.document_name, url) or sent

    if request.signer_phone and method in (VerificationMethod.SMS, VerificationMethod.BOTH):
        sent = notifier.send_request_link(
            request.signer_phone, request.signer_name, request.document_name, url) or sent

    if not sent:
        logger.warning(f"Sign link for request {request.reference_code} was not delivered")
    return sent


class PackageService:
    def __init__(self, session: Session, notifier: Optional[Notifier] = None):
        self.session = session
        self.lifecycle = LifecycleController(session)
        self.resolver = ContentResolver(session)
        self.notifier = notifier or get_notifier()

    # ==========================================================================
    # CREATION
    # ==========================================================================

    def create_package(
        self,
        tenant_id: uuid.UUID,
        data: PackageCreate,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> PackageCreateResponse:
        """
        Builds a package from role assignments.

        Steps:
        1. Validate contacts and every age-gated role (violations batched).
        2. Validate the admin flag, promoting the first signer if unset.
        3. Resolve the base body once with package-scope variables.
        4. Consolidate by identity; one Request + Token per physical signer,
           one Role row per assignment.
        5. Commit, then send links (best effort).
        """
        signers = list(data.signers)

        # 1. Validation
        errors = [
            f"Signer {s.name} ({s.role}) must have either an email or a phone number"
            for s in signers if not (s.email or s.phone)
        ]
        if errors:
            raise ValidationError("Signer validation failed", errors)

        age_errors = validate_ages(signers, data.event_date)
        if age_errors:
            raise ValidationError("Age validation failed", age_errors)

        if data.callback_url and not is_valid_callback_url(data.callback_url):
            raise ValidationError("callback_url must be a public http(s) URL.")

        # 2. Admin
        validate_admin(signers)

        # 3. Package-scope content
        base = self.resolver.resolve_base(
            tenant_id, data.document_name, data.document_content, data.template_code,
            data.merge_variables, data.jurisdiction)

        expires_at = as_utc(data.expires_at) or utc_now() + timedelta(days=settings.request_expiry_days)
        groups = consolidate(signers)

        package = SigningPackage(
            package_code=self._unique_package_code(),
            tenant_id=tenant_id,
            external_ref=data.external_ref,
            external_type=data.external_type,
            template_code=base.template_code,
            template_version=base.template_version,
            document_name=base.document_name,
            document_content=base.content,
            jurisdiction=data.jurisdiction,
            merge_variables=data.merge_variables,
            event_date=data.event_date,
            status=PackageStatus.PENDING,
            total_signers=len(groups),
            completed_signers=0,
            expires_at=expires_at,
            callback_url=data.callback_url,
            created_by=data.created_by,
        )
        self.session.add(package)
        self.session.flush()

        # 4. One request per consolidated signer
        created: List[Tuple[SignatureRequest, str, List[str], bool]] = []
        for group in groups.values():
            primary = group[0]
            roles = [s.role for s in group]
            is_admin = any(s.is_package_admin for s in group)

            content, _ = self.resolver.resolve_for_signer(base.content, primary, roles, data.event_date)

            request, token = self.lifecycle.create_request(
                tenant_id=tenant_id,
                document_name=base.document_name,
                signer_name=primary.name,
                signer_email=primary.email,
                signer_phone=primary.phone,
                verification_method=detect_verification_method(primary.email, primary.phone),
                expires_at=expires_at,
                document_content=content,
                document_content_snapshot=content,
                template_code=base.template_code,
                template_version=base.template_version,
                jurisdiction=data.jurisdiction,
                merge_variables=data.merge_variables,
                external_ref=data.external_ref,
                external_type=data.external_type,
                callback_url=data.callback_url,
                created_by=data.created_by,
                package_id=package.id,
                roles_display=", ".join(roles),
            )

            group_id = uuid.uuid4()
            for signer in group:
                self.session.add(SigningRole(
                    package_id=package.id,
                    role_name=signer.role,
                    signer_name=signer.name,
                    signer_email=signer.email,
                    signer_phone=signer.phone,
                    date_of_birth=signer.date_of_birth,
                    is_minor=bool(signer.is_minor),
                    is_package_admin=is_admin,
                    request_id=request.id,
                    consolidated_group=group_id,
                    status=RoleStatus.SENT,
                ))

            created.append((request, self.lifecycle.sign_url(token), roles, is_admin))

        self.session.commit()
        self.session.refresh(package)
        logger.info(
            f"Created package {package.package_code} with {len(signers)} roles "
            f"for {package.total_signers} signers")

        # 5. Best-effort delivery after the commit
        links = []
        for request, url, roles, is_admin in created:
            if send_link(self.notifier, request, url):
                self.lifecycle.mark_sent(request)
            links.append(PackageSignerLink(
                request_id=request.id,
                signer_name=request.signer_name,
                roles=roles,
                sign_url=url,
                is_package_admin=is_admin,
            ))

        if background_tasks:
            background_tasks.add_task(
                _perform_audit_log,
                tenant_id=tenant_id,
                entity_type="SigningPackage",
                entity_id=package.id,
                action=AuditAction.CREATE,
                changes=data.model_dump(mode="json", exclude={"document_content"}),
            )

        return PackageCreateResponse(
            package_id=package.id,
            package_code=package.package_code,
            status=package.status,
            document_name=package.document_name,
            event_date=package.event_date,
            total_signers=package.total_signers,
            signature_requests=links,
            expires_at=package.expires_at,
        )

    def _unique_package_code(self) -> str:
        while True:
            code = generate_code("PKG")
            existing = self.session.exec(
                select(SigningPackage).where(SigningPackage.package_code == code)
            ).first()
            if not existing:
                return code

    # ==========================================================================
    # COMPLETION
    # ==========================================================================

    def on_signature_completed(self, request_id: uuid.UUID) -> Optional[SigningPackage]:
        """
        Marks every role behind `request_id` as signed and recomputes package
        progress. completed_signers counts distinct consolidated groups, never
        role rows. Does not commit: runs inside the signature's transaction.
        """
        roles = self.session.exec(
            select(SigningRole).where(SigningRole.request_id == request_id)
        ).all()
        if not roles:
            return None

        now = utc_now()
        for role in roles:
            role.status = RoleStatus.SIGNED
            role.signed_at = now
            self.session.add(role)
        self.session.flush()

        package = self.session.get(SigningPackage, roles[0].package_id)
        completed = self.session.exec(
            select(func.count(func.distinct(SigningRole.consolidated_group))).where(
                SigningRole.package_id == package.id,
                SigningRole.status == RoleStatus.SIGNED
            )
        ).one()

        package.completed_signers = completed
        if package.status not in (PackageStatus.CANCELLED, PackageStatus.EXPIRED):
            if completed >= package.total_signers:
                package.status = PackageStatus.COMPLETE
                package.completed_at = now
            else:
                package.status = PackageStatus.PARTIAL
        self.session.add(package)

        logger.info(
            f"Package {package.package_code}: {completed}/{package.total_signers} signers complete")
        return package

    # ==========================================================================
    # READS
    # ==========================================================================

    def find_package(self, tenant_id: Optional[uuid.UUID], ref: str) -> Optional[SigningPackage]:
        """Looks a package up by id first, then by package code."""
        package = None
        try:
            package = self.session.get(SigningPackage, uuid.UUID(str(ref)))
        except ValueError:
            pass

        if not package:
            package = self.session.exec(
                select(SigningPackage).where(SigningPackage.package_code == ref)
            ).first()

        if package and tenant_id and package.tenant_id != tenant_id:
            return None
        return package

    def get_package(self, tenant_id: uuid.UUID, ref: str) -> SigningPackage:
        package = self.find_package(tenant_id, ref)
        if not package:
            raise NotFoundError("Package not found.")
        return package

    def get_roles(self, package_id: uuid.UUID) -> List[SigningRole]:
        return self.session.exec(
            select(SigningRole)
            .where(SigningRole.package_id == package_id)
            .order_by(SigningRole.created_at)
        ).all()

    def _grouped_roles(self, package_id: uuid.UUID) -> Dict[uuid.UUID, List[SigningRole]]:
        groups: Dict[uuid.UUID, List[SigningRole]] = {}
        for role in self.get_roles(package_id):
            groups.setdefault(role.consolidated_group, []).append(role)
        return groups

    def build_status(self, package: SigningPackage) -> PackageStatusRead:
        signers = []
        for roles in self._grouped_roles(package.id).values():
            first = roles[0]
            request = self.session.get(SignatureRequest, first.request_id) if first.request_id else None
            token = self.lifecycle.get_token_for_request(request.id) if request else None

            signers.append(PackageSignerStatus(
                request_id=first.request_id,
                signer_name=first.signer_name,
                signer_email=first.signer_email,
                signer_phone=first.signer_phone,
                roles=[r.role_name for r in roles],
                status=request.status.value if request else first.status.value,
                signed_at=first.signed_at,
                sign_url=self.lifecycle.sign_url(token) if token else None,
                is_package_admin=first.is_package_admin,
            ))

        return PackageStatusRead(
            package_id=package.id,
            package_code=package.package_code,
            status=package.status,
            document_name=package.document_name,
            event_date=package.event_date,
            total_signers=package.total_signers,
            completed_signers=package.completed_signers,
            signers=signers,
            created_at=package.created_at,
            expires_at=package.expires_at,
            completed_at=package.completed_at,
        )

    def get_status(self, tenant_id: uuid.UUID, ref: str) -> PackageStatusRead:
        return self.build_status(self.get_package(tenant_id, ref))

    def get_status_batch(self, tenant_id: uuid.UUID, refs: List[str]) -> PackageBatchResponse:
        unique_refs = list(dict.fromkeys(refs))
        if len(unique_refs) > BATCH_LIMIT:
            raise ValidationError(f"At most {BATCH_LIMIT} packages can be requested at once.")

        packages, not_found = [], []
        for ref in unique_refs:
            package = self.find_package(tenant_id, ref)
            if package:
                packages.append(self.build_status(package))
            else:
                not_found.append(ref)

        return PackageBatchResponse(packages=packages, not_found=not_found)

    def list_packages(
        self,
        tenant_id: uuid.UUID,
        status: Optional[PackageStatus] = None,
        external_ref: Optional[str] = None,
        external_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[PackageRead]:
        query = select(SigningPackage).where(SigningPackage.tenant_id == tenant_id)
        if status:
            query = query.where(SigningPackage.status == status)
        if external_ref:
            query = query.where(SigningPackage.external_ref == external_ref)
        if external_type:
            query = query.where(SigningPackage.external_type == external_type)

        query = query.order_by(SigningPackage.created_at.desc()).offset(offset).limit(limit)
        return [PackageRead.model_validate(p) for p in self.session.exec(query).all()]

    def list_role_requirements(self) -> List[RoleAgeRequirement]:
        return [
            RoleAgeRequirement(role=role, minimum_age=age)
            for role, age in settings.role_age_requirements.items()
        ]

    def list_role_reads(self, package_id: uuid.UUID) -> List[RoleRead]:
        reads = []
        for role in self.get_roles(package_id):
            request = self.session.get(SignatureRequest, role.request_id) if role.request_id else None
            reads.append(RoleRead(
                id=role.id,
                role_name=role.role_name,
                signer_name=role.signer_name,
                status=role.status,
                is_package_admin=role.is_package_admin,
                request_id=role.request_id,
                request_status=request.status if request else None,
            ))
        return reads

    def get_public_status(self, package_code: str) -> PublicPackageStatus:
        """Status page data. No tenant scope, no contact details."""
        package = self.session.exec(
            select(SigningPackage).where(SigningPackage.package_code == package_code)
        ).first()
        if not package:
            raise NotFoundError("Package not found.")

        signers = []
        for roles in self._grouped_roles(package.id).values():
            first = roles[0]
            request = self.session.get(SignatureRequest, first.request_id) if first.request_id else None
            signature = None
            if request:
                signature = self.session.exec(
                    select(Signature).where(Signature.request_id == request.id)
                ).first()

            signers.append(PublicSignerStatus(
                signer_name=first.signer_name,
                roles=[r.role_name for r in roles],
                status=request.status.value if request else first.status.value,
                signed_at=first.signed_at,
                verification_method_used=signature.verification_method_used if signature else None,
                decline_reason=request.decline_reason if request else None,
            ))

        return PublicPackageStatus(
            package_code=package.package_code,
            document_name=package.document_name,
            status=package.status,
            event_date=package.event_date,
            context_fields=context_fields(package.merge_variables),
            total_signers=package.total_signers,
            completed_signers=package.completed_signers,
            signers=signers,
            created_at=package.created_at,
            expires_at=package.expires_at,
            completed_at=package.completed_at,
        )

    # ==========================================================================
    # CANCEL
    # ==========================================================================

    def cancel_package(
        self,
        tenant_id: uuid.UUID,
        ref: str,
        background_tasks: Optional[BackgroundTasks] = None
    ) -> PackageStatusRead:
        package = self.get_package(tenant_id, ref)
        if package.status in (PackageStatus.COMPLETE, PackageStatus.CANCELLED):
            raise StateConflictError(f"Package is already {package.status.value}.")

        request_ids = {r.request_id for r in self.get_roles(package.id) if r.request_id}
        cancelled = []
        for request_id in request_ids:
            request = self.session.get(SignatureRequest, request_id)
            if request and not is_terminal(request.status):
                self.lifecycle.transition(request, RequestStatus.CANCELLED)
                cancelled.append(request)

        package.status = PackageStatus.CANCELLED
        self.session.add(package)
        self.session.commit()
        logger.info(f"Package {package.package_code} cancelled, {len(cancelled)} requests closed")

        for request in cancelled:
            notify_request_event(request, WebhookEvent.CANCELLED)
            self.notifier.send_cancellation(
                request.signer_email or request.signer_phone, request.signer_name, request.document_name)

        if background_tasks:
            background_tasks.add_task(
                _perform_audit_log,
                tenant_id=tenant_id,
                entity_type="SigningPackage",
                entity_id=package.id,
                action=AuditAction.CANCEL,
                changes={"status": PackageStatus.CANCELLED.value,
                         "cancelled_requests": [str(r.id) for r in cancelled]},
            )

        return self.build_status(package)
