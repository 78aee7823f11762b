from typing import Any, Dict, List, Optional
from datetime import datetime, date
from uuid import UUID
from sqlmodel import SQLModel, Field

from signaturehub.db.schema import PackageStatus, RequestStatus, RoleStatus


class SignerAssignment(SQLModel):
    """One role in a package, as supplied by the caller."""
    role: str = Field(
        min_length=1,
        description="Role name. Example: 'rider', 'trainer', 'guardian'"
    )
    name: str = Field(min_length=1, description="Signer full name. Example: 'Alex Lee'")
    email: Optional[str] = Field(default=None, description="Example: 'alex@example.com'")
    phone: Optional[str] = Field(default=None, description="E.164 preferred. Example: '+15551234567'")
    date_of_birth: Optional[date] = Field(
        default=None,
        description="Required for roles with a minimum age."
    )
    is_minor: Optional[bool] = Field(
        default=None,
        description="Derived from date_of_birth when omitted."
    )
    is_package_admin: bool = Field(
        default=False,
        description="Marks the signer allowed to manage declines and replace others."
    )


class PackageCreate(SQLModel):
    document_name: Optional[str] = Field(
        default=None,
        description="Falls back to the template name when template_code is given."
    )
    document_content: Optional[str] = Field(
        default=None,
        description="Inline HTML with {{variable}} placeholders."
    )
    template_code: Optional[str] = Field(default=None, description="Example: 'WAIVER-STD'")
    merge_variables: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Package-level variables. Example: {'eventName': 'Spring Classic'}"
    )
    jurisdiction: Optional[str] = Field(default=None, description="Example: 'US-CA'")
    event_date: Optional[date] = Field(
        default=None,
        description="Age requirements are evaluated on this date. Defaults to today."
    )
    signers: List[SignerAssignment] = Field(min_length=1)
    expires_at: Optional[datetime] = None
    callback_url: Optional[str] = None
    external_ref: Optional[str] = None
    external_type: Optional[str] = None
    created_by: Optional[str] = None


class PackageSignerLink(SQLModel):
    request_id: UUID
    signer_name: str
    roles: List[str]
    sign_url: str
    is_package_admin: bool


class PackageCreateResponse(SQLModel):
    package_id: UUID
    package_code: str
    status: PackageStatus
    document_name: str
    event_date: Optional[date] = None
    total_signers: int
    signature_requests: List[PackageSignerLink]
    expires_at: Optional[datetime] = None


class PackageSignerStatus(SQLModel):
    """One consolidated signer within a package."""
    request_id: Optional[UUID] = None
    signer_name: str
    signer_email: Optional[str] = None
    signer_phone: Optional[str] = None
    roles: List[str]
    status: str = Field(description="Request status, or the role status if no request is linked.")
    signed_at: Optional[datetime] = None
    sign_url: Optional[str] = None
    is_package_admin: bool = False


class PackageStatusRead(SQLModel):
    package_id: UUID
    package_code: str
    status: PackageStatus
    document_name: str
    event_date: Optional[date] = None
    total_signers: int
    completed_signers: int
    signers: List[PackageSignerStatus]
    created_at: datetime
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PackageBatchRequest(SQLModel):
    package_ids: List[str] = Field(
        min_length=1,
        description="Package ids or package codes. At most 50 per call."
    )


class PackageBatchResponse(SQLModel):
    packages: List[PackageStatusRead]
    not_found: List[str]


class PackageRead(SQLModel):
    """Summary row for package listings."""
    id: UUID
    package_code: str
    status: PackageStatus
    document_name: str
    external_ref: Optional[str] = None
    external_type: Optional[str] = None
    jurisdiction: Optional[str] = None
    event_date: Optional[date] = None
    total_signers: int
    completed_signers: int
    created_at: datetime
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RoleAgeRequirement(SQLModel):
    role: str
    minimum_age: int


class ReplaceSignerRequest(SQLModel):
    role_id: UUID = Field(description="Any role held by the signer being replaced.")
    new_signer_name: str = Field(min_length=1)
    new_signer_email: Optional[str] = None
    new_signer_phone: Optional[str] = None
    new_signer_date_of_birth: Optional[date] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class ReplaceSignerResponse(SQLModel):
    role_id: UUID
    role_name: str
    previous_signer: str
    new_signer: str
    old_request_id: Optional[UUID] = None
    new_request_id: UUID
    sign_url: str
    roles: List[str]
    notification_sent: bool


class PublicSignerStatus(SQLModel):
    signer_name: str
    roles: List[str]
    status: str
    signed_at: Optional[datetime] = None
    verification_method_used: Optional[str] = None
    decline_reason: Optional[str] = None


class PublicPackageStatus(SQLModel):
    """Status page data. Contact details are deliberately absent."""
    package_code: str
    document_name: str
    status: PackageStatus
    event_date: Optional[date] = None
    context_fields: List[Dict[str, str]] = []
    total_signers: int
    completed_signers: int
    signers: List[PublicSignerStatus]
    created_at: datetime
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RoleRead(SQLModel):
    id: UUID
    role_name: str
    signer_name: str
    status: RoleStatus
    is_package_admin: bool
    request_id: Optional[UUID] = None
    request_status: Optional[RequestStatus] = None
