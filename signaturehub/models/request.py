from typing import Any, Dict, List, Optional
from datetime import datetime
from uuid import UUID
from sqlmodel import SQLModel, Field

from signaturehub.db.schema import RequestStatus, SignatureType, VerificationMethod


class RequestCreate(SQLModel):
    """
    A standalone, single-signer request. Exactly one document source is
    expected: inline content, a URL, or a template code.
    """
    document_name: Optional[str] = Field(default=None, description="Example: 'Liability Waiver 2025'")
    document_content: Optional[str] = Field(default=None, description="Inline HTML with {{variable}} placeholders.")
    document_url: Optional[str] = Field(default=None, description="Link to an externally hosted document.")
    template_code: Optional[str] = Field(default=None)
    merge_variables: Optional[Dict[str, Any]] = None
    jurisdiction: Optional[str] = None

    signer_name: str = Field(min_length=1)
    signer_email: Optional[str] = None
    signer_phone: Optional[str] = None
    verification_method: Optional[VerificationMethod] = Field(
        default=None,
        description="Auto-detected from the contact details when omitted."
    )

    expires_at: Optional[datetime] = None
    callback_url: Optional[str] = None
    external_ref: Optional[str] = None
    external_type: Optional[str] = None
    created_by: Optional[str] = None


class RequestCreateResponse(SQLModel):
    id: UUID
    reference_code: str
    status: RequestStatus
    sign_url: str
    expires_at: Optional[datetime] = None
    notification_sent: bool


class RequestRead(SQLModel):
    id: UUID
    reference_code: str
    tenant_id: UUID
    external_ref: Optional[str] = None
    external_type: Optional[str] = None
    document_name: str
    document_url: Optional[str] = None
    template_code: Optional[str] = None
    template_version: Optional[int] = None
    jurisdiction: Optional[str] = None
    signer_name: str
    signer_email: Optional[str] = None
    signer_phone: Optional[str] = None
    verification_method: VerificationMethod
    status: RequestStatus
    package_id: Optional[UUID] = None
    roles_display: Optional[str] = None
    decline_reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None


class RequestFilter(SQLModel):
    status: Optional[RequestStatus] = None
    external_ref: Optional[str] = None
    external_type: Optional[str] = None
    signer_email: Optional[str] = None
    created_by: Optional[str] = None
    jurisdiction: Optional[str] = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)


class RequestList(SQLModel):
    items: List[RequestRead]
    total: int


class SignatureRead(SQLModel):
    id: UUID
    request_id: UUID
    signature_type: SignatureType
    typed_name: Optional[str] = None
    signature_image: Optional[str] = None
    signer_ip: Optional[str] = None
    user_agent: Optional[str] = None
    consent_text: Optional[str] = None
    verification_method_used: Optional[str] = None
    signed_at: datetime
