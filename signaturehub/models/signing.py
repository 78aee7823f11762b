from typing import List, Literal, Optional
from datetime import datetime
from uuid import UUID
from sqlmodel import SQLModel, Field

from signaturehub.db.schema import RequestStatus, SignatureType, VerificationMethod
from signaturehub.models.package import RoleRead


class SigningPageData(SQLModel):
    """Everything the signing page needs, addressed by the capability token."""
    reference_code: str
    document_name: str
    document_content: Optional[str] = None
    document_url: Optional[str] = None
    signer_name: str
    status: RequestStatus
    is_verified: bool
    verification_method: VerificationMethod
    has_email: bool
    has_phone: bool
    roles: List[str] = []
    is_package_admin: bool = False
    package_code: Optional[str] = None
    package_roles: List[RoleRead] = Field(
        default=[],
        description="Every role in the package. Only filled in for the package admin."
    )
    expires_at: Optional[datetime] = None
    demo_mode: bool = False


class SendCodeRequest(SQLModel):
    method: Literal["email", "sms"]


class SendCodeResponse(SQLModel):
    sent: bool
    method: str
    destination: str = Field(description="Masked destination. Example: 'al***@example.com'")
    expires_in_minutes: int


class ConfirmCodeRequest(SQLModel):
    code: str


class ConfirmCodeResponse(SQLModel):
    verified: bool


class SubmitSignatureRequest(SQLModel):
    signature_type: SignatureType
    typed_name: Optional[str] = None
    signature_image: Optional[str] = Field(
        default=None,
        description="Data URL of the drawn signature. Required when signature_type is 'drawn'."
    )
    consent_text: Optional[str] = None


class SubmitSignatureResponse(SQLModel):
    request_id: UUID
    reference_code: str
    status: RequestStatus
    signed_at: datetime


class DeclineRequest(SQLModel):
    reason: Optional[str] = None


class DeclineResponse(SQLModel):
    status: RequestStatus
    admin_notified: bool
