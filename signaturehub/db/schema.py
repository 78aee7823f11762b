from typing import Optional, List, Dict, Any
from datetime import datetime, date
import uuid
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field, Relationship, JSON
from enum import Enum

from signaturehub.utils.dates import as_utc, utc_now


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetimes on every backend.
    PostgreSQL keeps the offset; SQLite stores naive UTC and values are
    tagged as UTC again on load.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        value = as_utc(value)
        if value is not None and dialect.name != "postgresql":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        return as_utc(value)


class VerificationMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    BOTH = "both"


class RequestStatus(str, Enum):
    PENDING = "pending"      # Created, link not yet delivered
    SENT = "sent"            # Link delivered to at least one channel
    VIEWED = "viewed"        # Signer opened the link
    VERIFIED = "verified"    # A verification code was issued
    SIGNED = "signed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    DECLINED = "declined"


class SignatureType(str, Enum):
    TYPED = "typed"
    DRAWN = "drawn"


class PackageStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETE = "complete"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RoleStatus(str, Enum):
    SENT = "sent"
    SIGNED = "signed"
    DECLINED = "declined"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    CANCEL = "cancel"
    REPLACE = "replace"


class TimestampMixin(SQLModel):
    """
    Standard audit timestamps. Every entity inheriting from this mixin tracks
    when it was first persisted and when it was last modified.
    """
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_type=UTCDateTime,
        description="UTC timestamp when this record was first persisted. Example: '2025-05-27 14:30:00'"
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_type=UTCDateTime,
        sa_column_kwargs={"onupdate": utc_now},
        description="UTC timestamp of the last modification. Updates automatically."
    )


class ApiKey(TimestampMixin, SQLModel, table=True):
    """
    A tenant credential for the integration API. Only the SHA-256 digest of
    the key is stored; issuance happens out of band.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    key_hash: str = Field(
        unique=True,
        index=True,
        description="Hex SHA-256 digest of the raw API key."
    )
    tenant_id: uuid.UUID = Field(
        index=True,
        description="The tenant every call made with this key is scoped to."
    )
    tenant_name: str = Field(description="Display name of the tenant. Example: 'Blue Ridge Horse Shows'")
    is_active: bool = Field(default=True)


class SigningPackage(TimestampMixin, SQLModel, table=True):
    """
    One logical multi-party transaction. Several roles must sign the same
    document; roles held by the same physical person are consolidated into a
    single SignatureRequest.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    package_code: str = Field(
        unique=True,
        index=True,
        description="Human-readable reference. Example: 'PKG-7KQ2M9XD'"
    )
    tenant_id: uuid.UUID = Field(index=True)
    external_ref: Optional[str] = Field(default=None, index=True)
    external_type: Optional[str] = Field(default=None)

    template_code: Optional[str] = Field(default=None)
    template_version: Optional[int] = Field(default=None)
    document_name: str
    document_content: Optional[str] = Field(
        default=None,
        description="Base body with package-level variables resolved. Signer variables are still placeholders."
    )
    jurisdiction: Optional[str] = Field(default=None)
    merge_variables: Optional[Dict[str, Any]] = Field(
        default=None,
        sa_type=JSON,
        description="Package-level variables supplied by the caller. Example: {'eventName': 'Spring Classic'}"
    )
    event_date: Optional[date] = Field(
        default=None,
        description="The date age requirements are evaluated against."
    )

    status: PackageStatus = Field(default=PackageStatus.PENDING, index=True)
    total_signers: int = Field(
        default=0,
        description="Number of distinct consolidated signers, NOT the number of roles."
    )
    completed_signers: int = Field(
        default=0,
        description="Number of consolidated signers with at least one signed role."
    )
    expires_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    callback_url: Optional[str] = Field(default=None)
    created_by: Optional[str] = Field(default=None)

    roles: List["SigningRole"] = Relationship(back_populates="package")


class SignatureRequest(TimestampMixin, SQLModel, table=True):
    """
    The unit governed by the lifecycle state machine: one document, one
    physical signer, one capability token. Rows are never deleted, only
    transitioned.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    reference_code: str = Field(
        unique=True,
        index=True,
        description="Human-readable reference. Example: 'SIG-4HX8PZ2A'"
    )
    tenant_id: uuid.UUID = Field(index=True)
    external_ref: Optional[str] = Field(default=None, index=True)
    external_type: Optional[str] = Field(default=None)

    document_name: str
    document_content: Optional[str] = Field(default=None)
    document_content_snapshot: Optional[str] = Field(
        default=None,
        description="Exact content shown to the signer, frozen at creation for the audit trail."
    )
    document_url: Optional[str] = Field(default=None)
    template_code: Optional[str] = Field(default=None)
    template_version: Optional[int] = Field(default=None)
    jurisdiction: Optional[str] = Field(default=None)
    merge_variables: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)

    signer_name: str
    signer_email: Optional[str] = Field(default=None, index=True)
    signer_phone: Optional[str] = Field(default=None)
    verification_method: VerificationMethod = Field(default=VerificationMethod.EMAIL)

    status: RequestStatus = Field(default=RequestStatus.PENDING, index=True)
    expires_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime)
    signed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    decline_reason: Optional[str] = Field(default=None)

    package_id: Optional[uuid.UUID] = Field(
        default=None,
        foreign_key="signingpackage.id",
        index=True
    )
    roles_display: Optional[str] = Field(
        default=None,
        description="Comma separated role names this signer holds. Example: 'Rider, Owner'"
    )
    callback_url: Optional[str] = Field(default=None)
    created_by: Optional[str] = Field(default=None)

    token: Optional["SigningToken"] = Relationship(
        back_populates="request", sa_relationship_kwargs={"uselist": False})
    signature: Optional["Signature"] = Relationship(
        back_populates="request", sa_relationship_kwargs={"uselist": False})


class SigningToken(SQLModel, table=True):
    """
    The signer's sole credential. Exactly one per SignatureRequest. Also holds
    the current one-time verification code and its attempt counter.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    request_id: uuid.UUID = Field(
        foreign_key="signaturerequest.id",
        unique=True,
        index=True
    )
    token: str = Field(
        unique=True,
        index=True,
        description="Opaque high-entropy value used in the sign URL path."
    )
    verification_code: Optional[str] = Field(default=None)
    code_expires_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    code_attempts: int = Field(default=0)
    code_channel: Optional[str] = Field(
        default=None,
        description="Channel ('email' or 'sms') the current code was delivered on."
    )
    is_verified: bool = Field(
        default=False,
        description="Monotonic: once true it never reverts."
    )
    verified_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)

    request: SignatureRequest = Relationship(back_populates="token")


class Signature(SQLModel, table=True):
    """The consent record. At most one per request, written exactly once."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    request_id: uuid.UUID = Field(
        foreign_key="signaturerequest.id",
        unique=True,
        index=True
    )
    signature_type: SignatureType
    typed_name: Optional[str] = Field(default=None)
    signature_image: Optional[str] = Field(
        default=None,
        description="Data URL of the hand-drawn signature (PNG)."
    )
    signer_ip: Optional[str] = Field(default=None)
    user_agent: Optional[str] = Field(default=None)
    consent_text: Optional[str] = Field(default=None)
    verification_method_used: Optional[str] = Field(default=None)
    signed_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)

    request: SignatureRequest = Relationship(back_populates="signature")


class SigningRole(TimestampMixin, SQLModel, table=True):
    """
    One row per (package, role name). Sibling roles held by the same physical
    signer share a consolidated_group and point at the same request. Rows are
    mutated in place when a signer is replaced.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    package_id: uuid.UUID = Field(foreign_key="signingpackage.id", index=True)
    role_name: str = Field(description="Example: 'rider', 'trainer', 'guardian'")

    signer_name: str
    signer_email: Optional[str] = Field(default=None)
    signer_phone: Optional[str] = Field(default=None)
    date_of_birth: Optional[date] = Field(default=None)
    is_minor: bool = Field(default=False)
    is_package_admin: bool = Field(
        default=False,
        description="The admin may manage declines and replace other signers."
    )

    request_id: Optional[uuid.UUID] = Field(
        default=None,
        foreign_key="signaturerequest.id",
        index=True
    )
    consolidated_group: uuid.UUID = Field(
        index=True,
        description="Shared by every role belonging to one physical signer."
    )
    status: RoleStatus = Field(default=RoleStatus.SENT)
    signed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    package: SigningPackage = Relationship(back_populates="roles")


class DocumentTemplate(TimestampMixin, SQLModel, table=True):
    """A reusable, versioned document body with {{variable}} placeholders."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(index=True)
    template_code: str = Field(index=True, description="Example: 'WAIVER-STD'")
    name: str
    description: Optional[str] = Field(default=None)
    html_content: str
    jurisdiction: Optional[str] = Field(default=None)
    version: int = Field(default=1)
    is_active: bool = Field(default=True)
    created_by: Optional[str] = Field(default=None)


class JurisdictionAddendum(TimestampMixin, SQLModel, table=True):
    """Legal notice text injected into documents for a given jurisdiction."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: uuid.UUID = Field(index=True)
    jurisdiction_code: str = Field(index=True, description="Example: 'US-CA'")
    jurisdiction_name: str = Field(description="Example: 'California'")
    addendum_html: str
    is_active: bool = Field(default=True)


class AuditLog(SQLModel, table=True):
    """Append-only trail of tenant-side mutations."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    tenant_id: Optional[uuid.UUID] = Field(default=None, index=True)
    entity_type: str = Field(description="Example: 'SigningPackage'")
    entity_id: uuid.UUID = Field(index=True)
    action: AuditAction
    changes: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    ip_address: Optional[str] = Field(default=None)
    timestamp: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
