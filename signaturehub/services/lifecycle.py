import uuid
import secrets
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional, Tuple
from loguru import logger
from sqlmodel import Session, select

from signaturehub.core.config import settings
from signaturehub.core.exceptions import GoneError, StateConflictError
from signaturehub.db.schema import (
    SignatureRequest, SigningToken, RequestStatus, VerificationMethod
)
from signaturehub.services.rate_limit import get_verification_throttle
from signaturehub.utils.dates import as_utc, utc_now


TERMINAL_STATUSES: FrozenSet[RequestStatus] = frozenset({
    RequestStatus.SIGNED,
    RequestStatus.EXPIRED,
    RequestStatus.CANCELLED,
    RequestStatus.DECLINED,
})

_EXITS = frozenset({RequestStatus.EXPIRED, RequestStatus.CANCELLED, RequestStatus.DECLINED})

# The only legal edges. Terminal statuses have no outgoing edges.
TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.SENT, RequestStatus.VIEWED}) | _EXITS,
    RequestStatus.SENT: frozenset({RequestStatus.VIEWED}) | _EXITS,
    RequestStatus.VIEWED: frozenset({RequestStatus.VERIFIED}) | _EXITS,
    RequestStatus.VERIFIED: frozenset({RequestStatus.SIGNED}) | _EXITS,
    RequestStatus.SIGNED: frozenset(),
    RequestStatus.EXPIRED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
    RequestStatus.DECLINED: frozenset(),
}

# Unambiguous alphabet for codes read aloud or typed by hand
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_code(prefix: str, length: int = 8) -> str:
    """Example: generate_code('SIG') -> 'SIG-4HX8PZ2A'"""
    return prefix + "-" + "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_token() -> str:
    return secrets.token_hex(32)


def is_terminal(status: RequestStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_mutable(request: SignatureRequest) -> None:
    """
    Guard for every signer mutation (verify, confirm, submit, decline).
    Expired maps to 'gone'; the other terminal statuses map to 'conflict'.
    """
    if request.status == RequestStatus.EXPIRED:
        raise GoneError("This signature request has expired.")
    if is_terminal(request.status):
        raise StateConflictError(
            f"This signature request is already {request.status.value}.")


class LifecycleController:
    """
    Enforces legal status transitions for one SignatureRequest and its token.
    All writes go through `transition`, which rejects any edge not in TRANSITIONS.
    """

    def __init__(self, session: Session):
        self.session = session

    # ==========================================================================
    # CREATION
    # ==========================================================================

    def create_request(
        self,
        tenant_id: uuid.UUID,
        document_name: str,
        signer_name: str,
        signer_email: Optional[str] = None,
        signer_phone: Optional[str] = None,
        verification_method: VerificationMethod = VerificationMethod.EMAIL,
        expires_at: Optional[datetime] = None,
        **fields
    ) -> Tuple[SignatureRequest, SigningToken]:
        """
        Creates a Request in 'pending' plus its single capability token.
        Flushes but does not commit: callers own the transaction.
        """
        request = SignatureRequest(
            tenant_id=tenant_id,
            reference_code=self._unique_reference_code(),
            document_name=document_name,
            signer_name=signer_name,
            signer_email=signer_email,
            signer_phone=signer_phone,
            verification_method=verification_method,
            status=RequestStatus.PENDING,
            expires_at=as_utc(expires_at) or utc_now() + timedelta(days=settings.request_expiry_days),
            **fields
        )
        self.session.add(request)
        self.session.flush()

        token = SigningToken(request_id=request.id, token=generate_token())
        self.session.add(token)
        self.session.flush()

        logger.info(f"Created signature request {request.reference_code} for {signer_name}")
        return request, token

    def _unique_reference_code(self) -> str:
        while True:
            code = generate_code("SIG")
            existing = self.session.exec(
                select(SignatureRequest).where(SignatureRequest.reference_code == code)
            ).first()
            if not existing:
                return code

    # ==========================================================================
    # TRANSITIONS
    # ==========================================================================

    def transition(self, request: SignatureRequest, target: RequestStatus) -> SignatureRequest:
        """
        Applies one edge of the state machine. Does not commit.
        """
        current = request.status
        if not can_transition(current, target):
            if current == RequestStatus.EXPIRED:
                raise GoneError("This signature request has expired.")
            raise StateConflictError(
                f"Cannot move request from '{current.value}' to '{target.value}'.")

        request.status = target
        if target == RequestStatus.SIGNED:
            request.signed_at = utc_now()
        self.session.add(request)
        if is_terminal(target):
            self._release_code_budget(request)
        logger.debug(f"Request {request.id}: {current.value} -> {target.value}")
        return request

    def _release_code_budget(self, request: SignatureRequest) -> None:
        """A terminal request never issues another code, so its lifetime counter can go."""
        token = self.get_token_for_request(request.id)
        if token:
            get_verification_throttle().release_token(str(token.id))

    def mark_sent(self, request: SignatureRequest) -> None:
        """Advances pending -> sent after a link delivery. Any later status is left alone."""
        if request.status == RequestStatus.PENDING:
            self.transition(request, RequestStatus.SENT)
            self.session.commit()

    # ==========================================================================
    # TOKEN LOOKUP
    # ==========================================================================

    def resolve_token(self, token_value: str) -> Tuple[SignatureRequest, SigningToken]:
        """
        Looks up the request behind a capability token.

        Runs the lazy expiry check before anything else: a request past its
        expiry is moved to 'expired' (and committed) regardless of its current
        non-terminal status. Unknown and expired tokens raise the same GoneError.
        """
        token = self.session.exec(
            select(SigningToken).where(SigningToken.token == token_value)
        ).first()
        if not token:
            raise GoneError()

        request = self.session.get(SignatureRequest, token.request_id)
        if not request:
            raise GoneError()

        if request.status == RequestStatus.EXPIRED:
            raise GoneError()

        if (request.expires_at and utc_now() > as_utc(request.expires_at)
                and not is_terminal(request.status)):
            self.transition(request, RequestStatus.EXPIRED)
            self.session.commit()
            logger.info(f"Request {request.reference_code} expired on access")
            raise GoneError()

        return request, token

    def access(self, token_value: str) -> Tuple[SignatureRequest, SigningToken]:
        """
        Signer access: resolve the token, then advance pending/sent to viewed.
        Idempotent; later statuses are never regressed.
        """
        request, token = self.resolve_token(token_value)
        if request.status in (RequestStatus.PENDING, RequestStatus.SENT):
            self.transition(request, RequestStatus.VIEWED)
            self.session.commit()
            self.session.refresh(request)
        return request, token

    def get_token_for_request(self, request_id: uuid.UUID) -> Optional[SigningToken]:
        return self.session.exec(
            select(SigningToken).where(SigningToken.request_id == request_id)
        ).first()

    @staticmethod
    def sign_url(token: SigningToken) -> str:
        return f"{settings.public_url}/sign/{token.token}"
