import hmac
import secrets
from datetime import timedelta
from typing import Optional
from loguru import logger
from sqlmodel import Session

from signaturehub.core.config import settings
from signaturehub.core.exceptions import TooManyAttemptsError, ValidationError
from signaturehub.db.schema import (
    RequestStatus, SignatureRequest, SigningPackage, SigningToken, VerificationMethod
)
from signaturehub.models.signing import ConfirmCodeResponse, SendCodeResponse
from signaturehub.services.content import context_fields
from signaturehub.services.lifecycle import LifecycleController, ensure_mutable
from signaturehub.services.notifier import Notifier, get_notifier, mask_destination
from signaturehub.services.rate_limit import VerificationThrottle, get_verification_throttle
from signaturehub.utils.dates import as_utc, utc_now


ALLOWED_CHANNELS = {
    VerificationMethod.EMAIL: {"email"},
    VerificationMethod.SMS: {"sms"},
    VerificationMethod.BOTH: {"email", "sms"},
}


def generate_verification_code(length: int) -> str:
    if settings.demo_mode:
        return settings.demo_code
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


class VerificationService:
    """
    One-time codes bound to a signing token.

    Issuance is gated by VerificationThrottle. Confirmation counts every
    attempt; after `max_code_attempts` the token refuses further attempts
    until a new code is issued.
    """

    def __init__(
        self,
        session: Session,
        throttle: Optional[VerificationThrottle] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.session = session
        self.lifecycle = LifecycleController(session)
        self.throttle = throttle or get_verification_throttle()
        self.notifier = notifier or get_notifier()

    # ==========================================================================
    # ISSUE
    # ==========================================================================

    def _destination_for(self, request: SignatureRequest, method: str) -> str:
        if method not in ALLOWED_CHANNELS[request.verification_method]:
            raise ValidationError(
                f"Verification by {method} is not available for this request.")

        destination = request.signer_email if method == "email" else request.signer_phone
        if not destination:
            raise ValidationError(f"No {method} contact is on file for this signer.")
        return destination

    def send_code(self, token_value: str, method: str, client_ip: Optional[str] = None) -> SendCodeResponse:
        # 1. Signer access (lazy expiry, pending/sent -> viewed), then refuse terminal requests
        request, token = self.lifecycle.access(token_value)
        ensure_mutable(request)

        destination = self._destination_for(request, method)

        # 2. All three abuse layers must pass; a refusal touches no counter
        self.throttle.check(client_ip, destination, str(token.id))
        self.throttle.record_attempt(client_ip)

        # 3. Replace any previous code and restart the attempt budget
        code = generate_verification_code(settings.code_length)
        token.verification_code = code
        token.code_expires_at = utc_now() + timedelta(minutes=settings.code_expiry_minutes)
        token.code_attempts = 0
        token.code_channel = method
        self.session.add(token)
        self.session.commit()

        # 4. Dispatch after the code is durable
        delivered = self.notifier.send_verification_code(
            destination, code, request.document_name, self._context_for(request))

        if delivered:
            self.throttle.record_dispatch(destination, str(token.id))
            if request.status == RequestStatus.VIEWED:
                self.lifecycle.transition(request, RequestStatus.VERIFIED)
                self.session.commit()
            logger.info(f"Verification code sent for request {request.reference_code} via {method}")
        else:
            logger.warning(f"Verification code for request {request.reference_code} was not delivered")

        return SendCodeResponse(
            sent=delivered,
            method=method,
            destination=mask_destination(destination),
            expires_in_minutes=settings.code_expiry_minutes,
        )

    def _context_for(self, request: SignatureRequest):
        variables = request.merge_variables
        if not variables and request.package_id:
            package = self.session.get(SigningPackage, request.package_id)
            variables = package.merge_variables if package else None
        return context_fields(variables)

    # ==========================================================================
    # CONFIRM
    # ==========================================================================

    def confirm_code(self, token_value: str, code: str) -> ConfirmCodeResponse:
        request, token = self.lifecycle.access(token_value)
        ensure_mutable(request)

        code = (code or "").strip()
        if len(code) != settings.code_length or not code.isdigit():
            raise ValidationError(f"Verification code must be {settings.code_length} digits.")

        verified = self.check_code(token, code)

        # A confirmed code proves identity even when the send was never recorded as delivered
        if verified and request.status == RequestStatus.VIEWED:
            self.lifecycle.transition(request, RequestStatus.VERIFIED)
            self.session.commit()
        return ConfirmCodeResponse(verified=verified)

    def check_code(self, token: SigningToken, code: str) -> bool:
        """
        Order matters: the cap is checked BEFORE incrementing, so a capped
        token stays capped even when the right code finally arrives.
        """
        if token.is_verified:
            return True

        if token.code_attempts >= settings.max_code_attempts:
            raise TooManyAttemptsError()

        token.code_attempts += 1
        self.session.add(token)
        self.session.commit()

        if not token.verification_code:
            raise ValidationError("No verification code has been requested.")

        if token.code_expires_at and utc_now() > as_utc(token.code_expires_at):
            raise ValidationError("Verification code has expired. Please request a new code.")

        if not hmac.compare_digest(token.verification_code.encode(), code.encode()):
            remaining = max(settings.max_code_attempts - token.code_attempts, 0)
            raise ValidationError(f"Invalid verification code. {remaining} attempt(s) remaining.")

        token.is_verified = True
        token.verified_at = utc_now()
        self.session.add(token)
        self.session.commit()
        logger.info(f"Token for request {token.request_id} verified")
        return True
