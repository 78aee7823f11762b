"""Tests for one-time verification codes."""

from datetime import timedelta, timezone

import pytest

from signaturehub.core.exceptions import (
    StateConflictError, TooManyAttemptsError, ValidationError
)
from signaturehub.db.schema import RequestStatus, SignatureType
from signaturehub.models.signing import SubmitSignatureRequest
from signaturehub.services import verification
from signaturehub.services.signing import SigningService
from signaturehub.services.verification import VerificationService
from signaturehub.utils.dates import utc_now

from conftest import load_request, load_token, mark_verified, token_from_url


@pytest.fixture
def fixed_codes(monkeypatch):
    """Issues codes from a fixed sequence instead of the random generator."""
    codes = iter(["111111", "222222", "333333", "444444"])
    monkeypatch.setattr(verification, "generate_verification_code", lambda length: next(codes))


class TestSendCode:
    def test_sends_code_and_marks_verified_status(self, session, make_request, channel):
        token = token_from_url(make_request().sign_url)
        result = VerificationService(session).send_code(token, "email", "203.0.113.5")

        assert result.sent is True
        assert result.destination == "jo***@example.com"
        assert result.expires_in_minutes == 5
        code = channel.last_code("jordan@example.com")
        assert len(code) == 6 and code.isdigit()
        assert load_token(session, token).verification_code == code
        assert load_request(session, token).status == RequestStatus.VERIFIED

    def test_code_is_random_outside_demo_mode(self, session, make_request, channel):
        token = token_from_url(make_request().sign_url)
        service = VerificationService(session)
        codes = set()
        for _ in range(4):
            service.send_code(token, "email")
            codes.add(channel.last_code())
        assert len(codes) > 1

    def test_demo_mode_uses_fixed_code(self, monkeypatch):
        monkeypatch.setattr(verification.settings, "demo_mode", True)
        assert verification.generate_verification_code(6) == verification.settings.demo_code

    def test_method_must_be_allowed(self, session, make_request):
        token = token_from_url(make_request().sign_url)
        with pytest.raises(ValidationError):
            VerificationService(session).send_code(token, "sms")

    def test_sms_to_phone_only_signer(self, session, make_request, channel):
        token = token_from_url(make_request(signer_email=None, signer_phone="+15551234567").sign_url)
        result = VerificationService(session).send_code(token, "sms")
        assert result.destination == "***4567"
        assert channel.to("+15551234567")

    def test_pending_request_can_be_verified_directly(self, session, make_request, channel):
        channel.fail = True
        token = token_from_url(make_request().sign_url)
        assert load_request(session, token).status == RequestStatus.PENDING

        channel.fail = False
        VerificationService(session).send_code(token, "email")
        assert load_request(session, token).status == RequestStatus.VERIFIED

    def test_failed_delivery_reports_not_sent(self, session, make_request, channel, throttle):
        token = token_from_url(make_request().sign_url)
        channel.fail = True
        result = VerificationService(session).send_code(token, "email", "203.0.113.5")

        assert result.sent is False
        assert throttle.by_destination.store.keys() == []
        assert load_request(session, token).status == RequestStatus.VIEWED


class TestConfirmCode:
    def test_correct_code_verifies(self, session, make_request, fixed_codes):
        token = token_from_url(make_request().sign_url)
        service = VerificationService(session)
        service.send_code(token, "email")

        assert service.confirm_code(token, "111111").verified is True
        stored = load_token(session, token)
        assert stored.is_verified is True
        assert stored.verified_at is not None

    def test_confirm_is_idempotent_once_verified(self, session, make_request, fixed_codes):
        token = token_from_url(make_request().sign_url)
        service = VerificationService(session)
        service.send_code(token, "email")
        service.confirm_code(token, "111111")

        assert service.confirm_code(token, "999999").verified is True

    def test_format_is_checked(self, session, make_request, fixed_codes):
        token = token_from_url(make_request().sign_url)
        service = VerificationService(session)
        service.send_code(token, "email")

        for bad in ("12345", "1234567", "abcdef", ""):
            with pytest.raises(ValidationError):
                service.confirm_code(token, bad)
        assert load_token(session, token).code_attempts == 0

    def test_confirm_without_code(self, session, make_request):
        token = token_from_url(make_request().sign_url)
        with pytest.raises(ValidationError):
            VerificationService(session).confirm_code(token, "123456")

    def test_expired_code_rejected(self, session, make_request, fixed_codes):
        token = token_from_url(make_request().sign_url)
        service = VerificationService(session)
        service.send_code(token, "email")

        stored = load_token(session, token)
        stored.code_expires_at = utc_now() - timedelta(seconds=1)
        session.add(stored)
        session.commit()

        with pytest.raises(ValidationError):
            service.confirm_code(token, "111111")
        assert load_token(session, token).is_verified is False

    def test_wrong_code_reports_remaining_attempts(self, session, make_request, fixed_codes):
        token = token_from_url(make_request().sign_url)
        service = VerificationService(session)
        service.send_code(token, "email")

        with pytest.raises(ValidationError) as exc:
            service.confirm_code(token, "999999")
        assert "2 attempt(s) remaining" in exc.value.detail

    def test_three_wrong_then_correct_is_refused(self, session, make_request, fixed_codes):
        token = token_from_url(make_request().sign_url)
        service = VerificationService(session)
        service.send_code(token, "email")

        for _ in range(3):
            with pytest.raises(ValidationError):
                service.confirm_code(token, "999999")

        with pytest.raises(TooManyAttemptsError):
            service.confirm_code(token, "111111")
        assert load_token(session, token).is_verified is False

    def test_new_code_resets_attempts_and_invalidates_old(self, session, make_request, fixed_codes):
        token = token_from_url(make_request().sign_url)
        service = VerificationService(session)
        service.send_code(token, "email")
        for _ in range(3):
            with pytest.raises(ValidationError):
                service.confirm_code(token, "999999")

        service.send_code(token, "email")
        assert load_token(session, token).code_attempts == 0

        with pytest.raises(ValidationError):
            service.confirm_code(token, "111111")
        assert service.confirm_code(token, "222222").verified is True

    def test_confirm_after_failed_delivery_moves_to_verified(self, session, make_request, channel, fixed_codes):
        token = token_from_url(make_request().sign_url)
        channel.fail = True
        service = VerificationService(session)
        assert service.send_code(token, "email").sent is False
        assert load_request(session, token).status == RequestStatus.VIEWED

        assert service.confirm_code(token, "111111").verified is True
        assert load_request(session, token).status == RequestStatus.VERIFIED


class TestSignatureRequiresVerification:
    def test_unverified_submit_is_conflict(self, session, make_request):
        token = token_from_url(make_request().sign_url)
        with pytest.raises(StateConflictError):
            SigningService(session).submit_signature(
                token, SubmitSignatureRequest(signature_type=SignatureType.TYPED, typed_name="Jordan Smith"))
        assert load_request(session, token).signed_at is None

    def test_channel_is_recorded_on_signature(self, session, make_request, fixed_codes):
        token = token_from_url(make_request(signer_phone="+15551234567").sign_url)
        service = VerificationService(session)
        service.send_code(token, "sms")
        service.confirm_code(token, "111111")

        result = SigningService(session).submit_signature(
            token, SubmitSignatureRequest(signature_type=SignatureType.TYPED, typed_name="Jordan Smith"),
            signer_ip="203.0.113.5", user_agent="pytest")
        assert result.status == RequestStatus.SIGNED

        request = load_request(session, token)
        assert request.signature.verification_method_used == "sms"
        assert request.signature.signer_ip == "203.0.113.5"

    def test_verified_token_on_viewed_request_signs_through_verified(self, session, make_request):
        token = token_from_url(make_request().sign_url)
        mark_verified(session, token)

        result = SigningService(session).submit_signature(
            token, SubmitSignatureRequest(signature_type=SignatureType.TYPED, typed_name="Jordan Smith"))

        assert result.status == RequestStatus.SIGNED
        assert result.signed_at.tzinfo == timezone.utc
        stored = load_request(session, token)
        assert stored.signed_at.tzinfo == timezone.utc
        assert stored.signature.signed_at.tzinfo == timezone.utc
