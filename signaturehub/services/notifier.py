import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Dict, List, Optional

import httpx
from loguru import logger

from signaturehub.core.config import settings
from signaturehub.core.exceptions import NotifierError


def is_email(destination: str) -> bool:
    return "@" in destination


def mask_destination(destination: str) -> str:
    """'alex@example.com' -> 'al***@example.com', '+15551234567' -> '***4567'"""
    if is_email(destination):
        local, domain = destination.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"***{destination[-4:]}"


# ==============================================================================
# CHANNELS
# ==============================================================================


class Channel(ABC):
    """Raw delivery. Implementations raise NotifierError on failure."""

    @abstractmethod
    def deliver(self, destination: str, subject: str, body: str) -> None:
        ...


class EmailChannel(Channel):
    def deliver(self, destination: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = settings.email_from
        msg["To"] = destination
        msg.set_content(body)

        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as smtp:
                if settings.smtp_starttls:
                    smtp.starttls()
                if settings.smtp_user:
                    smtp.login(settings.smtp_user, settings.smtp_password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotifierError(f"SMTP delivery failed: {e}") from e

        logger.info(f"Email sent to {mask_destination(destination)}")


class SmsChannel(Channel):
    """Twilio-compatible Messages API."""

    def deliver(self, destination: str, subject: str, body: str) -> None:
        if not settings.twilio_account_sid or not settings.twilio_phone_number:
            raise NotifierError("SMS provider is not configured.")

        url = f"{settings.twilio_api_base}/Accounts/{settings.twilio_account_sid}/Messages.json"
        try:
            response = httpx.post(
                url,
                data={"To": destination, "From": settings.twilio_phone_number, "Body": body},
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
                timeout=10.0,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotifierError(f"SMS delivery failed: {e}") from e

        logger.info(f"SMS sent to {mask_destination(destination)}")


class LogChannel(Channel):
    """Demo mode: nothing leaves the process."""

    def deliver(self, destination: str, subject: str, body: str) -> None:
        logger.info(f"[DEMO] {subject} -> {mask_destination(destination)}: {body}")


# ==============================================================================
# NOTIFIER
# ==============================================================================


class Notifier:
    """
    Best-effort messaging. Every public method returns True on delivery and
    False on any failure; failures are logged here and never raised.
    """

    def __init__(self, email: Optional[Channel] = None, sms: Optional[Channel] = None):
        if settings.demo_mode:
            self.email = email or LogChannel()
            self.sms = sms or LogChannel()
        else:
            self.email = email or EmailChannel()
            self.sms = sms or (SmsChannel() if settings.sms_provider == "twilio" else LogChannel())

    def _send(self, destination: Optional[str], subject: str, body: str, sms_body: Optional[str] = None) -> bool:
        if not destination:
            return False

        try:
            if is_email(destination):
                self.email.deliver(destination, subject, body)
            else:
                self.sms.deliver(destination, subject, sms_body or body)
            return True
        except NotifierError as e:
            logger.warning(f"Notification '{subject}' to {mask_destination(destination)} failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected notifier error for '{subject}': {e}")
        return False

    def send_verification_code(
        self,
        destination: str,
        code: str,
        document_name: str,
        context_fields: Optional[List[Dict[str, str]]] = None,
    ) -> bool:
        lines = [f"Your verification code for \"{document_name}\" is {code}."]
        for field in context_fields or []:
            lines.append(f"{field['label']}: {field['value']}")
        lines.append(f"The code expires in {settings.code_expiry_minutes} minutes.")

        return self._send(
            destination,
            f"Your verification code: {code}",
            "\n".join(lines),
            sms_body=f"Your code for {document_name} is {code}. Expires in {settings.code_expiry_minutes} min.",
        )

    def send_request_link(self, destination: str, signer_name: str, document_name: str, url: str) -> bool:
        return self._send(
            destination,
            f"Signature requested: {document_name}",
            f"Hello {signer_name},\n\nYou have been asked to sign \"{document_name}\".\n\nSign here: {url}\n",
            sms_body=f"{signer_name}, please sign {document_name}: {url}",
        )

    def send_confirmation(self, destination: str, signer_name: str, document_name: str, reference_code: str) -> bool:
        return self._send(
            destination,
            f"Signed: {document_name}",
            f"Hello {signer_name},\n\nYour signature on \"{document_name}\" was recorded.\n"
            f"Reference: {reference_code}\n",
            sms_body=f"Your signature on {document_name} was recorded. Ref {reference_code}",
        )

    def send_decline_notice(
        self,
        destination: str,
        signer_name: str,
        document_name: str,
        reason: Optional[str] = None,
        replacement_url: Optional[str] = None,
    ) -> bool:
        body = f"{signer_name} declined to sign \"{document_name}\"."
        if reason:
            body += f"\nReason: {reason}"
        if replacement_url:
            body += f"\n\nYou can assign a replacement signer here: {replacement_url}"
        return self._send(destination, f"Signature declined: {document_name}", body)

    def send_cancellation(self, destination: str, signer_name: str, document_name: str) -> bool:
        return self._send(
            destination,
            f"Signature request cancelled: {document_name}",
            f"Hello {signer_name},\n\nThe request to sign \"{document_name}\" was cancelled. No action is needed.\n",
        )

    def send_expiry_notice(self, destination: str, signer_name: str, document_name: str) -> bool:
        return self._send(
            destination,
            f"Signature request expired: {document_name}",
            f"Hello {signer_name},\n\nThe request to sign \"{document_name}\" has expired.\n",
        )


_notifier: Optional[Notifier] = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = Notifier()
    return _notifier


def set_notifier(notifier: Optional[Notifier]) -> None:
    """Swaps the process-wide notifier. Passing None rebuilds it from settings on next use."""
    global _notifier
    _notifier = notifier
