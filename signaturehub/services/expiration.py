from datetime import datetime
from typing import Dict, List, Optional
from loguru import logger
from sqlmodel import Session, select

from signaturehub.db.core import engine
from signaturehub.db.schema import (
    PackageStatus, RequestStatus, SignatureRequest, SigningPackage
)
from signaturehub.services.lifecycle import LifecycleController
from signaturehub.services.notifier import Notifier, get_notifier
from signaturehub.services.rate_limit import get_route_limits, get_verification_throttle
from signaturehub.services.webhook import WebhookEvent, notify_request_event
from signaturehub.utils.dates import as_utc, utc_now


OPEN_STATUSES = (RequestStatus.PENDING, RequestStatus.SENT, RequestStatus.VIEWED, RequestStatus.VERIFIED)
OPEN_PACKAGE_STATUSES = (PackageStatus.PENDING, PackageStatus.PARTIAL)


class ExpirationService:
    """
    Periodic sweep. Idempotent: it only ever selects non-terminal rows, and
    all transitions are committed before any notification is attempted, so a
    crash mid-sweep never re-notifies on the next run.
    """

    def __init__(self, session: Session, notifier: Optional[Notifier] = None):
        self.session = session
        self.notifier = notifier or get_notifier()
        self.lifecycle = LifecycleController(session)

    def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = as_utc(now) or utc_now()

        # Phase 1: transitions
        expired = self.expire_requests(now)
        packages = self.expire_packages(now)
        self.session.commit()

        # Phase 2: notifications
        for request in expired:
            self._notify(request)

        get_verification_throttle().sweep()
        get_route_limits().sweep()

        if expired or packages:
            logger.info(f"Expiry sweep: {len(expired)} requests, {packages} packages expired")
        return {"requests": len(expired), "packages": packages}

    def expire_requests(self, now: datetime) -> List[SignatureRequest]:
        rows = self.session.exec(
            select(SignatureRequest).where(
                SignatureRequest.status.in_(OPEN_STATUSES),
                SignatureRequest.expires_at != None,  # noqa: E711
                SignatureRequest.expires_at < now
            )
        ).all()
        for request in rows:
            self.lifecycle.transition(request, RequestStatus.EXPIRED)
        return list(rows)

    def expire_packages(self, now: datetime) -> int:
        rows = self.session.exec(
            select(SigningPackage).where(
                SigningPackage.status.in_(OPEN_PACKAGE_STATUSES),
                SigningPackage.expires_at != None,  # noqa: E711
                SigningPackage.expires_at < now
            )
        ).all()
        for package in rows:
            package.status = PackageStatus.EXPIRED
            self.session.add(package)
        return len(rows)

    def _notify(self, request: SignatureRequest) -> None:
        try:
            notify_request_event(request, WebhookEvent.EXPIRED)
            destination = request.signer_email or request.signer_phone
            if destination:
                self.notifier.send_expiry_notice(destination, request.signer_name, request.document_name)
        except Exception as e:
            logger.error(f"Expiry notification for request {request.id} failed: {e}")


def run_expiry_sweep() -> Dict[str, int]:
    """Entry point for the background loop. Opens its own session."""
    with Session(engine) as session:
        return ExpirationService(session).run()
