import hashlib
from typing import Optional
from fastapi import Depends, Header, HTTPException, Request, status
from sqlmodel import Session, select

from signaturehub.db.core import get_session
from signaturehub.db.schema import ApiKey

from signaturehub.services.request import RequestService
from signaturehub.services.package import PackageService
from signaturehub.services.replacement import SignerReplacementService
from signaturehub.services.signing import SigningService
from signaturehub.services.verification import VerificationService
from signaturehub.services.template import TemplateService
from signaturehub.services.jurisdiction import JurisdictionService
from signaturehub.services.rate_limit import get_route_limits, get_verification_throttle
from signaturehub.utils.ip import get_client_ip


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def get_request_service(session: Session = Depends(get_session)) -> RequestService:
    """Creates a RequestService instance using the active DB session."""
    return RequestService(session=session)


def get_package_service(session: Session = Depends(get_session)) -> PackageService:
    return PackageService(session=session)


def get_replacement_service(session: Session = Depends(get_session)) -> SignerReplacementService:
    return SignerReplacementService(session=session)


def get_signing_service(session: Session = Depends(get_session)) -> SigningService:
    return SigningService(session=session)


def get_verification_service(session: Session = Depends(get_session)) -> VerificationService:
    return VerificationService(session=session)


def get_template_service(session: Session = Depends(get_session)) -> TemplateService:
    return TemplateService(session=session)


def get_jurisdiction_service(session: Session = Depends(get_session)) -> JurisdictionService:
    return JurisdictionService(session=session)


def get_current_tenant(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    session: Session = Depends(get_session)
) -> ApiKey:
    """
    Resolves the X-API-Key header to its tenant.
    This is the gatekeeper for every tenant route.
    """
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    api_key = session.exec(
        select(ApiKey).where(ApiKey.key_hash == hash_api_key(x_api_key))
    ).first()

    if api_key is None or not api_key.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")

    return api_key


# ==============================================================================
# RATE LIMIT GUARDS (per client address, evaluated before the handler)
# ==============================================================================


def limit_code_confirmation(request: Request) -> None:
    get_verification_throttle().hit_address(get_client_ip(request))


def limit_signature_submission(request: Request) -> None:
    get_route_limits().hit_submit(get_client_ip(request))


def limit_tenant_api(request: Request) -> None:
    """Applied to every tenant router, ahead of API key checks."""
    get_route_limits().hit_tenant_api(get_client_ip(request))
