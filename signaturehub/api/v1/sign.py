from fastapi import APIRouter, Depends, HTTPException, Request, status, BackgroundTasks

from signaturehub.core.dependencies import (
    get_replacement_service, get_signing_service, get_verification_service,
    limit_code_confirmation, limit_signature_submission
)
from signaturehub.services.replacement import SignerReplacementService
from signaturehub.services.signing import SigningService
from signaturehub.services.verification import VerificationService
from signaturehub.models.package import ReplaceSignerRequest, ReplaceSignerResponse
from signaturehub.models.signing import (
    ConfirmCodeRequest,
    ConfirmCodeResponse,
    DeclineRequest,
    DeclineResponse,
    SendCodeRequest,
    SendCodeResponse,
    SigningPageData,
    SubmitSignatureRequest,
    SubmitSignatureResponse
)
from signaturehub.utils.ip import get_client_ip

router = APIRouter()

# ==============================================================================
# SIGNER SURFACE (token is the only credential)
# ==============================================================================


@router.get("/{token}", response_model=SigningPageData)
def get_signing_page(
    token: str,
    service: SigningService = Depends(get_signing_service)
):
    """
    First access moves the request to 'viewed'.
    Unknown and expired tokens both return 410.
    """
    return service.get_page_data(token)


@router.post("/{token}/send-code", response_model=SendCodeResponse)
def send_code(
    token: str,
    data: SendCodeRequest,
    request: Request,
    service: VerificationService = Depends(get_verification_service)
):
    result = service.send_code(token, data.method, get_client_ip(request))
    if not result.sent:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to send verification code. Please try again."
        )
    return result


@router.post(
    "/{token}/verify",
    response_model=ConfirmCodeResponse,
    dependencies=[Depends(limit_code_confirmation)]
)
def confirm_code(
    token: str,
    data: ConfirmCodeRequest,
    service: VerificationService = Depends(get_verification_service)
):
    return service.confirm_code(token, data.code)


@router.post(
    "/{token}/submit",
    response_model=SubmitSignatureResponse,
    dependencies=[Depends(limit_signature_submission)]
)
def submit_signature(
    token: str,
    data: SubmitSignatureRequest,
    request: Request,
    service: SigningService = Depends(get_signing_service)
):
    return service.submit_signature(
        token, data, get_client_ip(request), request.headers.get("user-agent"))


@router.post("/{token}/decline", response_model=DeclineResponse)
def decline(
    token: str,
    data: DeclineRequest,
    service: SigningService = Depends(get_signing_service)
):
    return service.decline(token, data.reason)


@router.post("/{token}/replace-signer", response_model=ReplaceSignerResponse)
def replace_signer_as_admin(
    token: str,
    data: ReplaceSignerRequest,
    background_tasks: BackgroundTasks,
    service: SignerReplacementService = Depends(get_replacement_service)
):
    """Package admin only, acting through their own signing token."""
    return service.replace_by_admin(token, data, background_tasks)
