from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status, BackgroundTasks

from signaturehub.db.schema import ApiKey, RequestStatus
from signaturehub.core.dependencies import get_current_tenant, get_request_service
from signaturehub.services.request import RequestService
from signaturehub.models.request import (
    RequestCreate,
    RequestCreateResponse,
    RequestFilter,
    RequestList,
    RequestRead,
    SignatureRead
)

router = APIRouter()


@router.post("/", response_model=RequestCreateResponse, status_code=status.HTTP_201_CREATED)
def create_request(
    data: RequestCreate,
    background_tasks: BackgroundTasks,
    tenant: ApiKey = Depends(get_current_tenant),
    service: RequestService = Depends(get_request_service)
):
    """
    Create a single-signer request.
    - Resolves template/merge variables into a content snapshot.
    - Sends the sign link; any delivered channel moves the request to 'sent'.
    """
    return service.create_request(tenant.tenant_id, data, background_tasks)


@router.get("/", response_model=RequestList)
def list_requests(
    status: Optional[RequestStatus] = None,
    external_ref: Optional[str] = None,
    external_type: Optional[str] = None,
    signer_email: Optional[str] = None,
    created_by: Optional[str] = None,
    jurisdiction: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    tenant: ApiKey = Depends(get_current_tenant),
    service: RequestService = Depends(get_request_service)
):
    filters = RequestFilter(
        status=status,
        external_ref=external_ref,
        external_type=external_type,
        signer_email=signer_email,
        created_by=created_by,
        jurisdiction=jurisdiction,
        limit=limit,
        offset=offset,
    )
    return service.list_requests(tenant.tenant_id, filters)


@router.get("/reference/{reference_code}", response_model=RequestRead)
def get_request_by_reference(
    reference_code: str,
    tenant: ApiKey = Depends(get_current_tenant),
    service: RequestService = Depends(get_request_service)
):
    return service.get_by_reference(tenant.tenant_id, reference_code)


@router.get("/{request_id}", response_model=RequestRead)
def get_request(
    request_id: UUID,
    tenant: ApiKey = Depends(get_current_tenant),
    service: RequestService = Depends(get_request_service)
):
    return service.get_request(tenant.tenant_id, request_id)


@router.get("/{request_id}/signature", response_model=SignatureRead)
def get_signature(
    request_id: UUID,
    tenant: ApiKey = Depends(get_current_tenant),
    service: RequestService = Depends(get_request_service)
):
    """The consent record. 404 until the request is signed."""
    return service.get_signature(tenant.tenant_id, request_id)


@router.post("/{request_id}/cancel", response_model=RequestRead)
def cancel_request(
    request_id: UUID,
    background_tasks: BackgroundTasks,
    tenant: ApiKey = Depends(get_current_tenant),
    service: RequestService = Depends(get_request_service)
):
    """
    Cancel a request that is not yet terminal.
    Signed, expired, cancelled or declined requests return 409.
    """
    return service.cancel_request(tenant.tenant_id, request_id, background_tasks)
