from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status, BackgroundTasks

from signaturehub.db.schema import ApiKey, PackageStatus
from signaturehub.core.dependencies import (
    get_current_tenant, get_package_service, get_replacement_service
)
from signaturehub.services.package import PackageService
from signaturehub.services.replacement import SignerReplacementService
from signaturehub.models.package import (
    PackageBatchRequest,
    PackageBatchResponse,
    PackageCreate,
    PackageCreateResponse,
    PackageRead,
    PackageStatusRead,
    ReplaceSignerRequest,
    ReplaceSignerResponse,
    RoleAgeRequirement
)

router = APIRouter()

# ==============================================================================
# PACKAGE LIFECYCLE
# ==============================================================================


@router.post("/", response_model=PackageCreateResponse, status_code=status.HTTP_201_CREATED)
def create_package(
    data: PackageCreate,
    background_tasks: BackgroundTasks,
    tenant: ApiKey = Depends(get_current_tenant),
    service: PackageService = Depends(get_package_service)
):
    """
    Create a multi-party signing package.
    - Validates age requirements for every role (all violations reported together).
    - Consolidates roles held by the same person into one signature request.
    - Returns one sign link per physical signer.
    """
    return service.create_package(tenant.tenant_id, data, background_tasks)


@router.get("/", response_model=List[PackageRead])
def list_packages(
    status: Optional[PackageStatus] = None,
    external_ref: Optional[str] = None,
    external_type: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    tenant: ApiKey = Depends(get_current_tenant),
    service: PackageService = Depends(get_package_service)
):
    return service.list_packages(
        tenant.tenant_id, status, external_ref, external_type, limit, offset)


@router.get("/role-requirements", response_model=List[RoleAgeRequirement])
def list_role_requirements(
    tenant: ApiKey = Depends(get_current_tenant),
    service: PackageService = Depends(get_package_service)
):
    return service.list_role_requirements()


@router.post("/status/batch", response_model=PackageBatchResponse)
def get_status_batch(
    data: PackageBatchRequest,
    tenant: ApiKey = Depends(get_current_tenant),
    service: PackageService = Depends(get_package_service)
):
    """Up to 50 ids or codes. Duplicates are collapsed; unknown ones come back in not_found."""
    return service.get_status_batch(tenant.tenant_id, data.package_ids)


@router.get("/{package_ref}", response_model=PackageStatusRead)
def get_package_status(
    package_ref: str,
    tenant: ApiKey = Depends(get_current_tenant),
    service: PackageService = Depends(get_package_service)
):
    """Accepts either the package id or its PKG- code."""
    return service.get_status(tenant.tenant_id, package_ref)


@router.post("/{package_ref}/cancel", response_model=PackageStatusRead)
def cancel_package(
    package_ref: str,
    background_tasks: BackgroundTasks,
    tenant: ApiKey = Depends(get_current_tenant),
    service: PackageService = Depends(get_package_service)
):
    return service.cancel_package(tenant.tenant_id, package_ref, background_tasks)

# ==============================================================================
# SIGNER REPLACEMENT
# ==============================================================================


@router.post("/{package_ref}/replace-signer", response_model=ReplaceSignerResponse)
def replace_signer(
    package_ref: str,
    data: ReplaceSignerRequest,
    background_tasks: BackgroundTasks,
    tenant: ApiKey = Depends(get_current_tenant),
    service: SignerReplacementService = Depends(get_replacement_service)
):
    """
    Re-target a not-yet-signed role (and its sibling roles) to a new person.
    The old request is cancelled; a new sign link is returned.
    """
    return service.replace_by_tenant(tenant.tenant_id, package_ref, data, background_tasks)
