from typing import List
from fastapi import APIRouter, Depends, BackgroundTasks

from signaturehub.db.schema import ApiKey
from signaturehub.core.dependencies import get_current_tenant, get_jurisdiction_service
from signaturehub.services.jurisdiction import JurisdictionService
from signaturehub.models.jurisdiction import JurisdictionRead, JurisdictionUpsert

router = APIRouter()


@router.get("/", response_model=List[JurisdictionRead])
def list_jurisdictions(
    tenant: ApiKey = Depends(get_current_tenant),
    service: JurisdictionService = Depends(get_jurisdiction_service)
):
    return service.list_addenda(tenant.tenant_id)


@router.put("/{jurisdiction_code}", response_model=JurisdictionRead)
def upsert_jurisdiction(
    jurisdiction_code: str,
    data: JurisdictionUpsert,
    background_tasks: BackgroundTasks,
    tenant: ApiKey = Depends(get_current_tenant),
    service: JurisdictionService = Depends(get_jurisdiction_service)
):
    """Create or replace the legal addendum for a jurisdiction code (e.g. 'US-CA')."""
    return service.upsert_addendum(tenant.tenant_id, jurisdiction_code, data, background_tasks)
