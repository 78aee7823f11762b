from typing import List, Optional
from fastapi import APIRouter, Depends, status, BackgroundTasks

from signaturehub.db.schema import ApiKey
from signaturehub.core.dependencies import get_current_tenant, get_template_service
from signaturehub.services.template import TemplateService
from signaturehub.models.template import TemplateCreate, TemplateRead, TemplateUpdate

router = APIRouter()


@router.get("/", response_model=List[TemplateRead])
def list_templates(
    jurisdiction: Optional[str] = None,
    include_inactive: bool = False,
    tenant: ApiKey = Depends(get_current_tenant),
    service: TemplateService = Depends(get_template_service)
):
    return service.list_templates(tenant.tenant_id, jurisdiction, include_inactive)


@router.post("/", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
def create_template(
    data: TemplateCreate,
    background_tasks: BackgroundTasks,
    tenant: ApiKey = Depends(get_current_tenant),
    service: TemplateService = Depends(get_template_service)
):
    return service.create_template(tenant.tenant_id, data, background_tasks)


@router.get("/{template_code}", response_model=TemplateRead)
def get_template(
    template_code: str,
    tenant: ApiKey = Depends(get_current_tenant),
    service: TemplateService = Depends(get_template_service)
):
    return service.get_template(tenant.tenant_id, template_code)


@router.patch("/{template_code}", response_model=TemplateRead)
def update_template(
    template_code: str,
    data: TemplateUpdate,
    background_tasks: BackgroundTasks,
    tenant: ApiKey = Depends(get_current_tenant),
    service: TemplateService = Depends(get_template_service)
):
    """Changing html_content increments the version."""
    return service.update_template(tenant.tenant_id, template_code, data, background_tasks)


@router.delete("/{template_code}", response_model=TemplateRead)
def deactivate_template(
    template_code: str,
    background_tasks: BackgroundTasks,
    tenant: ApiKey = Depends(get_current_tenant),
    service: TemplateService = Depends(get_template_service)
):
    """Soft delete. Existing requests keep their snapshot."""
    return service.deactivate_template(tenant.tenant_id, template_code, background_tasks)
