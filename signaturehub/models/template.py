from typing import Optional
from datetime import datetime
from uuid import UUID
from sqlmodel import SQLModel, Field


class TemplateCreate(SQLModel):
    template_code: str = Field(
        min_length=1,
        max_length=64,
        description="Tenant-unique code. Example: 'WAIVER-STD'"
    )
    name: str = Field(min_length=1, description="Display name. Example: 'Standard Liability Waiver'")
    description: Optional[str] = None
    html_content: str = Field(
        min_length=1,
        description="HTML body with {{variable}} placeholders. Example: '<p>I, {{signerName}}, agree...</p>'"
    )
    jurisdiction: Optional[str] = None
    created_by: Optional[str] = None


class TemplateUpdate(SQLModel):
    name: Optional[str] = None
    description: Optional[str] = None
    html_content: Optional[str] = Field(
        default=None,
        description="Changing the body increments the template version."
    )
    jurisdiction: Optional[str] = None


class TemplateRead(SQLModel):
    id: UUID
    template_code: str
    name: str
    description: Optional[str] = None
    html_content: str
    jurisdiction: Optional[str] = None
    version: int
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
