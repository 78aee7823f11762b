from datetime import datetime
from uuid import UUID
from sqlmodel import SQLModel, Field


class JurisdictionUpsert(SQLModel):
    jurisdiction_name: str = Field(min_length=1, description="Example: 'California'")
    addendum_html: str = Field(
        min_length=1,
        description="Legal notice body. Rendered inside a titled block."
    )
    is_active: bool = True


class JurisdictionRead(SQLModel):
    id: UUID
    jurisdiction_code: str
    jurisdiction_name: str
    addendum_html: str
    is_active: bool
    updated_at: datetime
