"""Request bodies for the HTTP interface."""

from typing import Optional

from pydantic import BaseModel, Field


class QuotaCheckBody(BaseModel):
    """Admission-check request."""

    organization_id: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    model: str = Field(min_length=1)
    user_id: Optional[str] = None
    estimated_tokens: Optional[int] = Field(default=None, ge=0)
    estimated_cost: Optional[float] = Field(default=None, ge=0)
