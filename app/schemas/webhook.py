from __future__ import annotations

import uuid

from pydantic import BaseModel, Field


class ReplayRequest(BaseModel):
    tenant_id: uuid.UUID
    limit: int = Field(default=100, ge=1, le=1000)


class ReplayError(BaseModel):
    resource_id: str
    error: str


class ReplayResponse(BaseModel):
    total: int
    processed: int
    failed: int
    errors: list[ReplayError] = Field(default_factory=list)

    class Config:
        from_attributes = True
