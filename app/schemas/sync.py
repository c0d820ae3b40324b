from __future__ import annotations

import uuid
from typing import Optional

from pydantic import BaseModel, Field


class SyncResultRead(BaseModel):
    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    class Config:
        from_attributes = True


class BatchSyncRequest(BaseModel):
    tenant_id: Optional[uuid.UUID] = None
    limit: Optional[int] = Field(default=None, ge=1, le=1000)


class BatchSyncError(BaseModel):
    invoice_id: str
    error: str


class BatchSyncResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    errors: list[BatchSyncError] = Field(default_factory=list)

    class Config:
        from_attributes = True
