from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class TenantConnectionRead(BaseModel):
    id: uuid.UUID
    name: str
    xero_tenant_id: Optional[str] = None
    xero_token_expires_at: Optional[datetime] = None
    credential_version: int

    class Config:
        from_attributes = True


class XeroConnectionResponse(BaseModel):
    message: str
    tenant: TenantConnectionRead
    xero_tenant_name: Optional[str] = None
