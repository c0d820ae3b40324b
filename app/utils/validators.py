from __future__ import annotations

import uuid

from fastapi import HTTPException, status


def parse_uuid(value: str, field_name: str = "identifier") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field_name} format",
        ) from exc
