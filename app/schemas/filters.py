from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class FieldDefinitionRead(BaseModel):
    id: str
    root_table: str
    db_path: str
    label: str
    type: str
    operators: list[str]
    options: Optional[list[str]] = None
    relation_path: list[str] = Field(default_factory=list)
    nullable: bool = False


class FieldListResponse(BaseModel):
    root_table: str
    fields: list[FieldDefinitionRead]


class CompileRequest(BaseModel):
    encoded: Optional[str] = None
    select_fields: Optional[list[str]] = None


class ValidationIssueRead(BaseModel):
    path: str
    message: str
    node_id: str


class CompileResponse(BaseModel):
    root_table: str
    param_name: str
    encoded: Optional[str] = None
    ast: dict[str, Any]
    active_filter_count: int
    has_active_filters: bool
    is_valid: bool
    issues: list[ValidationIssueRead] = Field(default_factory=list)
    params: dict[str, str]
