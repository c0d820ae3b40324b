from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.config import Settings, get_settings
from app.filters.codec import param_name
from app.filters.compiler import compile_query
from app.filters.domain_map import DomainFieldMap, get_field_map
from app.filters.state import FilterState
from app.filters.types import FieldDefinition
from app.filters.validation import validate_ast
from app.schemas.filters import (
    CompileRequest,
    CompileResponse,
    FieldDefinitionRead,
    FieldListResponse,
    ValidationIssueRead,
)


router = APIRouter(prefix="/filters", tags=["filters"])
logger = logging.getLogger("app.api.filters")


def _field_read(definition: FieldDefinition) -> FieldDefinitionRead:
    return FieldDefinitionRead(
        id=definition.id,
        root_table=definition.root_table,
        db_path=definition.db_path,
        label=definition.label,
        type=definition.type.value,
        operators=[operator.value for operator in definition.operators],
        options=list(definition.options) if definition.options is not None else None,
        relation_path=list(definition.relation_path),
        nullable=definition.nullable,
    )


def _require_table(field_map: DomainFieldMap, root_table: str) -> list[FieldDefinition]:
    fields = field_map.get_fields_for_table(root_table)
    if not fields:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No filterable fields for table '{root_table}'",
        )
    return fields


@router.get("/tables")
async def list_filter_tables(field_map: DomainFieldMap = Depends(get_field_map)) -> dict[str, list[str]]:
    return {"tables": field_map.get_root_tables()}


@router.get("/{root_table}/fields", response_model=FieldListResponse)
async def list_filter_fields(
    root_table: str,
    field_map: DomainFieldMap = Depends(get_field_map),
):
    fields = _require_table(field_map, root_table)
    return FieldListResponse(root_table=root_table, fields=[_field_read(item) for item in fields])


@router.post("/{root_table}/compile", response_model=CompileResponse)
async def compile_filter(
    root_table: str,
    payload: CompileRequest,
    field_map: DomainFieldMap = Depends(get_field_map),
    settings: Settings = Depends(get_settings),
):
    _require_table(field_map, root_table)
    params: dict[str, str] = {}
    if payload.encoded:
        params[param_name(root_table)] = payload.encoded

    state = FilterState(root_table, field_map, params, max_depth=settings.filter_max_depth)
    ast = state.ast
    issues = []
    if ast.rules:
        issues = validate_ast(
            ast,
            field_map,
            max_depth=settings.filter_max_depth,
            root_table=root_table,
        )
    compiled = compile_query(ast, root_table, field_map, select_fields=payload.select_fields)

    logger.info(
        "filter_compiled",
        extra={
            "root_table": root_table,
            "active_filter_count": state.active_filter_count,
            "issues": len(issues),
        },
    )
    return CompileResponse(
        root_table=root_table,
        param_name=state.param_name,
        encoded=state.encoded,
        ast=ast.to_dict(),
        active_filter_count=state.active_filter_count,
        has_active_filters=state.has_active_filters,
        is_valid=not issues,
        issues=[
            ValidationIssueRead(path=issue.path, message=issue.message, node_id=issue.node.id)
            for issue in issues
        ],
        params=compiled,
    )
