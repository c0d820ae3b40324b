from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from app.filters.domain_map import DomainFieldMap
from app.filters.types import FilterAST, FilterGroup, FilterRule, Operator, RuleValue


logger = logging.getLogger("app.filters.compiler")

_POSTGREST_OPERATORS = {
    Operator.EQ: "eq",
    Operator.NEQ: "neq",
    Operator.GT: "gt",
    Operator.GTE: "gte",
    Operator.LT: "lt",
    Operator.LTE: "lte",
    Operator.CONTAINS: "ilike",
    Operator.STARTS_WITH: "ilike",
    Operator.ENDS_WITH: "ilike",
    Operator.IN: "in",
    Operator.NOT_IN: "not.in",
}

_RESERVED = set(',.:()"\\ ')


@dataclass
class RequiredRelations:
    # relation chains in first-seen order, e.g. ("enrollments", "programs")
    paths: list[tuple[str, ...]] = field(default_factory=list)
    inner_joins: set[str] = field(default_factory=set)

    @property
    def relations(self) -> set[str]:
        return {name for path in self.paths for name in path}


def analyze_required_relations(
    ast: FilterAST,
    root_table: str,
    field_map: DomainFieldMap,
) -> RequiredRelations:
    """Relations referenced by rules; every relation on a filtered path is an inner join."""
    required = RequiredRelations()

    def visit(group: FilterGroup) -> None:
        for node in group.rules:
            if isinstance(node, FilterGroup):
                visit(node)
                continue
            definition = field_map.get_field_definition(node.field_id)
            if definition is None or definition.root_table != root_table:
                continue
            if definition.relation_path and definition.relation_path not in required.paths:
                required.paths.append(definition.relation_path)
                required.inner_joins.update(definition.relation_path)

    visit(ast)
    return required


def build_select_string(
    required: RequiredRelations,
    select_fields: Optional[Sequence[str]] = None,
) -> str:
    tree: dict[str, Any] = {}
    for path in required.paths:
        cursor = tree
        for name in path:
            cursor = cursor.setdefault(name, {})

    def render(nodes: dict[str, Any]) -> list[str]:
        parts = []
        for name, children in nodes.items():
            marker = "!inner" if name in required.inner_joins else ""
            inner = ", ".join(["*", *render(children)])
            parts.append(f"{name}{marker}({inner})")
        return parts

    parts = ["*", *render(tree)]
    if select_fields:
        parts.extend(select_fields)
    return ", ".join(parts)


def _quote(value: str) -> str:
    if value and not any(char in _RESERVED for char in value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _format_scalar(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return _quote(str(value))


def _format_value(operator: Operator, value: RuleValue) -> Optional[str]:
    if operator.is_list:
        if not isinstance(value, tuple):
            return None
        return "(" + ",".join(_format_scalar(item) for item in value) + ")"
    if value is None or isinstance(value, tuple):
        return None
    if operator is Operator.CONTAINS:
        return _quote(f"*{value}*")
    if operator is Operator.STARTS_WITH:
        return _quote(f"{value}*")
    if operator is Operator.ENDS_WITH:
        return _quote(f"*{value}")
    return _format_scalar(value)


def compile_rule(rule: FilterRule, root_table: str, field_map: DomainFieldMap) -> Optional[str]:
    definition = field_map.get_field_definition(rule.field_id)
    if definition is None or definition.root_table != root_table:
        logger.warning(
            "filter_rule_skipped",
            extra={"field_id": rule.field_id, "root_table": root_table},
        )
        return None

    path = definition.db_path
    if rule.operator is Operator.IS_NULL:
        return f"{path}.is.null"
    if rule.operator is Operator.IS_NOT_NULL:
        return f"{path}.not.is.null"

    formatted = _format_value(rule.operator, rule.value)
    if formatted is None:
        # incomplete rules (no value yet) do not filter anything
        return None
    return f"{path}.{_POSTGREST_OPERATORS[rule.operator]}.{formatted}"


def _compile_children(group: FilterGroup, root_table: str, field_map: DomainFieldMap) -> list[str]:
    parts: list[str] = []
    for node in group.rules:
        if isinstance(node, FilterGroup):
            compiled = compile_group(node, root_table, field_map)
        else:
            compiled = compile_rule(node, root_table, field_map)
        if compiled:
            parts.append(compiled)
    return parts


def compile_group(group: FilterGroup, root_table: str, field_map: DomainFieldMap) -> Optional[str]:
    """Render a group as ``and(...)``/``or(...)``; empty groups render as nothing."""
    parts = _compile_children(group, root_table, field_map)
    if not parts:
        return None
    return f"{group.combinator}({','.join(parts)})"


def compile_query(
    ast: FilterAST,
    root_table: str,
    field_map: DomainFieldMap,
    *,
    select_fields: Optional[Sequence[str]] = None,
) -> dict[str, str]:
    """PostgREST query parameters for ``ast`` against ``root_table``."""
    required = analyze_required_relations(ast, root_table, field_map)
    params = {"select": build_select_string(required, select_fields)}
    parts = _compile_children(ast, root_table, field_map)
    if parts:
        params[ast.combinator] = f"({','.join(parts)})"
    return params
