from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from app.filters.domain_map import DomainFieldMap
from app.filters.types import (
    COMBINATORS,
    FieldDefinition,
    FieldType,
    FilterAST,
    FilterGroup,
    FilterRule,
    ValidationIssue,
)


DEFAULT_MAX_DEPTH = 3


def validate_ast(
    ast: FilterAST,
    field_map: DomainFieldMap,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    root_table: Optional[str] = None,
) -> list[ValidationIssue]:
    """Collect every structural and semantic problem in ``ast``.

    The root group is at depth 0; a nested group deeper than ``max_depth`` is
    reported once and its subtree is not inspected further. An empty root is
    reported like any other empty group, callers that treat "no filter" as
    valid should check ``ast.rules`` first.
    """
    issues: list[ValidationIssue] = []
    _validate_group(ast, "", issues, 0, max_depth, field_map, root_table)
    return issues


def is_valid_ast(
    ast: FilterAST,
    field_map: DomainFieldMap,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    root_table: Optional[str] = None,
) -> bool:
    return not validate_ast(ast, field_map, max_depth=max_depth, root_table=root_table)


def validation_summary(issues: list[ValidationIssue]) -> str:
    if not issues:
        return "Filter is valid"
    return "\n".join(f"{issue.path}: {issue.message}" for issue in issues)


def _child_path(path: str, index: int) -> str:
    return f"{path}.rules[{index}]" if path else f"rules[{index}]"


def _validate_group(
    group: FilterGroup,
    path: str,
    issues: list[ValidationIssue],
    depth: int,
    max_depth: int,
    field_map: DomainFieldMap,
    root_table: Optional[str],
) -> None:
    if depth > max_depth:
        issues.append(ValidationIssue(path, f"Maximum nesting depth of {max_depth} exceeded", group))
        return

    if group.combinator not in COMBINATORS:
        issues.append(
            ValidationIssue(
                path,
                f"Invalid combinator: {group.combinator}. Must be 'and' or 'or'",
                group,
            )
        )
    if not group.id:
        issues.append(ValidationIssue(path, "Group must have an id", group))
    if not group.rules:
        issues.append(ValidationIssue(path, "Filter group cannot be empty", group))

    for index, node in enumerate(group.rules):
        node_path = _child_path(path, index)
        if isinstance(node, FilterGroup):
            _validate_group(node, node_path, issues, depth + 1, max_depth, field_map, root_table)
        else:
            _validate_rule(node, node_path, issues, field_map, root_table)


def _validate_rule(
    rule: FilterRule,
    path: str,
    issues: list[ValidationIssue],
    field_map: DomainFieldMap,
    root_table: Optional[str],
) -> None:
    if not rule.id:
        issues.append(ValidationIssue(path, "Rule must have an id", rule))
    if not rule.field_id:
        issues.append(ValidationIssue(path, "Rule must have a fieldId", rule))
        return

    definition = field_map.get_field_definition(rule.field_id)
    if definition is None:
        issues.append(ValidationIssue(path, f"Field '{rule.field_id}' not found in domain map", rule))
        return
    if root_table is not None and definition.root_table != root_table:
        issues.append(
            ValidationIssue(
                path,
                f"Field '{rule.field_id}' belongs to '{definition.root_table}', not '{root_table}'",
                rule,
            )
        )

    if not definition.allows(rule.operator):
        allowed = ", ".join(operator.value for operator in definition.operators)
        issues.append(
            ValidationIssue(
                path,
                f"Operator '{rule.operator.value}' is not allowed for field '{definition.label}' "
                f"(type: {definition.type.value}). Allowed operators: {allowed}",
                rule,
            )
        )

    _validate_value(rule, definition, path, issues)


def _validate_value(
    rule: FilterRule,
    definition: FieldDefinition,
    path: str,
    issues: list[ValidationIssue],
) -> None:
    operator = rule.operator
    value = rule.value

    if operator.is_nullary:
        if value is not None:
            issues.append(ValidationIssue(path, f"Operator '{operator.value}' does not require a value", rule))
        return

    if value is None:
        issues.append(ValidationIssue(path, f"Operator '{operator.value}' requires a value", rule))
        return

    if operator.is_list:
        if not isinstance(value, tuple):
            issues.append(ValidationIssue(path, f"Operator '{operator.value}' requires an array of values", rule))
            return
        if definition.type is FieldType.ENUM and definition.options:
            invalid = [item for item in value if isinstance(item, str) and item not in definition.options]
            if invalid:
                issues.append(
                    ValidationIssue(
                        path,
                        f"Invalid enum values: {', '.join(invalid)}. "
                        f"Allowed values: {', '.join(definition.options)}",
                        rule,
                    )
                )
        for item in value:
            message = _type_error(item, definition)
            if message:
                issues.append(ValidationIssue(path, message, rule))
                break
        return

    if isinstance(value, tuple):
        issues.append(ValidationIssue(path, f"Operator '{operator.value}' requires a single value", rule))
        return

    if definition.type is FieldType.ENUM:
        if definition.options and isinstance(value, str) and value not in definition.options:
            issues.append(
                ValidationIssue(
                    path,
                    f"Invalid enum value: {value}. Allowed values: {', '.join(definition.options)}",
                    rule,
                )
            )
        return

    message = _type_error(value, definition)
    if message:
        issues.append(ValidationIssue(path, message, rule))


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return type(value).__name__


def _type_error(value: Any, definition: FieldDefinition) -> Optional[str]:
    if definition.type is FieldType.TEXT and not isinstance(value, str):
        return f"Field '{definition.label}' expects a string value, got {_type_name(value)}"
    if definition.type is FieldType.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
            return f"Field '{definition.label}' expects a number value, got {_type_name(value)}"
    if definition.type is FieldType.BOOLEAN and not isinstance(value, bool):
        return f"Field '{definition.label}' expects a boolean value, got {_type_name(value)}"
    if definition.type is FieldType.DATE:
        if not isinstance(value, str):
            return f"Field '{definition.label}' expects a date (string or Date), got {_type_name(value)}"
        if not is_iso_date(value):
            return f"Field '{definition.label}' expects a valid ISO date string"
    return None


def is_iso_date(value: str) -> bool:
    candidate = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        datetime.fromisoformat(candidate)
        return True
    except ValueError:
        pass
    try:
        date.fromisoformat(value)
        return True
    except ValueError:
        return False
