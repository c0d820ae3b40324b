from __future__ import annotations

import logging
from dataclasses import replace as dc_replace
from typing import Any, Callable, Iterator, MutableMapping, Optional

from app.filters.codec import decode_ast, encode_ast, is_scalar, param_name, prune_ast
from app.filters.domain_map import DomainFieldMap
from app.filters.types import (
    COMBINATORS,
    Combinator,
    FieldDefinition,
    FilterAST,
    FilterDepthExceededError,
    FilterError,
    FilterGroup,
    FilterNode,
    FilterNodeNotFoundError,
    FilterRule,
    Operator,
    RuleValue,
    UnknownFieldError,
    empty_ast,
    new_node_id,
    normalize_value,
)
from app.filters.validation import DEFAULT_MAX_DEPTH


logger = logging.getLogger("app.filters.state")

_UNSET: Any = object()


def iter_rules(group: FilterGroup) -> Iterator[FilterRule]:
    for node in group.rules:
        if isinstance(node, FilterGroup):
            yield from iter_rules(node)
        else:
            yield node


def count_rules(group: FilterGroup) -> int:
    return sum(1 for _ in iter_rules(group))


def find_node(group: FilterGroup, node_id: str) -> Optional[FilterNode]:
    located = _locate(group, node_id, 0)
    return located[0] if located else None


def node_depth(group: FilterGroup, node_id: str) -> Optional[int]:
    """Depth of ``node_id`` with the root group at 0."""
    located = _locate(group, node_id, 0)
    return located[1] if located else None


def _locate(group: FilterGroup, node_id: str, depth: int) -> Optional[tuple[FilterNode, int]]:
    if group.id == node_id:
        return group, depth
    for node in group.rules:
        if isinstance(node, FilterGroup):
            found = _locate(node, node_id, depth + 1)
            if found:
                return found
        elif node.id == node_id:
            return node, depth + 1
    return None


def _map_node(
    group: FilterGroup,
    node_id: str,
    update: Callable[[FilterNode], FilterNode],
) -> FilterGroup:
    if group.id == node_id:
        updated = update(group)
        assert isinstance(updated, FilterGroup)
        return updated
    rules: list[FilterNode] = []
    for node in group.rules:
        if isinstance(node, FilterGroup):
            rules.append(_map_node(node, node_id, update))
        elif node.id == node_id:
            rules.append(update(node))
        else:
            rules.append(node)
    return dc_replace(group, rules=tuple(rules))


def _without_node(group: FilterGroup, node_id: str) -> FilterGroup:
    rules: list[FilterNode] = []
    for node in group.rules:
        if node.id == node_id:
            continue
        if isinstance(node, FilterGroup):
            rules.append(_without_node(node, node_id))
        else:
            rules.append(node)
    return dc_replace(group, rules=tuple(rules))


def _shape_value(operator: Operator, value: RuleValue) -> RuleValue:
    if operator.is_nullary:
        return None
    value = normalize_value(value)
    if isinstance(value, tuple):
        if not all(is_scalar(item) for item in value):
            raise FilterError("List filter values must contain only scalar values")
    elif value is not None and not is_scalar(value):
        raise FilterError(f"Unsupported filter value type: {type(value).__name__}")
    if operator.is_list:
        if value is None or isinstance(value, tuple):
            return value
        return (value,)
    if isinstance(value, tuple):
        return None
    return value


class FilterState:
    """Owns the filter tree for one root table and mirrors it into query parameters.

    Every mutation builds a new tree, stores the encoded value under
    ``param_name(root_table)`` (or removes it when the root has no children),
    bumps ``version`` and calls ``on_change``.
    """

    def __init__(
        self,
        root_table: str,
        field_map: DomainFieldMap,
        params: Optional[MutableMapping[str, str]] = None,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
        on_change: Optional[Callable[[FilterAST], None]] = None,
    ):
        self.root_table = root_table
        self.field_map = field_map
        self.params: MutableMapping[str, str] = params if params is not None else {}
        self.max_depth = max_depth
        self.on_change = on_change
        self.version = 0
        self.param_name = param_name(root_table)

        restored = decode_ast(
            self.params.get(self.param_name),
            field_map,
            root_table=root_table,
            max_depth=max_depth,
        )
        self._ast: FilterAST = restored if restored is not None else empty_ast()

    @property
    def ast(self) -> FilterAST:
        return self._ast

    @property
    def encoded(self) -> Optional[str]:
        if not self._ast.rules:
            return None
        return encode_ast(self._ast)

    @property
    def active_filter_count(self) -> int:
        return count_rules(self._ast)

    @property
    def has_active_filters(self) -> bool:
        return self.active_filter_count > 0

    def available_fields(self) -> list[FieldDefinition]:
        return self.field_map.get_fields_for_table(self.root_table)

    def add_rule(
        self,
        parent_group_id: str,
        field_id: str,
        operator: Optional[Operator | str] = None,
        value: RuleValue = None,
    ) -> FilterRule:
        self._require_group(parent_group_id)
        definition = self._field(field_id)
        resolved = self._operator(definition, operator) if operator is not None else definition.default_operator
        rule = FilterRule(
            id=new_node_id(),
            field_id=field_id,
            operator=resolved,
            value=_shape_value(resolved, value),
        )
        self._commit(
            _map_node(self._ast, parent_group_id, lambda group: _append(group, rule)),
            "filter_rule_added",
        )
        return rule

    def update_rule(
        self,
        rule_id: str,
        *,
        field_id: Any = _UNSET,
        operator: Any = _UNSET,
        value: Any = _UNSET,
    ) -> FilterRule:
        current = find_node(self._ast, rule_id)
        if not isinstance(current, FilterRule):
            raise FilterNodeNotFoundError(rule_id)

        updated = current
        if field_id is not _UNSET:
            definition = self._field(field_id)
            updated = FilterRule(
                id=current.id,
                field_id=definition.id,
                operator=definition.default_operator,
                value=None,
            )
        definition = self._field(updated.field_id)
        if operator is not _UNSET:
            resolved = self._operator(definition, operator)
            updated = dc_replace(updated, operator=resolved, value=_shape_value(resolved, updated.value))
        if value is not _UNSET:
            updated = dc_replace(updated, value=_shape_value(updated.operator, value))

        self._commit(_map_node(self._ast, rule_id, lambda _: updated), "filter_rule_updated")
        return updated

    def add_group(self, parent_group_id: str, combinator: Combinator = "and") -> FilterGroup:
        depth = self._require_group(parent_group_id)
        if depth + 1 > self.max_depth:
            raise FilterDepthExceededError(self.max_depth)
        self._check_combinator(combinator)
        group = FilterGroup(id=new_node_id(), combinator=combinator, rules=())
        self._commit(
            _map_node(self._ast, parent_group_id, lambda parent: _append(parent, group)),
            "filter_group_added",
        )
        return group

    def update_group_combinator(self, group_id: str, combinator: Combinator) -> None:
        self._require_group(group_id)
        self._check_combinator(combinator)
        self._commit(
            _map_node(self._ast, group_id, lambda group: dc_replace(group, combinator=combinator)),
            "filter_group_updated",
        )

    def remove_node(self, node_id: str) -> None:
        if node_id == self._ast.id:
            self.reset_filter()
            return
        if find_node(self._ast, node_id) is None:
            raise FilterNodeNotFoundError(node_id)
        self._commit(_without_node(self._ast, node_id), "filter_node_removed")

    def reset_filter(self) -> None:
        self._commit(empty_ast(), "filter_reset")

    def replace(self, ast: FilterAST) -> FilterAST:
        pruned = prune_ast(ast, self.field_map, root_table=self.root_table, max_depth=self.max_depth)
        self._commit(pruned, "filter_replaced")
        return pruned

    def _commit(self, ast: FilterAST, event: str) -> None:
        encoded = encode_ast(ast) if ast.rules else None
        self._ast = ast
        if encoded is not None:
            self.params[self.param_name] = encoded
        else:
            self.params.pop(self.param_name, None)
        self.version += 1
        logger.debug(
            event,
            extra={
                "root_table": self.root_table,
                "version": self.version,
                "active_filter_count": self.active_filter_count,
            },
        )
        if self.on_change is not None:
            self.on_change(ast)

    def _require_group(self, group_id: str) -> int:
        located = _locate(self._ast, group_id, 0)
        if located is None or not isinstance(located[0], FilterGroup):
            raise FilterNodeNotFoundError(group_id)
        return located[1]

    def _field(self, field_id: str) -> FieldDefinition:
        definition = self.field_map.get_field_definition(field_id)
        if definition is None or definition.root_table != self.root_table:
            raise UnknownFieldError(field_id)
        return definition

    def _operator(self, definition: FieldDefinition, operator: Operator | str) -> Operator:
        resolved = Operator.parse(operator)
        if resolved is None or not definition.allows(resolved):
            raise FilterError(f"Operator '{operator}' is not allowed for field '{definition.id}'")
        return resolved

    @staticmethod
    def _check_combinator(combinator: str) -> None:
        if combinator not in COMBINATORS:
            raise FilterError(f"Invalid combinator: {combinator}. Must be 'and' or 'or'")


def _append(group: FilterNode, node: FilterNode) -> FilterGroup:
    assert isinstance(group, FilterGroup)
    return dc_replace(group, rules=(*group.rules, node))
