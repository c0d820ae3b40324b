from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Optional
from urllib.parse import unquote

from app.filters.domain_map import DomainFieldMap
from app.filters.types import (
    COMBINATORS,
    FilterAST,
    FilterGroup,
    FilterNode,
    FilterRule,
    Operator,
)
from app.filters.validation import DEFAULT_MAX_DEPTH


PARAM_PREFIX = "masterFilters_"

logger = logging.getLogger("app.filters.codec")


def param_name(root_table: str) -> str:
    return f"{PARAM_PREFIX}{root_table}"


def encode_ast(ast: FilterAST) -> str:
    """Serialize ``ast`` as compact JSON wrapped in unpadded URL-safe base64."""
    serialized = json.dumps(ast.to_dict(), separators=(",", ":"), ensure_ascii=False)
    encoded = base64.urlsafe_b64encode(serialized.encode("utf-8")).decode("ascii")
    return encoded.rstrip("=")


def _load_json(encoded: str) -> Any:
    cleaned = encoded.strip()
    padded = cleaned + "=" * (-len(cleaned) % 4)
    raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    text = raw.decode("utf-8")
    # Links produced by the previous UI percent-encoded the JSON before base64.
    if text.startswith("%7B"):
        text = unquote(text)
    return json.loads(text)


def decode_ast(
    encoded: Optional[str],
    field_map: DomainFieldMap,
    *,
    root_table: Optional[str] = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Optional[FilterAST]:
    """Decode a shared filter value, dropping whatever no longer fits the field map.

    Returns ``None`` only when the value does not decode to a root group at all;
    stale or malformed nodes inside an otherwise readable tree are pruned.
    """
    if not encoded:
        return None
    try:
        data = _load_json(encoded)
    except (binascii.Error, ValueError, UnicodeError, RecursionError) as exc:
        logger.info("filter_decode_failed", extra={"error": str(exc)})
        return None

    if not isinstance(data, dict) or "combinator" not in data:
        logger.info("filter_decode_not_a_group")
        return None
    if data.get("combinator") not in COMBINATORS or not isinstance(data.get("rules"), list):
        logger.info("filter_decode_invalid_root")
        return None

    root_id = data.get("id")
    if not isinstance(root_id, str) or not root_id:
        logger.info("filter_decode_invalid_root")
        return None

    pruner = _Pruner(field_map, root_table=root_table, max_depth=max_depth)
    pruner.seen.add(root_id)
    ast = FilterGroup(
        id=root_id,
        combinator=data["combinator"],
        rules=pruner.children(data["rules"], depth=0),
    )
    if pruner.dropped:
        logger.info(
            "filter_nodes_pruned",
            extra={"root_table": root_table, "dropped": pruner.dropped},
        )
    return ast


class _Pruner:
    def __init__(self, field_map: DomainFieldMap, *, root_table: Optional[str], max_depth: int):
        self.field_map = field_map
        self.root_table = root_table
        self.max_depth = max_depth
        self.seen: set[str] = set()
        self.dropped = 0

    def children(self, raw_nodes: list[Any], *, depth: int) -> tuple[FilterNode, ...]:
        kept: list[FilterNode] = []
        for raw in raw_nodes:
            node = self.node(raw, depth=depth + 1)
            if node is None:
                self.dropped += 1
                continue
            kept.append(node)
        return tuple(kept)

    def node(self, raw: Any, *, depth: int) -> Optional[FilterNode]:
        if not isinstance(raw, dict):
            return None
        node_id = raw.get("id")
        if not isinstance(node_id, str) or not node_id or node_id in self.seen:
            return None
        if "combinator" in raw:
            return self.group(raw, node_id, depth=depth)
        return self.rule(raw, node_id)

    def group(self, raw: dict[str, Any], node_id: str, *, depth: int) -> Optional[FilterGroup]:
        if depth > self.max_depth:
            return None
        combinator = raw.get("combinator")
        rules = raw.get("rules")
        if combinator not in COMBINATORS or not isinstance(rules, list):
            return None
        self.seen.add(node_id)
        return FilterGroup(id=node_id, combinator=combinator, rules=self.children(rules, depth=depth))

    def rule(self, raw: dict[str, Any], node_id: str) -> Optional[FilterRule]:
        field_id = raw.get("fieldId")
        if not isinstance(field_id, str):
            return None
        definition = self.field_map.get_field_definition(field_id)
        if definition is None:
            return None
        if self.root_table is not None and definition.root_table != self.root_table:
            return None
        operator = Operator.parse(raw.get("operator"))
        if operator is None or not definition.allows(operator):
            return None

        value = raw.get("value")
        if operator.is_nullary:
            value = None
        elif operator.is_list:
            if value is not None and (
                not isinstance(value, list) or not all(is_scalar(item) for item in value)
            ):
                return None
        elif value is not None and not is_scalar(value):
            return None

        self.seen.add(node_id)
        return FilterRule(id=node_id, field_id=field_id, operator=operator, value=value)


def is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def prune_ast(
    ast: FilterAST,
    field_map: DomainFieldMap,
    *,
    root_table: Optional[str] = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> FilterAST:
    """Apply the decode-time pruning rules to an in-memory AST."""
    pruned = decode_ast(encode_ast(ast), field_map, root_table=root_table, max_depth=max_depth)
    return pruned if pruned is not None else FilterGroup(id=ast.id, combinator="and", rules=())
