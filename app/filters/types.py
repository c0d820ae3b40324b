from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal, Optional, Union


Combinator = Literal["and", "or"]
COMBINATORS: tuple[str, ...] = ("and", "or")


class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IN = "in"
    NOT_IN = "notIn"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"

    @property
    def is_nullary(self) -> bool:
        return self in NULLARY_OPERATORS

    @property
    def is_list(self) -> bool:
        return self in LIST_OPERATORS

    @classmethod
    def parse(cls, value: Any) -> Optional["Operator"]:
        if isinstance(value, Operator):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


NULLARY_OPERATORS = frozenset({Operator.IS_NULL, Operator.IS_NOT_NULL})
LIST_OPERATORS = frozenset({Operator.IN, Operator.NOT_IN})


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    ENUM = "enum"


Scalar = Union[str, int, float, bool]
RuleValue = Union[Scalar, tuple[Scalar, ...], None]


def new_node_id() -> str:
    return str(uuid.uuid4())


def normalize_value(value: Any) -> RuleValue:
    """Coerce a rule value into its immutable wire form."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return tuple(normalize_value(item) for item in value)  # type: ignore[misc]
    return value


@dataclass(frozen=True)
class FieldDefinition:
    id: str
    root_table: str
    db_path: str
    label: str
    type: FieldType
    operators: tuple[Operator, ...]
    options: Optional[tuple[str, ...]] = None
    relation_path: tuple[str, ...] = ()
    nullable: bool = False

    @property
    def default_operator(self) -> Operator:
        return self.operators[0]

    def allows(self, operator: Operator) -> bool:
        return operator in self.operators

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rootTable": self.root_table,
            "dbPath": self.db_path,
            "label": self.label,
            "type": self.type.value,
            "operators": [operator.value for operator in self.operators],
            "options": list(self.options) if self.options is not None else None,
            "relationPath": list(self.relation_path),
            "nullable": self.nullable,
        }


@dataclass(frozen=True)
class FilterRule:
    id: str
    field_id: str
    operator: Operator
    value: RuleValue = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", normalize_value(self.value))

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {
            "id": self.id,
            "fieldId": self.field_id,
            "operator": self.operator.value,
            "value": value,
        }


@dataclass(frozen=True)
class FilterGroup:
    id: str
    combinator: Combinator = "and"
    rules: tuple["FilterNode", ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not isinstance(self.rules, tuple):
            object.__setattr__(self, "rules", tuple(self.rules))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "combinator": self.combinator,
            "rules": [node.to_dict() for node in self.rules],
        }


FilterNode = Union[FilterRule, FilterGroup]
FilterAST = FilterGroup


def empty_ast(group_id: Optional[str] = None) -> FilterAST:
    return FilterGroup(id=group_id or new_node_id(), combinator="and", rules=())


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str
    node: FilterNode

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "message": self.message, "nodeId": self.node.id}


class FilterError(ValueError):
    pass


class FilterNodeNotFoundError(FilterError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Filter node '{node_id}' not found")


class FilterDepthExceededError(FilterError):
    def __init__(self, max_depth: int):
        self.max_depth = max_depth
        super().__init__(f"Maximum nesting depth of {max_depth} exceeded")


class UnknownFieldError(FilterError):
    def __init__(self, field_id: str):
        self.field_id = field_id
        super().__init__(f"Field '{field_id}' not found in domain map")
