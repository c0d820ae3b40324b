from __future__ import annotations

from decimal import Decimal

import pytest

from app.filters.codec import decode_ast, param_name
from app.filters.domain_map import default_field_map
from app.filters.state import FilterState, count_rules, node_depth
from app.filters.types import (
    FilterDepthExceededError,
    FilterError,
    FilterGroup,
    FilterNodeNotFoundError,
    FilterRule,
    Operator,
    UnknownFieldError,
)


@pytest.fixture
def field_map():
    return default_field_map()


@pytest.fixture
def params():
    return {"page": "2"}


@pytest.fixture
def state(field_map, params):
    return FilterState("students", field_map, params)


def test_starts_empty_without_param(state, params):
    assert state.ast.rules == ()
    assert state.ast.combinator == "and"
    assert not state.has_active_filters
    assert state.encoded is None
    assert param_name("students") not in params


def test_add_rule_uses_first_operator_and_writes_param(state, params, field_map):
    rule = state.add_rule(state.ast.id, "student_first_name", value="Ada")

    assert rule.operator is Operator.EQ
    assert state.active_filter_count == 1
    assert params["page"] == "2"
    restored = decode_ast(params["masterFilters_students"], field_map, root_table="students")
    assert restored == state.ast


def test_add_rule_with_explicit_operator(state):
    rule = state.add_rule(state.ast.id, "student_status", Operator.IN, ["ACTIVE", "INACTIVE"])

    assert rule.operator is Operator.IN
    assert rule.value == ("ACTIVE", "INACTIVE")


def test_add_rule_rejects_operator_not_allowed_for_field(state):
    with pytest.raises(FilterError, match="not allowed"):
        state.add_rule(state.ast.id, "student_first_name", "gt", "A")


def test_add_rule_rejects_field_from_another_table(state):
    with pytest.raises(UnknownFieldError):
        state.add_rule(state.ast.id, "invoice_number", value="INV-1")


def test_add_rule_to_missing_group(state):
    with pytest.raises(FilterNodeNotFoundError):
        state.add_rule("missing", "student_first_name")


def test_nullary_operator_clears_value(state):
    rule = state.add_rule(state.ast.id, "student_mobile_phone", "isNull", "ignored")

    assert rule.value is None


def test_update_rule_changing_field_resets_operator_and_value(state):
    rule = state.add_rule(state.ast.id, "student_status", Operator.NEQ, "ACTIVE")

    updated = state.update_rule(rule.id, field_id="student_created_at")

    assert updated.id == rule.id
    assert updated.field_id == "student_created_at"
    assert updated.operator is Operator.EQ
    assert updated.value is None


def test_update_rule_operator_then_value(state):
    rule = state.add_rule(state.ast.id, "student_status", value="ACTIVE")

    state.update_rule(rule.id, operator="in")
    updated = state.update_rule(rule.id, value=["ACTIVE", "WITHDRAWN"])

    assert updated.operator is Operator.IN
    assert updated.value == ("ACTIVE", "WITHDRAWN")


def test_update_missing_rule_raises(state):
    with pytest.raises(FilterNodeNotFoundError):
        state.update_rule("missing", value="x")


def test_groups_nest_up_to_max_depth(field_map):
    state = FilterState("students", field_map, {}, max_depth=3)

    first = state.add_group(state.ast.id, "or")
    second = state.add_group(first.id)
    third = state.add_group(second.id)

    assert node_depth(state.ast, third.id) == 3
    with pytest.raises(FilterDepthExceededError):
        state.add_group(third.id)


def test_update_group_combinator(state):
    group = state.add_group(state.ast.id)
    state.add_rule(group.id, "student_first_name", value="Ada")

    state.update_group_combinator(group.id, "or")

    nested = state.ast.rules[0]
    assert isinstance(nested, FilterGroup)
    assert nested.combinator == "or"
    with pytest.raises(FilterError):
        state.update_group_combinator(group.id, "xor")


def test_remove_node_drops_subtree(state):
    group = state.add_group(state.ast.id)
    state.add_rule(group.id, "student_first_name", value="Ada")
    state.add_rule(group.id, "student_last_name", value="Lovelace")
    kept = state.add_rule(state.ast.id, "student_email", value="ada@example.com")

    state.remove_node(group.id)

    assert state.ast.rules == (kept,)
    assert count_rules(state.ast) == 1


def test_removing_last_rule_removes_param(state, params):
    rule = state.add_rule(state.ast.id, "student_first_name", value="Ada")

    state.remove_node(rule.id)

    assert "masterFilters_students" not in params
    assert params == {"page": "2"}


def test_removing_root_resets(state, params):
    state.add_rule(state.ast.id, "student_first_name", value="Ada")
    root_id = state.ast.id

    state.remove_node(root_id)

    assert state.ast.rules == ()
    assert state.ast.id != root_id
    assert "masterFilters_students" not in params


def test_restores_from_existing_param(field_map):
    params: dict[str, str] = {}
    original = FilterState("students", field_map, params)
    original.add_rule(original.ast.id, "program_name", "contains", "Nursing")

    restored = FilterState("students", field_map, dict(params))

    assert restored.ast == original.ast
    assert restored.active_filter_count == 1


def test_every_mutation_bumps_version_and_notifies(field_map):
    seen = []
    state = FilterState("students", field_map, {}, on_change=seen.append)

    rule = state.add_rule(state.ast.id, "student_first_name", value="Ada")
    state.update_rule(rule.id, value="Grace")
    state.reset_filter()

    assert state.version == 3
    assert len(seen) == 3
    assert seen[-1].rules == ()


def test_previous_trees_are_never_mutated(state):
    before = state.ast
    state.add_rule(before.id, "student_first_name", value="Ada")

    assert before.rules == ()
    assert isinstance(state.ast.rules[0], FilterRule)


def test_replace_prunes_foreign_rules(state):
    foreign = FilterGroup(
        id="root",
        combinator="or",
        rules=(
            FilterRule(id="a", field_id="student_first_name", operator=Operator.EQ, value="Ada"),
            FilterRule(id="b", field_id="invoice_number", operator=Operator.EQ, value="INV-1"),
        ),
    )

    pruned = state.replace(foreign)

    assert [rule.id for rule in pruned.rules] == ["a"]
    assert state.ast.combinator == "or"


def test_active_count_ignores_groups(state):
    outer = state.add_group(state.ast.id)
    inner = state.add_group(outer.id, "or")
    state.add_rule(inner.id, "student_first_name", value="Ada")
    state.add_rule(state.ast.id, "student_last_name", value="Lovelace")
    state.add_group(state.ast.id)

    assert state.active_filter_count == 2
    assert state.has_active_filters
    assert count_rules(state.ast) == 2


@pytest.mark.parametrize("value", [Decimal("12.50"), {"x": 1}, ("a", {"x": 1})])
def test_unsupported_values_leave_state_untouched(state, params, value):
    with pytest.raises(FilterError):
        state.add_rule(state.ast.id, "student_first_name", Operator.EQ, value)

    assert state.ast.rules == ()
    assert state.version == 0
    assert param_name("students") not in params


def test_rejected_update_keeps_previous_value(state, params):
    rule = state.add_rule(state.ast.id, "student_first_name", Operator.EQ, "Ada")
    encoded = params[param_name("students")]

    with pytest.raises(FilterError):
        state.update_rule(rule.id, value={"x": 1})

    assert state.ast.rules[0].value == "Ada"
    assert params[param_name("students")] == encoded
    assert state.version == 1
