"""
Unit tests for field paths and in-memory query evaluation
"""

import pytest

from pipeline.query import (
    apply_query,
    compare,
    get_nested_value,
    pop_nested_value,
    set_nested_value,
)
from schemas.job import FilterCondition, OrderBy


class TestNestedPaths:

    def test_get_nested_value(self):
        record = {"customer": {"address": {"city": "Berlin"}}}
        assert get_nested_value(record, "customer.address.city") == "Berlin"
        assert get_nested_value(record, "customer.phone") is None
        assert get_nested_value(record, "customer.address.city.zip", "n/a") == "n/a"

    def test_set_nested_value_creates_parents(self):
        record = {}
        set_nested_value(record, "a.b.c", 1)
        assert record == {"a": {"b": {"c": 1}}}

    def test_pop_nested_value(self):
        record = {"a": {"b": 1, "c": 2}}
        assert pop_nested_value(record, "a.b") == 1
        assert record == {"a": {"c": 2}}
        assert pop_nested_value(record, "x.y", "missing") == "missing"


class TestCompare:

    @pytest.mark.parametrize("operator,left,right,expected", [
        ("==", 1, 1, True),
        ("!=", 1, 2, True),
        ("<", 1, 2, True),
        ("<=", 2, 2, True),
        (">", 3, 2, True),
        (">=", 1, 2, False),
        ("in", "eu", ["eu", "us"], True),
        ("not-in", "apac", ["eu", "us"], True),
        ("array-contains", ["new", "sale"], "sale", True),
    ])
    def test_operators(self, operator, left, right, expected):
        assert compare(operator, left, right) is expected

    def test_missing_value_only_matches_equality(self):
        assert compare("==", None, None) is True
        assert compare("!=", None, 5) is True
        assert compare(">", None, 5) is False
        assert compare("not-in", None, [1]) is False

    def test_incompatible_types_do_not_match(self):
        assert compare("<", "abc", 5) is False

    def test_unknown_operator_raises(self):
        with pytest.raises(ValueError):
            compare("~=", 1, 1)


class TestApplyQuery:
    """Test filtering, ordering and limits over record lists"""

    @pytest.fixture
    def records(self):
        return [
            {"id": "a", "region": "eu", "amount": 30},
            {"id": "b", "region": "us", "amount": 10},
            {"id": "c", "region": "eu", "amount": 20},
            {"id": "d", "region": "eu"},
        ]

    def test_filters_are_conjunctive(self, records):
        result = apply_query(records, filters=[
            FilterCondition(field="region", operator="==", value="eu"),
            FilterCondition(field="amount", operator=">=", value=20),
        ])
        assert [r["id"] for r in result] == ["a", "c"]

    def test_order_by_sorts_missing_last(self, records):
        asc = apply_query(records, order_by=[OrderBy(field="amount")])
        desc = apply_query(records, order_by=[OrderBy(field="amount", direction="desc")])

        assert [r["id"] for r in asc] == ["b", "c", "a", "d"]
        assert [r["id"] for r in desc] == ["a", "c", "b", "d"]

    def test_multi_key_order(self, records):
        result = apply_query(records, order_by=[
            OrderBy(field="region", direction="desc"),
            OrderBy(field="amount"),
        ])
        assert [r["id"] for r in result] == ["b", "c", "a", "d"]

    def test_limit_applies_after_ordering(self, records):
        result = apply_query(records, order_by=[OrderBy(field="amount", direction="desc")], limit=1)
        assert [r["id"] for r in result] == ["a"]

    def test_mixed_types_fall_back_to_string_order(self):
        records = [{"v": 10}, {"v": "9"}]
        result = apply_query(records, order_by=[OrderBy(field="v")])
        assert [r["v"] for r in result] == [10, "9"]
