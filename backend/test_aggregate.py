"""
Tests for grouping, measure aggregation, sorting and pagination.
"""

import locale

import pytest

from core.models import SortRule, ValueSpec, View, YtdCalculation
from engine.aggregate import aggregate, build_table, group_rows, metric_columns
from engine.ordering import paginate_rows, sort_rows


@pytest.fixture
def sales_view():
    return View(
        id="by-region",
        row_fields=["region"],
        values=[ValueSpec(field="sales", label="Sales", aggregation="sum")],
    )


class TestAggregate:
    @pytest.mark.parametrize("method,expected", [
        ("sum", 12),
        ("avg", 3),
        ("min", 1),
        ("max", 5),
        ("count", 4),
        ("distinct_count", 3),
        ("median", 12),
    ])
    def test_methods(self, method, expected):
        assert aggregate([1, 5, 3, 3], method) == expected

    @pytest.mark.parametrize("method,expected", [
        ("sum", 0), ("avg", 0), ("min", 0), ("max", 0), ("count", 0), ("distinct_count", 0),
    ])
    def test_empty_input(self, method, expected):
        assert aggregate([], method) == expected


class TestGrouping:
    def test_region_scenario(self, sales_view):
        rows = [{"region": "East", "sales": 100}, {"region": "West", "sales": 300}]
        table, _ = build_table(rows, sales_view, [], page=1, page_size=25)

        assert table.rows == [{"region": "East", "Sales": 100}, {"region": "West", "Sales": 300}]
        assert table.totals["Sales"] == 400
        assert table.columns == ["region", "Sales"]

    def test_groups_are_unique_and_in_first_appearance_order(self):
        view = View(
            id="v",
            row_fields=["region"],
            column_fields=["year"],
            values=[ValueSpec(field="sales", label="Sales")],
        )
        rows = [
            {"region": "West", "year": 2024, "sales": 1},
            {"region": "East", "year": 2024, "sales": 2},
            {"region": "West", "year": 2024, "sales": "3"},
            {"region": "West", "year": 2025, "sales": 4},
        ]
        grouped = group_rows(rows, view)

        keys = [(r["region"], r["year"]) for r in grouped]
        assert keys == [("West", 2024), ("East", 2024), ("West", 2025)]
        assert len(set(keys)) == len(keys)
        assert grouped[0]["Sales"] == 4

    def test_missing_dimension_groups_together(self, sales_view):
        rows = [{"sales": 1}, {"region": None, "sales": 2}]
        grouped = group_rows(rows, sales_view)
        assert grouped == [{"region": None, "Sales": 3}]

    def test_label_is_the_output_name(self):
        view = View(id="v", row_fields=["region"], values=[
            ValueSpec(field="sales", label="Total", aggregation="sum"),
            ValueSpec(field="sales", label="Orders", aggregation="count"),
        ])
        grouped = group_rows([{"region": "East", "sales": 5}, {"region": "East", "sales": 7}], view)
        assert grouped == [{"region": "East", "Total": 12, "Orders": 2}]

    def test_no_rows(self, sales_view):
        table, ordered = build_table([], sales_view, [], page=1, page_size=25)
        assert ordered == []
        assert table.rows == []
        assert table.total_rows == 0
        assert table.columns == ["region", "Sales"]
        assert table.totals == {"Sales": 0}


class TestTable:
    ROWS = [{"region": f"R{i:02d}", "sales": i} for i in range(1, 8)]

    def test_totals_do_not_depend_on_page(self, sales_view):
        totals = {
            build_table(self.ROWS, sales_view, [], page=page, page_size=size)[0].totals["Sales"]
            for page, size in [(1, 25), (1, 2), (3, 2), (9, 3)]
        }
        assert totals == {28}

    def test_page_slice_and_total_rows(self, sales_view):
        table, ordered = build_table(self.ROWS, sales_view, [], page=2, page_size=3)
        assert [r["region"] for r in table.rows] == ["R04", "R05", "R06"]
        assert table.total_rows == 7
        assert len(ordered) == 7

    def test_calculation_outputs_are_totalled(self, sales_view):
        calc = YtdCalculation(output_field="YTD", base_field="Sales")
        table, _ = build_table(self.ROWS[:3], sales_view, [calc], page=1, page_size=25)
        assert metric_columns(sales_view, [calc]) == ["Sales", "YTD"]
        assert table.totals["YTD"] == 1 + 3 + 6

    def test_whole_numbers_stay_integers(self, sales_view):
        rows = [{"region": "East", "sales": "100"}, {"region": "West", "sales": 300.0}]
        calc = YtdCalculation(output_field="YTD", base_field="Sales")
        table, _ = build_table(rows, sales_view, [calc], page=1, page_size=25)
        assert [r["YTD"] for r in table.rows] == [100, 400]
        assert all(isinstance(r[key], int) for r in table.rows for key in ("Sales", "YTD"))
        assert table.totals == {"Sales": 400, "YTD": 500}
        assert all(isinstance(v, int) for v in table.totals.values())
        assert '"totals":{"Sales":400,"YTD":500}' in table.model_dump_json()

    def test_fractional_results_stay_floats(self):
        view = View(id="v", row_fields=["region"],
                    values=[ValueSpec(field="sales", label="Avg", aggregation="avg")])
        table, _ = build_table([{"region": "A", "sales": 1}, {"region": "A", "sales": 2}], view, [], 1, 25)
        assert table.rows == [{"region": "A", "Avg": 1.5}]
        assert table.totals == {"Avg": 1.5}


class TestOrdering:
    ROWS = [
        {"region": "west", "Sales": 10},
        {"region": "East", "Sales": 30},
        {"region": "North", "Sales": 10},
    ]

    def test_text_sort_is_case_insensitive(self):
        ordered = sort_rows(self.ROWS, [SortRule(field="region")])
        assert [r["region"] for r in ordered] == ["East", "North", "west"]

    def test_multi_key_with_stable_ties(self):
        ordered = sort_rows(self.ROWS, [SortRule(field="Sales", direction="desc")])
        assert [r["region"] for r in ordered] == ["East", "west", "North"]

        ordered = sort_rows(self.ROWS, [
            SortRule(field="Sales", direction="asc"),
            SortRule(field="region", direction="desc"),
        ])
        assert [r["region"] for r in ordered] == ["west", "North", "East"]

    def test_text_sort_follows_collation(self, monkeypatch):
        monkeypatch.setattr(locale, "strcoll", lambda a, b: (a < b) - (a > b))
        ordered = sort_rows(self.ROWS, [SortRule(field="region")])
        assert [r["region"] for r in ordered] == ["west", "North", "East"]

    def test_numbers_compare_numerically(self):
        rows = [{"n": 10}, {"n": 9}, {"n": 100}]
        assert [r["n"] for r in sort_rows(rows, [SortRule(field="n")])] == [9, 10, 100]

    def test_no_rules_keeps_order(self):
        assert sort_rows(self.ROWS, []) == self.ROWS

    @pytest.mark.parametrize("page,size,expected", [
        (1, 2, [1, 2]),
        (3, 2, [5]),
        (4, 2, []),
        (0, 2, [1, 2]),
    ])
    def test_paginate(self, page, size, expected):
        assert paginate_rows([1, 2, 3, 4, 5], page, size) == expected
