"""
Tests for the run orchestrator and the in-memory dataset registry it loads from.
"""

import asyncio
from datetime import datetime, timezone

import pandas as pd
import pytest

from core import storage
from core.errors import DatasetAccessError, ReportConfigError, ReportNotFoundError
from core.models import (
    DatasetDefinition,
    DatasetPermission,
    FiscalCalendar,
    Filter,
    InsightType,
    PermissionLevel,
    Principal,
    ReportDefinition,
    RunInput,
    SavedReport,
    SortRule,
    ValueSpec,
    View,
    Visual,
    VisualType,
)
from server.orchestrator import resolve_fiscal_start_month, resolve_view, run_report, run_view

FIXED_NOW = datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc)

ROWS = [
    {"project_id": "P1", "region": "East", "sales": 100, "fiscal_year": "2025"},
    {"project_id": "P2", "region": "West", "sales": 300, "fiscal_year": "2025"},
    {"project_id": "P3", "region": "East", "sales": 50, "fiscal_year": "2024"},
    {"project_id": "P4", "region": "North", "sales": 25, "fiscal_year": "2025"},
]


def fixed_clock():
    return FIXED_NOW


@pytest.fixture
def view():
    return View(
        id="by-region",
        name="By region",
        row_fields=["region"],
        values=[ValueSpec(field="sales", label="Sales", aggregation="sum")],
        sort=[SortRule(field="Sales", direction="desc")],
        filters=[Filter(field="fiscal_year", operator="eq", value="{{fy}}")],
        visuals=[Visual(id="bar", title="Sales by region", type=VisualType.bar, x_field="region", y_field="Sales")],
        page_size=2,
    )


@pytest.fixture
def report(view):
    return SavedReport(
        id="r1",
        title="Regional sales",
        definition=ReportDefinition(name="Regional sales", dataset_ids=["projects", "budget"], views=[view]),
        owner_id="u1",
    )


@pytest.fixture
def principal():
    return Principal(id="u1", role_type="BASIC_USER")


class TestRunView:
    def test_filters_group_sort_and_page(self, view):
        result = run_view(ROWS, view, [], RunInput(parameters={"fy": "2025"}), clock=fixed_clock)

        assert result.table.rows == [{"region": "West", "Sales": 300}, {"region": "East", "Sales": 100}]
        assert result.table.total_rows == 3
        assert result.table.totals == {"Sales": 425}
        assert result.table.page_size == 2
        assert result.applied_filters[0].value == "2025"
        assert result.applied_parameters == {"fy": "2025"}
        assert result.generated_at == "2025-03-01T12:30:00.000Z"
        assert len(result.raw_rows) == 3

    def test_charts_use_full_table_not_page(self, view):
        result = run_view(ROWS, view, [], RunInput(parameters={"fy": "2025"}), clock=fixed_clock)
        assert [p["region"] for p in result.charts[0].data] == ["West", "East", "North"]

    def test_totals_invariant_under_pagination(self, view):
        totals = []
        for page, size in [(1, 1), (2, 1), (1, 50), (7, 2)]:
            run_input = RunInput(parameters={"fy": "2025"}, page=page, page_size=size)
            totals.append(run_view(ROWS, view, [], run_input, clock=fixed_clock).table.totals)
        assert totals[0] == {"Sales": 425}
        assert all(t == totals[0] for t in totals)

    @pytest.mark.parametrize("page,page_size,expected", [
        (None, None, (1, 2)),
        (0, 0, (1, 2)),
        (-3, 5, (1, 5)),
        (2, None, (2, 2)),
    ])
    def test_paging_defaults(self, view, page, page_size, expected):
        result = run_view(ROWS, view, [], RunInput(page=page, page_size=page_size), clock=fixed_clock)
        assert (result.table.page, result.table.page_size) == expected

    def test_deterministic(self, view):
        run_input = RunInput(parameters={"fy": "2025"})
        first = run_view(ROWS, view, [], run_input, clock=fixed_clock)
        second = run_view(ROWS, view, [], run_input, clock=fixed_clock)
        assert first.model_dump_json() == second.model_dump_json()

    def test_zero_rows_after_filtering(self, view):
        result = run_view(ROWS, view, [], RunInput(parameters={"fy": "1999"}), clock=fixed_clock)
        assert result.table.rows == []
        assert [b.type for b in result.insights.bullets] == [InsightType.quality]
        assert result.insights.bullets[0].detail == (
            "No rows returned for this view. Adjust filters or parameters to retrieve data."
        )

    def test_rows_are_not_mutated(self, view):
        snapshot = [dict(r) for r in ROWS]
        run_view(ROWS, view, [], RunInput(parameters={"fy": "2025"}), clock=fixed_clock)
        assert ROWS == snapshot


class TestResolution:
    def test_view_lookup_falls_back_to_first(self, view):
        second = view.model_copy(update={"id": "other"})
        definition = ReportDefinition(name="x", views=[view, second])
        assert resolve_view(definition, "other").id == "other"
        assert resolve_view(definition, "missing").id == "by-region"
        assert resolve_view(definition, None).id == "by-region"

    def test_no_views(self):
        with pytest.raises(ReportConfigError):
            resolve_view(ReportDefinition(name="x"), None)

    def test_fiscal_start_month(self):
        calendars = {"jan": FiscalCalendar(id="jan", fiscal_year_start_month=1)}
        assert resolve_fiscal_start_month("jan", calendars) == 1
        assert resolve_fiscal_start_month("unknown", calendars) == 11


class TestRunReport:
    def test_loads_only_permitted_datasets(self, principal, report):
        calls = []

        async def loader(who, dataset_ids, fiscal_start_month):
            calls.append((who.id, dataset_ids, fiscal_start_month))
            return ROWS

        allowed = [DatasetDefinition(dataset_id="budget"), DatasetDefinition(dataset_id="budget")]
        result = asyncio.run(run_report(
            principal, report, allowed, RunInput(parameters={"fy": "2025"}),
            loader=loader, calendars=storage.FISCAL_CALENDARS, clock=fixed_clock,
        ))

        assert calls == [("u1", ["budget"], 11)]
        assert result.report_id == "r1"
        assert result.report_title == "Regional sales"
        assert result.dataset_ids == ["budget"]
        assert result.table.total_rows == 3

    def test_no_permitted_datasets(self, principal, report):
        async def loader(*_):
            raise AssertionError("loader must not be called")

        with pytest.raises(DatasetAccessError, match="No permitted datasets available for this report."):
            asyncio.run(run_report(
                principal, report, [DatasetDefinition(dataset_id="other")], None,
                loader=loader, calendars={},
            ))


class TestStorage:
    @pytest.fixture(autouse=True)
    def clean_registry(self):
        storage.DATASETS.clear()
        storage.DATASET_FRAMES.clear()
        yield
        storage.DATASETS.clear()
        storage.DATASET_FRAMES.clear()

    def test_permission_levels(self):
        dataset = DatasetDefinition(dataset_id="d", permissions=[
            DatasetPermission(role_types=["BASIC_USER"], level=PermissionLevel.view),
            DatasetPermission(role_types=["BASIC_USER", "ADMIN"], level=PermissionLevel.build),
        ])
        basic = Principal(id="u", role_type="basic_user")
        admin = Principal(id="a", role_type="ADMIN")
        other = Principal(id="o", role_type="FINANCE_GOVERNANCE_USER")

        assert storage.has_dataset_permission(dataset, basic, PermissionLevel.view)
        assert not storage.has_dataset_permission(dataset, basic, PermissionLevel.build)
        assert storage.has_dataset_permission(dataset, admin, PermissionLevel.view)
        assert not storage.has_dataset_permission(dataset, other, PermissionLevel.view)

    def test_registered_dataset_defaults_to_all_roles(self, principal):
        storage.register_dataset(DatasetDefinition(dataset_id="projects"))
        ids = [d.dataset_id for d in storage.list_datasets_for_principal(principal, PermissionLevel.build)]
        assert ids == ["projects"]

    def test_loader_merges_rows_by_project(self, principal):
        storage.register_dataset(
            DatasetDefinition(dataset_id="projects"),
            pd.DataFrame({"project_id": ["P1", "P2"], "name": ["Bridge", None], "budget": [10, 20]}),
        )
        storage.register_dataset(
            DatasetDefinition(dataset_id="spend"),
            pd.DataFrame({"project_id": ["P1", "P2"], "name": ["Ignored", "Road"], "budget": [5, 1]}),
        )

        rows = asyncio.run(storage.load_rows_for_principal(principal, ["projects", "spend"], 11))

        assert rows == [
            {"dataset_id": "projects", "project_id": "P1", "name": "Bridge", "budget": 15},
            {"dataset_id": "projects", "project_id": "P2", "name": "Road", "budget": 21},
        ]

    def test_loader_derives_fiscal_year(self, principal):
        storage.register_dataset(
            DatasetDefinition(dataset_id="projects", fiscal_date_field="start_date"),
            pd.DataFrame({"project_id": ["P1", "P2"], "start_date": ["2024-11-05", "2024-10-31"]}),
        )
        rows = asyncio.run(storage.load_rows_for_principal(principal, ["projects"], 11))
        assert [r["fiscal_year"] for r in rows] == [2025, 2024]

    def test_fiscal_year_january_calendar(self):
        years = storage.fiscal_year_series(pd.Series(["2024-12-31", "2024-01-01"]), 1)
        assert years.tolist() == [2024, 2024]

    def test_fiscal_year_mixed_date_formats(self):
        dates = pd.Series(["2024-11-05", "2024-11-05T10:00:00Z", "11/05/2024", "2023-03-01"])
        assert storage.fiscal_year_series(dates, 11).tolist() == [2025, 2025, 2025, 2023]

    def test_report_store_visibility(self, principal, report):
        saved = storage.save_report(principal, report.title, report.definition)
        try:
            assert storage.get_report_for_principal(principal, saved.id).title == "Regional sales"
            assert storage.list_reports_for_principal(principal, "regional")[0].id == saved.id
            assert storage.list_reports_for_principal(principal, "nothing") == []

            stranger = Principal(id="u2", role_type="BASIC_USER")
            with pytest.raises(ReportNotFoundError):
                storage.get_report_for_principal(stranger, saved.id)
            admin = Principal(id="a", role_type="ADMIN")
            assert storage.get_report_for_principal(admin, saved.id).id == saved.id
        finally:
            storage.REPORTS.pop(saved.id, None)
