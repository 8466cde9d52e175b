"""
Core Pydantic models for the reporting engine.

All domain types live here so every module shares the same vocabulary.
Attributes are snake_case in Python; the JSON wire form is camelCase.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    model_validator,
)
from pydantic.alias_generators import to_camel

from core.utils import Number, utc_now_iso

Scalar = Union[str, int, float, bool, None]
Record = Dict[str, Scalar]


class ReportModel(BaseModel):
    """Base for every wire model: camelCase aliases, snake_case attributes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class FilterOperator(str, Enum):
    eq = "eq"
    neq = "neq"
    contains = "contains"
    in_ = "in"
    gt = "gt"
    gte = "gte"
    lt = "lt"
    lte = "lte"
    between = "between"


class Aggregation(str, Enum):
    sum = "sum"
    avg = "avg"
    min = "min"
    max = "max"
    count = "count"
    distinct_count = "distinct_count"


class VisualType(str, Enum):
    table = "table"
    line = "line"
    bar = "bar"
    stacked_bar = "stacked_bar"
    area = "area"
    scatter = "scatter"
    donut = "donut"
    pie = "pie"
    kpi = "kpi"
    heatmap = "heatmap"


class InsightType(str, Enum):
    trend = "trend"
    driver = "driver"
    anomaly = "anomaly"
    forecast = "forecast"
    quality = "quality"


class PermissionLevel(str, Enum):
    view = "VIEW"
    build = "BUILD"


SortDirection = Literal["asc", "desc"]


# ---------------------------------------------------------------------------
# View definition
# ---------------------------------------------------------------------------

class Filter(ReportModel):
    field: str
    operator: str = FilterOperator.eq.value  # unknown operators pass through at evaluation
    value: Any = None                        # scalar, list, or "{{param}}" placeholder


class SortRule(ReportModel):
    field: str
    direction: SortDirection = "asc"


class ValueSpec(ReportModel):
    field: str
    label: str                               # output column name, referenced downstream
    aggregation: str = Aggregation.sum.value
    format: Optional[Literal["number", "currency", "percent"]] = None


class Visual(ReportModel):
    id: str
    title: str = ""
    type: VisualType = VisualType.table
    x_field: Optional[str] = None
    y_field: Optional[str] = None
    series_field: Optional[str] = None
    metric_field: Optional[str] = None
    sort_by: Optional[str] = None
    sort_direction: Optional[SortDirection] = None


class View(ReportModel):
    id: str
    name: str = ""
    row_fields: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("rowFields", "rows", "row_fields"),
        serialization_alias="rowFields",
    )
    column_fields: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("columnFields", "columns", "column_fields"),
        serialization_alias="columnFields",
    )
    values: List[ValueSpec] = Field(default_factory=list)
    filters: List[Filter] = Field(default_factory=list)
    sort: List[SortRule] = Field(default_factory=list)
    page_size: int = 25
    show_totals: bool = True
    pivot_mode: bool = True
    visuals: List[Visual] = Field(default_factory=list)

    @property
    def group_fields(self) -> List[str]:
        return [*self.row_fields, *self.column_fields]


# ---------------------------------------------------------------------------
# Calculations (tagged union on ``type``)
# ---------------------------------------------------------------------------

PERIOD_TYPES = ("MOM", "QOQ", "YOY", "FOF")


class CalculationBase(ReportModel):
    id: str = ""
    name: str = ""
    output_field: str

    @model_validator(mode="before")
    @classmethod
    def _lift_config(cls, data: Any) -> Any:
        """Accept the stored ``{..., config: {...}}`` shape by flattening config keys."""
        if not isinstance(data, dict):
            return data
        config = data.get("config")
        if not isinstance(config, dict):
            return data
        merged = {k: v for k, v in data.items() if k != "config"}
        for key, value in config.items():
            merged.setdefault(key, value)
        return merged


class ArithmeticCalculation(CalculationBase):
    type: Literal["ARITHMETIC"] = "ARITHMETIC"
    expression: str = ""


class VarianceCalculation(CalculationBase):
    type: Literal["VARIANCE", "VARIANCE_PCT"] = "VARIANCE"
    minuend_field: str = ""
    subtrahend_field: str = ""


class PeriodCalculation(CalculationBase):
    # MOM/QOQ/YOY/FOF all compare against the previous row
    type: Literal["MOM", "QOQ", "YOY", "FOF"] = "MOM"
    base_field: str = ""

    @property
    def offset(self) -> int:
        return 1


class RollingCalculation(CalculationBase):
    type: Literal["ROLLING"] = "ROLLING"
    base_field: str = ""
    window: Any = 3


class YtdCalculation(CalculationBase):
    type: Literal["YTD"] = "YTD"
    base_field: str = ""


class IfCaseCalculation(CalculationBase):
    type: Literal["IF_CASE"] = "IF_CASE"
    field: str = ""
    operator: str = FilterOperator.eq.value
    compare_value: Any = None
    true_value: Any = None
    false_value: Any = None


class RankCalculation(CalculationBase):
    type: Literal["RANK"] = "RANK"
    field: str = ""


class UnsupportedCalculation(CalculationBase):
    type: str
    output_field: str = ""


def _calculation_tag(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    kind = str(kind or "")
    if kind in PERIOD_TYPES:
        return "PERIOD"
    if kind in ("VARIANCE", "VARIANCE_PCT"):
        return "VARIANCE"
    if kind in ("ARITHMETIC", "ROLLING", "YTD", "IF_CASE", "RANK"):
        return kind
    return "UNSUPPORTED"


Calculation = Annotated[
    Union[
        Annotated[ArithmeticCalculation, Tag("ARITHMETIC")],
        Annotated[VarianceCalculation, Tag("VARIANCE")],
        Annotated[PeriodCalculation, Tag("PERIOD")],
        Annotated[RollingCalculation, Tag("ROLLING")],
        Annotated[YtdCalculation, Tag("YTD")],
        Annotated[IfCaseCalculation, Tag("IF_CASE")],
        Annotated[RankCalculation, Tag("RANK")],
        Annotated[UnsupportedCalculation, Tag("UNSUPPORTED")],
    ],
    Discriminator(_calculation_tag),
]


# ---------------------------------------------------------------------------
# Report definition
# ---------------------------------------------------------------------------

class ParameterDefinition(ReportModel):
    id: str
    label: str = ""
    type: Literal["date", "daterange", "fiscal_year", "string", "select"] = "string"
    required: bool = False
    default_value: Optional[str] = None
    options: Optional[List[str]] = None


class Formatting(ReportModel):
    currency: Optional[str] = None
    decimals: Optional[int] = Field(None, ge=0, le=6)


class ReportDefinition(ReportModel):
    name: str
    description: str = ""
    dataset_ids: List[str] = Field(default_factory=list)
    fiscal_calendar_id: str = "org_default"
    views: List[View] = Field(default_factory=list)
    calculations: List[Calculation] = Field(default_factory=list)
    parameters: List[ParameterDefinition] = Field(default_factory=list)
    formatting: Optional[Formatting] = None


class SavedReport(ReportModel):
    id: str
    title: str
    description: str = ""
    definition: ReportDefinition
    owner_id: str = ""
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


# ---------------------------------------------------------------------------
# Run input & result
# ---------------------------------------------------------------------------

class RunInput(ReportModel):
    view_id: Optional[str] = None
    parameters: Dict[str, str] = Field(default_factory=dict)
    filters: Optional[List[Filter]] = None
    page: Optional[int] = None
    page_size: Optional[int] = None


class TableResult(ReportModel):
    columns: List[str] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    totals: Dict[str, Number] = Field(default_factory=dict)
    page: int = 1
    page_size: int = 25
    total_rows: int = 0


class ChartResult(ReportModel):
    visual_id: str
    title: str
    type: VisualType
    data: List[Dict[str, Any]] = Field(default_factory=list)


class InsightItem(ReportModel):
    type: InsightType
    title: str
    detail: str


class ReportInsights(ReportModel):
    bullets: List[InsightItem] = Field(default_factory=list)
    executive_summary: str = ""


class RunResult(ReportModel):
    report_id: Optional[str] = None
    report_title: str = ""
    dataset_ids: List[str] = Field(default_factory=list)
    view: View
    applied_filters: List[Filter] = Field(default_factory=list)
    applied_parameters: Dict[str, str] = Field(default_factory=dict)
    generated_at: str
    table: TableResult
    charts: List[ChartResult] = Field(default_factory=list)
    insights: ReportInsights = Field(default_factory=ReportInsights)
    raw_rows: List[Dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Principals & dataset registry
# ---------------------------------------------------------------------------

class Principal(ReportModel):
    id: str
    email: Optional[str] = None
    role_type: str = "BASIC_USER"


class DatasetPermission(ReportModel):
    role_types: List[str] = Field(default_factory=list)
    level: PermissionLevel = PermissionLevel.view


class DatasetDefinition(ReportModel):
    dataset_id: str
    dataset_name: str = ""
    description: str = ""
    primary_keys: List[str] = Field(default_factory=list)
    permissions: List[DatasetPermission] = Field(default_factory=list)
    fiscal_date_field: Optional[str] = None
    updated_at: str = Field(default_factory=utc_now_iso)


class FiscalCalendar(ReportModel):
    id: str
    name: str = ""
    fiscal_year_start_month: int = Field(11, ge=1, le=12)
    description: str = ""


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------

class RunPreviewRequest(ReportModel):
    title: str
    definition: ReportDefinition
    run_input: RunInput = Field(default_factory=RunInput)


class SaveReportRequest(ReportModel):
    id: Optional[str] = None
    title: str
    description: str = ""
    definition: ReportDefinition
