"""
Executable query contract.

Mirrors the VizQL Data Service query shape: a non-empty list of fields,
a list of typed filters and output options. Attribute names are snake_case
in Python and camelCase on the wire (aliases); use `to_wire()` to produce
the JSON sent to the datasource.

The schema checks shapes and the filter discriminator. Type-specific
semantics (positive TOP counts, RFC3339 dates, range consistency) are
checked by execution.preflight so they can be reported as preflight
feedback rather than builder feedback.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


AGGREGATION_FUNCTIONS = ("SUM", "AVG", "MEDIAN", "COUNT", "COUNT_DISTINCT", "MIN", "MAX")

FILTER_TYPES = ("TOP", "SET", "MATCH", "QUANTITATIVE_DATE", "QUANTITATIVE_NUMERICAL", "DATE")

QUANTITATIVE_FILTER_TYPES = ("RANGE", "MIN", "MAX", "ONLY_NULL", "ONLY_NON_NULL")


def normalize_aggregation(value: Any) -> Optional[str]:
    """
    Upper-case an aggregation token and map aliases (COUNTD -> COUNT_DISTINCT).

    Returns None for empty values; raises ValueError for unsupported tokens.
    """
    if value is None:
        return None
    token = str(value).strip().upper()
    if not token:
        return None
    if token == "COUNTD":
        token = "COUNT_DISTINCT"
    if token not in AGGREGATION_FUNCTIONS:
        raise ValueError(
            f"Unsupported aggregation function '{value}'; use one of {', '.join(AGGREGATION_FUNCTIONS)}"
        )
    return token


class WireModel(BaseModel):
    """Base for wire models: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class FieldSpec(WireModel):
    """A field projected by the query, optionally aggregated."""

    field_caption: str = Field(alias="fieldCaption", min_length=1, description="Field caption as in the catalog")
    function: Optional[str] = Field(default=None, description="Aggregation function")
    field_alias: Optional[str] = Field(default=None, alias="fieldAlias")
    sort_direction: Optional[Literal["ASC", "DESC"]] = Field(default=None, alias="sortDirection")
    sort_priority: Optional[int] = Field(default=None, alias="sortPriority")

    @field_validator("function", mode="before")
    @classmethod
    def _normalize_function(cls, v):
        return normalize_aggregation(v)


class FilterField(WireModel):
    """Field reference inside a filter."""

    field_caption: str = Field(alias="fieldCaption", min_length=1)
    function: Optional[str] = None

    @field_validator("function", mode="before")
    @classmethod
    def _normalize_function(cls, v):
        return normalize_aggregation(v)


class _FilterBase(WireModel):
    field: Optional[FilterField] = None


class TopFilter(_FilterBase):
    filter_type: Literal["TOP"] = Field(alias="filterType")
    how_many: Optional[int] = Field(default=None, alias="howMany")
    direction: Literal["TOP", "BOTTOM"] = "TOP"
    field_to_measure: Optional[FilterField] = Field(default=None, alias="fieldToMeasure")


class SetFilter(_FilterBase):
    filter_type: Literal["SET"] = Field(alias="filterType")
    values: Optional[List[Any]] = None
    exclude: bool = False


class MatchFilter(_FilterBase):
    filter_type: Literal["MATCH"] = Field(alias="filterType")
    starts_with: Optional[str] = Field(default=None, alias="startsWith")
    ends_with: Optional[str] = Field(default=None, alias="endsWith")
    contains: Optional[str] = None
    exclude: bool = False


class QuantitativeNumericalFilter(_FilterBase):
    filter_type: Literal["QUANTITATIVE_NUMERICAL"] = Field(alias="filterType")
    quantitative_filter_type: Optional[str] = Field(default=None, alias="quantitativeFilterType")
    min: Optional[float] = None
    max: Optional[float] = None
    include_nulls: Optional[bool] = Field(default=None, alias="includeNulls")


class QuantitativeDateFilter(_FilterBase):
    filter_type: Literal["QUANTITATIVE_DATE"] = Field(alias="filterType")
    quantitative_filter_type: Optional[str] = Field(default=None, alias="quantitativeFilterType")
    min_date: Optional[str] = Field(default=None, alias="minDate")
    max_date: Optional[str] = Field(default=None, alias="maxDate")
    include_nulls: Optional[bool] = Field(default=None, alias="includeNulls")


class RelativeDateFilter(_FilterBase):
    filter_type: Literal["DATE"] = Field(alias="filterType")
    period_type: Optional[str] = Field(default=None, alias="periodType")
    date_range_type: Optional[str] = Field(default=None, alias="dateRangeType")
    range_n: Optional[int] = Field(default=None, alias="rangeN")
    anchor_date: Optional[str] = Field(default=None, alias="anchorDate")


FilterSpec = Annotated[
    Union[
        TopFilter,
        SetFilter,
        MatchFilter,
        QuantitativeNumericalFilter,
        QuantitativeDateFilter,
        RelativeDateFilter,
    ],
    Field(discriminator="filter_type"),
]


def _upper_filter_types(filters: Any) -> Any:
    if not isinstance(filters, list):
        return filters
    out = []
    for item in filters:
        if isinstance(item, dict) and isinstance(item.get("filterType"), str):
            item = {**item, "filterType": item["filterType"].strip().upper()}
        out.append(item)
    return out


class QuerySpec(WireModel):
    """Executable query: projected fields plus filters."""

    fields: List[FieldSpec] = Field(min_length=1, description="query.fields must include at least one field")
    filters: List[FilterSpec] = Field(default_factory=list)

    @field_validator("filters", mode="before")
    @classmethod
    def _normalize_filter_types(cls, v):
        if v is None:
            return []
        return _upper_filter_types(v)


class OptionsSpec(WireModel):
    return_format: Literal["OBJECTS", "ARRAYS"] = Field(default="OBJECTS", alias="returnFormat")
    debug: bool = False
    disaggregate: bool = False


class DatasourceRef(WireModel):
    datasource_luid: str = Field(alias="datasourceLuid", min_length=1)


class QueryPayload(WireModel):
    """
    Compiler output: the query plus the datasource it runs against.

    The datasource is injected by the caller, never taken from model output.
    """

    datasource: DatasourceRef
    query: QuerySpec
    options: OptionsSpec = Field(default_factory=OptionsSpec)

