"""
Structural validation of a compiled query before it is executed.

Pure function over the wire shape: it never calls anything external, so a
failure here costs one compiler retry and no datasource round trip.
Returns "" when the query is acceptable, otherwise a message naming the
offending filter and attribute.
"""

import re
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Union

from vizql_copilot.shared.contracts.query_spec import (
    FILTER_TYPES,
    QUANTITATIVE_FILTER_TYPES,
    QuerySpec,
)


PERIOD_TYPES = ("MINUTES", "HOURS", "DAYS", "WEEKS", "MONTHS", "QUARTERS", "YEARS")
DATE_RANGE_TYPES = ("CURRENT", "LAST", "LASTN", "NEXT", "NEXTN", "TODATE")

_RFC3339 = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})"
    r"(?:[Tt ]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:[Zz]|[+-]\d{2}:\d{2})?)?$"
)


def is_rfc3339(value: Any) -> bool:
    """True for RFC3339 dates (YYYY-MM-DD) and date-times."""
    if not isinstance(value, str):
        return False
    match = _RFC3339.match(value.strip())
    if not match:
        return False
    try:
        date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return False
    return True


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _caption(ref: Any) -> Optional[str]:
    if isinstance(ref, dict) and isinstance(ref.get("fieldCaption"), str) and ref["fieldCaption"].strip():
        return ref["fieldCaption"]
    return None


def _check_top(flt: Dict[str, Any], where: str) -> List[str]:
    problems = []
    if not _is_positive_int(flt.get("howMany")):
        problems.append(f"{where} TOP requires howMany as a positive integer (got {flt.get('howMany')!r})")
    if _caption(flt.get("fieldToMeasure")) is None:
        problems.append(f"{where} TOP requires fieldToMeasure with a fieldCaption")
    return problems


def _check_set(flt: Dict[str, Any], where: str) -> List[str]:
    values = flt.get("values")
    if not isinstance(values, list) or not values:
        return [f"{where} SET requires a non-empty values list"]
    return []


def _check_match(flt: Dict[str, Any], where: str) -> List[str]:
    if any(isinstance(flt.get(k), str) and flt[k] for k in ("startsWith", "endsWith", "contains")):
        return []
    return [f"{where} MATCH requires one of startsWith, endsWith or contains"]


def _check_quantitative(flt: Dict[str, Any], where: str, low_key: str, high_key: str, is_valid) -> List[str]:
    kind = flt.get("quantitativeFilterType")
    ftype = flt.get("filterType")
    if kind not in QUANTITATIVE_FILTER_TYPES:
        return [
            f"{where} {ftype} requires quantitativeFilterType in "
            f"{', '.join(QUANTITATIVE_FILTER_TYPES)} (got {kind!r})"
        ]
    low, high = flt.get(low_key), flt.get(high_key)
    needed = {"RANGE": (low_key, high_key), "MIN": (low_key,), "MAX": (high_key,)}.get(kind, ())
    problems = []
    for key in needed:
        if not is_valid(flt.get(key)):
            problems.append(f"{where} {ftype} {kind} requires a valid {key} (got {flt.get(key)!r})")
    for key, value in ((low_key, low), (high_key, high)):
        if key not in needed and value is not None and not is_valid(value):
            problems.append(f"{where} {ftype} has an invalid {key} (got {value!r})")
    if not problems and kind == "RANGE":
        lo, hi = (low[:10], high[:10]) if isinstance(low, str) else (low, high)
        if lo > hi:
            problems.append(f"{where} {ftype} RANGE requires {low_key} <= {high_key}")
    return problems


def _check_relative_date(flt: Dict[str, Any], where: str) -> List[str]:
    problems = []
    if flt.get("periodType") not in PERIOD_TYPES:
        problems.append(f"{where} DATE requires periodType in {', '.join(PERIOD_TYPES)}")
    range_type = flt.get("dateRangeType")
    if range_type not in DATE_RANGE_TYPES:
        problems.append(f"{where} DATE requires dateRangeType in {', '.join(DATE_RANGE_TYPES)}")
    elif range_type in ("LASTN", "NEXTN") and not _is_positive_int(flt.get("rangeN")):
        problems.append(f"{where} DATE {range_type} requires rangeN as a positive integer")
    anchor = flt.get("anchorDate")
    if anchor is not None and not is_rfc3339(anchor):
        problems.append(f"{where} DATE anchorDate must be an RFC3339 date (got {anchor!r})")
    return problems


def _check_filter(flt: Any, index: int) -> List[str]:
    where = f"filters[{index}]"
    if not isinstance(flt, dict):
        return [f"{where} must be an object"]
    ftype = flt.get("filterType")
    if ftype not in FILTER_TYPES:
        return [f"{where} has unsupported filterType {ftype!r}; use one of {', '.join(FILTER_TYPES)}"]

    problems = []
    if _caption(flt.get("field")) is None:
        problems.append(f"{where} {ftype} requires field with a fieldCaption")
    if ftype == "TOP":
        problems += _check_top(flt, where)
    elif ftype == "SET":
        problems += _check_set(flt, where)
    elif ftype == "MATCH":
        problems += _check_match(flt, where)
    elif ftype == "QUANTITATIVE_NUMERICAL":
        problems += _check_quantitative(flt, where, "min", "max", _is_number)
    elif ftype == "QUANTITATIVE_DATE":
        problems += _check_quantitative(flt, where, "minDate", "maxDate", is_rfc3339)
    elif ftype == "DATE":
        problems += _check_relative_date(flt, where)
    return problems


def _check_allow_list(query: Dict[str, Any], allowed: set) -> List[str]:
    problems = []
    for i, f in enumerate(query.get("fields") or []):
        caption = _caption(f)
        if caption is not None and caption not in allowed:
            problems.append(f"fields[{i}] '{caption}' is not in the allowed fields")
    for i, flt in enumerate(query.get("filters") or []):
        if not isinstance(flt, dict):
            continue
        for key in ("field", "fieldToMeasure"):
            caption = _caption(flt.get(key))
            if caption is not None and caption not in allowed:
                problems.append(f"filters[{i}].{key} '{caption}' is not in the allowed fields")
    return problems


def preflight_validate_query(
    query: Union[QuerySpec, Dict[str, Any], None],
    allowed_captions: Optional[Iterable[str]] = None,
) -> str:
    """
    Validate a query's structure.

    Args:
        query: QuerySpec or its wire dict ({"fields": [...], "filters": [...]})
        allowed_captions: When given, every referenced caption must be in it

    Returns:
        "" if the query passes, otherwise the problems joined by "; "
    """
    data = query.to_wire() if isinstance(query, QuerySpec) else query
    if not isinstance(data, dict):
        return "query must be an object with fields and filters"

    problems: List[str] = []
    fields = data.get("fields")
    if not isinstance(fields, list) or not fields:
        problems.append("query.fields must include at least one field")
    else:
        for i, f in enumerate(fields):
            if _caption(f) is None:
                problems.append(f"fields[{i}] requires a fieldCaption")

    filters = data.get("filters") or []
    if not isinstance(filters, list):
        problems.append("query.filters must be a list")
        filters = []
    for i, flt in enumerate(filters):
        problems += _check_filter(flt, i)

    if allowed_captions is not None:
        problems += _check_allow_list(data, set(allowed_captions))

    return "; ".join(problems)
