"""
Remote Analytics Source - Core Functions

Pure functions for building vendor search bodies and validating the
response envelope.
"""

from typing import Any, Dict

import jsonschema

from .contracts import SearchPage, SearchRequest


AUTH_FAILURE_CODES = frozenset({401, 403})

SEARCH_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["code"],
    "properties": {
        "code": {"type": ["integer", "string"]},
        "msg": {"type": ["string", "null"]},
        "data": {
            "type": ["object", "null"],
            "properties": {
                "dataList": {"type": ["array", "null"], "items": {"type": "object"}},
                "total": {"type": ["integer", "null"]},
            },
        },
    },
}

_validator = jsonschema.Draft7Validator(SEARCH_RESPONSE_SCHEMA)


def build_search_body(request: SearchRequest) -> Dict[str, Any]:
    """
    Build the JSON body of a vendor search call.

    MUST be deterministic.
    """
    return {
        "projectId": request.project_id,
        "selectedPointId": request.tracking_point_id,
        "dataType": request.data_type,
        "filterList": list(request.filter_list),
        "page": request.page,
        "pageSize": request.page_size,
        "order": request.order,
        "date": request.day.isoformat(),
        "calcInfo": dict(request.calc_info),
    }


def envelope_errors(payload: Any) -> list:
    """Schema violations of a response envelope, empty when well-formed."""
    return [error.message for error in _validator.iter_errors(payload)]


def normalize_code(raw_code: Any) -> int:
    try:
        return int(raw_code)
    except (TypeError, ValueError):
        return -1


def is_auth_failure(http_status: int, code: int) -> bool:
    return http_status in AUTH_FAILURE_CODES or code in AUTH_FAILURE_CODES


def page_from_payload(request: SearchRequest, payload: Dict[str, Any]) -> SearchPage:
    """
    Convert a validated ``code == 200`` envelope into a SearchPage.

    A missing ``data`` or ``dataList`` is an empty page, not an error.
    """
    data = payload.get("data") or {}
    records = data.get("dataList") or []
    total = data.get("total")
    return SearchPage(request=request, records=list(records), total=total)
