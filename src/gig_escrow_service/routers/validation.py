"""Shared request validation helpers for routers."""

from __future__ import annotations

import json
from typing import Any

from gig_escrow_service.core.exceptions import ServiceError


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def require_string(data: dict[str, Any], field_name: str) -> str:
    """Extract a required, non-empty string field."""
    if field_name not in data or data[field_name] is None:
        raise ServiceError(
            "MISSING_FIELD",
            f"Missing required field: {field_name}",
            400,
            {"field": field_name},
        )

    value = data[field_name]
    if not isinstance(value, str):
        raise ServiceError(
            "INVALID_FIELD",
            f"Field '{field_name}' must be a string",
            400,
            {"field": field_name},
        )
    if not value.strip():
        raise ServiceError(
            "INVALID_FIELD",
            f"Field '{field_name}' must not be empty",
            400,
            {"field": field_name},
        )
    return value


def optional_string(data: dict[str, Any], field_name: str) -> str | None:
    """Extract an optional string field; absent and null both mean None."""
    if data.get(field_name) is None:
        return None
    return require_string(data, field_name)


def optional_object(data: dict[str, Any], field_name: str) -> dict[str, Any]:
    """Extract an optional JSON object field, defaulting to empty."""
    value = data.get(field_name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ServiceError(
            "INVALID_FIELD",
            f"Field '{field_name}' must be an object",
            400,
            {"field": field_name},
        )
    return value


def escrow_to_response(escrow: dict[str, Any]) -> dict[str, Any]:
    """JSON-ready escrow row."""
    return {**escrow, "amount": float(escrow["amount"])}
