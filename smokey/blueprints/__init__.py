"""
Smokey Planning Engine
Blueprint helpers shared by the API modules.
"""

from flask import request

from smokey.core.exceptions import ValidationError
from smokey.utils.helpers import parse_int

API_PREFIX = "/api/v1/smokey"


def json_body() -> dict:
    """Request JSON object, or ``{}`` when the body is empty."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def required_int(source: dict, key: str) -> int:
    """``source[key]`` as int; ValidationError naming the camelCase field otherwise."""
    raw = source.get(key)
    value = parse_int(raw)
    if value is None:
        if raw is None or raw == "":
            raise ValidationError(f"{key} is required", details={key: "required"})
        raise ValidationError(f"{key} must be an integer", details={key: raw})
    return value


def optional_int(source: dict, key: str) -> int | None:
    raw = source.get(key)
    if raw is None or raw == "":
        return None
    value = parse_int(raw)
    if value is None:
        raise ValidationError(f"{key} must be an integer", details={key: raw})
    return value


def as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")
