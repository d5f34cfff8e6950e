"""Input validation for dashboard forms and JSON payloads."""

from __future__ import annotations

from datetime import date
from typing import Any, Mapping

from .errors import ValidationError
from .metrics import SHIFT_MINUTES
from .permissions import PROFILE_ROLES, parse_role

MIN_PASSWORD_LENGTH = 6

RECORD_COUNT_FIELDS = ("planned_production", "actual_production", "defective_units")


def _text(data: Mapping[str, Any], key: str) -> str:
    return str(data.get(key) or "").strip()


def _non_negative_int(data: Mapping[str, Any], key: str, *, maximum: int | None = None) -> int:
    raw = data.get(key)
    if raw in (None, ""):
        return 0
    try:
        number = float(str(raw).strip())
    except ValueError:
        raise ValidationError(f"'{key}' must be a whole number.") from None
    if not number.is_integer():
        raise ValidationError(f"'{key}' must be a whole number.")
    value = int(number)
    if value < 0:
        raise ValidationError(f"'{key}' cannot be negative.")
    if maximum is not None and value > maximum:
        raise ValidationError(f"'{key}' cannot exceed {maximum}.")
    return value


def parse_date(value: Any, *, field_name: str = "date") -> date | None:
    """Parse an ISO ``YYYY-MM-DD`` value; blank input yields ``None``."""

    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        raise ValidationError(f"'{field_name}' must be a date in YYYY-MM-DD format.") from None


def validate_production_record(data: Mapping[str, Any]) -> dict[str, Any]:
    """Return a clean production record payload or raise ``ValidationError``."""

    machine_id = _text(data, "machine_id")
    shift_id = _text(data, "shift_id")
    record_date = parse_date(data.get("date"))
    if not machine_id or not shift_id or record_date is None:
        raise ValidationError("Machine, shift and date are required.")

    record: dict[str, Any] = {
        "machine_id": machine_id,
        "shift_id": shift_id,
        "date": record_date.isoformat(),
    }
    for key in RECORD_COUNT_FIELDS:
        record[key] = _non_negative_int(data, key)
    record["downtime_minutes"] = _non_negative_int(data, "downtime_minutes", maximum=SHIFT_MINUTES)
    record["downtime_reason"] = _text(data, "downtime_reason") or None
    return record


def validate_machine(data: Mapping[str, Any]) -> dict[str, str]:
    name = _text(data, "name")
    code = _text(data, "code").upper()
    sector = _text(data, "sector")
    if not name or not code or not sector:
        raise ValidationError("Name, code and sector are required.")
    return {"name": name, "code": code, "sector": sector}


def validate_password(password: str, confirmation: str) -> str:
    if password != confirmation:
        raise ValidationError("Passwords do not match.")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
        )
    return password


def validate_signup(data: Mapping[str, Any]) -> dict[str, str]:
    email = _text(data, "email")
    password = str(data.get("password") or "")
    company_name = _text(data, "company_name")
    user_name = _text(data, "user_name")
    if not email or not password or not company_name or not user_name:
        raise ValidationError("Email, password, company name and user name are required.")
    validate_password(password, str(data.get("confirm_password") or ""))
    return {
        "email": email,
        "password": password,
        "company_name": company_name,
        "user_name": user_name,
    }


def validate_profile(data: Mapping[str, Any]) -> dict[str, str]:
    updates: dict[str, str] = {}
    for key in ("user_name", "company_name"):
        if key in data:
            updates[key] = _text(data, key)
    if data.get("role"):
        updates["role"] = parse_role(data.get("role"), PROFILE_ROLES).value
    if not updates:
        raise ValidationError("No profile changes supplied.")
    return updates
