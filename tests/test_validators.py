from datetime import date

import pytest

from oee_dashboard.errors import ValidationError
from oee_dashboard.validators import (
    parse_date,
    validate_machine,
    validate_password,
    validate_production_record,
    validate_signup,
)


def test_production_record_is_normalised():
    record = validate_production_record(
        {
            "machine_id": " m1 ",
            "shift_id": "s1",
            "date": "2024-07-01",
            "planned_production": "100",
            "actual_production": 90.0,
            "defective_units": "",
            "downtime_minutes": "480",
            "downtime_reason": "  ",
        }
    )
    assert record == {
        "machine_id": "m1",
        "shift_id": "s1",
        "date": "2024-07-01",
        "planned_production": 100,
        "actual_production": 90,
        "defective_units": 0,
        "downtime_minutes": 480,
        "downtime_reason": None,
    }


@pytest.mark.parametrize(
    "field, value",
    [
        ("planned_production", "ten"),
        ("actual_production", 12.5),
        ("defective_units", -3),
        ("downtime_minutes", 481),
    ],
)
def test_production_record_rejects_bad_counts(field, value):
    data = {"machine_id": "m1", "shift_id": "s1", "date": "2024-07-01", field: value}
    with pytest.raises(ValidationError):
        validate_production_record(data)


def test_parse_date():
    assert parse_date("2024-07-01T08:00:00") == date(2024, 7, 1)
    assert parse_date("") is None
    assert parse_date(date(2024, 1, 2)) == date(2024, 1, 2)
    with pytest.raises(ValidationError, match="start_date"):
        parse_date("yesterday", field_name="start_date")


def test_machine_code_is_upper_cased():
    assert validate_machine({"name": "Press", "code": "p-01", "sector": "Stamping"}) == {
        "name": "Press",
        "code": "P-01",
        "sector": "Stamping",
    }


def test_password_rules():
    assert validate_password("secret", "secret") == "secret"
    with pytest.raises(ValidationError, match="do not match"):
        validate_password("secret", "Secret")
    with pytest.raises(ValidationError, match="at least 6"):
        validate_password("short", "short")


def test_signup_requires_every_field():
    with pytest.raises(ValidationError):
        validate_signup({"email": "a@example.com", "password": "secret", "confirm_password": "secret"})
