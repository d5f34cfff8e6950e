import math

import pandas as pd
import pytest

from oee_analysis import add_oee_columns, breakdown_records, compute_oee_breakdown
from oee_dashboard.metrics import compute_oee


ROWS = [
    {
        "machine_id": "m1",
        "shift_id": "s1",
        "date": "2024-07-01",
        "planned_production": 100,
        "actual_production": 90,
        "downtime_minutes": 60,
        "defective_units": 5,
    },
    {
        "machine_id": "m1",
        "shift_id": "s2",
        "date": "2024-07-02",
        "planned_production": 100,
        "actual_production": 100,
        "downtime_minutes": 0,
        "defective_units": 0,
    },
    {
        "machine_id": "m2",
        "shift_id": "s1",
        "date": "2024-07-02",
        "planned_production": 0,
        "actual_production": "n/a",
        "downtime_minutes": 600,
        "defective_units": None,
    },
]

MACHINES = [
    {"id": "m1", "name": "Press", "code": "P1", "sector": "Stamping"},
    {"id": "m2", "name": "Welder", "code": "W2", "sector": "Welding"},
]


def test_vectorised_metrics_match_per_record_engine():
    detail = add_oee_columns(pd.DataFrame(ROWS))
    for row, (_, computed) in zip(ROWS, detail.iterrows()):
        expected = compute_oee(row)
        for name in ("availability", "performance", "quality", "oee"):
            assert math.isclose(computed[name], getattr(expected, name), abs_tol=1e-9)


def test_breakdown_by_machine_joins_machine_details():
    grouped, detail = compute_oee_breakdown(
        pd.DataFrame(ROWS), by="machine_id", machines=pd.DataFrame(MACHINES)
    )

    assert list(grouped["machine_id"]) == ["m1", "m2"]
    assert list(grouped["records"]) == [2, 1]
    assert list(grouped["name"]) == ["Press", "Welder"]
    assert grouped.loc[0, "oee"] == pytest.approx((74.375 + 100.0) / 2)
    assert grouped.loc[1, "status"] == "Critical"
    assert "sector" in detail.columns
    assert len(detail) == len(ROWS)


def test_breakdown_by_sector_and_shift():
    grouped, _ = compute_oee_breakdown(
        pd.DataFrame(ROWS), by="sector", machines=pd.DataFrame(MACHINES)
    )
    assert list(grouped["sector"]) == ["Stamping", "Welding"]

    grouped, _ = compute_oee_breakdown(pd.DataFrame(ROWS), by="shift_id")
    assert list(grouped["shift_id"]) == ["s2", "s1"]


def test_breakdown_handles_empty_input():
    grouped, detail = compute_oee_breakdown(pd.DataFrame([]))
    assert grouped.empty
    assert detail.empty
    assert breakdown_records(grouped) == []


def test_breakdown_rejects_unknown_key():
    with pytest.raises(ValueError):
        compute_oee_breakdown(pd.DataFrame(ROWS), by="operator")


def test_breakdown_records_are_json_safe():
    grouped, _ = compute_oee_breakdown(pd.DataFrame(ROWS), by="machine_id")
    records = breakdown_records(grouped)
    assert records[0]["machine_id"] == "m1"
    assert isinstance(records[0]["records"], int)
    assert isinstance(records[0]["oee"], float)
