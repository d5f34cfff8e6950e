import pytest
from fastapi.testclient import TestClient

from api_oee import app

client = TestClient(app)


def test_oee_endpoint_scores_each_record():
    resp = client.post(
        "/oee",
        json={
            "records": [
                {
                    "date": "2024-07-01",
                    "planned_production": 100,
                    "actual_production": 90,
                    "downtime_minutes": 60,
                    "defective_units": 5,
                },
                {
                    "date": "2024-07-01",
                    "planned_production": 50,
                    "actual_production": 50,
                    "downtime_minutes": 0,
                    "defective_units": 0,
                },
            ]
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 2
    assert body["records"][0]["oee"] == pytest.approx(74.375, abs=1e-6)
    assert body["records"][0]["status"] == "Warning"
    assert body["records"][1]["status"] == "Excellent"
    assert body["summary"]["total_records"] == 2
    assert body["summary"]["oee"] == pytest.approx((74.375 + 100) / 2, abs=1e-6)


def test_oee_endpoint_empty_payload():
    body = client.post("/oee", json={}).json()
    assert body["count"] == 0
    assert body["summary"]["oee"] == 0
    assert body["summary"]["status"] == "Critical"


def test_breakdown_endpoint():
    resp = client.post(
        "/breakdown",
        json={
            "by": "machine_id",
            "records": [
                {"machine_id": "m1", "planned_production": 10, "actual_production": 10},
                {"machine_id": "m2", "planned_production": 10, "actual_production": 5},
            ],
            "machines": [{"id": "m1", "name": "Press"}, {"id": "m2", "name": "Lathe"}],
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 2
    assert [row["name"] for row in body["breakdown"]] == ["Press", "Lathe"]


def test_breakdown_endpoint_rejects_unknown_key():
    resp = client.post("/breakdown", json={"by": "operator", "records": []})
    assert resp.status_code == 400
