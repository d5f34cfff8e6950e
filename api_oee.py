from __future__ import annotations

from typing import Any, Dict, List

import pandas as pd
from fastapi import Body, FastAPI, HTTPException

from oee_analysis import BREAKDOWN_KEYS, breakdown_records, compute_oee_breakdown
from oee_dashboard.metrics import classify_oee, compute_oee, summarize


app = FastAPI(title="OEE Computation API")


@app.post("/oee")
def oee_endpoint(
    payload: Dict[str, Any] = Body(..., example={
        "records": [
            {
                "date": "2024-07-01",
                "machine_id": "M1",
                "planned_production": 100,
                "actual_production": 90,
                "downtime_minutes": 60,
                "defective_units": 5,
            }
        ],
    })
):
    rows: List[Dict[str, Any]] = payload.get("records", []) or []
    results = []
    for row in rows:
        metrics = compute_oee(row).as_dict()
        metrics["status"] = classify_oee(metrics["oee"]).label
        results.append(metrics)

    summary = summarize(rows).as_dict()
    summary["status"] = classify_oee(summary["oee"]).label
    return {
        "records": results,
        "summary": summary,
        "count": len(results),
    }


@app.post("/breakdown")
def breakdown_endpoint(payload: Dict[str, Any]):
    by = payload.get("by", "machine_id")
    if by not in BREAKDOWN_KEYS:
        raise HTTPException(status_code=400, detail=f"Unsupported breakdown key: {by}")
    rows: List[Dict[str, Any]] = payload.get("records", []) or []
    machines = payload.get("machines") or None
    grouped, _detail = compute_oee_breakdown(
        pd.DataFrame(rows),
        by=by,
        machines=pd.DataFrame(machines) if machines else None,
    )
    return {
        "breakdown": breakdown_records(grouped),
        "count": len(grouped),
    }


# To run locally:
#   uvicorn api_oee:app --reload --port 8080
