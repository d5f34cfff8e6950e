"""CSV and Excel exports of production records."""

from __future__ import annotations

import csv
import io
from typing import Iterable, Mapping

from openpyxl import Workbook

EXPORT_HEADERS = [
    "Date",
    "Machine",
    "Sector",
    "Planned Production",
    "Actual Production",
    "Defects",
    "Downtime (min)",
    "Downtime Reason",
]


def export_rows(
    records: Iterable[Mapping], machines_by_id: Mapping[str, Mapping]
) -> list[list]:
    """Flatten records into export rows, joining machine name and sector."""

    rows = []
    for record in records or []:
        machine = machines_by_id.get(str(record.get("machine_id"))) or {}
        rows.append(
            [
                record.get("date") or "",
                machine.get("name") or "",
                machine.get("sector") or "",
                record.get("planned_production") or 0,
                record.get("actual_production") or 0,
                record.get("defective_units") or 0,
                record.get("downtime_minutes") or 0,
                record.get("downtime_reason") or "",
            ]
        )
    return rows


def production_records_csv(
    records: Iterable[Mapping], machines_by_id: Mapping[str, Mapping]
) -> str:
    """Return the records as CSV text.

    Fields containing commas, quotes or newlines are quoted by the writer.
    """

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    writer.writerows(export_rows(records, machines_by_id))
    return buffer.getvalue()


def production_records_workbook(
    records: Iterable[Mapping], machines_by_id: Mapping[str, Mapping]
) -> io.BytesIO:
    wb = Workbook()
    ws = wb.active
    ws.title = "Production"
    ws.append(EXPORT_HEADERS)
    for row in export_rows(records, machines_by_id):
        ws.append(row)
    output = io.BytesIO()
    wb.save(output)
    output.seek(0)
    return output
