"""OEE calculations for shift production records.

Every function in this module is pure: records are plain mappings as returned
by Supabase and nothing is cached or mutated.  Numeric fields that are
missing or malformed are treated as ``0`` so a bad row can never break a
dashboard.
"""

from __future__ import annotations

import calendar
import math
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping

from .errors import ValidationError

# Every shift is assumed to be eight hours long regardless of the shift row.
SHIFT_MINUTES = 480

OEE_FIELDS = ("availability", "performance", "quality", "oee")

# (breakpoint, label, severity), checked from the top down.
OEE_STATUS_THRESHOLDS = (
    (85.0, "Excellent", "success"),
    (75.0, "Good", "secondary"),
    (65.0, "Warning", "warning"),
)
OEE_STATUS_FLOOR = ("Critical", "destructive")

EFFICIENCY_BANDS = (
    (85.0, "high"),
    (70.0, "medium"),
)

WEEKDAY_LABELS = {
    "en": ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"),
    "pt-BR": ("Seg", "Ter", "Qua", "Qui", "Sex", "Sáb", "Dom"),
}
DEFAULT_LOCALE = "en"

REPORT_PERIODS = ("today", "week", "month", "custom")


@dataclass(frozen=True)
class OEEMetrics:
    availability: float = 0.0
    performance: float = 0.0
    quality: float = 0.0
    oee: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class OEEStatus:
    label: str
    severity: str

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class DashboardMetrics:
    """Mean OEE figures plus simple counts for a set of records."""

    availability: float = 0.0
    performance: float = 0.0
    quality: float = 0.0
    oee: float = 0.0
    total_records: int = 0
    today_records: int = 0
    total_planned: float = 0.0
    total_actual: float = 0.0
    total_defects: float = 0.0
    total_downtime: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReportSummary:
    """Pooled totals over a report window (the Reports page figures)."""

    total_production: float = 0.0
    total_planned: float = 0.0
    total_downtime: float = 0.0
    total_defects: float = 0.0
    efficiency_rate: float = 0.0
    availability_rate: float = 0.0
    performance_rate: float = 0.0
    quality_rate: float = 0.0
    oee_score: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


def _safe_number(value: Any) -> float:
    """Return ``value`` as a finite float, or ``0.0`` when it is unusable."""

    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def _coerce_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def clamp_percentage(value: float) -> float:
    """Clamp ``value`` into the inclusive ``[0, 100]`` range."""

    number = _safe_number(value)
    return max(0.0, min(100.0, number))


def compute_oee(record: Mapping[str, Any]) -> OEEMetrics:
    """Return availability, performance, quality and OEE for one record."""

    planned = _safe_number(record.get("planned_production"))
    actual = _safe_number(record.get("actual_production"))
    downtime = _safe_number(record.get("downtime_minutes"))
    defects = _safe_number(record.get("defective_units"))

    availability = (SHIFT_MINUTES - downtime) / SHIFT_MINUTES * 100
    performance = actual / planned * 100 if planned > 0 else 0.0
    quality = (actual - defects) / actual * 100 if actual > 0 else 0.0
    oee = availability * performance * quality / 10000

    return OEEMetrics(
        availability=clamp_percentage(availability),
        performance=clamp_percentage(performance),
        quality=clamp_percentage(quality),
        oee=clamp_percentage(oee),
    )


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def average_metrics(records: Iterable[Mapping[str, Any]]) -> OEEMetrics:
    """Arithmetic mean of each per-record metric; zeros for no records."""

    computed = [compute_oee(record) for record in records]
    if not computed:
        return OEEMetrics()
    return OEEMetrics(
        **{name: _mean([getattr(item, name) for item in computed]) for name in OEE_FIELDS}
    )


def summarize(
    records: Iterable[Mapping[str, Any]], *, today: date | None = None
) -> DashboardMetrics:
    """Aggregate a record window into the dashboard headline figures."""

    rows = list(records or [])
    if not rows:
        return DashboardMetrics()

    today = today or date.today()
    means = average_metrics(rows)
    return DashboardMetrics(
        availability=means.availability,
        performance=means.performance,
        quality=means.quality,
        oee=means.oee,
        total_records=len(rows),
        today_records=sum(1 for row in rows if _coerce_date(row.get("date")) == today),
        total_planned=sum(_safe_number(row.get("planned_production")) for row in rows),
        total_actual=sum(_safe_number(row.get("actual_production")) for row in rows),
        total_defects=sum(_safe_number(row.get("defective_units")) for row in rows),
        total_downtime=sum(_safe_number(row.get("downtime_minutes")) for row in rows),
    )


def normalize_locale(locale: str | None) -> str:
    """Map a request locale such as ``pt_BR`` or ``pt`` onto a label table."""

    if not locale:
        return DEFAULT_LOCALE
    cleaned = str(locale).replace("_", "-").strip().lower()
    for known in WEEKDAY_LABELS:
        if cleaned == known.lower():
            return known
    language = cleaned.split("-", 1)[0]
    for known in WEEKDAY_LABELS:
        if known.lower().split("-", 1)[0] == language:
            return known
    return DEFAULT_LOCALE


def weekday_label(day: date, locale: str | None = None) -> str:
    return WEEKDAY_LABELS[normalize_locale(locale)][day.weekday()]


def daily_series(
    records: Iterable[Mapping[str, Any]],
    *,
    days: int = 7,
    end: date | None = None,
    locale: str | None = None,
    field: str = "oee",
) -> list[dict[str, Any]]:
    """Return one point per calendar day of the trailing ``days`` window.

    Points are ordered oldest to newest and end on ``end`` (inclusive).  Each
    value is the mean of ``field`` over that day's records, or ``0`` for days
    without any.
    """

    if field not in OEE_FIELDS:
        raise ValueError(f"Unknown metric field: {field}")
    if days <= 0:
        return []

    end = end or date.today()
    start = end - timedelta(days=days - 1)

    by_day: dict[date, list[Mapping[str, Any]]] = {}
    for row in records or []:
        day = _coerce_date(row.get("date"))
        if day is None or day < start or day > end:
            continue
        by_day.setdefault(day, []).append(row)

    points = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        value = getattr(average_metrics(by_day.get(day, [])), field)
        points.append(
            {
                "date": day.isoformat(),
                "name": weekday_label(day, locale),
                "value": value,
            }
        )
    return points


def classify_oee(value: Any) -> OEEStatus:
    """Return the status tier for an OEE percentage.

    Breakpoints are inclusive, so ``85`` is already Excellent while ``84.999``
    is not.  Out-of-range input is clamped before classification.
    """

    clamped = clamp_percentage(value)
    for breakpoint, label, severity in OEE_STATUS_THRESHOLDS:
        if clamped >= breakpoint:
            return OEEStatus(label=label, severity=severity)
    label, severity = OEE_STATUS_FLOOR
    return OEEStatus(label=label, severity=severity)


def efficiency_band(value: Any) -> str:
    clamped = clamp_percentage(value)
    for breakpoint, band in EFFICIENCY_BANDS:
        if clamped >= breakpoint:
            return band
    return "low"


def summarize_report(records: Iterable[Mapping[str, Any]]) -> ReportSummary:
    """Compute pooled report rates from the totals of ``records``.

    Unlike :func:`summarize` the rates here are ratios of sums: availability
    uses the total downtime against ``len(records) * SHIFT_MINUTES``.
    """

    rows = list(records or [])
    if not rows:
        return ReportSummary()

    total_production = sum(_safe_number(row.get("actual_production")) for row in rows)
    total_planned = sum(_safe_number(row.get("planned_production")) for row in rows)
    total_downtime = sum(_safe_number(row.get("downtime_minutes")) for row in rows)
    total_defects = sum(_safe_number(row.get("defective_units")) for row in rows)

    working_minutes = len(rows) * SHIFT_MINUTES
    availability = (working_minutes - total_downtime) / working_minutes * 100
    performance = total_production / total_planned * 100 if total_planned > 0 else 0.0
    quality = (
        (total_production - total_defects) / total_production * 100
        if total_production > 0
        else 0.0
    )
    oee = availability * performance * quality / 10000

    return ReportSummary(
        total_production=total_production,
        total_planned=total_planned,
        total_downtime=total_downtime,
        total_defects=total_defects,
        efficiency_rate=clamp_percentage(performance),
        availability_rate=clamp_percentage(availability),
        performance_rate=clamp_percentage(performance),
        quality_rate=clamp_percentage(quality),
        oee_score=clamp_percentage(oee),
    )


def resolve_period(
    period: str | None,
    today: date,
    start: date | None = None,
    end: date | None = None,
) -> tuple[date | None, date | None]:
    """Translate a report period selector into an inclusive date range.

    ``week`` runs Monday to Sunday.  ``custom`` uses ``start``/``end`` as given
    and either bound may be open.
    """

    period = (period or "week").strip().lower()
    if period == "today":
        return today, today
    if period == "week":
        monday = today - timedelta(days=today.weekday())
        return monday, monday + timedelta(days=6)
    if period == "month":
        last_day = calendar.monthrange(today.year, today.month)[1]
        return today.replace(day=1), today.replace(day=last_day)
    if period == "custom":
        if start and end and start > end:
            raise ValidationError("Start date must be on or before the end date.")
        return start, end
    raise ValidationError(
        f"Unknown report period '{period}'. Use one of: {', '.join(REPORT_PERIODS)}."
    )


__all__ = [
    "SHIFT_MINUTES",
    "OEEMetrics",
    "OEEStatus",
    "DashboardMetrics",
    "ReportSummary",
    "clamp_percentage",
    "compute_oee",
    "average_metrics",
    "summarize",
    "daily_series",
    "classify_oee",
    "efficiency_band",
    "summarize_report",
    "resolve_period",
    "normalize_locale",
    "weekday_label",
]
