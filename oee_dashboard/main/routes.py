from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd
from flask import (
    Blueprint,
    Response,
    current_app,
    jsonify,
    request,
    send_file,
)

from oee_analysis import breakdown_records, compute_oee_breakdown
from oee_dashboard.auth.routes import (
    current_dashboard_session,
    get_access_resolver,
    get_metrics_cache,
    login_required,
    owner_required,
    request_data,
)
from oee_dashboard.db import (
    delete_machine,
    delete_production_record,
    fetch_machines,
    fetch_production_records,
    fetch_shifts,
    insert_machine,
    insert_production_record,
    update_machine,
    update_production_record,
)
from oee_dashboard.errors import NotFoundError, TransientStoreError, ValidationError
from oee_dashboard.exports import production_records_csv, production_records_workbook
from oee_dashboard.metrics import (
    WEEKDAY_LABELS,
    classify_oee,
    compute_oee,
    daily_series,
    efficiency_band,
    normalize_locale,
    resolve_period,
    summarize,
    summarize_report,
)
from oee_dashboard.permissions import capabilities_for, effective_role
from oee_dashboard.validators import parse_date, validate_machine, validate_production_record

main_bp = Blueprint('main', __name__)

TREND_DAYS = 7
REPORT_CHART_RECORDS = 10
REPORT_DETAIL_RECORDS = 20


def _report_timezone():
    """Return the timezone used to decide what "today" is.

    Uses the configured ``LOCAL_TIMEZONE`` and falls back to UTC if the zone
    cannot be loaded.
    """

    tz_name = current_app.config.get("LOCAL_TIMEZONE") or "UTC"
    try:
        return ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        current_app.logger.warning(
            "Timezone %s unavailable; falling back to UTC", tz_name
        )
    except Exception as exc:  # pragma: no cover - unexpected zoneinfo failures
        current_app.logger.warning(
            "Error loading timezone %s: %s; falling back to UTC", tz_name, exc
        )
    return timezone.utc


def _local_today():
    return datetime.now(_report_timezone()).date()


def _request_locale() -> str:
    explicit = request.args.get('locale')
    if explicit:
        return normalize_locale(explicit)
    supported = list(WEEKDAY_LABELS) + ['pt']
    best = request.accept_languages.best_match(supported)
    return normalize_locale(best or current_app.config.get('DASHBOARD_LOCALE'))


def _rounded(values: dict, digits: int = 2) -> dict:
    return {
        key: round(value, digits) if isinstance(value, float) else value
        for key, value in values.items()
    }


def _load_or_fail(result):
    data, error = result
    if error:
        raise TransientStoreError(error)
    return data or []


def _viewer_payload(dashboard_session) -> dict:
    snapshot = get_access_resolver().get(dashboard_session.user_id)
    return {
        'user_id': dashboard_session.user_id,
        'viewing_user_id': dashboard_session.viewing_user_id,
        'role': effective_role(snapshot, dashboard_session.viewing_user_id).value,
        'capabilities': capabilities_for(dashboard_session).as_dict(),
    }


def _machine_breakdown(records: list[dict], machines: list[dict], by: str = 'machine_id') -> list[dict]:
    grouped, _detail = compute_oee_breakdown(
        pd.DataFrame(records),
        by=by,
        machines=pd.DataFrame(machines) if machines else None,
    )
    return [_rounded(row) for row in breakdown_records(grouped)]


@main_bp.route('/dashboard')
@login_required
def dashboard():
    dashboard_session = current_dashboard_session()
    today = _local_today()
    locale = _request_locale()

    def compute():
        owner_id = dashboard_session.owner_id
        records = _load_or_fail(fetch_production_records(owner_id))
        machines = _load_or_fail(fetch_machines(owner_id))
        week_start = today - timedelta(days=TREND_DAYS - 1)
        week_records = [
            row for row in records
            if week_start.isoformat() <= str(row.get('date') or '')[:10] <= today.isoformat()
        ]
        overall = summarize(records, today=today)
        week = summarize(week_records, today=today)
        return {
            'summary': _rounded(overall.as_dict()),
            'status': classify_oee(overall.oee).as_dict(),
            'week': _rounded(week.as_dict()),
            'trend': [_rounded(point) for point in daily_series(
                records, days=TREND_DAYS, end=today, locale=locale,
            )],
            'machines': _machine_breakdown(records, machines),
        }

    payload = get_metrics_cache().get_or_compute(
        'dashboard', dashboard_session, compute, params=(today.isoformat(), locale)
    )
    return jsonify({**payload, 'viewer': _viewer_payload(dashboard_session)})


def _report_filters() -> dict:
    today = _local_today()
    start, end = resolve_period(
        request.args.get('period'),
        today,
        parse_date(request.args.get('start_date'), field_name='start_date'),
        parse_date(request.args.get('end_date'), field_name='end_date'),
    )
    return {
        'date_from': start,
        'date_to': end,
        'machine_id': request.args.get('machine_id') or None,
        'sector': request.args.get('sector') or None,
    }


def _machines_by_id(machines: list[dict]) -> dict[str, dict]:
    return {str(machine.get('id')): machine for machine in machines}


@main_bp.route('/reports')
@login_required
def reports():
    dashboard_session = current_dashboard_session()
    filters = _report_filters()
    breakdown_by = request.args.get('breakdown') or 'machine_id'
    if breakdown_by not in ('machine_id', 'sector', 'shift_id'):
        raise ValidationError(f"Unsupported breakdown '{breakdown_by}'.")

    def compute():
        owner_id = dashboard_session.owner_id
        machines = _load_or_fail(fetch_machines(owner_id))
        records = _load_or_fail(fetch_production_records(owner_id, **filters))
        summary = summarize_report(records)
        lookup = _machines_by_id(machines)

        chart = []
        for record in list(reversed(records[:REPORT_CHART_RECORDS])):
            chart.append(
                {
                    'date': record.get('date'),
                    'planned': record.get('planned_production') or 0,
                    'actual': record.get('actual_production') or 0,
                    'defects': record.get('defective_units') or 0,
                }
            )

        details = []
        for record in records[:REPORT_DETAIL_RECORDS]:
            machine = lookup.get(str(record.get('machine_id'))) or {}
            details.append(
                {
                    **record,
                    'machine': {
                        'name': machine.get('name'),
                        'code': machine.get('code'),
                        'sector': machine.get('sector'),
                    },
                    'oee': _rounded(compute_oee(record).as_dict()),
                }
            )

        return {
            'filters': {
                key: value.isoformat() if hasattr(value, 'isoformat') else value
                for key, value in filters.items()
            },
            'summary': _rounded(summary.as_dict()),
            'bands': {
                'efficiency': efficiency_band(summary.efficiency_rate),
                'oee': efficiency_band(summary.oee_score),
                'quality': efficiency_band(summary.quality_rate),
            },
            'sectors': sorted({m.get('sector') for m in machines if m.get('sector')}),
            'breakdown': _machine_breakdown(records, machines, by=breakdown_by),
            'chart': chart,
            'records': details,
            'total_records': len(records),
        }

    params = tuple(sorted((key, str(value)) for key, value in filters.items())) + (breakdown_by,)
    payload = get_metrics_cache().get_or_compute('reports', dashboard_session, compute, params=params)
    return jsonify(payload)


@main_bp.route('/reports/export')
@login_required
def export_report():
    dashboard_session = current_dashboard_session()
    filters = _report_filters()
    fmt = (request.args.get('format') or 'csv').lower()
    if fmt not in ('csv', 'xlsx'):
        raise ValidationError("Export format must be 'csv' or 'xlsx'.")

    owner_id = dashboard_session.owner_id
    machines = _machines_by_id(_load_or_fail(fetch_machines(owner_id)))
    records = _load_or_fail(fetch_production_records(owner_id, **filters))
    filename = f"production_report_{_local_today().isoformat()}"

    if fmt == 'xlsx':
        return send_file(
            production_records_workbook(records, machines),
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            as_attachment=True,
            download_name=f"{filename}.xlsx",
        )
    return Response(
        production_records_csv(records, machines),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}.csv'},
    )


@main_bp.route('/shifts')
@login_required
def list_shifts():
    return jsonify({'shifts': _load_or_fail(fetch_shifts())})


@main_bp.route('/machines', methods=['GET'])
@login_required
def list_machines():
    dashboard_session = current_dashboard_session()
    machines = _load_or_fail(
        fetch_machines(dashboard_session.owner_id, sector=request.args.get('sector') or None)
    )
    search = (request.args.get('q') or '').strip().lower()
    if search:
        machines = [
            machine for machine in machines
            if any(search in str(machine.get(key) or '').lower() for key in ('name', 'code', 'sector'))
        ]
    return jsonify({'machines': machines})


@main_bp.route('/machines', methods=['POST'])
@login_required
@owner_required
def create_machine():
    dashboard_session = current_dashboard_session()
    payload = validate_machine(request_data())
    payload['user_id'] = dashboard_session.user_id
    inserted = _load_or_fail(insert_machine(payload))
    get_metrics_cache().invalidate_target(dashboard_session.user_id)
    return jsonify({'machine': inserted[0] if inserted else payload}), 201


@main_bp.route('/machines/<machine_id>', methods=['PUT'])
@login_required
@owner_required
def edit_machine(machine_id):
    dashboard_session = current_dashboard_session()
    payload = validate_machine(request_data())
    updated = _load_or_fail(update_machine(machine_id, dashboard_session.user_id, payload))
    if not updated:
        raise NotFoundError('Machine not found.')
    get_metrics_cache().invalidate_target(dashboard_session.user_id)
    return jsonify({'machine': updated[0]})


@main_bp.route('/machines/<machine_id>', methods=['DELETE'])
@login_required
@owner_required
def remove_machine(machine_id):
    dashboard_session = current_dashboard_session()
    deleted = _load_or_fail(delete_machine(machine_id, dashboard_session.user_id))
    if not deleted:
        raise NotFoundError('Machine not found.')
    get_metrics_cache().invalidate_target(dashboard_session.user_id)
    return jsonify({'deleted': len(deleted)})


@main_bp.route('/production', methods=['GET'])
@login_required
def list_production_records():
    dashboard_session = current_dashboard_session()
    records = _load_or_fail(fetch_production_records(dashboard_session.owner_id))
    rows = []
    for record in records:
        metrics = compute_oee(record)
        rows.append(
            {
                **record,
                'oee': round(metrics.oee),
                'status': classify_oee(metrics.oee).label,
            }
        )
    return jsonify({'records': rows, 'viewer': _viewer_payload(dashboard_session)})


@main_bp.route('/production', methods=['POST'])
@login_required
@owner_required
def create_production_record():
    dashboard_session = current_dashboard_session()
    payload = validate_production_record(request_data())
    payload['user_id'] = dashboard_session.user_id
    inserted = _load_or_fail(insert_production_record(payload))
    get_metrics_cache().invalidate_target(dashboard_session.user_id)
    return jsonify({'record': inserted[0] if inserted else payload}), 201


@main_bp.route('/production/<record_id>', methods=['PUT'])
@login_required
@owner_required
def edit_production_record(record_id):
    dashboard_session = current_dashboard_session()
    payload = validate_production_record(request_data())
    updated = _load_or_fail(
        update_production_record(record_id, dashboard_session.user_id, payload)
    )
    if not updated:
        raise NotFoundError('Production record not found.')
    get_metrics_cache().invalidate_target(dashboard_session.user_id)
    return jsonify({'record': updated[0]})


@main_bp.route('/production/<record_id>', methods=['DELETE'])
@login_required
@owner_required
def remove_production_record(record_id):
    dashboard_session = current_dashboard_session()
    deleted = _load_or_fail(delete_production_record(record_id, dashboard_session.user_id))
    if not deleted:
        raise NotFoundError('Production record not found.')
    get_metrics_cache().invalidate_target(dashboard_session.user_id)
    return jsonify({'deleted': len(deleted)})
