from flask import (
    Blueprint,
    abort,
    current_app,
    jsonify,
    request,
    send_file,
)
import io
import re
from datetime import datetime

from biscuit_qc.auth.routes import login_required, supervisor_required
from biscuit_qc.calculations import CalculationBuilder, format_result
from biscuit_qc.schema_dsl import SchemaParseError
from biscuit_qc.table_engine import (
    ReadOnlyFieldError,
    TableEngine,
    UnknownFieldError,
    UnknownRowError,
    UnknownTableError,
)
from biscuit_qc.time_slots import (
    TimeSlotCoordinator,
    inspection_table_from_dict,
    inspection_table_to_dict,
)

main_bp = Blueprint('main', __name__)

NAMESPACE_RE = re.compile(r'^[A-Za-z0-9_-]{1,64}$')


def _get_store():
    store = current_app.config.get("STORE")
    if store is None:
        abort(503, description="Table storage unavailable")
    return store


def _get_lock_window():
    settings = current_app.config.get("LOCK_WINDOW")
    if settings is None:
        abort(503, description="Lock window settings unavailable")
    return settings


def _load_engine(namespace: str) -> TableEngine:
    """Return the engine for ``namespace`` restored from the local store."""

    if not NAMESPACE_RE.match(namespace or ''):
        abort(400, description='Invalid table namespace.')
    engine = TableEngine(_get_store(), namespace)
    engine.load()
    return engine


def _engine_payload(engine: TableEngine) -> dict:
    return {
        'namespace': engine.namespace,
        'dsl': engine.dsl,
        'tables': engine.view(),
    }


# ---------------------------------------------------------------------------
# Table engine
# ---------------------------------------------------------------------------


@main_bp.route('/api/tables/<namespace>', methods=['GET'])
@login_required
def view_tables(namespace):
    engine = _load_engine(namespace)

    table = request.args.get('table')
    if not table:
        return jsonify(_engine_payload(engine))

    try:
        engine.set_filter(table, request.args.get('filter'))
        sort_key = request.args.get('sort')
        if sort_key:
            if engine.schema[table].get_field(sort_key) is None:
                raise UnknownFieldError(f"Unknown field {sort_key!r} in table {table}")
            direction = (request.args.get('dir') or 'asc').lower()
            if direction not in ('asc', 'desc'):
                abort(400, description='Sort direction must be asc or desc.')
            engine.sort[table] = {'key': sort_key, 'dir': direction}
        return jsonify({'table': engine.table_view(table)})
    except (UnknownTableError, UnknownFieldError) as exc:
        abort(404, description=str(exc))


@main_bp.route('/api/tables/<namespace>/build', methods=['POST'])
@login_required
def build_tables(namespace):
    engine = _load_engine(namespace)
    payload = request.get_json(silent=True) or {}
    source = payload.get('dsl')
    if not isinstance(source, str) or not source.strip():
        abort(400, description='DSL source is required.')

    try:
        engine.build_from_dsl(source)
    except SchemaParseError as exc:
        current_app.logger.info('Rejected DSL for namespace %s: %s', namespace, exc)
        return jsonify({'error': 'invalid_schema', 'description': str(exc)}), 400

    return jsonify(_engine_payload(engine))


@main_bp.route('/api/tables/<namespace>/<table>/rows', methods=['POST'])
@login_required
def add_table_row(namespace, table):
    engine = _load_engine(namespace)
    payload = request.get_json(silent=True) or {}
    values = payload.get('values') if isinstance(payload.get('values'), dict) else {}

    try:
        row = engine.add_row(table, values)
    except UnknownTableError as exc:
        abort(404, description=str(exc))

    return jsonify({'row': row, 'table': engine.table_view(table)}), 201


@main_bp.route('/api/tables/<namespace>/<table>/rows/<row_id>', methods=['PATCH'])
@login_required
def edit_table_row(namespace, table, row_id):
    engine = _load_engine(namespace)
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        payload = {}

    updates = payload.get('values')
    if not isinstance(updates, dict):
        if not isinstance(payload.get('key'), str):
            abort(400, description='Provide values or a key and value to update.')
        updates = {payload['key']: payload.get('value')}
    if not updates:
        abort(400, description='No valid fields to update.')

    try:
        row = engine.set_values(table, row_id, updates)
    except ReadOnlyFieldError as exc:
        abort(400, description=str(exc))
    except (UnknownTableError, UnknownRowError, UnknownFieldError) as exc:
        abort(404, description=str(exc))

    return jsonify({'row': row, 'table': engine.table_view(table)})


@main_bp.route('/api/tables/<namespace>/<table>/delete', methods=['POST'])
@login_required
def delete_table_rows(namespace, table):
    engine = _load_engine(namespace)
    payload = request.get_json(silent=True) or {}
    row_ids = payload.get('ids')
    if not isinstance(row_ids, list) or not row_ids:
        abort(400, description='Select at least one row to delete.')

    try:
        for row_id in row_ids:
            engine.select_row(table, str(row_id))
        deleted = engine.delete_selected(table)
    except (UnknownTableError, UnknownRowError) as exc:
        abort(404, description=str(exc))

    current_app.logger.info('Deleted %d row(s) from %s/%s', deleted, namespace, table)
    return jsonify({'deleted': deleted, 'table': engine.table_view(table)})


@main_bp.route('/api/tables/<namespace>/reset', methods=['POST'])
@supervisor_required
def reset_tables(namespace):
    engine = _load_engine(namespace)
    engine.reset()
    current_app.logger.info('Reset tables for namespace %s', namespace)
    return jsonify(_engine_payload(engine))


@main_bp.route('/api/tables/<namespace>/<table>/export', methods=['GET'])
@login_required
def export_table(namespace, table):
    engine = _load_engine(namespace)
    try:
        content = engine.export_xlsx(table)
    except UnknownTableError as exc:
        abort(404, description=str(exc))

    return send_file(
        io.BytesIO(content),
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        download_name=f"{namespace}_{table}.xlsx",
        as_attachment=True,
    )


# ---------------------------------------------------------------------------
# Calculations
# ---------------------------------------------------------------------------


@main_bp.route('/api/calculations/operations', methods=['GET'])
@login_required
def calculation_operations():
    return jsonify({'operations': CalculationBuilder().render()['operations']})


@main_bp.route('/api/calculations/compute', methods=['POST'])
@login_required
def compute_calculation():
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        payload = {}

    builder = CalculationBuilder(
        params=payload.get('params') or [],
        variables=payload.get('variable_options') or [],
    )
    if not builder.load_calculation(payload.get('calculation')):
        abort(400, description='Calculation must be an object with a steps list.')

    context = {
        'parameters': payload.get('parameters') or {},
        'variables': payload.get('variables') or {},
    }
    result = builder.execute_calculation(context)
    return jsonify({
        'result': format_result(result),
        'preview': builder.preview(),
        'calculation': builder.get_calculation(),
    })


# ---------------------------------------------------------------------------
# Time slots
# ---------------------------------------------------------------------------


def _lock_window_payload(settings) -> dict:
    return {'minutes': settings.window_minutes, 'summary': settings.summary()}


@main_bp.route('/api/time-slots/lock-window', methods=['GET'])
@login_required
def get_lock_window():
    return jsonify(_lock_window_payload(_get_lock_window()))


@main_bp.route('/api/time-slots/lock-window', methods=['PUT'])
@supervisor_required
def update_lock_window():
    payload = request.get_json(silent=True) or {}
    if 'minutes' not in payload:
        abort(400, description='minutes is required.')

    settings = _get_lock_window()
    settings.set_window_minutes(payload.get('minutes'))
    current_app.logger.info('Inspection lock window set to %s minute(s)', settings.window_minutes)
    return jsonify(_lock_window_payload(settings))


def _parse_now(value) -> datetime:
    if not value:
        return datetime.now()
    text = str(value).strip()
    try:
        parsed = datetime.strptime(text, '%H:%M')
    except ValueError:
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            abort(400, description='now must be HH:MM or an ISO timestamp.')
    return datetime.now().replace(
        hour=parsed.hour, minute=parsed.minute, second=0, microsecond=0
    )


@main_bp.route('/api/time-slots/evaluate', methods=['POST'])
@login_required
def evaluate_time_slots():
    payload = request.get_json(silent=True) or {}
    now = _parse_now(payload.get('now'))

    try:
        table = inspection_table_from_dict(payload.get('table'))
    except (TypeError, ValueError) as exc:
        abort(400, description=f'Invalid inspection table: {exc}')

    coordinator = TimeSlotCoordinator(settings=_get_lock_window())
    if coordinator.track(table) is None:
        abort(400, description='Inspection table has no time slot columns.')
    summaries = coordinator.refresh(now=now, force=True)

    return jsonify({
        'slots': summaries.get(table.table_id),
        'lock_window': _lock_window_payload(coordinator.settings),
        'table': inspection_table_to_dict(table),
    })
