"""JSON REST endpoints for products, reports, settings, sessions and signatures."""

import uuid

from flask import Blueprint, abort, current_app, jsonify, request

from biscuit_qc import db as db_module
from biscuit_qc.auth.routes import login_required, supervisor_required
from biscuit_qc.calculations import apply_calculations
from biscuit_qc.reports import summarize_reports
from biscuit_qc.schema_dsl import SchemaParseError, parse as parse_schema

records_bp = Blueprint('records', __name__, url_prefix='/api')

PRODUCT_DEFAULTS = {
    'ingredients_type': 'without-cocoa',
    'has_cream': False,
    'standard_weight': 185.0,
    'shelf_life': 6,
    'cartons_per_pallet': 56,
    'packs_per_box': 6,
    'boxes_per_carton': 14,
    'empty_box_weight': 21.0,
    'empty_carton_weight': 680.0,
    'aql_level': '1.5',
    'day_format': 'DD',
    'month_format': 'letter',
}

NUMERIC_PRODUCT_FIELDS = (
    'standard_weight',
    'shelf_life',
    'cartons_per_pallet',
    'packs_per_box',
    'boxes_per_carton',
    'empty_box_weight',
    'empty_carton_weight',
)

REPORT_FILTERS = ('status', 'shift', 'product_id')


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _require_uuid(value: str, label: str) -> str:
    try:
        uuid.UUID(str(value))
    except ValueError:
        abort(400, description=f'Invalid {label} ID format')
    return value


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ''):
        return default
    try:
        value = int(raw)
    except ValueError:
        abort(400, description=f'{name} must be an integer.')
    if value < 0:
        abort(400, description=f'{name} must not be negative.')
    return value


def _bool_arg(name: str) -> bool | None:
    raw = request.args.get(name)
    if raw in (None, ''):
        return None
    return raw.strip().lower() == 'true'


def _abort_for(error: str, action: str):
    """Translate a data-access error into an HTTP error response."""

    current_app.logger.error('Failed to %s: %s', action, error)
    if db_module.is_unique_violation(error):
        abort(409, description='A record with this data already exists')
    abort(500, description=error)


def _paginated(rows: list[dict], limit: int, offset: int, total: int | None = None):
    return jsonify({
        'data': rows,
        'pagination': {
            'total': total if total is not None else len(rows),
            'limit': limit,
            'offset': offset,
            'count': len(rows),
        },
    })


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def _validate_product_fields(values: dict) -> list[str]:
    errors = []
    for key in NUMERIC_PRODUCT_FIELDS:
        if key not in values or values[key] is None:
            continue
        value = values[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            try:
                values[key] = float(value)
            except (TypeError, ValueError):
                errors.append(f'{key} must be a number')
    dsl = values.get('table_dsl')
    if dsl:
        try:
            parse_schema(dsl)
        except SchemaParseError as exc:
            errors.append(f'table_dsl: {exc}')
    return errors


@records_bp.route('/products', methods=['GET'])
@login_required
def list_products():
    limit = _int_arg('limit', 100)
    offset = _int_arg('offset', 0)
    rows, error = db_module.fetch_products(
        search=request.args.get('search'), active=_bool_arg('active')
    )
    if error:
        _abort_for(error, 'list products')
    return _paginated(rows[offset:offset + limit], limit, offset, total=len(rows))


@records_bp.route('/products/<product_id>', methods=['GET'])
@login_required
def get_product(product_id):
    _require_uuid(product_id, 'product')
    product, error = db_module.fetch_product(product_id)
    if error:
        _abort_for(error, 'fetch product')
    if not product:
        abort(404, description='Product not found')
    return jsonify(product)


@records_bp.route('/products', methods=['POST'])
@supervisor_required
def create_product():
    payload = _json_body()
    if not all(payload.get(key) for key in ('product_id', 'name', 'code')):
        abort(400, description='product_id, name, and code are required')

    record = {**PRODUCT_DEFAULTS, **db_module.writable_fields('products', payload)}
    errors = _validate_product_fields(record)
    if errors:
        abort(400, description=', '.join(errors))

    created, error = db_module.insert_product(record)
    if error:
        _abort_for(error, 'create product')
    current_app.logger.info('Created product %s', record['product_id'])
    return jsonify(created), 201


@records_bp.route('/products/<product_id>', methods=['PUT'])
@supervisor_required
def update_product(product_id):
    _require_uuid(product_id, 'product')
    updates = db_module.writable_fields('products', _json_body())
    errors = _validate_product_fields(updates)
    if errors:
        abort(400, description=', '.join(errors))
    if not updates:
        abort(400, description='No valid fields provided for update')

    updated, error = db_module.update_product(product_id, updates)
    if error:
        _abort_for(error, 'update product')
    if not updated:
        abort(404, description='Product not found')
    return jsonify(updated)


@records_bp.route('/products/<product_id>', methods=['DELETE'])
@supervisor_required
def delete_product(product_id):
    _require_uuid(product_id, 'product')
    deleted, error = db_module.delete_product(product_id)
    if error:
        _abort_for(error, 'delete product')
    if not deleted:
        abort(404, description='Product not found')
    return jsonify({'message': 'Product deleted successfully', 'id': deleted.get('id')})


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def _report_filters() -> dict:
    return {key: request.args.get(key) for key in REPORT_FILTERS if request.args.get(key)}


@records_bp.route('/reports', methods=['GET'])
@login_required
def list_reports():
    limit = _int_arg('limit', 50)
    offset = _int_arg('offset', 0)
    rows, error = db_module.fetch_reports(
        _report_filters(),
        date_from=request.args.get('dateFrom'),
        date_to=request.args.get('dateTo'),
        limit=limit,
        offset=offset,
    )
    if error:
        _abort_for(error, 'list reports')
    return _paginated(rows, limit, offset)


@records_bp.route('/reports/<report_id>', methods=['GET'])
@login_required
def get_report(report_id):
    _require_uuid(report_id, 'report')
    report, error = db_module.fetch_report(report_id)
    if error:
        _abort_for(error, 'fetch report')
    if not report:
        abort(404, description='Report not found')

    parameters, error = db_module.fetch_report_parameters(report_id)
    if error:
        _abort_for(error, 'fetch report parameters')
    return jsonify({**report, 'parameters': parameters})


@records_bp.route('/reports', methods=['POST'])
@login_required
def create_report():
    payload = _json_body()
    parameters = payload.get('parameters') or []
    if not isinstance(parameters, list):
        abort(400, description='parameters must be a list')

    # Derived readings are recomputed here so stored values never trust the client.
    filled = apply_calculations(parameters, payload.get('variables') or {})

    record = db_module.writable_fields('reports', payload)
    created, error = db_module.insert_report(record)
    if error:
        _abort_for(error, 'create report')
    if not created:
        abort(500, description='Report was not created')

    stored, error = db_module.insert_report_parameters(created.get('id'), filled)
    if error:
        _abort_for(error, 'store report parameters')

    current_app.logger.info(
        'Created report %s with %d parameter reading(s)', created.get('id'), len(stored)
    )
    return jsonify({**created, 'parameters': stored}), 201


@records_bp.route('/reports/<report_id>', methods=['PUT'])
@login_required
def update_report(report_id):
    _require_uuid(report_id, 'report')
    updates = db_module.writable_fields('reports', _json_body())
    if not updates:
        abort(400, description='No valid fields provided for update')

    updated, error = db_module.update_report(report_id, updates)
    if error:
        _abort_for(error, 'update report')
    if not updated:
        abort(404, description='Report not found')
    return jsonify(updated)


@records_bp.route('/reports/<report_id>', methods=['DELETE'])
@supervisor_required
def delete_report(report_id):
    _require_uuid(report_id, 'report')
    deleted, error = db_module.delete_report(report_id)
    if error:
        _abort_for(error, 'delete report')
    if not deleted:
        abort(404, description='Report not found')
    return jsonify({'message': 'Report deleted successfully', 'id': deleted.get('id')})


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@records_bp.route('/settings', methods=['GET'])
@login_required
def list_settings():
    rows, error = db_module.fetch_settings(request.args.get('category'))
    if error:
        _abort_for(error, 'list settings')
    return jsonify({'data': rows, 'map': {row.get('key'): row.get('value') for row in rows}})


@records_bp.route('/settings/<key>', methods=['GET'])
@login_required
def get_setting(key):
    setting, error = db_module.fetch_setting(key)
    if error:
        _abort_for(error, 'fetch setting')
    if not setting:
        abort(404, description='Setting not found')
    return jsonify(setting)


@records_bp.route('/settings', methods=['POST'])
@supervisor_required
def save_setting():
    payload = _json_body()
    key = (payload.get('key') or '').strip()
    if not key:
        abort(400, description='Setting key is required')

    existing, error = db_module.fetch_setting(key)
    if error:
        _abort_for(error, 'fetch setting')

    values = {
        'value': payload.get('value'),
        'description': payload.get('description'),
        'category': payload.get('category') or 'general',
        'data_type': payload.get('data_type') or 'string',
    }
    saved, error = db_module.upsert_setting(key, values)
    if error:
        _abort_for(error, 'save setting')
    return jsonify(saved), (200 if existing else 201)


@records_bp.route('/settings/<key>', methods=['PUT'])
@supervisor_required
def update_setting(key):
    payload = _json_body()
    if 'value' not in payload:
        abort(400, description='No valid fields provided for update')

    updated, error = db_module.update_setting(key, {'value': payload.get('value')})
    if error:
        _abort_for(error, 'update setting')
    if not updated:
        abort(404, description='Setting not found')
    return jsonify(updated)


@records_bp.route('/settings/<key>', methods=['DELETE'])
@supervisor_required
def delete_setting(key):
    deleted, error = db_module.delete_setting(key)
    if error:
        _abort_for(error, 'delete setting')
    if not deleted:
        abort(404, description='Setting not found')
    return jsonify({'message': 'Setting deleted successfully', 'key': key})


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@records_bp.route('/sessions/<key>', methods=['GET'])
@login_required
def get_session(key):
    record, error = db_module.fetch_session(key)
    if error:
        _abort_for(error, 'fetch session')
    if not record:
        abort(404, description='Session not found or expired')
    return jsonify(record)


@records_bp.route('/sessions', methods=['POST'])
@login_required
def save_session():
    payload = _json_body()
    session_key = payload.get('session_key')
    if not session_key:
        abort(400, description='Session key is required')

    (record, created), error = db_module.save_session(
        session_key,
        user_id=payload.get('user_id'),
        data=payload.get('data'),
        expires_at=payload.get('expires_at'),
    )
    if error:
        _abort_for(error, 'save session')
    return jsonify(record), (201 if created else 200)


@records_bp.route('/sessions/<key>', methods=['DELETE'])
@login_required
def delete_session(key):
    deleted, error = db_module.delete_session(key)
    if error:
        _abort_for(error, 'delete session')
    if not deleted:
        abort(404, description='Session not found or expired')
    return jsonify({'message': 'Session deleted successfully', 'session_key': key})


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


@records_bp.route('/signatures', methods=['GET'])
@login_required
def list_signatures():
    rows, error = db_module.fetch_signatures(
        active=_bool_arg('active'), role=request.args.get('role')
    )
    if error:
        _abort_for(error, 'list signatures')
    return jsonify({'data': rows})


@records_bp.route('/signatures/<signature_id>', methods=['GET'])
@login_required
def get_signature(signature_id):
    _require_uuid(signature_id, 'signature')
    signature, error = db_module.fetch_signature(signature_id)
    if error:
        _abort_for(error, 'fetch signature')
    if not signature:
        abort(404, description='Signature not found')
    return jsonify(signature)


@records_bp.route('/signatures', methods=['POST'])
@supervisor_required
def create_signature():
    payload = _json_body()
    if not payload.get('name') or not payload.get('role'):
        abort(400, description='Name and role are required')

    created, error = db_module.insert_signature(
        db_module.writable_fields('signatures', payload)
    )
    if error:
        _abort_for(error, 'create signature')
    return jsonify(created), 201


@records_bp.route('/signatures/<signature_id>', methods=['PUT'])
@supervisor_required
def update_signature(signature_id):
    _require_uuid(signature_id, 'signature')
    updates = db_module.writable_fields('signatures', _json_body())
    if not updates:
        abort(400, description='No valid fields provided for update')

    updated, error = db_module.update_signature(signature_id, updates)
    if error:
        _abort_for(error, 'update signature')
    if not updated:
        abort(404, description='Signature not found')
    return jsonify(updated)


@records_bp.route('/signatures/<signature_id>', methods=['DELETE'])
@supervisor_required
def delete_signature(signature_id):
    _require_uuid(signature_id, 'signature')
    deleted, error = db_module.delete_signature(signature_id)
    if error:
        _abort_for(error, 'delete signature')
    if not deleted:
        abort(404, description='Signature not found')
    return jsonify({'message': 'Signature deleted successfully', 'id': deleted.get('id')})


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


@records_bp.route('/analytics/reports', methods=['GET'])
@login_required
def report_analytics():
    rows, error = db_module.fetch_reports(
        _report_filters(),
        date_from=request.args.get('start_date'),
        date_to=request.args.get('end_date'),
    )
    if error:
        _abort_for(error, 'load report analytics')
    return jsonify(summarize_reports(rows))
