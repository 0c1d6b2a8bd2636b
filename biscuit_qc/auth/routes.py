import os
from functools import wraps

from flask import Blueprint, abort, current_app, jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from biscuit_qc import db as db_module

auth_bp = Blueprint('auth', __name__)

ENVIRONMENT_ROLES = {
    'OPERATOR': 'OPERATOR_PASSWORD',
    'SUPERVISOR': 'SUPERVISOR_PASSWORD',
    'ADMIN': 'ADMIN_PASSWORD',
}


def _load_environment_users() -> dict[str, str]:
    return {
        role: generate_password_hash(os.environ[env_key])
        for role, env_key in ENVIRONMENT_ROLES.items()
        if os.environ.get(env_key)
    }


ENVIRONMENT_USERS = _load_environment_users()


def _fetch_supabase_user(username: str) -> tuple[dict | None, str | None]:
    supabase = current_app.config.get('SUPABASE')
    if not supabase or not hasattr(supabase, 'table'):
        return None, None

    try:
        return db_module.fetch_app_user_credentials(username)
    except Exception as exc:  # pragma: no cover - defensive guard
        current_app.logger.warning("Failed to fetch Supabase credentials: %s", exc)
        return None, str(exc)


def current_user() -> dict[str, str | None] | None:
    if 'username' not in session:
        return None
    return {
        'user_id': session.get('user_id'),
        'username': session.get('username'),
        'role': session.get('role') or session.get('username'),
    }


def login_required(view):
    @wraps(view)
    def wrapped_view(**kwargs):
        if 'username' not in session:
            abort(401, description='Authentication required')
        return view(**kwargs)

    return wrapped_view


def role_required(allowed_roles: set[str]):
    def decorator(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if 'username' not in session:
                abort(401, description='Authentication required')
            role = session.get('role') or session.get('username')
            if role not in allowed_roles:
                abort(403, description='Insufficient permissions')
            return view(**kwargs)

        return wrapped_view

    return decorator


supervisor_required = role_required({'SUPERVISOR', 'ADMIN'})


@auth_bp.route('/login', methods=['POST'])
def login():
    payload = request.get_json(silent=True) or request.form
    submitted_username = (payload.get('username') or '').strip()
    password = payload.get('password') or ''
    normalized_username = submitted_username.upper()

    supabase_user = None
    supabase_error = None
    if submitted_username:
        supabase_user, supabase_error = _fetch_supabase_user(submitted_username)

    if supabase_user and supabase_user.get('password_hash'):
        if check_password_hash(supabase_user['password_hash'], password):
            session['user_id'] = supabase_user.get('id')
            session['username'] = (
                supabase_user.get('display_name')
                or supabase_user.get('username')
                or submitted_username
            )
            session['role'] = (supabase_user.get('role') or 'OPERATOR').upper()
            return jsonify({'user': current_user()})
    elif supabase_error:
        current_app.logger.warning(
            'Supabase user lookup failed; falling back to built-in credentials: %s',
            supabase_error,
        )

    if (
        normalized_username in ENVIRONMENT_USERS
        and check_password_hash(ENVIRONMENT_USERS[normalized_username], password)
    ):
        session['username'] = submitted_username or normalized_username
        session['role'] = normalized_username
        return jsonify({'user': current_user()})

    current_app.logger.info('Rejected login for %r', submitted_username)
    return jsonify({'error': 'Invalid credentials.'}), 401


@auth_bp.route('/logout', methods=['GET', 'POST'])
def logout():
    session.pop('username', None)
    session.pop('role', None)
    session.pop('user_id', None)
    return jsonify({'status': 'logged_out'})


@auth_bp.route('/api/me')
@login_required
def me():
    return jsonify({'user': current_user()})
