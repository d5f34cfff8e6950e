from functools import wraps

from flask import (
    Blueprint,
    current_app,
    g,
    jsonify,
    request,
    session,
)

from oee_dashboard import db as db_module
from oee_dashboard.context import DashboardSession, load_session
from oee_dashboard.errors import TransientStoreError, UnauthorizedError
from oee_dashboard.validators import validate_signup

auth_bp = Blueprint('auth', __name__)


def request_data() -> dict:
    """Return the JSON body or submitted form fields of the current request."""

    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


def get_access_resolver():
    return current_app.config['ACCESS_RESOLVER']


def get_metrics_cache():
    return current_app.config['METRICS_CACHE']


def login_required(view):
    @wraps(view)
    def wrapped_view(*args, **kwargs):
        if not session.get('user_id'):
            return jsonify({'error': 'Authentication required'}), 401
        return view(*args, **kwargs)

    return wrapped_view


def current_dashboard_session() -> DashboardSession:
    """Return the viewing context for this request, loading it once."""

    dashboard_session = getattr(g, 'dashboard_session', None)
    if dashboard_session is None:
        user_id = session.get('user_id')
        if not user_id:
            raise UnauthorizedError('Authentication required')
        dashboard_session = load_session(user_id, get_access_resolver())
        g.dashboard_session = dashboard_session
    return dashboard_session


def owner_required(view):
    """Allow the view only while the account is on its own dashboard."""

    @wraps(view)
    def wrapped_view(*args, **kwargs):
        if not current_dashboard_session().viewing_own_dashboard:
            raise UnauthorizedError(
                "You can only change data on your own dashboard."
            )
        return view(*args, **kwargs)

    return wrapped_view


@auth_bp.route('/login', methods=['POST'])
def login():
    data = request_data()
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''
    if not email or not password:
        return jsonify({'error': 'Email and password are required.'}), 400

    account, error = db_module.authenticate_user(email, password)
    if error:
        current_app.logger.warning("Sign in failed for %s: %s", email, error)
    if not account or not account.get('id'):
        return jsonify({'error': 'Invalid credentials.'}), 401

    created, error = db_module.ensure_profile(account)
    if error:
        current_app.logger.warning("Could not check profile for %s: %s", account['id'], error)
    elif created:
        current_app.logger.info("Created missing profile for %s", account['id'])

    session.clear()
    session['user_id'] = str(account['id'])
    session['email'] = account.get('email') or email
    return jsonify({'user_id': session['user_id'], 'email': session['email']})


@auth_bp.route('/signup', methods=['POST'])
def signup():
    details = validate_signup(request_data())
    account, error = db_module.register_user(
        details['email'],
        details['password'],
        user_name=details['user_name'],
        company_name=details['company_name'],
    )
    if not account:
        raise TransientStoreError(error or 'Sign up failed.')
    if error:
        # The Auth account exists; the profile is created again at first login.
        current_app.logger.warning("Profile creation failed for %s: %s", account.get('id'), error)
        raise TransientStoreError(error)
    return jsonify({'user_id': account.get('id'), 'email': account.get('email')}), 201


@auth_bp.route('/logout', methods=['POST'])
def logout():
    user_id = session.pop('user_id', None)
    session.pop('email', None)
    if user_id:
        get_metrics_cache().invalidate_viewer(str(user_id))
    return jsonify({'ok': True})
