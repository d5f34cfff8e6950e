from flask import Blueprint, current_app, g, jsonify

from oee_dashboard import invitations
from oee_dashboard.auth.routes import (
    current_dashboard_session,
    get_access_resolver,
    get_metrics_cache,
    login_required,
    owner_required,
    request_data,
)
from oee_dashboard.context import switch_dashboard
from oee_dashboard.db import change_password, fetch_profile, update_profile
from oee_dashboard.errors import NotFoundError, TransientStoreError
from oee_dashboard.permissions import (
    INVITATION_ROLES,
    PROFILE_ROLES,
    capabilities_for,
    effective_role,
)
from oee_dashboard.validators import validate_password, validate_profile

sharing_bp = Blueprint('sharing', __name__)


def _permissions_payload(snapshot=None) -> dict:
    dashboard_session = current_dashboard_session()
    snapshot = snapshot or get_access_resolver().get(dashboard_session.user_id)
    return {
        **snapshot.as_dict(),
        'viewing_user_id': dashboard_session.viewing_user_id,
        'role': effective_role(snapshot, dashboard_session.viewing_user_id).value,
        'capabilities': capabilities_for(dashboard_session).as_dict(),
        'invitation_roles': sorted(role.value for role in INVITATION_ROLES),
    }


@sharing_bp.route('/permissions', methods=['GET'])
@login_required
def permissions_overview():
    return jsonify(_permissions_payload())


@sharing_bp.route('/permissions/refresh', methods=['POST'])
@login_required
def refresh_permissions():
    dashboard_session = current_dashboard_session()
    snapshot = get_access_resolver().refresh(dashboard_session.user_id)
    return jsonify(_permissions_payload(snapshot))


@sharing_bp.route('/dashboards/switch', methods=['POST'])
@login_required
def switch_viewed_dashboard():
    data = request_data()
    target = data.get('user_id') or data.get('viewing_as_user_id')
    g.dashboard_session = switch_dashboard(
        current_dashboard_session(),
        target,
        get_access_resolver(),
        get_metrics_cache(),
    )
    return jsonify(_permissions_payload())


@sharing_bp.route('/invitations', methods=['POST'])
@login_required
@owner_required
def send_invitation():
    data = request_data()
    invitation = invitations.create_invitation(
        current_dashboard_session(),
        data.get('email'),
        data.get('role') or 'viewer',
        get_access_resolver(),
    )
    return jsonify({'invitation': invitation, **_permissions_payload()}), 201


@sharing_bp.route('/invitations/<invitation_id>/accept', methods=['POST'])
@login_required
def accept_invitation(invitation_id):
    snapshot = invitations.accept_invitation(
        current_dashboard_session(), invitation_id, get_access_resolver()
    )
    return jsonify(_permissions_payload(snapshot))


@sharing_bp.route('/invitations/<invitation_id>/reject', methods=['POST'])
@login_required
def reject_invitation(invitation_id):
    snapshot = invitations.reject_invitation(
        current_dashboard_session(), invitation_id, get_access_resolver()
    )
    return jsonify(_permissions_payload(snapshot))


@sharing_bp.route('/invitations/<invitation_id>', methods=['PATCH'])
@login_required
@owner_required
def change_invitation_role(invitation_id):
    snapshot = invitations.update_invitation_role(
        current_dashboard_session(),
        invitation_id,
        request_data().get('role'),
        get_access_resolver(),
    )
    return jsonify(_permissions_payload(snapshot))


@sharing_bp.route('/invitations/<invitation_id>', methods=['DELETE'])
@login_required
@owner_required
def delete_invitation(invitation_id):
    snapshot = invitations.remove_invitation(
        current_dashboard_session(), invitation_id, get_access_resolver()
    )
    return jsonify(_permissions_payload(snapshot))


@sharing_bp.route('/settings/profile', methods=['GET'])
@login_required
def get_profile():
    user_id = current_dashboard_session().user_id
    profile, error = fetch_profile(user_id)
    if error:
        raise TransientStoreError(error)
    if not profile:
        raise NotFoundError('Profile not found.')
    return jsonify(
        {
            'profile': profile,
            'profile_roles': sorted(role.value for role in PROFILE_ROLES),
        }
    )


@sharing_bp.route('/settings/profile', methods=['PUT'])
@login_required
def save_profile():
    user_id = current_dashboard_session().user_id
    updates = validate_profile(request_data())
    updated, error = update_profile(user_id, updates)
    if error:
        raise TransientStoreError(error)
    get_access_resolver().invalidate(user_id)
    return jsonify({'profile': (updated or [updates])[0]})


@sharing_bp.route('/settings/password', methods=['POST'])
@login_required
def save_password():
    data = request_data()
    password = validate_password(
        str(data.get('new_password') or ''),
        str(data.get('confirm_password') or ''),
    )
    user_id = current_dashboard_session().user_id
    _, error = change_password(user_id, password)
    if error:
        raise TransientStoreError(error)
    current_app.logger.info("Password changed for %s", user_id)
    return jsonify({'ok': True})
