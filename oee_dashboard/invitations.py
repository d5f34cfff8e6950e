"""Invitation lifecycle: create, accept, reject, amend and remove.

State machine::

    pending --accept (grantee)--> accepted
    pending --reject (grantee)--> rejected

Accepted and rejected are terminal; removal is a hard delete by the grantor
at any status.  The role may only be amended while the invitation is still
pending.  Every successful mutation refreshes the acting account's
permissions and drops the counterpart's cached snapshot.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from . import db
from .context import DashboardSession
from .errors import (
    ConflictError,
    NotFoundError,
    TransientStoreError,
    UnauthorizedError,
    ValidationError,
)
from .permissions import (
    INVITATION_ROLES,
    AccessResolver,
    InvitationStatus,
    PermissionsSnapshot,
    invitation_status,
    parse_role,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load(invitation_id: str) -> dict:
    invitation, error = db.fetch_invitation(invitation_id)
    if error:
        raise TransientStoreError(error)
    if not invitation:
        raise NotFoundError("Invitation not found.")
    return invitation


def _require_grantee(session: DashboardSession, invitation: dict) -> None:
    if str(invitation.get("invited_user_id")) != session.user_id:
        raise UnauthorizedError("Only the invited account can answer this invitation.")


def _require_grantor(session: DashboardSession, invitation: dict) -> None:
    if str(invitation.get("admin_user_id")) != session.user_id:
        raise UnauthorizedError("Only the account that sent this invitation can change it.")


def _require_pending(invitation: dict) -> None:
    status = invitation_status(invitation)
    if status is not InvitationStatus.PENDING:
        label = status.value if status else invitation.get("status")
        raise ConflictError(f"Invitation is already {label}.")


def create_invitation(
    session: DashboardSession,
    email: str,
    role: str,
    resolver: AccessResolver,
) -> dict:
    """Invite the account registered under ``email`` to the caller's dashboard.

    Raises:
        ValidationError: missing email, a role outside the invitation roles,
            or an email that resolves to the caller.
        NotFoundError: no account uses ``email``.
        ConflictError: an invitation to that account is pending or accepted.
    """

    email = (email or "").strip()
    if not email:
        raise ValidationError("Enter the email address of the account to invite.")
    invite_role = parse_role(role, INVITATION_ROLES)

    grantee_id, error = db.find_identity_by_email(email)
    if error:
        raise TransientStoreError(error)
    if not grantee_id:
        raise NotFoundError(f"No account found for {email}.")
    if grantee_id == session.user_id:
        raise ValidationError("You cannot invite yourself.")

    existing, error = db.fetch_invitations_between(session.user_id, grantee_id)
    if error:
        raise TransientStoreError(error)
    statuses = {invitation_status(row) for row in existing or []}
    if InvitationStatus.PENDING in statuses:
        raise ConflictError("An invitation is already pending for this account.")
    if InvitationStatus.ACCEPTED in statuses:
        raise ConflictError("This account already has access to your dashboard.")

    record = {
        "admin_user_id": session.user_id,
        "invited_user_id": grantee_id,
        "role": invite_role.value,
        "status": InvitationStatus.PENDING.value,
        "invited_at": _now(),
    }
    inserted, error = db.insert_invitation(record)
    if error:
        raise TransientStoreError(error)

    logger.info(
        "User %s invited %s as %s", session.user_id, grantee_id, invite_role.value
    )
    resolver.refresh(session.user_id)
    resolver.invalidate(grantee_id)
    return (inserted or [record])[0]


def _answer(
    session: DashboardSession,
    invitation_id: str,
    status: InvitationStatus,
    resolver: AccessResolver,
) -> PermissionsSnapshot:
    invitation = _load(invitation_id)
    _require_grantee(session, invitation)
    _require_pending(invitation)

    accepted_at = _now() if status is InvitationStatus.ACCEPTED else None
    updated, error = db.update_invitation_status(
        invitation_id, session.user_id, status.value, accepted_at=accepted_at
    )
    if error:
        raise TransientStoreError(error)
    if not updated:
        raise NotFoundError("Invitation not found.")

    logger.info("User %s %s invitation %s", session.user_id, status.value, invitation_id)
    resolver.invalidate(invitation.get("admin_user_id"))
    return resolver.refresh(session.user_id)


def accept_invitation(
    session: DashboardSession, invitation_id: str, resolver: AccessResolver
) -> PermissionsSnapshot:
    return _answer(session, invitation_id, InvitationStatus.ACCEPTED, resolver)


def reject_invitation(
    session: DashboardSession, invitation_id: str, resolver: AccessResolver
) -> PermissionsSnapshot:
    return _answer(session, invitation_id, InvitationStatus.REJECTED, resolver)


def update_invitation_role(
    session: DashboardSession,
    invitation_id: str,
    role: str,
    resolver: AccessResolver,
) -> PermissionsSnapshot:
    """Change the role on a pending invitation the caller sent."""

    new_role = parse_role(role, INVITATION_ROLES)
    invitation = _load(invitation_id)
    _require_grantor(session, invitation)
    _require_pending(invitation)

    _, error = db.update_invitation_role(invitation_id, session.user_id, new_role.value)
    if error:
        raise TransientStoreError(error)

    logger.info("User %s set invitation %s role to %s", session.user_id, invitation_id, new_role.value)
    resolver.invalidate(invitation.get("invited_user_id"))
    return resolver.refresh(session.user_id)


def remove_invitation(
    session: DashboardSession, invitation_id: str, resolver: AccessResolver
) -> PermissionsSnapshot:
    """Delete an invitation the caller sent, whatever its status."""

    invitation = _load(invitation_id)
    _require_grantor(session, invitation)

    _, error = db.delete_invitation(invitation_id, session.user_id)
    if error:
        raise TransientStoreError(error)

    logger.info("User %s removed invitation %s", session.user_id, invitation_id)
    resolver.invalidate(invitation.get("invited_user_id"))
    return resolver.refresh(session.user_id)


__all__ = [
    "create_invitation",
    "accept_invitation",
    "reject_invitation",
    "update_invitation_role",
    "remove_invitation",
]
