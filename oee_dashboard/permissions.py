"""Dashboard sharing: roles, invitations and who may view whose data.

An account always owns its own dashboard.  Other accounts ("grantees") reach
it through an invitation sent by the owner ("grantor"/admin); only
``accepted`` invitations grant access.  Everything here is computed from the
invitation rows for one identity, which :class:`AccessResolver` caches and
refreshes after each mutation.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from . import db
from .errors import TransientStoreError, ValidationError

if TYPE_CHECKING:
    from .context import DashboardSession

logger = logging.getLogger(__name__)


class Role(str, Enum):
    VIEWER = "viewer"
    OPERATOR = "operator"
    SUPERVISOR = "supervisor"
    MANAGER = "manager"
    ADMIN = "admin"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# Roles a grantor may hand out, and roles a profile may declare.
INVITATION_ROLES = frozenset({Role.VIEWER, Role.OPERATOR, Role.SUPERVISOR})
PROFILE_ROLES = frozenset({Role.OPERATOR, Role.SUPERVISOR, Role.MANAGER, Role.ADMIN})

ACTIVE_STATUSES = frozenset({InvitationStatus.PENDING, InvitationStatus.ACCEPTED})


def parse_role(value: Any, allowed: Iterable[Role] | None = None) -> Role:
    """Return ``value`` as a :class:`Role` or raise :class:`ValidationError`."""

    text = str(value or "").strip().lower()
    try:
        role = Role(text)
    except ValueError:
        raise ValidationError(f"Unknown role '{value}'.") from None
    if allowed is not None and role not in allowed:
        choices = ", ".join(sorted(item.value for item in allowed))
        raise ValidationError(f"Role '{role.value}' is not allowed here. Choose one of: {choices}.")
    return role


def invitation_status(row: dict) -> InvitationStatus | None:
    try:
        return InvitationStatus(str(row.get("status") or "").lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class Capabilities:
    can_edit_data: bool = False
    can_delete_account: bool = False
    can_manage_users: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "canEditData": self.can_edit_data,
            "canDeleteAccount": self.can_delete_account,
            "canManageUsers": self.can_manage_users,
        }


def capabilities_for(session: "DashboardSession") -> Capabilities:
    """Capabilities only exist on the account's own dashboard.

    The role held on someone else's dashboard does not matter here.
    """

    own = bool(session.user_id) and session.viewing_user_id == session.user_id
    return Capabilities(can_edit_data=own, can_delete_account=own, can_manage_users=own)


@dataclass
class PermissionsSnapshot:
    user_id: str
    profile: dict | None = None
    received: list[dict] = field(default_factory=list)
    sent: list[dict] = field(default_factory=list)
    available_dashboards: list[dict] = field(default_factory=list)

    def dashboard_ids(self) -> list[str]:
        return [str(item.get("id")) for item in self.available_dashboards]

    def pending_received(self) -> list[dict]:
        return [row for row in self.received if invitation_status(row) is InvitationStatus.PENDING]

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "profile": self.profile,
            "received_invitations": self.received,
            "sent_invitations": self.sent,
            "pending_count": len(self.pending_received()),
            "available_dashboards": self.available_dashboards,
        }


def accepted_grantor_ids(received: Iterable[dict]) -> list[str]:
    ids: list[str] = []
    for row in received or []:
        if invitation_status(row) is not InvitationStatus.ACCEPTED:
            continue
        admin_id = str(row.get("admin_user_id") or "")
        if admin_id and admin_id not in ids:
            ids.append(admin_id)
    return ids


def resolve_available_dashboards(
    user_id: str,
    self_profile: dict | None,
    received: Iterable[dict],
    profiles_by_id: dict[str, dict],
) -> list[dict]:
    """Return self followed by every grantor with an accepted invitation.

    Grantors whose profile could not be loaded are left out.
    """

    dashboards = [self_profile or {"id": user_id}]
    for admin_id in accepted_grantor_ids(received):
        if admin_id == str(user_id):
            continue
        profile = profiles_by_id.get(admin_id)
        if profile:
            dashboards.append(profile)
    return dashboards


def effective_role(snapshot: PermissionsSnapshot, target_user_id: str | None) -> Role:
    """Return the role ``snapshot.user_id`` holds on ``target_user_id``'s dashboard.

    Owners are admins of their own dashboard.  Without an accepted invitation
    from the target the answer is ``viewer``; it is never escalated.
    """

    if not target_user_id or str(target_user_id) == str(snapshot.user_id):
        return Role.ADMIN

    for row in snapshot.received:
        if str(row.get("admin_user_id")) != str(target_user_id):
            continue
        if invitation_status(row) is not InvitationStatus.ACCEPTED:
            continue
        try:
            return Role(str(row.get("role") or "").lower())
        except ValueError:
            logger.warning(
                "Invitation %s carries unknown role %r; treating as viewer",
                row.get("id"),
                row.get("role"),
            )
            return Role.VIEWER
    return Role.VIEWER


def _attach_profiles(rows: list[dict], key: str, target: str, profiles_by_id: dict[str, dict]) -> list[dict]:
    attached = []
    for row in rows:
        enriched = dict(row)
        profile = profiles_by_id.get(str(row.get(key)))
        enriched[target] = (
            {
                "id": profile.get("id"),
                "email": profile.get("email"),
                "user_name": profile.get("user_name"),
            }
            if profile
            else None
        )
        attached.append(enriched)
    return attached


def build_snapshot(user_id: str) -> PermissionsSnapshot:
    """Load invitations and counterpart profiles for ``user_id``.

    Raises:
        TransientStoreError: when the invitation rows cannot be loaded.
    """

    received, error = db.fetch_invitations("grantee", user_id)
    if error:
        raise TransientStoreError(error)
    sent, error = db.fetch_invitations("grantor", user_id)
    if error:
        raise TransientStoreError(error)
    received = received or []
    sent = sent or []

    counterpart_ids = {str(row.get("admin_user_id")) for row in received}
    counterpart_ids |= {str(row.get("invited_user_id")) for row in sent}
    counterpart_ids.add(str(user_id))

    profiles, error = db.fetch_profiles(counterpart_ids)
    if error:
        logger.warning("Profile lookup failed for %s: %s", user_id, error)
        profiles = []
    profiles_by_id = {str(profile.get("id")): profile for profile in profiles or []}
    self_profile = profiles_by_id.get(str(user_id))

    return PermissionsSnapshot(
        user_id=str(user_id),
        profile=self_profile,
        received=_attach_profiles(received, "admin_user_id", "admin_profile", profiles_by_id),
        sent=_attach_profiles(sent, "invited_user_id", "invited_profile", profiles_by_id),
        available_dashboards=resolve_available_dashboards(
            str(user_id), self_profile, received, profiles_by_id
        ),
    )


class _IdentitySlot:
    """Refresh lock and invalidation counter for one identity.

    A slot only exists while some thread is refreshing that identity.
    """

    __slots__ = ("lock", "users", "generation")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0
        self.generation = 0


class AccessResolver:
    """Per-identity cache of :class:`PermissionsSnapshot` objects.

    Refreshes for the same identity run one at a time.  An :meth:`invalidate`
    that lands while a refresh is loading makes that refresh load again
    rather than store rows read before the change.
    """

    def __init__(self, loader=build_snapshot) -> None:
        self._loader = loader
        self._snapshots: dict[str, PermissionsSnapshot] = {}
        self._slots: dict[str, _IdentitySlot] = {}
        self._guard = threading.Lock()

    @contextmanager
    def _slot(self, user_id: str):
        with self._guard:
            slot = self._slots.get(user_id)
            if slot is None:
                slot = self._slots[user_id] = _IdentitySlot()
            slot.users += 1
        try:
            with slot.lock:
                yield slot
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._slots[user_id]

    def get(self, user_id: str) -> PermissionsSnapshot:
        key = str(user_id)
        with self._guard:
            snapshot = self._snapshots.get(key)
        if snapshot is not None:
            return snapshot
        return self.refresh(key)

    def refresh(self, user_id: str) -> PermissionsSnapshot:
        key = str(user_id)
        with self._slot(key) as slot:
            while True:
                with self._guard:
                    generation = slot.generation
                snapshot = self._loader(key)
                with self._guard:
                    if slot.generation == generation:
                        self._snapshots[key] = snapshot
                        return snapshot
                logger.debug("Permissions for %s changed during refresh; reloading", key)

    def invalidate(self, user_id: str | None) -> None:
        if not user_id:
            return
        key = str(user_id)
        with self._guard:
            self._snapshots.pop(key, None)
            slot = self._slots.get(key)
            if slot is not None:
                slot.generation += 1

    def tracked_identities(self) -> int:
        """Number of identities with a cached snapshot or a refresh running."""
        with self._guard:
            return len(self._snapshots.keys() | self._slots.keys())


__all__ = [
    "Role",
    "InvitationStatus",
    "INVITATION_ROLES",
    "PROFILE_ROLES",
    "Capabilities",
    "PermissionsSnapshot",
    "AccessResolver",
    "parse_role",
    "capabilities_for",
    "resolve_available_dashboards",
    "effective_role",
    "build_snapshot",
]
