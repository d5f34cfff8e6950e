"""Viewing context: whose dashboard the signed-in account is looking at."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from . import db
from .errors import TransientStoreError, UnauthorizedError
from .permissions import AccessResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DashboardSession:
    """Request-scoped identity pair passed into every resolver/engine call."""

    user_id: str
    viewing_user_id: str

    @property
    def viewing_own_dashboard(self) -> bool:
        return self.viewing_user_id == self.user_id

    @property
    def owner_id(self) -> str:
        """Identity whose rows every data query is scoped to."""
        return self.viewing_user_id


class MetricsCache:
    """Derived-data cache keyed by (name, viewer, target, params).

    Holds at most ``max_entries`` values and evicts the least recently used
    one first.  A value whose computation overlapped an invalidation is
    returned to its caller but not stored.
    """

    def __init__(self, max_entries: int = 256) -> None:
        self._entries: OrderedDict[tuple, Any] = OrderedDict()
        self._max_entries = max(1, int(max_entries))
        self._epoch = 0
        self._lock = threading.Lock()

    @staticmethod
    def _key(name: str, session: DashboardSession, params: Hashable) -> tuple:
        return (name, session.user_id, session.viewing_user_id, params)

    def get_or_compute(
        self,
        name: str,
        session: DashboardSession,
        compute: Callable[[], Any],
        params: Hashable = (),
    ) -> Any:
        key = self._key(name, session, params)
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return self._entries[key]
            epoch = self._epoch
        value = compute()
        with self._lock:
            if self._epoch != epoch:
                logger.debug("Not caching %s for %s: invalidated while computing", name, session)
                return value
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return value

    def keys(self) -> list[tuple]:
        with self._lock:
            return list(self._entries)

    def _drop(self, position: int, identity: str) -> int:
        with self._lock:
            self._epoch += 1
            stale = [key for key in self._entries if key[position] == identity]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def invalidate_viewer(self, user_id: str) -> int:
        """Drop everything computed for ``user_id``, whatever the target."""
        return self._drop(1, user_id)

    def invalidate_target(self, owner_id: str) -> int:
        """Drop everything computed from ``owner_id``'s data."""
        return self._drop(2, owner_id)

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()


def load_session(user_id: str, resolver: AccessResolver) -> DashboardSession:
    """Build the session for ``user_id`` from its persisted viewing context.

    Falls back to the account's own dashboard when nothing is stored, the
    store cannot be read, or access to the stored target has been revoked.
    """

    user_id = str(user_id)
    target, error = db.fetch_viewing_context(user_id)
    if error:
        logger.warning("Could not load viewing context for %s: %s", user_id, error)
        return DashboardSession(user_id, user_id)
    if not target or str(target) == user_id:
        return DashboardSession(user_id, user_id)

    try:
        snapshot = resolver.get(user_id)
    except TransientStoreError as exc:
        logger.warning("Could not verify dashboard access for %s: %s", user_id, exc)
        return DashboardSession(user_id, user_id)

    if str(target) not in snapshot.dashboard_ids():
        logger.info("Access from %s to %s no longer granted; using own dashboard", user_id, target)
        return DashboardSession(user_id, user_id)
    return DashboardSession(user_id, str(target))


def switch_dashboard(
    session: DashboardSession,
    target_user_id: str,
    resolver: AccessResolver,
    cache: MetricsCache,
) -> DashboardSession:
    """Persist ``target_user_id`` as the viewing context and reset derived data.

    Raises:
        UnauthorizedError: when the target is not one of the available
            dashboards.
        TransientStoreError: when the context cannot be saved.
    """

    target = str(target_user_id or "")
    if not target:
        raise UnauthorizedError("Choose a dashboard to view.")

    if target != session.user_id:
        snapshot = resolver.get(session.user_id)
        if target not in snapshot.dashboard_ids():
            snapshot = resolver.refresh(session.user_id)
        if target not in snapshot.dashboard_ids():
            raise UnauthorizedError("You do not have access to that dashboard.")

    _, error = db.upsert_viewing_context(session.user_id, target)
    if error:
        raise TransientStoreError(error)

    dropped = cache.invalidate_viewer(session.user_id)
    logger.info(
        "User %s switched dashboard %s -> %s (%d cached entries dropped)",
        session.user_id,
        session.viewing_user_id,
        target,
        dropped,
    )
    return DashboardSession(session.user_id, target)


__all__ = ["DashboardSession", "MetricsCache", "load_session", "switch_dashboard"]
