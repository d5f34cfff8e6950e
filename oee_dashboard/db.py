from datetime import date, datetime, timezone
from typing import Any, Iterable, Tuple

from flask import current_app

from config.supabase_schema import (
    column_name,
    from_supabase_row,
    function_name,
    table_name,
    to_supabase_payload,
)

from .errors import ConflictError

UNIQUE_VIOLATION = "23505"

INVITATION_DIRECTIONS = {
    "grantor": "admin_user_id",
    "grantee": "invited_user_id",
}


def _get_client():
    """Return the configured Supabase client."""
    return current_app.config["SUPABASE"]


def _ensure_supabase_client() -> Tuple[Any, str | None]:
    """Return the configured Supabase client or an explanatory error.

    Returns:
        tuple: (client, error). When Supabase is unavailable the client will be
        ``None`` and ``error`` will contain a message explaining the failure.
    """

    supabase = current_app.config.get("SUPABASE")
    if not supabase or not hasattr(supabase, "table"):
        return None, (
            "Supabase client is not configured. Set SUPABASE_URL and SUPABASE_"
            "SERVICE_KEY to enable the production dashboard."
        )
    return supabase, None


def _auth_client():
    """Return the client used for Supabase Auth calls.

    Signing in on the data client would swap its service credentials for the
    user's token, so auth goes through a separate client when one is set.
    """

    return current_app.config.get("SUPABASE_AUTH") or _get_client()


def _rows(table_identifier: str, response) -> list[dict]:
    data = getattr(response, "data", None) or []
    if isinstance(data, dict):
        data = [data]
    return [from_supabase_row(table_identifier, row) for row in data]


def _is_unique_violation(exc: Exception) -> bool:
    if getattr(exc, "code", None) == UNIQUE_VIOLATION:
        return True
    for entry in getattr(exc, "args", []) or []:
        if isinstance(entry, dict) and entry.get("code") == UNIQUE_VIOLATION:
            return True
    return UNIQUE_VIOLATION in str(exc)


def _iso(value: date | datetime | str | None) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Authentication (Supabase Auth)
# ---------------------------------------------------------------------------


def authenticate_user(email: str, password: str) -> tuple[dict | None, str | None]:
    """Sign ``email`` in and return ``{"id", "email", "metadata"}`` for the account."""

    try:
        response = _auth_client().auth.sign_in_with_password(
            {"email": email, "password": password}
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Sign in failed: {exc}"

    user = getattr(response, "user", None)
    if not user:
        return None, None
    return {
        "id": getattr(user, "id", None),
        "email": getattr(user, "email", email),
        "metadata": dict(getattr(user, "user_metadata", None) or {}),
    }, None


def _new_profile(account: dict, user_name: str | None, company_name: str | None) -> dict:
    return {
        "id": account["id"],
        "email": account["email"],
        "user_name": user_name or (account["email"] or "").split("@")[0],
        "company_name": company_name or "",
        "role": "operator",
        "updated_at": _now(),
    }


def ensure_profile(account: dict) -> tuple[bool, str | None]:
    """Create the ``profiles`` row for ``account`` when it is missing.

    Names come from the Auth user metadata written at sign-up.  Returns
    ``(created, error)``.
    """

    existing, error = fetch_profile(account["id"])
    if error:
        return False, error
    if existing:
        return False, None

    metadata = account.get("metadata") or {}
    _, error = upsert_profile(
        _new_profile(account, metadata.get("user_name"), metadata.get("company_name"))
    )
    if error:
        return False, error
    return True, None


def register_user(
    email: str, password: str, *, user_name: str, company_name: str
) -> tuple[dict | None, str | None]:
    """Create a Supabase Auth account and its ``profiles`` row."""

    try:
        response = _auth_client().auth.sign_up(
            {
                "email": email,
                "password": password,
                "options": {
                    "data": {"user_name": user_name, "company_name": company_name}
                },
            }
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Sign up failed: {exc}"

    user = getattr(response, "user", None)
    if not user:
        return None, "Sign up failed: no account was created."

    account = {"id": getattr(user, "id", None), "email": getattr(user, "email", email)}
    _, error = upsert_profile(_new_profile(account, user_name, company_name))
    if error:
        return account, error
    return account, None


def change_password(user_id: str, password: str) -> tuple[bool, str | None]:
    """Set a new password for ``user_id`` through the Auth admin API."""

    try:
        _auth_client().auth.admin.update_user_by_id(user_id, {"password": password})
    except Exception as exc:  # pragma: no cover - network errors
        return False, f"Failed to update password: {exc}"
    return True, None


# ---------------------------------------------------------------------------
# Profiles and identity lookup
# ---------------------------------------------------------------------------


def fetch_profile(user_id: str) -> tuple[dict | None, str | None]:
    """Return the profile for ``user_id`` if it exists."""

    if not user_id:
        return None, None

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("profiles"))
            .select("*")
            .eq(column_name("profiles", "id"), user_id)
            .limit(1)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch profile: {exc}"

    rows = _rows("profiles", response)
    return (rows[0] if rows else None), None


def fetch_profiles(user_ids: Iterable[str]) -> tuple[list[dict] | None, str | None]:
    """Return the profiles for every id in ``user_ids`` that exists."""

    ids = sorted({str(user_id) for user_id in user_ids or [] if user_id})
    if not ids:
        return [], None

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("profiles"))
            .select("*")
            .in_(column_name("profiles", "id"), ids)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch profiles: {exc}"
    return _rows("profiles", response), None


def upsert_profile(record: dict) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("profiles"))
            .upsert(
                to_supabase_payload("profiles", record),
                on_conflict=column_name("profiles", "id"),
            )
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to save profile: {exc}"
    return _rows("profiles", response), None


def update_profile(user_id: str, updates: dict) -> tuple[list[dict] | None, str | None]:
    """Update the editable profile fields of ``user_id``."""

    if not updates:
        return None, "No updates supplied"

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = dict(updates)
    payload["updated_at"] = _now()

    try:
        response = (
            supabase.table(table_name("profiles"))
            .update(to_supabase_payload("profiles", payload))
            .eq(column_name("profiles", "id"), user_id)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to update profile: {exc}"
    return _rows("profiles", response), None


def find_identity_by_email(email: str) -> tuple[str | None, str | None]:
    """Resolve ``email`` to an account id through the lookup function."""

    normalized = (email or "").strip()
    if not normalized:
        return None, None

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = supabase.rpc(
            function_name("find_user_by_email"), {"user_email": normalized}
        ).execute()
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to look up user: {exc}"

    data = getattr(response, "data", None)
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, dict):
        data = data.get("id") or data.get("find_user_by_email")
    return (str(data) if data else None), None


# ---------------------------------------------------------------------------
# Machines, shifts and production records
# ---------------------------------------------------------------------------


def fetch_machines(
    owner_id: str, *, sector: str | None = None
) -> tuple[list[dict] | None, str | None]:
    """Return the machines owned by ``owner_id`` ordered by name."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        query = (
            supabase.table(table_name("machines"))
            .select("*")
            .eq(column_name("machines", "user_id"), owner_id)
        )
        if sector:
            query = query.eq(column_name("machines", "sector"), sector)
        response = query.order(column_name("machines", "name")).execute()
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch machines: {exc}"
    return _rows("machines", response), None


def insert_machine(record: dict) -> tuple[list[dict] | None, str | None]:
    """Insert a machine.

    Raises:
        ConflictError: when the machine code is already registered.
    """

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("machines"))
            .insert(to_supabase_payload("machines", record))
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        if _is_unique_violation(exc):
            raise ConflictError(
                f"A machine with code '{record.get('code')}' already exists."
            ) from exc
        return None, f"Failed to create machine: {exc}"
    return _rows("machines", response), None


def update_machine(
    machine_id: str, owner_id: str, updates: dict
) -> tuple[list[dict] | None, str | None]:
    """Update a machine owned by ``owner_id``.

    Raises:
        ConflictError: when the new code collides with another machine.
    """

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = dict(updates)
    payload["updated_at"] = _now()

    try:
        response = (
            supabase.table(table_name("machines"))
            .update(to_supabase_payload("machines", payload))
            .eq(column_name("machines", "id"), machine_id)
            .eq(column_name("machines", "user_id"), owner_id)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        if _is_unique_violation(exc):
            raise ConflictError(
                f"A machine with code '{updates.get('code')}' already exists."
            ) from exc
        return None, f"Failed to update machine: {exc}"
    return _rows("machines", response), None


def delete_machine(machine_id: str, owner_id: str) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("machines"))
            .delete()
            .eq(column_name("machines", "id"), machine_id)
            .eq(column_name("machines", "user_id"), owner_id)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to delete machine: {exc}"
    return _rows("machines", response), None


def fetch_shifts() -> tuple[list[dict] | None, str | None]:
    """Return the configured shifts ordered by start time."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("shifts"))
            .select("*")
            .order(column_name("shifts", "start_time"))
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch shifts: {exc}"
    return _rows("shifts", response), None


def fetch_production_records(
    owner_id: str,
    *,
    date_from: date | str | None = None,
    date_to: date | str | None = None,
    machine_id: str | None = None,
    sector: str | None = None,
) -> tuple[list[dict] | None, str | None]:
    """Return production records owned by ``owner_id``, newest first.

    ``sector`` lives on the machine, so it is resolved to the owner's machine
    ids in that sector before the record query runs.
    """

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    machine_ids: list[str] | None = None
    if sector:
        machines, error = fetch_machines(owner_id, sector=sector)
        if error:
            return None, error
        machine_ids = [str(machine.get("id")) for machine in machines or []]
        if machine_id:
            machine_ids = [mid for mid in machine_ids if mid == str(machine_id)]
        if not machine_ids:
            return [], None

    try:
        query = (
            supabase.table(table_name("production_records"))
            .select("*")
            .eq(column_name("production_records", "user_id"), owner_id)
        )
        start = _iso(date_from)
        end = _iso(date_to)
        if start:
            query = query.gte(column_name("production_records", "date"), start)
        if end:
            query = query.lte(column_name("production_records", "date"), end)
        if machine_ids is not None:
            query = query.in_(column_name("production_records", "machine_id"), machine_ids)
        elif machine_id:
            query = query.eq(column_name("production_records", "machine_id"), machine_id)
        response = (
            query.order(column_name("production_records", "date"), desc=True)
            .order(column_name("production_records", "created_at"), desc=True)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch production records: {exc}"
    return _rows("production_records", response), None


def insert_production_record(record: dict) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("production_records"))
            .insert(to_supabase_payload("production_records", record))
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to create production record: {exc}"
    return _rows("production_records", response), None


def update_production_record(
    record_id: str, owner_id: str, updates: dict
) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = dict(updates)
    payload["updated_at"] = _now()

    try:
        response = (
            supabase.table(table_name("production_records"))
            .update(to_supabase_payload("production_records", payload))
            .eq(column_name("production_records", "id"), record_id)
            .eq(column_name("production_records", "user_id"), owner_id)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to update production record: {exc}"
    return _rows("production_records", response), None


def delete_production_record(
    record_id: str, owner_id: str
) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("production_records"))
            .delete()
            .eq(column_name("production_records", "id"), record_id)
            .eq(column_name("production_records", "user_id"), owner_id)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to delete production record: {exc}"
    return _rows("production_records", response), None


# ---------------------------------------------------------------------------
# Invitations (user_permissions) and viewing context
# ---------------------------------------------------------------------------


def fetch_invitations(direction: str, user_id: str) -> tuple[list[dict] | None, str | None]:
    """Return invitations where ``user_id`` is the grantor or the grantee.

    Args:
        direction: ``"grantor"`` for invitations sent by ``user_id`` or
            ``"grantee"`` for invitations it received.
    """

    key = INVITATION_DIRECTIONS.get(direction)
    if key is None:
        return None, f"Unknown invitation direction '{direction}'"

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("user_permissions"))
            .select("*")
            .eq(column_name("user_permissions", key), user_id)
            .order(column_name("user_permissions", "invited_at"), desc=True)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch invitations: {exc}"
    return _rows("user_permissions", response), None


def fetch_invitation(invitation_id: str) -> tuple[dict | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("user_permissions"))
            .select("*")
            .eq(column_name("user_permissions", "id"), invitation_id)
            .limit(1)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch invitation: {exc}"
    rows = _rows("user_permissions", response)
    return (rows[0] if rows else None), None


def fetch_invitations_between(
    admin_user_id: str, invited_user_id: str
) -> tuple[list[dict] | None, str | None]:
    """Return every invitation ``admin_user_id`` has sent ``invited_user_id``."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("user_permissions"))
            .select("*")
            .eq(column_name("user_permissions", "admin_user_id"), admin_user_id)
            .eq(column_name("user_permissions", "invited_user_id"), invited_user_id)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to check existing invitations: {exc}"
    return _rows("user_permissions", response), None


def insert_invitation(record: dict) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("user_permissions"))
            .insert(to_supabase_payload("user_permissions", record))
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to create invitation: {exc}"
    return _rows("user_permissions", response), None


def update_invitation_status(
    invitation_id: str,
    invited_user_id: str,
    status: str,
    *,
    accepted_at: str | None = None,
) -> tuple[list[dict] | None, str | None]:
    """Set ``status`` on an invitation addressed to ``invited_user_id``."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload: dict[str, Any] = {"status": status, "updated_at": _now()}
    if accepted_at:
        payload["accepted_at"] = accepted_at

    try:
        response = (
            supabase.table(table_name("user_permissions"))
            .update(to_supabase_payload("user_permissions", payload))
            .eq(column_name("user_permissions", "id"), invitation_id)
            .eq(column_name("user_permissions", "invited_user_id"), invited_user_id)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to update invitation: {exc}"
    return _rows("user_permissions", response), None


def update_invitation_role(
    invitation_id: str, admin_user_id: str, role: str
) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = {"role": role, "updated_at": _now()}
    try:
        response = (
            supabase.table(table_name("user_permissions"))
            .update(to_supabase_payload("user_permissions", payload))
            .eq(column_name("user_permissions", "id"), invitation_id)
            .eq(column_name("user_permissions", "admin_user_id"), admin_user_id)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to update invitation role: {exc}"
    return _rows("user_permissions", response), None


def delete_invitation(
    invitation_id: str, admin_user_id: str
) -> tuple[list[dict] | None, str | None]:
    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("user_permissions"))
            .delete()
            .eq(column_name("user_permissions", "id"), invitation_id)
            .eq(column_name("user_permissions", "admin_user_id"), admin_user_id)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to delete invitation: {exc}"
    return _rows("user_permissions", response), None


def fetch_viewing_context(user_id: str) -> tuple[str | None, str | None]:
    """Return the persisted ``viewing_as_user_id`` for ``user_id``."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    try:
        response = (
            supabase.table(table_name("user_context"))
            .select("*")
            .eq(column_name("user_context", "user_id"), user_id)
            .limit(1)
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to fetch viewing context: {exc}"

    rows = _rows("user_context", response)
    if not rows:
        return None, None
    return rows[0].get("viewing_as_user_id"), None


def upsert_viewing_context(
    user_id: str, viewing_as_user_id: str
) -> tuple[list[dict] | None, str | None]:
    """Create or overwrite the viewing context row for ``user_id``."""

    supabase, error = _ensure_supabase_client()
    if error:
        return None, error

    payload = to_supabase_payload(
        "user_context",
        {
            "user_id": user_id,
            "viewing_as_user_id": viewing_as_user_id,
            "updated_at": _now(),
        },
    )
    try:
        response = (
            supabase.table(table_name("user_context"))
            .upsert(payload, on_conflict=column_name("user_context", "user_id"))
            .execute()
        )
    except Exception as exc:  # pragma: no cover - network errors
        return None, f"Failed to save viewing context: {exc}"
    return _rows("user_context", response), None
