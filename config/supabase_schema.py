"""Supabase table, column and function names used by the dashboard.

Code refers to tables and columns by logical identifiers (``"machines"``,
``"viewing_as_user_id"``) and resolves them here.  A deployment whose
database uses different names sets ``SUPABASE_SCHEMA_JSON``, for example::

    {"user_context": {"name": "dashboard_context",
                      "columns": {"viewing_as_user_id": "target_id"}}}

Overrides are merged onto the defaults, so only the names that differ need
to be listed.  Unknown identifiers resolve to themselves.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SupabaseTable:
    """Physical name of a table plus its logical-to-physical column map."""

    name: str
    columns: Mapping[str, str] = field(default_factory=dict)

    def column(self, identifier: str) -> str:
        return self.columns.get(identifier, identifier)

    def logical(self, physical: str) -> str:
        for logical, actual in self.columns.items():
            if actual == physical:
                return logical
        return physical


def _table(name: str, *columns: str) -> SupabaseTable:
    return SupabaseTable(name=name, columns={column: column for column in columns})


_TIMESTAMPS = ("created_at", "updated_at")

_DEFAULT_SUPABASE_SCHEMA: Dict[str, SupabaseTable] = {
    "profiles": _table(
        "profiles", "id", "email", "user_name", "company_name", "role", *_TIMESTAMPS
    ),
    "machines": _table(
        "machines", "id", "name", "code", "sector", "user_id", *_TIMESTAMPS
    ),
    "shifts": _table("shifts", "id", "name", "start_time", "end_time", "created_at"),
    "production_records": _table(
        "production_records",
        "id",
        "machine_id",
        "shift_id",
        "date",
        "planned_production",
        "actual_production",
        "downtime_minutes",
        "downtime_reason",
        "defective_units",
        "user_id",
        *_TIMESTAMPS,
    ),
    # One row per invitation; admin_user_id is the grantor.
    "user_permissions": _table(
        "user_permissions",
        "id",
        "admin_user_id",
        "invited_user_id",
        "role",
        "status",
        "invited_at",
        "accepted_at",
        *_TIMESTAMPS,
    ),
    "user_context": _table(
        "user_context", "id", "user_id", "viewing_as_user_id", *_TIMESTAMPS
    ),
}

# Postgres functions called through ``supabase.rpc``.
_DEFAULT_SUPABASE_FUNCTIONS: Dict[str, str] = {
    "find_user_by_email": "find_user_by_email",
}


def _merge_override(base: SupabaseTable | None, entry: Mapping[str, Any]) -> SupabaseTable | None:
    name = entry.get("name") or (base.name if base else None)
    if not isinstance(name, str) or not name:
        return base

    columns = dict(base.columns) if base else {}
    raw_columns = entry.get("columns")
    if isinstance(raw_columns, Mapping):
        columns.update(
            (logical, actual)
            for logical, actual in raw_columns.items()
            if isinstance(logical, str) and isinstance(actual, str) and actual
        )
    return SupabaseTable(name=name, columns=columns)


def load_schema(raw: str | None = None) -> Dict[str, SupabaseTable]:
    """Return the default schema with the JSON overrides in ``raw`` applied.

    ``raw`` defaults to ``SUPABASE_SCHEMA_JSON``.  Malformed JSON is logged
    and ignored.
    """

    schema = dict(_DEFAULT_SUPABASE_SCHEMA)
    raw = os.getenv("SUPABASE_SCHEMA_JSON") if raw is None else raw
    if not raw:
        return schema

    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring SUPABASE_SCHEMA_JSON: %s", exc)
        return schema
    if not isinstance(overrides, Mapping):
        logger.warning("Ignoring SUPABASE_SCHEMA_JSON: expected a JSON object")
        return schema

    for identifier, entry in overrides.items():
        if not isinstance(entry, Mapping):
            continue
        merged = _merge_override(schema.get(identifier), entry)
        if merged is not None:
            schema[identifier] = merged
    return schema


SUPABASE_SCHEMA: Dict[str, SupabaseTable] = load_schema()


def table_name(identifier: str) -> str:
    table = SUPABASE_SCHEMA.get(identifier)
    return table.name if table else identifier


def column_name(table_identifier: str, column_identifier: str) -> str:
    table = SUPABASE_SCHEMA.get(table_identifier)
    return table.column(column_identifier) if table else column_identifier


def function_name(identifier: str) -> str:
    """Return the Postgres function for ``identifier``.

    ``SUPABASE_RPC_<IDENTIFIER>`` overrides the default name.
    """

    return os.getenv(
        f"SUPABASE_RPC_{identifier.upper()}",
        _DEFAULT_SUPABASE_FUNCTIONS.get(identifier, identifier),
    )


def to_supabase_payload(table_identifier: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Rename the logical keys of ``payload`` to physical column names."""

    table = SUPABASE_SCHEMA.get(table_identifier)
    if table is None:
        return dict(payload)
    return {table.column(key): value for key, value in payload.items()}


def from_supabase_row(table_identifier: str, row: Mapping[str, Any]) -> Dict[str, Any]:
    """Rename the physical columns of ``row`` back to logical keys."""

    table = SUPABASE_SCHEMA.get(table_identifier)
    if table is None:
        return dict(row)
    return {table.logical(key): value for key, value in row.items()}
