import os
import sys
import uuid
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import oee_dashboard as app_module  # noqa: E402
from config.supabase_schema import table_name  # noqa: E402
from oee_dashboard import create_app  # noqa: E402


class FakeQuery:
    def __init__(self, supabase, table_name):
        self.supabase = supabase
        self.table_name = table_name
        self._operation = None
        self._payload = None
        self._filters = []
        self._orders = []
        self._limit = None
        self._on_conflict = None

    def select(self, columns="*"):
        self._operation = "select"
        return self

    def insert(self, rows):
        self._operation = "insert"
        self._payload = rows
        return self

    def update(self, payload):
        self._operation = "update"
        self._payload = payload
        return self

    def upsert(self, payload, on_conflict=None):
        self._operation = "upsert"
        self._payload = payload
        self._on_conflict = on_conflict
        return self

    def delete(self):
        self._operation = "delete"
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        allowed = list(values)
        self._filters.append(lambda row: row.get(column) in allowed)
        return self

    def gte(self, column, value):
        self._filters.append(lambda row: str(row.get(column)) >= str(value))
        return self

    def lte(self, column, value):
        self._filters.append(lambda row: str(row.get(column)) <= str(value))
        return self

    def order(self, column, desc=False):
        self._orders.append((column, desc))
        return self

    def limit(self, value):
        self._limit = value
        return self

    def _matches(self, row):
        return all(check(row) for check in self._filters)

    def execute(self):
        self.supabase.calls.append((self.table_name, self._operation))
        if self.table_name in self.supabase.failing_tables:
            raise RuntimeError(f"{self.table_name} unavailable")
        unique = self.supabase.unique_columns.get(self.table_name, ())
        table = self.supabase.tables.setdefault(self.table_name, [])

        if self._operation == "select":
            data = [row.copy() for row in table if self._matches(row)]
            for column, desc in reversed(self._orders):
                data.sort(key=lambda row: str(row.get(column) or ""), reverse=desc)
            if self._limit is not None:
                data = data[: self._limit]
            return SimpleNamespace(data=data, count=len(data))

        if self._operation == "insert":
            rows = self._payload
            if isinstance(rows, dict):
                rows = [rows]
            inserted = []
            for row in rows:
                for column in unique:
                    if any(existing.get(column) == row.get(column) for existing in table):
                        raise Exception({"code": "23505", "message": "duplicate key"})
                new_row = row.copy()
                new_row.setdefault("id", f"fake-{uuid.uuid4().hex[:8]}")
                table.append(new_row)
                inserted.append(new_row.copy())
            return SimpleNamespace(data=inserted, count=len(inserted))

        if self._operation == "update":
            updated = []
            for row in table:
                if self._matches(row):
                    row.update(self._payload)
                    updated.append(row.copy())
            return SimpleNamespace(data=updated, count=len(updated))

        if self._operation == "upsert":
            payload = self._payload
            key = self._on_conflict or "id"
            for row in table:
                if row.get(key) == payload.get(key):
                    row.update(payload)
                    return SimpleNamespace(data=[row.copy()], count=1)
            new_row = payload.copy()
            new_row.setdefault("id", f"fake-{uuid.uuid4().hex[:8]}")
            table.append(new_row)
            return SimpleNamespace(data=[new_row.copy()], count=1)

        if self._operation == "delete":
            deleted = [row for row in table if self._matches(row)]
            self.supabase.tables[self.table_name] = [
                row for row in table if not self._matches(row)
            ]
            return SimpleNamespace(data=deleted, count=len(deleted))

        return SimpleNamespace(data=None, count=None)


class FakeRpc:
    def __init__(self, supabase, name, params):
        self.supabase = supabase
        self.name = name
        self.params = params

    def execute(self):
        self.supabase.calls.append((self.name, "rpc"))
        if self.name != "find_user_by_email":
            raise RuntimeError(f"unknown function {self.name}")
        email = (self.params.get("user_email") or "").casefold()
        for profile in self.supabase.tables.get(table_name("profiles"), []):
            if (profile.get("email") or "").casefold() == email:
                return SimpleNamespace(data=profile["id"])
        return SimpleNamespace(data=None)


class FakeAuthAdmin:
    def __init__(self, auth):
        self.auth = auth

    def update_user_by_id(self, user_id, attributes):
        for account in self.auth.accounts.values():
            if account["id"] == user_id:
                account.update(attributes)
                return SimpleNamespace(user=SimpleNamespace(id=user_id))
        raise Exception("User not found")


class FakeAuth:
    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.admin = FakeAuthAdmin(self)

    def add_account(self, user_id, email, password, metadata=None):
        self.accounts[email] = {
            "id": user_id,
            "email": email,
            "password": password,
            "user_metadata": dict(metadata or {}),
        }

    def sign_in_with_password(self, credentials):
        account = self.accounts.get(credentials["email"])
        if not account or account["password"] != credentials["password"]:
            raise Exception("Invalid login credentials")
        return SimpleNamespace(
            user=SimpleNamespace(
                id=account["id"],
                email=account["email"],
                user_metadata=account["user_metadata"],
            )
        )

    def sign_up(self, credentials):
        if credentials["email"] in self.accounts:
            raise Exception("User already registered")
        user_id = f"user-{uuid.uuid4().hex[:8]}"
        metadata = credentials.get("options", {}).get("data")
        self.add_account(user_id, credentials["email"], credentials["password"], metadata)
        return SimpleNamespace(user=SimpleNamespace(id=user_id, email=credentials["email"]))


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self.failing_tables: set[str] = set()
        self.unique_columns = {table_name("machines"): ("code",)}
        self.auth = FakeAuth()

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRpc(self, name, params)

    def add_profile(self, user_id, email, user_name=None, company_name="ACME"):
        self.tables.setdefault(table_name("profiles"), []).append(
            {
                "id": user_id,
                "email": email,
                "user_name": user_name or email.split("@")[0],
                "company_name": company_name,
                "role": "operator",
            }
        )

    def add_invitation(self, invitation_id, admin, invited, role="viewer", status="pending"):
        row = {
            "id": invitation_id,
            "admin_user_id": admin,
            "invited_user_id": invited,
            "role": role,
            "status": status,
            "invited_at": "2024-07-01T00:00:00+00:00",
            "accepted_at": None,
        }
        self.tables.setdefault(table_name("user_permissions"), []).append(row)
        return row


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def app_instance(monkeypatch, fake_supabase):
    monkeypatch.setattr(app_module, "create_client", lambda url, key: fake_supabase)
    os.environ.setdefault("SECRET_KEY", "test")
    os.environ.setdefault("SUPABASE_URL", "http://localhost")
    os.environ.setdefault("SUPABASE_SERVICE_KEY", "service")
    app = create_app()
    app.testing = True
    return app


def _login(client, user_id):
    with client.session_transaction() as sess:
        sess["user_id"] = user_id


@pytest.fixture
def login_as():
    return _login
