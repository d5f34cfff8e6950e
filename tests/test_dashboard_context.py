import threading

import pytest

from config.supabase_schema import table_name
from oee_dashboard.context import (
    DashboardSession,
    MetricsCache,
    load_session,
    switch_dashboard,
)
from oee_dashboard.errors import TransientStoreError, UnauthorizedError
from oee_dashboard.permissions import AccessResolver


def _record(owner, machine_id, day="2024-07-01", actual=90):
    return {
        "user_id": owner,
        "machine_id": machine_id,
        "shift_id": "s1",
        "date": day,
        "planned_production": 100,
        "actual_production": actual,
        "downtime_minutes": 60,
        "defective_units": 5,
    }


@pytest.fixture
def shared_store(fake_supabase):
    fake_supabase.add_profile("alice", "alice@example.com")
    fake_supabase.add_profile("bob", "bob@example.com")
    fake_supabase.add_profile("carol", "carol@example.com")
    fake_supabase.add_invitation("inv-1", "bob", "alice", role="operator", status="accepted")
    fake_supabase.tables[table_name("machines")] = [
        {"id": "m-a", "name": "Press A", "code": "PA", "sector": "Stamping", "user_id": "alice"},
        {"id": "m-b", "name": "Lathe B", "code": "LB", "sector": "Turning", "user_id": "bob"},
    ]
    fake_supabase.tables[table_name("production_records")] = [
        _record("alice", "m-a"),
        _record("bob", "m-b", day="2024-07-01"),
        _record("bob", "m-b", day="2024-07-02", actual=100),
    ]
    return fake_supabase


def _context_rows(fake_supabase):
    return fake_supabase.tables.get(table_name("user_context"), [])


def test_switch_drops_cached_metrics_and_rescopes_queries(
    app_instance, shared_store, login_as
):
    client = app_instance.test_client()
    login_as(client, "alice")
    cache = app_instance.config["METRICS_CACHE"]

    own = client.get("/dashboard").get_json()
    assert own["summary"]["total_records"] == 1
    assert own["viewer"]["viewing_user_id"] == "alice"
    assert any(key[2] == "alice" for key in cache.keys())

    resp = client.post("/dashboards/switch", json={"user_id": "bob"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["viewing_user_id"] == "bob"
    assert body["role"] == "operator"
    assert body["capabilities"] == {
        "canEditData": False,
        "canDeleteAccount": False,
        "canManageUsers": False,
    }
    assert cache.keys() == []
    assert _context_rows(shared_store)[0]["viewing_as_user_id"] == "bob"

    shared = client.get("/dashboard").get_json()
    assert shared["summary"]["total_records"] == 2
    assert [row["machine_id"] for row in shared["machines"]] == ["m-b"]
    assert all(key[2] == "bob" for key in cache.keys())


def test_shared_dashboard_is_read_only(app_instance, shared_store, login_as):
    client = app_instance.test_client()
    login_as(client, "alice")
    client.post("/dashboards/switch", json={"user_id": "bob"})

    resp = client.post(
        "/production",
        json={"machine_id": "m-b", "shift_id": "s1", "date": "2024-07-03"},
    )

    assert resp.status_code == 403
    assert len(shared_store.tables[table_name("production_records")]) == 3


def test_switch_to_unshared_dashboard_is_refused(app_instance, shared_store, login_as):
    client = app_instance.test_client()
    login_as(client, "alice")

    resp = client.post("/dashboards/switch", json={"user_id": "carol"})

    assert resp.status_code == 403
    assert _context_rows(shared_store) == []


def test_switch_refreshes_once_for_newly_accepted_access(app_instance, shared_store):
    with app_instance.app_context():
        resolver = AccessResolver()
        cache = MetricsCache()
        session = DashboardSession("alice", "alice")
        assert resolver.get("alice").dashboard_ids() == ["alice", "bob"]

        shared_store.add_invitation("inv-2", "carol", "alice", status="accepted")
        switched = switch_dashboard(session, "carol", resolver, cache)

        assert switched == DashboardSession("alice", "carol")
        assert not switched.viewing_own_dashboard


def test_switch_back_to_own_dashboard_skips_access_check(app_instance, shared_store):
    cache = MetricsCache()
    cache.get_or_compute("dashboard", DashboardSession("alice", "bob"), lambda: {"x": 1})
    cache.get_or_compute("dashboard", DashboardSession("bob", "bob"), lambda: {"x": 2})

    with app_instance.app_context():
        switched = switch_dashboard(
            DashboardSession("alice", "bob"), "alice", AccessResolver(), cache
        )

    assert switched.viewing_own_dashboard
    assert cache.keys() == [("dashboard", "bob", "bob", ())]


def test_switch_requires_a_target(app_instance, shared_store):
    with app_instance.app_context():
        with pytest.raises(UnauthorizedError):
            switch_dashboard(DashboardSession("alice", "alice"), "", AccessResolver(), MetricsCache())


def test_switch_surfaces_store_failures(app_instance, shared_store):
    shared_store.failing_tables.add(table_name("user_context"))
    with app_instance.app_context():
        with pytest.raises(TransientStoreError):
            switch_dashboard(
                DashboardSession("alice", "alice"), "bob", AccessResolver(), MetricsCache()
            )


def test_load_session_uses_persisted_context(app_instance, shared_store):
    shared_store.tables[table_name("user_context")] = [
        {"user_id": "alice", "viewing_as_user_id": "bob"}
    ]
    with app_instance.app_context():
        assert load_session("alice", AccessResolver()) == DashboardSession("alice", "bob")
        assert load_session("carol", AccessResolver()) == DashboardSession("carol", "carol")


def test_load_session_falls_back_when_access_was_revoked(app_instance, shared_store):
    shared_store.tables[table_name("user_context")] = [
        {"user_id": "alice", "viewing_as_user_id": "bob"}
    ]
    shared_store.tables[table_name("user_permissions")] = []
    with app_instance.app_context():
        assert load_session("alice", AccessResolver()) == DashboardSession("alice", "alice")


def test_load_session_falls_back_when_store_fails(app_instance, shared_store):
    shared_store.failing_tables.add(table_name("user_context"))
    with app_instance.app_context():
        assert load_session("alice", AccessResolver()) == DashboardSession("alice", "alice")


def test_metrics_cache_invalidation():
    cache = MetricsCache()
    calls = []

    def compute():
        calls.append(1)
        return len(calls)

    alice_on_bob = DashboardSession("alice", "bob")
    assert cache.get_or_compute("reports", alice_on_bob, compute, params=("week",)) == 1
    assert cache.get_or_compute("reports", alice_on_bob, compute, params=("week",)) == 1
    assert cache.get_or_compute("reports", alice_on_bob, compute, params=("month",)) == 2
    cache.get_or_compute("reports", DashboardSession("bob", "bob"), compute)

    assert cache.invalidate_target("bob") == 3
    assert cache.keys() == []


def test_metrics_computed_across_a_mutation_are_not_cached():
    data = {"records": 1}
    computing = threading.Event()
    release = threading.Event()

    def compute():
        value = data["records"]
        if not computing.is_set():
            computing.set()
            release.wait(timeout=5)
        return value

    cache = MetricsCache()
    own = DashboardSession("alice", "alice")
    results = []
    worker = threading.Thread(
        target=lambda: results.append(cache.get_or_compute("dashboard", own, compute))
    )
    worker.start()
    assert computing.wait(timeout=5)

    data["records"] = 2
    cache.invalidate_target("alice")
    release.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert results == [1]
    assert cache.keys() == []
    assert cache.get_or_compute("dashboard", own, compute) == 2
    assert cache.keys() == [("dashboard", "alice", "alice", ())]


def test_metrics_cache_evicts_least_recently_used():
    cache = MetricsCache(max_entries=2)
    own = DashboardSession("alice", "alice")

    cache.get_or_compute("reports", own, lambda: "week", params=("week",))
    cache.get_or_compute("reports", own, lambda: "month", params=("month",))
    assert cache.get_or_compute("reports", own, lambda: "stale", params=("week",)) == "week"
    cache.get_or_compute("reports", own, lambda: "custom", params=("2024-07-01", "2024-07-02"))

    assert cache.keys() == [
        ("reports", "alice", "alice", ("week",)),
        ("reports", "alice", "alice", ("2024-07-01", "2024-07-02")),
    ]


def test_app_reads_metrics_cache_size(app_instance, monkeypatch):
    import oee_dashboard as app_module

    monkeypatch.setenv("METRICS_CACHE_SIZE", "3")
    app = app_module.create_app()

    assert app.config["METRICS_CACHE"]._max_entries == 3
    assert app_instance.config["METRICS_CACHE"]._max_entries == 256
