"""Tests for the backend pool tracker."""

import pytest

from mesh_router.circuit_breaker import CircuitBreakerPolicy, CircuitBreakerState
from mesh_router.core.exceptions import UnknownServiceError
from mesh_router.pool import BackendPool, EndpointHealth, EndpointSource, make_endpoint_id
from mesh_router.routing import RoutingConfig

V1_A = "nginx-frontend/v1/127.0.0.1:9001"
V1_B = "nginx-frontend/v1/127.0.0.1:9003"
V2 = "nginx-frontend/v2/127.0.0.1:9002"


@pytest.fixture
def pool(fake_clock, routing_data):
    pool = BackendPool(clock=fake_clock)
    pool.sync_from_config(RoutingConfig.model_validate(routing_data))
    return pool


def fail(pool, endpoint_id, times):
    for _ in range(times):
        pool.record_outcome(endpoint_id, False)


class TestMembership:
    def test_endpoint_id_format(self):
        assert make_endpoint_id("svc", "v1", "http://10.0.0.7:8080") == "svc/v1/10.0.0.7:8080"

    def test_sync_registers_config_endpoints(self, pool):
        snapshot = pool.snapshot()

        assert [v.endpoint_id for v in snapshot.endpoints("nginx-frontend", "v1")] == [V1_A, V1_B]
        assert [v.endpoint_id for v in snapshot.serving("nginx-frontend", "v2")] == [V2]
        assert all(v.source == EndpointSource.CONFIG for v in snapshot)
        assert all(v.health == EndpointHealth.HEALTHY for v in snapshot)

    def test_register_dynamic_endpoint(self, pool):
        view = pool.register("nginx-frontend", "v2", "http://10.0.0.9:8080/")

        assert view.endpoint_id == "nginx-frontend/v2/10.0.0.9:8080"
        assert view.address == "http://10.0.0.9:8080"
        assert view.source == EndpointSource.DYNAMIC
        assert len(pool.snapshot().serving("nginx-frontend", "v2")) == 2

    def test_register_is_idempotent(self, pool):
        before = pool.snapshot().generation
        pool.register("nginx-frontend", "v1", "http://127.0.0.1:9001")

        assert len(pool.snapshot().endpoints("nginx-frontend", "v1")) == 2
        assert pool.snapshot().generation == before

    def test_register_unknown_version_rejected(self, pool):
        with pytest.raises(UnknownServiceError):
            pool.register("nginx-frontend", "v9", "http://10.0.0.9:8080")

    def test_register_creates_pool_when_policy_given(self, pool):
        view = pool.register("new-svc", "v1", "http://10.0.0.1:80", policy=CircuitBreakerPolicy())

        assert pool.snapshot().serving("new-svc", "v1") == (view,)

    def test_deregister(self, pool):
        assert pool.deregister(V2) is True
        assert pool.snapshot().endpoints("nginx-frontend", "v2") == ()
        assert pool.deregister(V2) is False
        assert pool.deregister("nope/v1/0.0.0.0:1") is False

    def test_membership_listeners(self, pool):
        added, removed = [], []
        pool.add_membership_listener(lambda view: added.append(view.endpoint_id), removed.append)

        pool.register("nginx-frontend", "v2", "http://10.0.0.9:8080")
        pool.deregister("nginx-frontend/v2/10.0.0.9:8080")

        assert added == ["nginx-frontend/v2/10.0.0.9:8080"]
        assert removed == ["nginx-frontend/v2/10.0.0.9:8080"]

    def test_resync_removes_dropped_config_endpoints_only(self, pool, routing_data):
        pool.register("nginx-frontend", "v1", "http://10.0.0.9:8080")
        routing_data["services"]["nginx-frontend"]["versions"]["v1"]["endpoints"] = ["http://127.0.0.1:9001"]

        result = pool.sync_from_config(RoutingConfig.model_validate(routing_data))

        ids = [v.endpoint_id for v in pool.snapshot().endpoints("nginx-frontend", "v1")]
        assert ids == [V1_A, "nginx-frontend/v1/10.0.0.9:8080"]
        assert result == {"added": 0, "removed": 1}

    def test_resync_drops_removed_services(self, pool, routing_data):
        del routing_data["services"]["nginx-api"]

        pool.sync_from_config(RoutingConfig.model_validate(routing_data))

        assert pool.snapshot().endpoints("nginx-api", "v1") == ()
        assert ("nginx-api", "v1") not in pool.snapshot().pools

    def test_resync_with_new_policy_replaces_breakers(self, pool, routing_data):
        fail(pool, V2, 3)
        assert pool.get_endpoint(V2).breaker_state == CircuitBreakerState.OPEN

        routing_data["services"]["nginx-frontend"]["versions"]["v2"]["circuit_breaker"]["consecutive_errors"] = 5
        pool.sync_from_config(RoutingConfig.model_validate(routing_data))

        assert pool.get_endpoint(V2).breaker_state == CircuitBreakerState.CLOSED


class TestHealthIngest:
    def test_failures_mark_unhealthy_then_eject(self, pool):
        fail(pool, V2, 1)
        assert pool.get_endpoint(V2).health == EndpointHealth.UNHEALTHY
        assert pool.get_endpoint(V2).consecutive_failures == 1

        fail(pool, V2, 2)
        view = pool.get_endpoint(V2)
        assert view.health == EndpointHealth.EJECTED
        assert pool.snapshot().serving("nginx-frontend", "v2") == ()

    def test_success_marks_healthy(self, pool):
        fail(pool, V2, 2)
        pool.record_outcome(V2, True)

        view = pool.get_endpoint(V2)
        assert view.health == EndpointHealth.HEALTHY
        assert view.consecutive_failures == 0

    def test_probe_and_outcome_share_the_counter(self, pool):
        pool.record_probe_result(V2, False, "connection refused")
        pool.record_outcome(V2, False)
        pool.record_probe_result(V2, False, "connection refused")

        view = pool.get_endpoint(V2)
        assert view.health == EndpointHealth.EJECTED
        assert view.last_error == "connection refused"
        assert view.last_probe_at is not None

    def test_unknown_endpoint_ignored(self, pool):
        assert pool.record_outcome("ghost/v1/1.2.3.4:80", False) is False
        assert pool.record_probe_result("ghost/v1/1.2.3.4:80", True) is False

    def test_ejection_expiry_visible_in_snapshot(self, pool, fake_clock):
        fail(pool, V2, 3)
        assert pool.snapshot().serving("nginx-frontend", "v2") == ()

        fake_clock.advance(30)

        serving = pool.snapshot().serving("nginx-frontend", "v2")
        assert [v.endpoint_id for v in serving] == [V2]
        assert serving[0].breaker_state == CircuitBreakerState.HALF_OPEN
        assert serving[0].health == EndpointHealth.UNHEALTHY

    def test_half_open_admission(self, pool, fake_clock):
        fail(pool, V2, 3)
        fake_clock.advance(30)

        assert pool.admit(V2) is True
        assert pool.admit(V2) is False

        pool.record_outcome(V2, True)
        assert pool.get_endpoint(V2).health == EndpointHealth.HEALTHY
        assert pool.admit(V2) is True

    def test_admit_ejected_endpoint_refused(self, pool):
        fail(pool, V2, 3)

        assert pool.admit(V2) is False
        assert pool.admit("ghost/v1/1.2.3.4:80") is False

    def test_ejection_guard_uses_pool_size(self, fake_clock, routing_data):
        routing_data["services"]["nginx-frontend"]["versions"]["v1"]["circuit_breaker"]["max_ejection_percent"] = 50
        pool = BackendPool(clock=fake_clock)
        pool.sync_from_config(RoutingConfig.model_validate(routing_data))

        fail(pool, V1_A, 3)
        fail(pool, V1_B, 3)

        serving = pool.snapshot().serving("nginx-frontend", "v1")
        assert [v.endpoint_id for v in serving] == [V1_B]
        assert pool.get_endpoint(V1_B).health == EndpointHealth.UNHEALTHY

    def test_remove_after_probe_failures(self, fake_clock, routing_data):
        routing_data["probes"]["remove_after_failures"] = 2
        pool = BackendPool(clock=fake_clock)
        pool.sync_from_config(RoutingConfig.model_validate(routing_data))

        pool.record_probe_result(V2, False, "timeout")
        assert pool.get_endpoint(V2) is not None

        pool.record_probe_result(V2, False, "timeout")
        assert pool.get_endpoint(V2) is None

    def test_reset_breaker(self, pool):
        fail(pool, V2, 3)

        assert pool.reset_breaker(V2) is True
        assert pool.get_endpoint(V2).health == EndpointHealth.HEALTHY
        assert pool.reset_breaker("ghost/v1/1.2.3.4:80") is False


class TestSnapshots:
    def test_snapshots_are_immutable(self, pool):
        before = pool.snapshot()

        fail(pool, V2, 3)
        after = pool.snapshot()

        assert [v.endpoint_id for v in before.serving("nginx-frontend", "v2")] == [V2]
        assert after.serving("nginx-frontend", "v2") == ()
        assert after.generation > before.generation
        with pytest.raises(TypeError):
            before.pools[("x", "y")] = ()

    def test_stats(self, pool):
        fail(pool, V2, 3)
        fail(pool, V1_A, 1)

        stats = pool.stats()["pools"]

        assert stats["nginx-frontend/v2"]["ejected"] == 1
        assert stats["nginx-frontend/v2"]["serving"] == 0
        assert stats["nginx-frontend/v1"]["unhealthy"] == 1
        assert stats["nginx-frontend/v1"]["healthy"] == 1
        assert stats["nginx-api/v1"]["total"] == 1

    def test_breaker_stats(self, pool):
        fail(pool, V2, 3)

        breakers = {b["endpoint_id"]: b for b in pool.breaker_stats()}

        assert breakers[V2]["state"] == "open"
        assert breakers[V2]["service"] == "nginx-frontend"
        assert breakers[V1_A]["state"] == "closed"
