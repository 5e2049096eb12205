"""Integration tests for the reconciliation pipeline.

These tests use MockClusterContext to run full passes against an in-memory
API server and Keycloak.
"""

from __future__ import annotations

import logging

import pytest
from k8s_mock import mock_cluster_context

from intent_controller.conditions import (
    CONDITION_AUTH_READY,
    CONDITION_READY,
    CONDITION_ROUTING_READY,
)
from intent_controller.errors import TransientError
from intent_controller.naming import FINALIZER
from intent_controller.reconciler import ReconcileResult, ReconcileState

RESYNC = 600
VALIDATION_REQUEUE = 120
TRANSIENT_REQUEUE = 30


def _condition(cluster, condition_type: str) -> dict:
    status = cluster.state.get("appintents", "apps", "web")["status"]
    return next(c for c in status["conditions"] if c["type"] == condition_type)


@pytest.fixture
def reconciler(cluster):
    config = cluster.config(
        resync_interval_seconds=RESYNC,
        validation_requeue_seconds=VALIDATION_REQUEUE,
        transient_requeue_seconds=TRANSIENT_REQUEUE,
    )
    return cluster.reconciler(config)


class TestConvergence:
    """Tests for passes that converge an intent."""

    def test_first_pass_converges(self, cluster, reconciler, routing_spec) -> None:
        """Test that a valid intent gets a finalizer, a route and Ready=True."""
        cluster.state.add_intent("apps", "web", routing_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.success
        assert result.state == ReconcileState.CONVERGED
        assert result.requeue_after == RESYNC
        assert result.status_written

        stored = cluster.state.get("appintents", "apps", "web")
        assert FINALIZER in stored["metadata"]["finalizers"]
        assert stored["status"]["observedGeneration"] == 1
        assert stored["status"]["hostname"] == "web.example.com"
        assert stored["status"]["routeRef"] == {"name": "web-route", "namespace": "apps"}
        assert _condition(cluster, CONDITION_READY)["status"] == "True"
        assert _condition(cluster, CONDITION_ROUTING_READY)["status"] == "True"
        assert _condition(cluster, CONDITION_AUTH_READY)["reason"] == "AuthDisabled"
        assert cluster.state.get("httproutes", "apps", "web-route") is not None

    def test_brand_new_intent_reports_reconciling_first(
        self, cluster, reconciler, routing_spec
    ) -> None:
        """Test that a new intent gets Ready=Unknown before stages run."""
        cluster.state.add_intent("apps", "web", routing_spec)

        reconciler.reconcile("apps", "web")

        assert cluster.state.write_count("replace_status", "appintents") == 2

    def test_second_pass_is_noop(self, cluster, reconciler, routing_spec) -> None:
        """Test that an unchanged intent produces zero writes and zero events."""
        cluster.state.add_intent("apps", "web", routing_spec)
        reconciler.reconcile("apps", "web")
        cluster.state.reset_counters()

        result = reconciler.reconcile("apps", "web")

        assert result.success
        assert result.status_written is False
        assert result.requeue_after == RESYNC
        assert cluster.state.writes == []
        assert cluster.state.events == []

    def test_spec_change_updates_observed_generation(
        self, cluster, reconciler, routing_spec
    ) -> None:
        """Test that a new generation is converged and recorded."""
        cluster.state.add_intent("apps", "web", routing_spec)
        reconciler.reconcile("apps", "web")

        routing_spec["hostname"] = "new.example.com"
        cluster.state.update_intent_spec("apps", "web", routing_spec)
        reconciler.reconcile("apps", "web")

        stored = cluster.state.get("appintents", "apps", "web")
        assert stored["status"]["observedGeneration"] == 2
        assert stored["status"]["hostname"] == "new.example.com"
        assert _condition(cluster, CONDITION_READY)["observedGeneration"] == 2
        route = cluster.state.get("httproutes", "apps", "web-route")
        assert route["spec"]["hostnames"] == ["new.example.com"]

    def test_intent_without_routing(self, cluster, reconciler, routing_spec) -> None:
        """Test that routing is not required for Ready when not configured."""
        del routing_spec["routing"]
        cluster.state.add_intent("apps", "web", routing_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.success
        assert _condition(cluster, CONDITION_ROUTING_READY)["reason"] == "RoutingNotConfigured"
        assert _condition(cluster, CONDITION_READY)["status"] == "True"
        assert cluster.state.write_count("create", "httproutes") == 0

    def test_missing_intent(self, cluster, reconciler) -> None:
        """Test that a deleted intent is a successful no-op."""
        result = reconciler.reconcile("apps", "gone")

        assert result.success
        assert result.state == ReconcileState.NOT_FOUND
        assert result.requeue_after is None
        assert cluster.state.writes == []


    def test_first_pass_converges_with_info_logging(
        self, cluster, reconciler, routing_spec, caplog
    ) -> None:
        """Test that the production log level does not break owned-resource writes."""
        caplog.set_level(logging.INFO)
        cluster.state.add_intent("apps", "web", routing_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.state == ReconcileState.CONVERGED, result.error
        assert _condition(cluster, CONDITION_READY)["status"] == "True"
        assert cluster.state.event_reasons().count("HTTPRouteCreated") == 1
        assert any(r.getMessage() == "Created owned resource" for r in caplog.records)


class TestValidationShortCircuit:
    """Tests for passes stopped by preconditions."""

    def test_namespace_not_opted_in(self, cluster, reconciler, routing_spec) -> None:
        """Test that an unlabelled namespace creates no route."""
        cluster.state.add_namespace("apps", {})
        cluster.state.add_intent("apps", "web", routing_spec)

        result = reconciler.reconcile("apps", "web")

        assert not result.success
        assert result.failed_stage == ReconcileState.VALIDATING
        assert result.requeue_after == VALIDATION_REQUEUE
        ready = _condition(cluster, CONDITION_READY)
        assert ready["status"] == "False"
        assert ready["reason"] == "NamespaceNotOptedIn"
        assert cluster.state.write_count("create", "httproutes") == 0
        assert cluster.keycloak.requests == []

    def test_service_not_found(self, cluster, reconciler, auth_spec) -> None:
        """Test that a missing service stops the pass before auth runs."""
        auth_spec["service"] = {"name": "missing", "port": 8080}
        cluster.state.add_intent("apps", "web", auth_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.error.reason == "ServiceNotFound"
        assert cluster.keycloak.requests == []
        assert cluster.state.get("securitypolicies", "apps", "web-security") is None

    def test_invalid_spec(self, cluster, reconciler, routing_spec) -> None:
        """Test that an unparseable spec is reported through Ready."""
        routing_spec["hostname"] = "Not A Hostname"
        cluster.state.add_intent("apps", "web", routing_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.error.reason == "InvalidSpec"
        assert result.requeue_after == VALIDATION_REQUEUE
        assert _condition(cluster, CONDITION_READY)["reason"] == "InvalidSpec"


class TestAuthentication:
    """Tests for passes with authentication enabled."""

    def test_first_pass_provisions_once(self, cluster, reconciler, auth_spec) -> None:
        """Test that the first pass provisions one client and sets AuthReady."""
        cluster.state.add_intent("apps", "web", auth_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.success
        assert cluster.keycloak.count("POST", "/clients") == 1
        assert cluster.state.get("secrets", "apps", "web-oidc-client") is not None
        assert cluster.state.get("securitypolicies", "apps", "web-security") is not None
        assert _condition(cluster, CONDITION_AUTH_READY)["status"] == "True"
        assert _condition(cluster, CONDITION_READY)["status"] == "True"

    def test_second_pass_makes_no_provider_calls(self, cluster, reconciler, auth_spec) -> None:
        """Test that a converged auth intent is left alone."""
        cluster.state.add_intent("apps", "web", auth_spec)
        reconciler.reconcile("apps", "web")
        before = _condition(cluster, CONDITION_AUTH_READY)
        cluster.state.reset_counters()
        cluster.keycloak.requests.clear()

        result = reconciler.reconcile("apps", "web")

        assert result.success
        assert cluster.keycloak.requests == []
        assert cluster.state.writes == []
        assert cluster.state.events == []
        assert _condition(cluster, CONDITION_AUTH_READY) == before

    def test_auth_disabled_skips_provider(self, cluster, reconciler, auth_spec) -> None:
        """Test that disabled auth makes no identity provider calls."""
        auth_spec["auth"]["enabled"] = False
        cluster.state.add_intent("apps", "web", auth_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.success
        assert cluster.keycloak.requests == []
        assert cluster.state.get("securitypolicies", "apps", "web-security") is None

    def test_provider_timeout_is_transient(self, cluster, reconciler, auth_spec) -> None:
        """Test that an IdP timeout requeues on the short interval."""
        cluster.keycloak.timeout = True
        cluster.state.add_intent("apps", "web", auth_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.failed_stage == ReconcileState.AUTHENTICATING
        assert result.requeue_after == TRANSIENT_REQUEUE
        assert _condition(cluster, CONDITION_READY)["reason"] == "ProvisioningFailed"
        assert _condition(cluster, CONDITION_ROUTING_READY)["status"] == "True"

    def test_provider_rejection_is_permanent(self, cluster, reconciler, auth_spec) -> None:
        """Test that an IdP rejection has its own reason and the long requeue."""
        cluster.keycloak.fail_status = 403
        cluster.state.add_intent("apps", "web", auth_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.failed_stage == ReconcileState.AUTHENTICATING
        assert result.requeue_after == VALIDATION_REQUEUE
        assert _condition(cluster, CONDITION_AUTH_READY)["reason"] == "ProviderRejected"

    def test_unknown_provider_is_permanent(self, cluster, reconciler, auth_spec) -> None:
        """Test that an unknown provider requeues on the long interval."""
        auth_spec["auth"]["provider"] = "okta"
        cluster.state.add_intent("apps", "web", auth_spec)

        result = reconciler.reconcile("apps", "web")

        assert result.error.reason == "InvalidProvider"
        assert result.requeue_after == VALIDATION_REQUEUE


class TestTransientFailures:
    """Tests for retry behavior on transient failures."""

    def test_gateway_not_found(self, routing_spec) -> None:
        """Test that a missing gateway requeues on the short interval."""
        with mock_cluster_context(gateways=False) as ctx:
            ctx.state.add_managed_namespace("apps")
            ctx.state.add_service("apps", "web", [8080])
            ctx.state.add_intent("apps", "web", routing_spec)
            config = ctx.config(transient_requeue_seconds=TRANSIENT_REQUEUE)

            result = ctx.reconciler(config).reconcile("apps", "web")

            assert result.failed_stage == ReconcileState.ROUTING
            assert result.error.reason == "GatewayNotFound"
            assert result.requeue_after == TRANSIENT_REQUEUE

    def test_status_conflicts_are_retried(self, cluster, reconciler, routing_spec) -> None:
        """Test that status write conflicts are retried with a fresh read."""
        cluster.state.add_intent("apps", "web", routing_spec)
        cluster.state.inject_conflict("replace_status", "appintents", "web", times=2)

        result = reconciler.reconcile("apps", "web")

        assert result.success
        assert _condition(cluster, CONDITION_READY)["status"] == "True"

    def test_status_conflicts_exhausted(self, cluster, reconciler, routing_spec) -> None:
        """Test that unresolved conflicts fail the pass as transient."""
        cluster.state.add_intent("apps", "web", routing_spec)
        cluster.state.inject_conflict("replace_status", "appintents", "web", times=100)

        result = reconciler.reconcile("apps", "web")

        assert not result.success
        assert result.error.transient
        assert result.requeue_after == TRANSIENT_REQUEUE

    def test_finalizer_conflict_is_retried(self, cluster, reconciler, routing_spec) -> None:
        """Test that a conflicting finalizer update is retried."""
        cluster.state.add_intent("apps", "web", routing_spec)
        cluster.state.inject_conflict("replace", "appintents", "web", times=1)

        result = reconciler.reconcile("apps", "web")

        assert result.success
        stored = cluster.state.get("appintents", "apps", "web")
        assert stored["metadata"]["finalizers"] == [FINALIZER]


class TestDeletion:
    """Tests for finalization."""

    def test_cleanup_then_release(self, cluster, reconciler, auth_spec) -> None:
        """Test that deletion removes the IdP client and route, then the finalizer."""
        cluster.state.add_intent("apps", "web", auth_spec)
        reconciler.reconcile("apps", "web")
        cluster.state.request_deletion("appintents", "apps", "web")

        result = reconciler.reconcile("apps", "web")

        assert result.success
        assert result.state == ReconcileState.DELETED
        assert cluster.keycloak.find("web-apps-client") is None
        assert cluster.state.get("httproutes", "apps", "web-route") is None
        assert cluster.state.get("appintents", "apps", "web") is None

    def test_cleanup_failure_keeps_finalizer(self, cluster, reconciler, auth_spec) -> None:
        """Test that a failing IdP blocks deletion until cleanup succeeds."""
        cluster.state.add_intent("apps", "web", auth_spec)
        reconciler.reconcile("apps", "web")
        cluster.state.request_deletion("appintents", "apps", "web")
        cluster.keycloak.fail_status = 503

        result = reconciler.reconcile("apps", "web")

        assert not result.success
        assert result.failed_stage == ReconcileState.DELETING
        assert result.requeue_after == TRANSIENT_REQUEUE
        stored = cluster.state.get("appintents", "apps", "web")
        assert FINALIZER in stored["metadata"]["finalizers"]

        cluster.keycloak.fail_status = None
        result = reconciler.reconcile("apps", "web")

        assert result.state == ReconcileState.DELETED
        assert cluster.state.get("appintents", "apps", "web") is None
        assert cluster.keycloak.clients == {}

    def test_route_failure_does_not_repeat_client_deletion(
        self, cluster, reconciler, auth_spec
    ) -> None:
        """Test that the IdP client is deleted once even when route cleanup is retried."""
        cluster.state.add_intent("apps", "web", auth_spec)
        reconciler.reconcile("apps", "web")
        cluster.state.request_deletion("appintents", "apps", "web")
        cluster.state.inject_failure("delete", "httproutes", "web-route", 503)

        result = reconciler.reconcile("apps", "web")

        assert result.failed_stage == ReconcileState.DELETING
        assert cluster.keycloak.count("DELETE") == 0
        assert cluster.keycloak.find("web-apps-client") is not None

        cluster.state.failures.clear()
        result = reconciler.reconcile("apps", "web")

        assert result.state == ReconcileState.DELETED
        assert cluster.keycloak.count("DELETE") == 1
        assert cluster.state.event_reasons().count("ClientDeleted") == 1
        assert cluster.state.get("appintents", "apps", "web") is None

    def test_deletion_without_finalizer(self, cluster, reconciler, routing_spec) -> None:
        """Test that an intent deleted before the first pass needs no cleanup."""
        cluster.state.add_intent("apps", "web", routing_spec)
        cluster.state.request_deletion("appintents", "apps", "web")

        result = reconciler.reconcile("apps", "web")

        assert result.state == ReconcileState.NOT_FOUND
        assert cluster.state.writes == []


class TestReconcileResult:
    """Tests for ReconcileResult helpers."""

    def test_fail_resets_requeue(self) -> None:
        """Test that failing a result clears a previously chosen requeue."""
        result = ReconcileResult(key="apps/web", requeue_after=RESYNC)

        result.fail(ReconcileState.ROUTING, TransientError("SyncFailed", "boom"))

        assert result.state == ReconcileState.FAILED
        assert result.failed_stage == ReconcileState.ROUTING
        assert result.requeue_after is None
        assert not result.success
