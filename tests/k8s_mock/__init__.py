"""Kubernetes and Keycloak API mocks for integration testing.

This module provides in-memory implementations of the Kubernetes and
Keycloak admin APIs so the full reconciliation pipeline can run without a
cluster.

Key Features:
- Namespaces, Services, Secrets and custom objects in one state object
- resourceVersion conflicts, generation bumps and finalizer-aware deletion
- Write and event recording for idempotence assertions
- Conflict and failure injection
- Keycloak admin API served through httpx.MockTransport

Usage:
    from k8s_mock import MockClusterContext

    with MockClusterContext() as ctx:
        ctx.state.add_managed_namespace("apps")
        ctx.state.add_service("apps", "web", [8080])
        ctx.state.add_intent("apps", "web", spec)

        result = ctx.reconciler().reconcile("apps", "web")

        assert ctx.state.write_count("create", "httproutes") == 1
"""

from .cluster import FakeCoreV1Api, FakeCustomObjectsApi, MockClusterState, WriteRecord
from .context import MockClusterContext, keycloak_test_config, mock_cluster_context
from .keycloak import MockKeycloakServer

__all__ = [
    "FakeCoreV1Api",
    "FakeCustomObjectsApi",
    "MockClusterContext",
    "MockClusterState",
    "MockKeycloakServer",
    "WriteRecord",
    "keycloak_test_config",
    "mock_cluster_context",
]
