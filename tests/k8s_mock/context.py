"""Cluster mock context for integration testing.

Provides a context manager that patches the Kubernetes client classes and the
Keycloak provider factory with in-memory implementations.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any
from unittest import mock

from intent_controller.config import Config, KeycloakConfig
from intent_controller.keycloak import KeycloakAdminClient, KeycloakProvider
from intent_controller.platform import KubernetesPlatform
from intent_controller.reconciler import Reconciler

from .cluster import FakeCoreV1Api, FakeCustomObjectsApi, MockClusterState
from .keycloak import ADMIN_PASSWORD, ADMIN_USERNAME, KEYCLOAK_URL, MockKeycloakServer


def keycloak_test_config(**overrides: Any) -> KeycloakConfig:
    """KeycloakConfig pointing at the mock server with valid credentials."""
    values: dict[str, Any] = {
        "url": KEYCLOAK_URL,
        "realm": "nebari",
        "admin_username": ADMIN_USERNAME,
        "admin_password": ADMIN_PASSWORD,
        "timeout_seconds": 2.0,
    }
    values.update(overrides)
    return KeycloakConfig(**values)


class MockClusterContext:
    """Context manager for Kubernetes and Keycloak mocking in integration tests.

    Patches:
    - kubernetes.client.CoreV1Api → FakeCoreV1Api
    - kubernetes.client.CustomObjectsApi → FakeCustomObjectsApi
    - intent_controller.main.load_client_configuration → no-op
    - intent_controller.reconciler.KeycloakProvider → provider bound to MockKeycloakServer

    Usage:
        with MockClusterContext() as ctx:
            ctx.state.add_managed_namespace("apps")
            reconciler = ctx.reconciler()
            result = reconciler.reconcile("apps", "web")

            assert ctx.state.write_count("create", "httproutes") == 1
    """

    def __init__(self, *, gateways: bool = True, fail_events: bool = False) -> None:
        """Initialize mock context.

        Args:
            gateways: Seed the public and internal gateways.
            fail_events: Make every event write fail.
        """
        self._gateways = gateways
        self._fail_events = fail_events

        # These are set when context is entered
        self._state: MockClusterState | None = None
        self._keycloak: MockKeycloakServer | None = None
        self._patches: list[Any] = []

    @property
    def state(self) -> MockClusterState:
        """Get the mock cluster state.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._state is None:
            raise RuntimeError("MockClusterContext must be used as a context manager")
        return self._state

    @property
    def keycloak(self) -> MockKeycloakServer:
        """Get the mock Keycloak server.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._keycloak is None:
            raise RuntimeError("MockClusterContext must be used as a context manager")
        return self._keycloak

    def platform(self) -> KubernetesPlatform:
        return KubernetesPlatform(FakeCoreV1Api(self.state), FakeCustomObjectsApi(self.state))

    def keycloak_provider(self, config: KeycloakConfig | None = None) -> KeycloakProvider:
        config = config or keycloak_test_config()
        return KeycloakProvider(
            config, KeycloakAdminClient(config, transport=self.keycloak.transport)
        )

    def config(self, **overrides: Any) -> Config:
        values: dict[str, Any] = {"keycloak": keycloak_test_config()}
        values.update(overrides)
        return Config(**values)

    def reconciler(self, config: Config | None = None) -> Reconciler:
        return Reconciler(config or self.config(), self.platform())

    def __enter__(self) -> MockClusterContext:
        """Enter the mock context, applying patches."""
        self._state = MockClusterState(fail_events=self._fail_events)
        self._keycloak = MockKeycloakServer()

        if self._gateways:
            self._state.add_gateway("nebari-gateway")
            self._state.add_gateway("nebari-internal-gateway")

        self._patches.append(
            mock.patch(
                "intent_controller.platform.client.CoreV1Api",
                side_effect=lambda *args, **kwargs: FakeCoreV1Api(self.state),
            )
        )
        self._patches.append(
            mock.patch(
                "intent_controller.platform.client.CustomObjectsApi",
                side_effect=lambda *args, **kwargs: FakeCustomObjectsApi(self.state),
            )
        )
        self._patches.append(mock.patch("intent_controller.main.load_client_configuration"))

        def create_keycloak_provider(config: KeycloakConfig) -> KeycloakProvider:
            return KeycloakProvider(
                config, KeycloakAdminClient(config, transport=self.keycloak.transport)
            )

        self._patches.append(
            mock.patch(
                "intent_controller.reconciler.KeycloakProvider",
                side_effect=create_keycloak_provider,
            )
        )

        # Start all patches
        for patch in self._patches:
            patch.start()

        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the mock context, removing patches."""
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()


@contextmanager
def mock_cluster_context(
    *, gateways: bool = True, fail_events: bool = False
) -> Generator[MockClusterContext, None, None]:
    """Convenience function for creating a mock cluster context.

    Yields:
        MockClusterContext for test assertions.
    """
    ctx = MockClusterContext(gateways=gateways, fail_events=fail_events)
    with ctx:
        yield ctx
