"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for k8s_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from k8s_mock import MockClusterContext  # noqa: E402


@pytest.fixture
def cluster():
    """Mock cluster with both gateways, one opted-in namespace and a service."""
    with MockClusterContext() as ctx:
        ctx.state.add_managed_namespace("apps")
        ctx.state.add_service("apps", "web", [8080])
        yield ctx


@pytest.fixture
def routing_spec():
    """Spec with routing on the public gateway and auth disabled."""
    return {
        "hostname": "web.example.com",
        "service": {"name": "web", "port": 8080},
        "routing": {"routes": [{"pathPrefix": "/"}]},
    }


@pytest.fixture
def auth_spec(routing_spec):
    """Spec with Keycloak auth and client provisioning."""
    return {
        **routing_spec,
        "auth": {"enabled": True, "provider": "keycloak", "provisionClient": True},
    }
