"""Deterministic names, labels and owner references for owned resources.

Every name is derived from the intent alone so that repeated passes always
address the same downstream objects.
"""

from __future__ import annotations

from typing import Any

from .models import AppIntent, GatewaySelector

MANAGED_BY = "nebari-operator"

# Namespace opt-in
MANAGED_NAMESPACE_LABEL = "nebari.dev/managed"
MANAGED_NAMESPACE_VALUE = "true"

FINALIZER = "reconcilers.nebari.dev/finalizer"

# Shared gateways
GATEWAY_NAMESPACE = "envoy-gateway-system"
PUBLIC_GATEWAY_NAME = "nebari-gateway"
INTERNAL_GATEWAY_NAME = "nebari-internal-gateway"
HTTPS_LISTENER = "https"
HTTP_LISTENER = "http"

# TLS
WILDCARD_TLS_SECRET = "nebari-gateway-tls"
DEFAULT_CLUSTER_ISSUER = "nebari-ca-issuer"
TLS_ENABLED_ANNOTATION = "nebari.dev/tls-enabled"
TLS_SECRET_ANNOTATION = "nebari.dev/tls-secret"

# Component label values
COMPONENT_ROUTING = "routing"
COMPONENT_TLS = "tls"
COMPONENT_AUTH = "auth"

# Client secret keys
CLIENT_ID_KEY = "client-id"
CLIENT_SECRET_KEY = "client-secret"


def route_name(intent: AppIntent) -> str:
    return f"{intent.name}-route"


def security_policy_name(intent: AppIntent) -> str:
    return f"{intent.name}-security"


def certificate_name(intent: AppIntent) -> str:
    return f"{intent.name}-cert"


def certificate_secret_name(intent: AppIntent) -> str:
    return f"{certificate_name(intent)}-tls"


def client_secret_name(intent: AppIntent) -> str:
    """Secret holding the OIDC client credentials.

    An explicit ``auth.clientSecretRef`` overrides the generated name.
    """
    auth = intent.spec.auth
    if auth is not None and auth.client_secret_ref:
        return auth.client_secret_ref
    return f"{intent.name}-oidc-client"


def client_id(intent: AppIntent) -> str:
    """IdP client ID, unique across namespaces."""
    return f"{intent.name}-{intent.namespace}-client"


def gateway_name(selector: GatewaySelector) -> str:
    if selector == GatewaySelector.INTERNAL:
        return INTERNAL_GATEWAY_NAME
    return PUBLIC_GATEWAY_NAME


def standard_labels(intent: AppIntent, component: str) -> dict[str, str]:
    """Labels stamped on every resource the operator owns."""
    return {
        "app.kubernetes.io/name": intent.name,
        "app.kubernetes.io/instance": intent.name,
        "app.kubernetes.io/managed-by": MANAGED_BY,
        "app.kubernetes.io/component": component,
    }


def owner_reference(intent: AppIntent) -> dict[str, Any]:
    """Controller owner reference pointing at the intent.

    Garbage collection removes owned resources once the intent is gone.
    """
    return {
        "apiVersion": intent.api_version,
        "kind": intent.kind,
        "name": intent.name,
        "uid": intent.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }
