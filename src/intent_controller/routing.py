"""Routing stage: gateway attachment, TLS and the HTTPRoute.

The HTTPRoute attaches to one of the shared gateways and forwards the
intent's hostname to its backend service. TLS is terminated at the gateway,
either with the shared wildcard certificate or with a per-host cert-manager
Certificate owned by the intent.

Specs are written with the fields the API server would otherwise default
(parentRef group/kind, backendRef group/kind/weight) so that a stored object
compares equal to a freshly built one.
"""

from __future__ import annotations

import logging
from typing import Any

from kubernetes.client.rest import ApiException

from .conditions import (
    CONDITION_ROUTING_READY,
    REASON_CERTIFICATE_FAILED,
    REASON_GATEWAY_NOT_FOUND,
    REASON_INVALID_TLS_MODE,
    REASON_ROUTE_READY,
    REASON_ROUTING_NOT_CONFIGURED,
    ConditionStatus,
    set_condition,
)
from .errors import PreconditionError, ReconcileError, TransientError
from .models import AppIntent, GatewaySelector, ResourceReference, TLSMode
from .naming import (
    COMPONENT_ROUTING,
    COMPONENT_TLS,
    DEFAULT_CLUSTER_ISSUER,
    GATEWAY_NAMESPACE,
    HTTP_LISTENER,
    HTTPS_LISTENER,
    TLS_ENABLED_ANNOTATION,
    TLS_SECRET_ANNOTATION,
    WILDCARD_TLS_SECRET,
    certificate_name,
    certificate_secret_name,
    gateway_name,
    route_name,
)
from .platform import (
    CERTIFICATE,
    EVENT_GATEWAY_NOT_FOUND,
    EVENT_ROUTE_CREATED,
    EVENT_ROUTE_DELETED,
    EVENT_ROUTE_UPDATED,
    EVENT_TLS_CONFIGURED,
    EVENT_TLS_FAILED,
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    GATEWAY,
    HTTP_ROUTE,
    KubernetesPlatform,
)
from .sync import SyncOutcome, Synchronizer

logger = logging.getLogger(__name__)

GATEWAY_API_GROUP = "gateway.networking.k8s.io"
CERT_MANAGER_GROUP = "cert-manager.io"


# =============================================================================
# Desired state builders
# =============================================================================


def tls_enabled(intent: AppIntent) -> bool:
    routing = intent.spec.routing
    return routing is None or routing.tls_enabled


def tls_mode(intent: AppIntent) -> str:
    routing = intent.spec.routing
    if routing is None or routing.tls is None or not routing.tls.mode:
        return TLSMode.WILDCARD.value
    return routing.tls.mode


def build_route_spec(intent: AppIntent) -> dict[str, Any]:
    """Build the HTTPRoute spec for an intent."""
    routing = intent.spec.routing
    gateway = gateway_name(routing.gateway if routing is not None else GatewaySelector.PUBLIC)
    section = HTTPS_LISTENER if tls_enabled(intent) else HTTP_LISTENER

    matches = [
        {"path": {"type": route.path_type.value, "value": route.path_prefix}}
        for route in (routing.routes if routing is not None else [])
    ]

    return {
        "parentRefs": [
            {
                "group": GATEWAY_API_GROUP,
                "kind": "Gateway",
                "name": gateway,
                "namespace": GATEWAY_NAMESPACE,
                "sectionName": section,
            }
        ],
        "hostnames": [intent.spec.hostname],
        "rules": [
            {
                "matches": matches,
                "backendRefs": [
                    {
                        "group": "",
                        "kind": "Service",
                        "name": intent.spec.service.name,
                        "port": intent.spec.service.port,
                        "weight": 1,
                    }
                ],
            }
        ],
    }


def build_certificate_spec(intent: AppIntent) -> dict[str, Any]:
    """Build the cert-manager Certificate spec for per-host TLS."""
    routing = intent.spec.routing
    issuer = routing.tls.issuer_ref if routing is not None and routing.tls is not None else None
    return {
        "secretName": certificate_secret_name(intent),
        "dnsNames": [intent.spec.hostname],
        "issuerRef": {
            "name": issuer.name if issuer is not None else DEFAULT_CLUSTER_ISSUER,
            "kind": issuer.kind if issuer is not None else "ClusterIssuer",
            "group": CERT_MANAGER_GROUP,
        },
    }


def route_annotations(intent: AppIntent, tls_secret: str | None) -> dict[str, str]:
    annotations = {TLS_ENABLED_ANNOTATION: "true" if tls_enabled(intent) else "false"}
    if tls_secret:
        annotations[TLS_SECRET_ANNOTATION] = tls_secret
    return annotations


def wildcard_tls_secret() -> str:
    return f"{GATEWAY_NAMESPACE}/{WILDCARD_TLS_SECRET}"


# =============================================================================
# Stage
# =============================================================================


class RoutingStage:
    """Converges the HTTPRoute and TLS exposure for an intent."""

    def __init__(self, platform: KubernetesPlatform, synchronizer: Synchronizer) -> None:
        self._platform = platform
        self._sync = synchronizer

    @staticmethod
    def is_configured(intent: AppIntent) -> bool:
        return intent.spec.routing is not None

    def reconcile(self, intent: AppIntent) -> None:
        """Converge routing. Sets RoutingReady on every path.

        Raises:
            TransientError: Gateway missing, conflicts or API failures.
            PreconditionError: Invalid TLS mode or an object the API rejected.
        """
        if not self.is_configured(intent):
            set_condition(
                intent.status.conditions,
                CONDITION_ROUTING_READY,
                ConditionStatus.FALSE,
                REASON_ROUTING_NOT_CONFIGURED,
                "No routing configuration specified",
                intent.generation,
            )
            intent.status.route_ref = None
            intent.status.gateway_ref = None
            return

        try:
            gateway = self._check_gateway(intent)
            tls_secret = self._reconcile_tls(intent)
            self._reconcile_route(intent, tls_secret)
        except ReconcileError as e:
            logger.warning(
                "Routing failed",
                extra={"intent": intent.key, "reason": e.reason, "error": e.message},
            )
            set_condition(
                intent.status.conditions,
                CONDITION_ROUTING_READY,
                ConditionStatus.FALSE,
                e.reason,
                e.message,
                intent.generation,
            )
            raise

        intent.status.gateway_ref = ResourceReference(name=gateway, namespace=GATEWAY_NAMESPACE)
        intent.status.route_ref = ResourceReference(
            name=route_name(intent), namespace=intent.namespace
        )
        set_condition(
            intent.status.conditions,
            CONDITION_ROUTING_READY,
            ConditionStatus.TRUE,
            REASON_ROUTE_READY,
            "HTTPRoute is configured and ready",
            intent.generation,
        )

    def _check_gateway(self, intent: AppIntent) -> str:
        routing = intent.spec.routing
        name = gateway_name(routing.gateway if routing is not None else GatewaySelector.PUBLIC)
        try:
            gateway = self._platform.get(GATEWAY, GATEWAY_NAMESPACE, name)
        except ApiException as e:
            raise TransientError(
                REASON_GATEWAY_NOT_FOUND, f"failed to get gateway {name}: {e.status} {e.reason}"
            ) from e

        if gateway is None:
            message = f"gateway {name} not found in namespace {GATEWAY_NAMESPACE}"
            self._platform.record_event(
                intent, EVENT_TYPE_WARNING, EVENT_GATEWAY_NOT_FOUND, message
            )
            raise TransientError(REASON_GATEWAY_NOT_FOUND, message)
        return name

    def _reconcile_tls(self, intent: AppIntent) -> str | None:
        """Make the TLS secret available and return its ``namespace/name``."""
        if not tls_enabled(intent):
            return None

        mode = tls_mode(intent)
        if mode == TLSMode.WILDCARD.value:
            return wildcard_tls_secret()

        if mode != TLSMode.PER_HOST.value:
            message = (
                f"unsupported TLS mode {mode!r}, expected "
                f"{TLSMode.WILDCARD.value!r} or {TLSMode.PER_HOST.value!r}"
            )
            self._platform.record_event(intent, EVENT_TYPE_WARNING, EVENT_TLS_FAILED, message)
            raise PreconditionError(REASON_INVALID_TLS_MODE, message)

        name = certificate_name(intent)

        def mutate(obj: dict[str, Any]) -> None:
            obj["spec"] = build_certificate_spec(intent)

        try:
            result = self._sync.sync(intent, CERTIFICATE, name, mutate, component=COMPONENT_TLS)
        except ReconcileError as e:
            self._platform.record_event(intent, EVENT_TYPE_WARNING, EVENT_TLS_FAILED, e.message)
            raise type(e)(REASON_CERTIFICATE_FAILED, e.message) from e

        if result.changed:
            self._platform.record_event(
                intent,
                EVENT_TYPE_NORMAL,
                EVENT_TLS_CONFIGURED,
                f"Certificate {name} {result.outcome.value} for {intent.spec.hostname}",
            )
        return f"{intent.namespace}/{certificate_secret_name(intent)}"

    def _reconcile_route(self, intent: AppIntent, tls_secret: str | None) -> None:
        name = route_name(intent)
        annotations = route_annotations(intent, tls_secret)

        def mutate(obj: dict[str, Any]) -> None:
            obj["spec"] = build_route_spec(intent)
            metadata = obj["metadata"]
            merged = dict(metadata.get("annotations") or {})
            merged.pop(TLS_SECRET_ANNOTATION, None)
            merged.update(annotations)
            metadata["annotations"] = merged

        result = self._sync.sync(intent, HTTP_ROUTE, name, mutate, component=COMPONENT_ROUTING)

        if result.outcome == SyncOutcome.CREATED:
            self._platform.record_event(
                intent, EVENT_TYPE_NORMAL, EVENT_ROUTE_CREATED, f"Created HTTPRoute {name}"
            )
        elif result.outcome == SyncOutcome.UPDATED:
            self._platform.record_event(
                intent, EVENT_TYPE_NORMAL, EVENT_ROUTE_UPDATED, f"Updated HTTPRoute {name}"
            )

    def cleanup_route(self, intent: AppIntent) -> None:
        """Delete the HTTPRoute during finalization. A missing route is fine."""
        name = route_name(intent)
        if self._sync.delete(intent, HTTP_ROUTE, name):
            self._platform.record_event(
                intent, EVENT_TYPE_NORMAL, EVENT_ROUTE_DELETED, f"Deleted HTTPRoute {name}"
            )
