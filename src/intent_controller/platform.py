"""Thin access layer over the Kubernetes API.

All cluster reads and writes performed by the engine go through
KubernetesPlatform. Objects cross this boundary as plain dicts in their
wire (camelCase) form, whatever the underlying client returns.

Reads return None for missing objects. Writes let ApiException propagate so
callers can tell conflicts (409) apart from other failures.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException

from .models import API_GROUP, API_VERSION, KIND, PLURAL, AppIntent

logger = logging.getLogger(__name__)

EVENT_SOURCE_COMPONENT = "nebari-operator"

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# Event reasons
EVENT_VALIDATION_SUCCESS = "ValidationSuccess"
EVENT_NAMESPACE_NOT_OPTED_IN = "NamespaceNotOptedIn"
EVENT_SERVICE_NOT_FOUND = "ServiceNotFound"
EVENT_ROUTE_CREATED = "HTTPRouteCreated"
EVENT_ROUTE_UPDATED = "HTTPRouteUpdated"
EVENT_ROUTE_DELETED = "HTTPRouteDeleted"
EVENT_GATEWAY_NOT_FOUND = "GatewayNotFound"
EVENT_TLS_CONFIGURED = "TLSConfigured"
EVENT_TLS_FAILED = "TLSFailed"
EVENT_AUTH_CONFIGURED = "AuthConfigured"
EVENT_AUTH_FAILED = "AuthFailed"
EVENT_CLIENT_PROVISIONED = "ClientProvisioned"
EVENT_CLIENT_PROVISION_FAILED = "ClientProvisionFailed"
EVENT_CLIENT_DELETED = "ClientDeleted"
EVENT_SECURITY_POLICY_CREATED = "SecurityPolicyCreated"
EVENT_SECURITY_POLICY_UPDATED = "SecurityPolicyUpdated"


@dataclass(frozen=True)
class ResourceKind:
    """API coordinates of a resource kind the engine manages.

    An empty group means the core API group.
    """

    kind: str
    group: str
    version: str
    plural: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @property
    def is_core(self) -> bool:
        return not self.group


APP_INTENT = ResourceKind(KIND, API_GROUP, API_VERSION, PLURAL)
GATEWAY = ResourceKind("Gateway", "gateway.networking.k8s.io", "v1", "gateways")
HTTP_ROUTE = ResourceKind("HTTPRoute", "gateway.networking.k8s.io", "v1", "httproutes")
SECURITY_POLICY = ResourceKind(
    "SecurityPolicy", "gateway.envoyproxy.io", "v1alpha1", "securitypolicies"
)
CERTIFICATE = ResourceKind("Certificate", "cert-manager.io", "v1", "certificates")
SECRET = ResourceKind("Secret", "", "v1", "secrets")


def load_client_configuration() -> None:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        kube_config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except kube_config.ConfigException:
        kube_config.load_kube_config()
        logger.info("Loaded Kubernetes configuration from kubeconfig")


def decode_secret_data(data: dict[str, str] | None) -> dict[str, str]:
    """Decode the base64 ``data`` block of a Secret."""
    if not data:
        return {}
    return {key: base64.b64decode(value).decode("utf-8") for key, value in data.items()}


def encode_secret_data(values: dict[str, str]) -> dict[str, str]:
    """Encode plain values into a Secret ``data`` block."""
    return {key: base64.b64encode(value.encode("utf-8")).decode("ascii") for key, value in values.items()}


class KubernetesPlatform:
    """Kubernetes API facade used by the reconciler and its stages."""

    def __init__(
        self,
        core_api: client.CoreV1Api | None = None,
        custom_api: client.CustomObjectsApi | None = None,
    ) -> None:
        self._core = core_api or client.CoreV1Api()
        self._custom = custom_api or client.CustomObjectsApi()
        self._serializer = client.ApiClient()

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        return self._serializer.sanitize_for_serialization(obj)

    # -------------------------------------------------------------------------
    # Generic namespaced objects
    # -------------------------------------------------------------------------

    def get(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any] | None:
        """Read an object, returning None when it does not exist."""
        try:
            if kind.is_core:
                return self._to_dict(self._core.read_namespaced_secret(name, namespace))
            return self._custom.get_namespaced_custom_object(
                kind.group, kind.version, namespace, kind.plural, name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create(self, kind: ResourceKind, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        if kind.is_core:
            return self._to_dict(self._core.create_namespaced_secret(namespace, body))
        return self._custom.create_namespaced_custom_object(
            kind.group, kind.version, namespace, kind.plural, body
        )

    def replace(
        self, kind: ResourceKind, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Replace an object. The body must carry the resourceVersion that was read."""
        if kind.is_core:
            return self._to_dict(self._core.replace_namespaced_secret(name, namespace, body))
        return self._custom.replace_namespaced_custom_object(
            kind.group, kind.version, namespace, kind.plural, name, body
        )

    def delete(self, kind: ResourceKind, namespace: str, name: str) -> bool:
        """Delete an object. Returns False if it was already gone."""
        try:
            if kind.is_core:
                self._core.delete_namespaced_secret(name, namespace)
            else:
                self._custom.delete_namespaced_custom_object(
                    kind.group, kind.version, namespace, kind.plural, name
                )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True

    def replace_status(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        """Replace the status subresource of an AppIntent."""
        return self._custom.replace_namespaced_custom_object_status(
            APP_INTENT.group, APP_INTENT.version, namespace, APP_INTENT.plural, name, body
        )

    # -------------------------------------------------------------------------
    # Core reads
    # -------------------------------------------------------------------------

    def get_namespace(self, name: str) -> dict[str, Any] | None:
        try:
            return self._to_dict(self._core.read_namespace(name))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def get_service(self, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            return self._to_dict(self._core.read_namespaced_service(name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def read_secret_data(self, namespace: str, name: str) -> dict[str, str] | None:
        """Read and decode a Secret's data, or None if the Secret is missing."""
        secret = self.get(SECRET, namespace, name)
        if secret is None:
            return None
        return decode_secret_data(secret.get("data"))

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def record_event(
        self, intent: AppIntent, event_type: str, reason: str, message: str
    ) -> None:
        """Record an event on the intent.

        Events are informational. A failure to record one is logged and
        never interrupts reconciliation.
        """
        now = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{intent.name}.",
                "namespace": intent.namespace,
            },
            "involvedObject": {
                "apiVersion": intent.api_version,
                "kind": intent.kind,
                "name": intent.name,
                "namespace": intent.namespace,
                "uid": intent.metadata.uid,
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": EVENT_SOURCE_COMPONENT},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            self._core.create_namespaced_event(intent.namespace, body)
        except Exception as e:
            logger.warning(
                "Failed to record event",
                extra={"intent": intent.key, "reason": reason, "error": str(e)},
            )
