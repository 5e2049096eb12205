"""Readiness conditions on the AppIntent status.

Conditions are kept as an ordered list unique by type. Setting a condition
updates the existing entry in place or appends a new one. The transition
time moves only when the status value changes; a new reason or message
alone leaves it untouched.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class ConditionStatus(str, Enum):
    """Tri-state condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


# Condition types
CONDITION_READY = "Ready"
CONDITION_ROUTING_READY = "RoutingReady"
CONDITION_AUTH_READY = "AuthReady"

# Condition reasons
REASON_RECONCILING = "Reconciling"
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_FAILED = "Failed"
REASON_NAMESPACE_NOT_OPTED_IN = "NamespaceNotOptedIn"
REASON_SERVICE_NOT_FOUND = "ServiceNotFound"
REASON_INVALID_SPEC = "InvalidSpec"
REASON_GATEWAY_NOT_FOUND = "GatewayNotFound"
REASON_INVALID_TLS_MODE = "InvalidTLSMode"
REASON_CERTIFICATE_FAILED = "CertificateFailed"
REASON_SYNC_FAILED = "SyncFailed"
REASON_ROUTE_READY = "HTTPRouteReady"
REASON_ROUTING_NOT_CONFIGURED = "RoutingNotConfigured"
REASON_AUTH_DISABLED = "AuthDisabled"
REASON_AUTH_CONFIGURED = "AuthConfigured"
REASON_INVALID_PROVIDER = "InvalidProvider"
REASON_PROVISIONING_FAILED = "ProvisioningFailed"
REASON_PROVIDER_REJECTED = "ProviderRejected"
REASON_VALIDATION_FAILED = "ValidationFailed"
REASON_SECURITY_POLICY_FAILED = "SecurityPolicyFailed"


def _now() -> datetime:
    # Kubernetes serializes condition times with second precision
    return datetime.now(UTC).replace(microsecond=0)


class Condition(BaseModel):
    """A typed readiness signal, serialized in Kubernetes metav1.Condition form."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    observed_generation: int = Field(0, alias="observedGeneration")
    last_transition_time: datetime = Field(default_factory=_now, alias="lastTransitionTime")

    def to_dict(self) -> dict[str, object]:
        """Serialize with camelCase keys and an RFC 3339 timestamp."""
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": self.last_transition_time.astimezone(UTC)
            .isoformat()
            .replace("+00:00", "Z"),
        }


def set_condition(
    conditions: list[Condition],
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
    observed_generation: int = 0,
    now: datetime | None = None,
) -> Condition:
    """Insert or update a condition in place.

    Args:
        conditions: The status condition list, modified in place.
        condition_type: Condition type key.
        status: New status value.
        reason: Machine-readable reason (CamelCase).
        message: Human-readable detail.
        observed_generation: Generation of the spec this condition describes.
        now: Clock override for tests.

    Returns:
        The stored condition.
    """
    existing = get_condition(conditions, condition_type)
    if existing is None:
        condition = Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            observed_generation=observed_generation,
            last_transition_time=now or _now(),
        )
        conditions.append(condition)
        return condition

    if existing.status != status:
        existing.status = status
        existing.last_transition_time = now or _now()
    existing.reason = reason
    existing.message = message
    existing.observed_generation = observed_generation
    return existing


def get_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    """Find a condition by type, or None."""
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def remove_condition(conditions: list[Condition], condition_type: str) -> bool:
    """Remove a condition by type. Returns True if one was removed."""
    for index, condition in enumerate(conditions):
        if condition.type == condition_type:
            del conditions[index]
            return True
    return False


def is_condition_true(conditions: list[Condition], condition_type: str) -> bool:
    condition = get_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def is_condition_false(conditions: list[Condition], condition_type: str) -> bool:
    condition = get_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.FALSE
