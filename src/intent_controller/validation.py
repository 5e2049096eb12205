"""Precondition checks that gate every downstream write.

The namespace must opt in to management and the backend service must expose
the requested port. A failure here stops the pass before routing or auth
touch anything.
"""

from __future__ import annotations

import logging

from kubernetes.client.rest import ApiException

from .conditions import (
    CONDITION_READY,
    REASON_NAMESPACE_NOT_OPTED_IN,
    REASON_SERVICE_NOT_FOUND,
    ConditionStatus,
    is_condition_true,
    set_condition,
)
from .errors import PreconditionError, ReconcileError, TransientError
from .models import AppIntent
from .naming import MANAGED_NAMESPACE_LABEL, MANAGED_NAMESPACE_VALUE
from .platform import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    EVENT_VALIDATION_SUCCESS,
    KubernetesPlatform,
)

logger = logging.getLogger(__name__)


class ValidationStage:
    """Checks namespace opt-in and backend service availability."""

    def __init__(self, platform: KubernetesPlatform) -> None:
        self._platform = platform

    def reconcile(self, intent: AppIntent) -> None:
        """Run all precondition checks.

        On success a Normal event is recorded unless the intent is already
        Ready; Ready itself is left for the orchestrator to decide.

        Raises:
            PreconditionError: A check failed. Ready is set to False first.
            TransientError: The API server could not be reached.
        """
        try:
            self._check_namespace(intent)
            self._check_service(intent)
        except ReconcileError as e:
            logger.warning(
                "Validation failed",
                extra={"intent": intent.key, "reason": e.reason, "error": e.message},
            )
            self._platform.record_event(intent, EVENT_TYPE_WARNING, e.reason, e.message)
            set_condition(
                intent.status.conditions,
                CONDITION_READY,
                ConditionStatus.FALSE,
                e.reason,
                e.message,
                intent.generation,
            )
            raise

        logger.info("Validation passed", extra={"intent": intent.key})
        # Converged intents do not repeat the event on every resync
        if is_condition_true(intent.status.conditions, CONDITION_READY):
            return
        self._platform.record_event(
            intent,
            EVENT_TYPE_NORMAL,
            EVENT_VALIDATION_SUCCESS,
            "AppIntent validation completed successfully",
        )

    def _check_namespace(self, intent: AppIntent) -> None:
        try:
            namespace = self._platform.get_namespace(intent.namespace)
        except ApiException as e:
            raise TransientError(
                REASON_NAMESPACE_NOT_OPTED_IN,
                f"failed to get namespace {intent.namespace}: {e.status} {e.reason}",
            ) from e

        labels = ((namespace or {}).get("metadata") or {}).get("labels") or {}
        if labels.get(MANAGED_NAMESPACE_LABEL) != MANAGED_NAMESPACE_VALUE:
            raise PreconditionError(
                REASON_NAMESPACE_NOT_OPTED_IN,
                f"namespace {intent.namespace} is not opted-in to management "
                f"(missing label: {MANAGED_NAMESPACE_LABEL}={MANAGED_NAMESPACE_VALUE})",
            )

    def _check_service(self, intent: AppIntent) -> None:
        ref = intent.spec.service
        try:
            service = self._platform.get_service(intent.namespace, ref.name)
        except ApiException as e:
            raise TransientError(
                REASON_SERVICE_NOT_FOUND,
                f"failed to get service {ref.name}: {e.status} {e.reason}",
            ) from e

        if service is None:
            raise PreconditionError(
                REASON_SERVICE_NOT_FOUND,
                f"service {ref.name} not found in namespace {intent.namespace}",
            )

        ports = ((service.get("spec") or {}).get("ports")) or []
        if not any(p.get("port") == ref.port for p in ports):
            raise PreconditionError(
                REASON_SERVICE_NOT_FOUND,
                f"service {ref.name} does not expose port {ref.port}",
            )
