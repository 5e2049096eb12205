"""Reconciliation orchestrator for AppIntent resources.

One pass converges one intent:
1. Load the intent (nothing to do if it is gone)
2. Finalize it if deletion was requested
3. Ensure the finalizer before any downstream write
4. Validate preconditions; stop on failure
5. Converge routing (when configured)
6. Converge authentication (when enabled)
7. Aggregate stage conditions into Ready
8. Persist status only if it changed
9. Tell the caller when to run again

The pass is synchronous. The trigger guarantees at most one pass per intent
at a time, so the orchestrator keeps no locks and no per-intent state
between passes.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from .auth import AuthStage
from .conditions import (
    CONDITION_AUTH_READY,
    CONDITION_READY,
    CONDITION_ROUTING_READY,
    REASON_FAILED,
    REASON_INVALID_SPEC,
    REASON_RECONCILE_SUCCESS,
    REASON_RECONCILING,
    ConditionStatus,
    is_condition_true,
    set_condition,
)
from .config import Config
from .errors import PreconditionError, ReconcileError, TransientError
from .keycloak import KeycloakProvider
from .models import AppIntent, AppIntentStatus
from .naming import FINALIZER
from .platform import APP_INTENT, KubernetesPlatform
from .providers import GenericOIDCProvider, OIDCProvider, ProviderRegistry
from .routing import RoutingStage
from .sync import Synchronizer
from .validation import ValidationStage

logger = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    """Where a pass ended up."""

    INITIALIZING = "Initializing"
    VALIDATING = "Validating"
    ROUTING = "Routing"
    AUTH_DISABLED = "AuthDisabled"
    AUTHENTICATING = "Authenticating"
    CONVERGED = "Converged"
    FAILED = "Failed"
    DELETING = "Deleting"
    DELETED = "Deleted"
    NOT_FOUND = "NotFound"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    key: str
    state: ReconcileState = ReconcileState.INITIALIZING
    failed_stage: ReconcileState | None = None
    error: ReconcileError | None = None
    requeue_after: int | None = None
    status_written: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass converged or had nothing to do."""
        return self.error is None

    def fail(self, stage: ReconcileState, error: ReconcileError) -> None:
        self.failed_stage = stage
        self.state = ReconcileState.FAILED
        self.error = error
        self.requeue_after = None


def build_providers(config: Config) -> ProviderRegistry:
    """Build the provider registry from configuration.

    generic-oidc is always available. keycloak is registered when enabled.
    """
    providers: list[OIDCProvider] = [GenericOIDCProvider()]
    if config.keycloak.enabled:
        providers.append(KeycloakProvider(config.keycloak))
    registry = ProviderRegistry(providers)
    logger.info("Registered OIDC providers", extra={"providers": registry.names})
    return registry


class Reconciler:
    """Drives the staged pipeline for AppIntent resources."""

    def __init__(
        self,
        config: Config,
        platform: KubernetesPlatform | None = None,
        providers: ProviderRegistry | None = None,
    ) -> None:
        """Initialize the reconciler and its stages.

        Args:
            config: Validated operator configuration.
            platform: Kubernetes access layer. Created from the loaded client
                configuration if omitted.
            providers: Identity provider registry. Built from config if omitted.
        """
        self._config = config
        self._platform = platform or KubernetesPlatform()
        self._sync = Synchronizer(self._platform, config.max_conflict_retries)
        self._validation = ValidationStage(self._platform)
        self._routing = RoutingStage(self._platform, self._sync)
        self._auth = AuthStage(
            self._platform,
            self._sync,
            providers if providers is not None else build_providers(config),
            config.default_scopes,
        )

    @property
    def platform(self) -> KubernetesPlatform:
        return self._platform

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Run one pass for the intent ``namespace/name``.

        Never raises for stage failures. The outcome, the error and the
        requeue delay are reported in the returned result.
        """
        result = ReconcileResult(key=f"{namespace}/{name}")
        try:
            self._reconcile(namespace, name, result)
        except ReconcileError as e:
            result.fail(result.state, e)
        except Exception as e:
            logger.exception("Unexpected reconcile failure", extra={"intent": result.key})
            result.fail(result.state, TransientError(REASON_FAILED, str(e)))
        finally:
            if result.error is not None and result.requeue_after is None:
                result.requeue_after = self._requeue_for(result.error)
            result.end_time = datetime.now(UTC)
            self._log_result(result)
        return result

    # -------------------------------------------------------------------------
    # Pass
    # -------------------------------------------------------------------------

    def _reconcile(self, namespace: str, name: str, result: ReconcileResult) -> None:
        obj = self._get_intent(namespace, name)
        if obj is None:
            logger.debug("AppIntent not found, nothing to do", extra={"intent": result.key})
            result.state = ReconcileState.NOT_FOUND
            return

        try:
            intent = AppIntent.from_object(obj)
        except ValidationError as e:
            if (obj.get("metadata") or {}).get("deletionTimestamp"):
                # Cleanup needs a parseable spec, so only release the finalizer
                self._remove_finalizer(obj)
                result.state = ReconcileState.DELETED
                return
            self._report_invalid_spec(obj, e, result)
            return

        if intent.is_deleting:
            self._finalize(obj, intent, result)
            return

        if FINALIZER not in intent.metadata.finalizers:
            obj = self._add_finalizer(obj)
            intent = AppIntent.from_object(obj)

        stored = intent.status.model_copy(deep=True)

        if not intent.status.conditions:
            set_condition(
                intent.status.conditions,
                CONDITION_READY,
                ConditionStatus.UNKNOWN,
                REASON_RECONCILING,
                "Starting reconciliation",
                intent.generation,
            )
            intent.status.hostname = intent.spec.hostname
            self._persist_status(intent, stored, result)
            if result.error is not None:
                return
            stored = intent.status.model_copy(deep=True)

        intent.status.hostname = intent.spec.hostname

        try:
            self._run_stages(intent, result)
        except ReconcileError as e:
            result.fail(result.state, e)
            self._mark_not_ready(intent, e)
        except Exception as e:
            logger.exception(
                "Unexpected stage failure",
                extra={"intent": intent.key, "stage": result.state.value},
            )
            error = TransientError(REASON_FAILED, f"{result.state.value} failed: {e}")
            result.fail(result.state, error)
            self._mark_not_ready(intent, error)
        else:
            self._aggregate_ready(intent)
            intent.status.observed_generation = intent.generation
            result.state = ReconcileState.CONVERGED
            result.requeue_after = self._config.resync_interval_seconds

        self._persist_status(intent, stored, result)

    def _run_stages(self, intent: AppIntent, result: ReconcileResult) -> None:
        result.state = ReconcileState.VALIDATING
        self._validation.reconcile(intent)

        result.state = ReconcileState.ROUTING
        self._routing.reconcile(intent)

        if intent.spec.auth_enabled:
            result.state = ReconcileState.AUTHENTICATING
        else:
            result.state = ReconcileState.AUTH_DISABLED
        self._auth.reconcile(intent)

    def _aggregate_ready(self, intent: AppIntent) -> None:
        """Ready is True iff every enabled stage reports True."""
        conditions = intent.status.conditions
        required = []
        if RoutingStage.is_configured(intent):
            required.append(CONDITION_ROUTING_READY)
        if intent.spec.auth_enabled:
            required.append(CONDITION_AUTH_READY)

        not_ready = [c for c in required if not is_condition_true(conditions, c)]
        if not_ready:
            set_condition(
                conditions,
                CONDITION_READY,
                ConditionStatus.FALSE,
                REASON_FAILED,
                f"Not ready: {', '.join(not_ready)}",
                intent.generation,
            )
            return

        set_condition(
            conditions,
            CONDITION_READY,
            ConditionStatus.TRUE,
            REASON_RECONCILE_SUCCESS,
            "AppIntent is ready",
            intent.generation,
        )

    def _mark_not_ready(self, intent: AppIntent, error: ReconcileError) -> None:
        set_condition(
            intent.status.conditions,
            CONDITION_READY,
            ConditionStatus.FALSE,
            error.reason,
            error.message,
            intent.generation,
        )

    def _requeue_for(self, error: ReconcileError) -> int:
        if error.transient:
            return self._config.transient_requeue_seconds
        return self._config.validation_requeue_seconds

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def _finalize(self, obj: dict[str, Any], intent: AppIntent, result: ReconcileResult) -> None:
        """Clean up external state, then release the finalizer.

        The route goes first and the IdP client last, so a failed route
        delete never repeats the client deletion on the next pass. Any
        failure keeps the finalizer and retries on the transient interval.
        """
        result.state = ReconcileState.DELETING
        if FINALIZER not in intent.metadata.finalizers:
            result.state = ReconcileState.DELETED
            return

        logger.info("Finalizing AppIntent", extra={"intent": intent.key})
        try:
            self._routing.cleanup_route(intent)
            self._auth.cleanup(intent)
        except ReconcileError as e:
            result.fail(ReconcileState.DELETING, e)
            result.requeue_after = self._config.transient_requeue_seconds
            return

        self._remove_finalizer(obj)
        result.state = ReconcileState.DELETED

    # -------------------------------------------------------------------------
    # API access
    # -------------------------------------------------------------------------

    def _get_intent(self, namespace: str, name: str) -> dict[str, Any] | None:
        try:
            return self._platform.get(APP_INTENT, namespace, name)
        except ApiException as e:
            raise TransientError(
                REASON_FAILED, f"failed to get AppIntent {namespace}/{name}: {e.status} {e.reason}"
            ) from e

    def _update_finalizers(self, obj: dict[str, Any], add: bool) -> dict[str, Any] | None:
        """Add or remove the finalizer with conflict retries.

        Returns the stored object, or None if the intent disappeared.
        """
        metadata = obj["metadata"]
        namespace, name = metadata["namespace"], metadata["name"]
        current: dict[str, Any] | None = obj

        for attempt in range(1, self._config.max_conflict_retries + 1):
            if current is None:
                return None
            body = copy.deepcopy(current)
            finalizers = [f for f in (body["metadata"].get("finalizers") or []) if f != FINALIZER]
            if add:
                finalizers.append(FINALIZER)
            if finalizers == (current["metadata"].get("finalizers") or []):
                return current
            body["metadata"]["finalizers"] = finalizers
            try:
                return self._platform.replace(APP_INTENT, namespace, name, body)
            except ApiException as e:
                if e.status == 404:
                    return None
                if e.status != 409:
                    raise TransientError(
                        REASON_FAILED,
                        f"failed to update finalizers on {namespace}/{name}: {e.status} {e.reason}",
                    ) from e
                logger.debug(
                    "Finalizer update conflicted, retrying",
                    extra={"intent": f"{namespace}/{name}", "attempt": attempt},
                )
            current = self._get_intent(namespace, name)

        raise TransientError(
            REASON_FAILED,
            f"finalizer update on {namespace}/{name} conflicted "
            f"{self._config.max_conflict_retries} times",
        )

    def _add_finalizer(self, obj: dict[str, Any]) -> dict[str, Any]:
        updated = self._update_finalizers(obj, add=True)
        if updated is None:
            raise TransientError(REASON_FAILED, "AppIntent disappeared while adding finalizer")
        logger.info("Added finalizer", extra={"intent": _key(obj)})
        return updated

    def _remove_finalizer(self, obj: dict[str, Any]) -> None:
        self._update_finalizers(obj, add=False)
        logger.info("Removed finalizer", extra={"intent": _key(obj)})

    def _persist_status(
        self, intent: AppIntent, stored: AppIntentStatus, result: ReconcileResult
    ) -> None:
        """Write status if it differs from what is stored.

        Uses read-modify-write on the status subresource and retries on
        conflicts. A failure to write is transient.
        """
        desired = intent.status.to_dict()
        if desired == stored.to_dict():
            return

        namespace, name = intent.namespace, intent.name
        for attempt in range(1, self._config.max_conflict_retries + 1):
            current = self._get_intent(namespace, name)
            if current is None:
                return
            body = copy.deepcopy(current)
            body["status"] = desired
            try:
                self._platform.replace_status(namespace, name, body)
            except ApiException as e:
                if e.status == 404:
                    return
                if e.status != 409:
                    error = TransientError(
                        REASON_FAILED, f"failed to update status: {e.status} {e.reason}"
                    )
                    if result.error is None:
                        result.fail(result.state, error)
                    return
                logger.debug(
                    "Status update conflicted, retrying",
                    extra={"intent": intent.key, "attempt": attempt},
                )
                continue
            result.status_written = True
            return

        if result.error is None:
            result.fail(
                result.state,
                TransientError(
                    REASON_FAILED,
                    f"status update conflicted {self._config.max_conflict_retries} times",
                ),
            )

    def _report_invalid_spec(
        self, obj: dict[str, Any], error: ValidationError, result: ReconcileResult
    ) -> None:
        """Surface a spec that cannot be parsed through the Ready condition."""
        metadata = obj.get("metadata") or {}
        generation = metadata.get("generation", 0)
        message = f"invalid spec: {error.error_count()} validation error(s): " + "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in error.errors()
        )
        logger.warning("AppIntent spec is invalid", extra={"intent": result.key, "error": message})

        try:
            status = AppIntentStatus.model_validate(obj.get("status") or {})
        except ValidationError:
            status = AppIntentStatus()
        stored = status.model_copy(deep=True)
        set_condition(
            status.conditions,
            CONDITION_READY,
            ConditionStatus.FALSE,
            REASON_INVALID_SPEC,
            message,
            generation,
        )
        result.fail(ReconcileState.VALIDATING, PreconditionError(REASON_INVALID_SPEC, message))

        if status.to_dict() == stored.to_dict():
            return
        body = copy.deepcopy(obj)
        body["status"] = status.to_dict()
        try:
            self._platform.replace_status(metadata["namespace"], metadata["name"], body)
            result.status_written = True
        except ApiException as e:
            logger.warning(
                "Failed to record invalid spec status",
                extra={"intent": result.key, "error": f"{e.status} {e.reason}"},
            )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "intent": result.key,
            "state": result.state.value,
            "duration_seconds": result.duration_seconds,
            "status_written": result.status_written,
            "requeue_after": result.requeue_after,
        }
        if result.error is not None:
            extra["reason"] = result.error.reason
            extra["error"] = result.error.message
            if result.failed_stage is not None:
                extra["stage"] = result.failed_stage.value
            if result.error.transient:
                logger.warning("Reconciliation failed, will retry", extra=extra)
            else:
                logger.error("Reconciliation blocked", extra=extra)
        elif result.state in (ReconcileState.NOT_FOUND, ReconcileState.DELETED):
            logger.info("Reconciliation finished", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)


def _key(obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    return f"{metadata.get('namespace')}/{metadata.get('name')}"

