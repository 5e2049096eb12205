"""kopf handlers that trigger reconciliation passes.

Handlers are registered on a dedicated registry built from configuration so
the resync interval can come from the environment. Every handler delegates
to the same Reconciler stored in the operator memo; kopf serializes handling
per object, which gives the one-pass-per-intent guarantee.

A failed pass is reported to kopf as a TemporaryError carrying the requeue
delay chosen by the reconciler.
"""

from __future__ import annotations

import logging
from typing import Any

import kopf

from .config import Config
from .models import API_GROUP, API_VERSION, PLURAL
from .reconciler import Reconciler, ReconcileResult

logger = logging.getLogger(__name__)

ANNOTATION_PREFIX = API_GROUP
KOPF_REQUEST_TIMEOUT_SECONDS = 30.0
KOPF_MAX_WORKERS = 4


def _raise_for_retry(result: ReconcileResult) -> None:
    if result.error is not None:
        raise kopf.TemporaryError(
            f"{result.error.reason}: {result.error.message}",
            delay=result.requeue_after,
        )


def _reconciler(memo: kopf.Memo) -> Reconciler:
    return memo["reconciler"]


def configure_settings(settings: kopf.OperatorSettings) -> None:
    """Keep kopf bookkeeping out of the status block."""
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix=ANNOTATION_PREFIX
    )
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix=ANNOTATION_PREFIX, key="last-handled-configuration"
    )
    # Events are recorded by the reconciler itself
    settings.posting.enabled = False
    settings.networking.request_timeout = KOPF_REQUEST_TIMEOUT_SECONDS
    settings.execution.max_workers = KOPF_MAX_WORKERS


def build_registry(config: Config) -> kopf.OperatorRegistry:
    """Register all AppIntent handlers on a fresh registry."""
    registry = kopf.OperatorRegistry()

    @kopf.on.startup(registry=registry)
    def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
        configure_settings(settings)
        logger.info(
            "Operator started",
            extra={
                "watch_namespace": config.watch_namespace or "*",
                "resync_interval_seconds": config.resync_interval_seconds,
            },
        )

    @kopf.on.create(API_GROUP, API_VERSION, PLURAL, registry=registry)
    @kopf.on.update(API_GROUP, API_VERSION, PLURAL, registry=registry)
    @kopf.on.resume(API_GROUP, API_VERSION, PLURAL, registry=registry)
    def handle_intent(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> None:
        """Reconcile on create, on spec changes and on operator restart."""
        _raise_for_retry(_reconciler(memo).reconcile(namespace, name))

    @kopf.timer(
        API_GROUP,
        API_VERSION,
        PLURAL,
        interval=config.resync_interval_seconds,
        initial_delay=config.resync_interval_seconds,
        registry=registry,
    )
    def resync_intent(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> None:
        """Periodic drift correction for converged intents."""
        _raise_for_retry(_reconciler(memo).reconcile(namespace, name))

    # The reconciler manages its own finalizer, so kopf must not add one
    @kopf.on.delete(API_GROUP, API_VERSION, PLURAL, optional=True, registry=registry)
    def handle_intent_delete(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> None:
        """Run cleanup while the reconciler's finalizer holds the intent."""
        _raise_for_retry(_reconciler(memo).reconcile(namespace, name))

    return registry
