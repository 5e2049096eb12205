"""Idempotent create-or-update of owned resources.

The Synchronizer converges one downstream object towards the state produced
by a mutator function. Repeating a sync with the same intent and the same
mutator writes nothing and reports UNCHANGED.

Writes use optimistic concurrency: a replace carries the resourceVersion that
was read, and a 409 from either create or replace triggers a fresh read and
another attempt.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes.client.rest import ApiException

from .conditions import REASON_SYNC_FAILED
from .config import DEFAULT_MAX_CONFLICT_RETRIES
from .errors import PreconditionError, TransientError
from .models import AppIntent
from .naming import (
    COMPONENT_AUTH,
    COMPONENT_ROUTING,
    COMPONENT_TLS,
    owner_reference,
    standard_labels,
)
from .platform import CERTIFICATE, HTTP_ROUTE, SECRET, SECURITY_POLICY, KubernetesPlatform, ResourceKind

logger = logging.getLogger(__name__)

Mutator = Callable[[dict[str, Any]], None]

_COMPONENTS = {
    HTTP_ROUTE.kind: COMPONENT_ROUTING,
    CERTIFICATE.kind: COMPONENT_TLS,
    SECURITY_POLICY.kind: COMPONENT_AUTH,
    SECRET.kind: COMPONENT_AUTH,
}


class SyncOutcome(str, Enum):
    """What a sync did to the downstream object."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a sync plus the object as stored after it."""

    outcome: SyncOutcome
    object: dict[str, Any]

    @property
    def changed(self) -> bool:
        return self.outcome != SyncOutcome.UNCHANGED


def _content(kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
    """Fields that decide whether a write is needed."""
    metadata = obj.get("metadata") or {}
    content: dict[str, Any] = {
        "labels": metadata.get("labels") or {},
        "annotations": metadata.get("annotations") or {},
        "ownerReferences": metadata.get("ownerReferences") or [],
    }
    if kind.is_core:
        content["type"] = obj.get("type")
        content["data"] = obj.get("data") or {}
    else:
        content["spec"] = obj.get("spec") or {}
    return content


def _ensure_ownership(obj: dict[str, Any], owner: AppIntent, component: str) -> None:
    metadata = obj.setdefault("metadata", {})

    labels = metadata.get("labels") or {}
    labels.update(standard_labels(owner, component))
    metadata["labels"] = labels

    ref = owner_reference(owner)
    refs = [r for r in (metadata.get("ownerReferences") or []) if r.get("uid") != ref["uid"]]
    refs.append(ref)
    metadata["ownerReferences"] = refs


def _api_failure(e: ApiException, action: str, kind: ResourceKind, name: str) -> Exception:
    message = f"failed to {action} {kind.kind} {name}: {e.status} {e.reason}"
    if e.status is None or e.status >= 500 or e.status == 429:
        return TransientError(REASON_SYNC_FAILED, message)
    return PreconditionError(REASON_SYNC_FAILED, message)


class Synchronizer:
    """Create-or-update of objects owned by an AppIntent."""

    def __init__(
        self,
        platform: KubernetesPlatform,
        max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES,
    ) -> None:
        self._platform = platform
        self._max_conflict_retries = max_conflict_retries

    def sync(
        self,
        owner: AppIntent,
        kind: ResourceKind,
        name: str,
        mutate: Mutator,
        component: str | None = None,
    ) -> SyncResult:
        """Converge ``kind/name`` in the owner's namespace.

        Args:
            owner: Intent that owns the object.
            kind: Resource kind to synchronize.
            name: Object name.
            mutate: Function that sets the desired content on the object in place.
            component: Value of the component label. Derived from the kind if omitted.

        Returns:
            SyncResult with the outcome and the stored object.

        Raises:
            TransientError: Conflicts did not resolve within the retry limit,
                or the API server failed.
            PreconditionError: The API server rejected the object.
        """
        namespace = owner.namespace
        component = component or _COMPONENTS.get(kind.kind, COMPONENT_ROUTING)

        for attempt in range(1, self._max_conflict_retries + 1):
            try:
                current = self._platform.get(kind, namespace, name)
            except ApiException as e:
                raise _api_failure(e, "read", kind, name) from e

            if current is None:
                desired: dict[str, Any] = {
                    "apiVersion": kind.api_version,
                    "kind": kind.kind,
                    "metadata": {"name": name, "namespace": namespace},
                }
                if not kind.is_core:
                    desired["spec"] = {}
                _ensure_ownership(desired, owner, component)
                mutate(desired)
                try:
                    created = self._platform.create(kind, namespace, desired)
                except ApiException as e:
                    if e.status == 409:
                        logger.debug(
                            "Create raced with another writer, retrying",
                            extra={"kind": kind.kind, "resource": name, "attempt": attempt},
                        )
                        continue
                    raise _api_failure(e, "create", kind, name) from e
                logger.info(
                    "Created owned resource",
                    extra={"intent": owner.key, "kind": kind.kind, "resource": name},
                )
                return SyncResult(SyncOutcome.CREATED, created)

            desired = copy.deepcopy(current)
            _ensure_ownership(desired, owner, component)
            mutate(desired)
            if _content(kind, desired) == _content(kind, current):
                return SyncResult(SyncOutcome.UNCHANGED, current)

            try:
                updated = self._platform.replace(kind, namespace, name, desired)
            except ApiException as e:
                if e.status == 409:
                    logger.debug(
                        "Update conflicted, retrying with a fresh read",
                        extra={"kind": kind.kind, "resource": name, "attempt": attempt},
                    )
                    continue
                raise _api_failure(e, "update", kind, name) from e
            logger.info(
                "Updated owned resource",
                extra={"intent": owner.key, "kind": kind.kind, "resource": name},
            )
            return SyncResult(SyncOutcome.UPDATED, updated)

        raise TransientError(
            REASON_SYNC_FAILED,
            f"{kind.kind} {name}: conflict not resolved after "
            f"{self._max_conflict_retries} attempts",
        )

    def delete(self, owner: AppIntent, kind: ResourceKind, name: str) -> bool:
        """Delete an owned object. Returns False if it was already gone."""
        try:
            deleted = self._platform.delete(kind, owner.namespace, name)
        except ApiException as e:
            raise _api_failure(e, "delete", kind, name) from e
        if deleted:
            logger.info(
                "Deleted owned resource",
                extra={"intent": owner.key, "kind": kind.kind, "resource": name},
            )
        return deleted
