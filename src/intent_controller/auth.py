"""Authentication stage: OIDC client, client Secret and SecurityPolicy.

When auth is enabled the stage runs four steps in order and reports
AuthReady=True only after all of them succeed:

1. resolve the provider named by the intent
2. provision the client (when requested) and persist its credentials
3. check the client Secret holds both credential keys
4. converge the Envoy SecurityPolicy that enforces OIDC on the route

Provisioning is skipped on passes where nothing changed: the Secret is
complete, the current generation was already observed, and AuthReady is
already True. Steady-state passes therefore make no identity provider calls.
"""

from __future__ import annotations

import logging
from typing import Any

from kubernetes.client.rest import ApiException

from .conditions import (
    CONDITION_AUTH_READY,
    REASON_AUTH_CONFIGURED,
    REASON_AUTH_DISABLED,
    REASON_PROVISIONING_FAILED,
    REASON_SECURITY_POLICY_FAILED,
    REASON_VALIDATION_FAILED,
    ConditionStatus,
    is_condition_true,
    set_condition,
)
from .errors import PreconditionError, ReconcileError, TransientError
from .models import DEFAULT_LOGOUT_PATH, DEFAULT_REDIRECT_PATH, AppIntent, ResourceReference
from .naming import (
    CLIENT_ID_KEY,
    CLIENT_SECRET_KEY,
    COMPONENT_AUTH,
    client_secret_name,
    route_name,
    security_policy_name,
)
from .platform import (
    EVENT_AUTH_CONFIGURED,
    EVENT_AUTH_FAILED,
    EVENT_CLIENT_DELETED,
    EVENT_CLIENT_PROVISIONED,
    EVENT_CLIENT_PROVISION_FAILED,
    EVENT_SECURITY_POLICY_CREATED,
    EVENT_SECURITY_POLICY_UPDATED,
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    SECRET,
    SECURITY_POLICY,
    KubernetesPlatform,
    encode_secret_data,
)
from .providers import ClientCredentials, OIDCProvider, ProviderRegistry
from .sync import SyncOutcome, Synchronizer

logger = logging.getLogger(__name__)

GATEWAY_API_GROUP = "gateway.networking.k8s.io"


def redirect_url(intent: AppIntent) -> str:
    auth = intent.spec.auth
    path = auth.redirect_uri if auth is not None else DEFAULT_REDIRECT_PATH
    return f"https://{intent.spec.hostname}{path}"


def build_security_policy_spec(
    intent: AppIntent, issuer_url: str, oidc_client_id: str, scopes: list[str]
) -> dict[str, Any]:
    """Build the Envoy Gateway SecurityPolicy spec for an intent."""
    return {
        "targetRefs": [
            {"group": GATEWAY_API_GROUP, "kind": "HTTPRoute", "name": route_name(intent)}
        ],
        "oidc": {
            "provider": {"issuer": issuer_url},
            "clientID": oidc_client_id,
            "clientSecret": {
                "group": "",
                "kind": "Secret",
                "name": client_secret_name(intent),
                "namespace": intent.namespace,
            },
            "redirectURL": redirect_url(intent),
            "logoutPath": DEFAULT_LOGOUT_PATH,
            "scopes": scopes,
        },
    }


class AuthStage:
    """Converges OIDC authentication for an intent."""

    def __init__(
        self,
        platform: KubernetesPlatform,
        synchronizer: Synchronizer,
        providers: ProviderRegistry,
        default_scopes: tuple[str, ...],
    ) -> None:
        self._platform = platform
        self._sync = synchronizer
        self._providers = providers
        self._default_scopes = default_scopes

    def scopes(self, intent: AppIntent) -> list[str]:
        auth = intent.spec.auth
        if auth is not None and auth.scopes:
            return list(auth.scopes)
        return list(self._default_scopes)

    def reconcile(self, intent: AppIntent) -> None:
        """Converge authentication. Sets AuthReady on every path.

        Raises:
            PreconditionError: Unknown provider, unsupported provisioning or
                an incomplete client Secret.
            ProviderError: The identity provider rejected a request.
            TransientError: Timeouts, conflicts or API failures.
        """
        auth = intent.spec.auth
        if auth is None or not auth.enabled:
            set_condition(
                intent.status.conditions,
                CONDITION_AUTH_READY,
                ConditionStatus.FALSE,
                REASON_AUTH_DISABLED,
                "Authentication is not enabled for this app",
                intent.generation,
            )
            intent.status.client_secret_ref = None
            return

        try:
            provider = self._providers.resolve(auth.provider)
            issuer = provider.get_issuer_url(intent)
            if auth.provision_client:
                self._provision(intent, provider)
            credentials = self._validate_secret(intent)
            # A bring-your-own Secret names its own client
            oidc_client_id = (
                provider.get_client_id(intent)
                if auth.provision_client
                else credentials.client_id
            )
            self._reconcile_security_policy(intent, issuer, oidc_client_id)
        except ReconcileError as e:
            logger.warning(
                "Authentication failed",
                extra={"intent": intent.key, "reason": e.reason, "error": e.message},
            )
            self._platform.record_event(intent, EVENT_TYPE_WARNING, EVENT_AUTH_FAILED, e.message)
            set_condition(
                intent.status.conditions,
                CONDITION_AUTH_READY,
                ConditionStatus.FALSE,
                e.reason,
                e.message,
                intent.generation,
            )
            raise

        intent.status.client_secret_ref = ResourceReference(
            name=client_secret_name(intent), namespace=intent.namespace
        )
        already_ready = is_condition_true(intent.status.conditions, CONDITION_AUTH_READY)
        set_condition(
            intent.status.conditions,
            CONDITION_AUTH_READY,
            ConditionStatus.TRUE,
            REASON_AUTH_CONFIGURED,
            f"Authentication configured with provider {provider.name}",
            intent.generation,
        )
        if not already_ready:
            self._platform.record_event(
                intent,
                EVENT_TYPE_NORMAL,
                EVENT_AUTH_CONFIGURED,
                "Authentication configured successfully",
            )

    def cleanup(self, intent: AppIntent) -> None:
        """Delete the provisioned client during finalization.

        Nothing is done when auth is disabled, provisioning was not requested
        or the provider cannot provision. Provider failures propagate so the
        finalizer stays in place.
        """
        auth = intent.spec.auth
        if auth is None or not auth.enabled or not auth.provision_client:
            return

        try:
            provider = self._providers.resolve(auth.provider)
        except PreconditionError as e:
            logger.warning(
                "Provider unavailable during cleanup, skipping client deletion",
                extra={"intent": intent.key, "error": e.message},
            )
            return

        if not provider.supports_provisioning():
            return

        provider.delete_client(intent)
        self._platform.record_event(
            intent, EVENT_TYPE_NORMAL, EVENT_CLIENT_DELETED, "OIDC client deleted"
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _read_secret(self, intent: AppIntent) -> dict[str, str] | None:
        name = client_secret_name(intent)
        try:
            return self._platform.read_secret_data(intent.namespace, name)
        except ApiException as e:
            raise TransientError(
                REASON_VALIDATION_FAILED,
                f"failed to get OIDC client secret {name}: {e.status} {e.reason}",
            ) from e

    def _provisioning_needed(self, intent: AppIntent) -> bool:
        data = self._read_secret(intent) or {}
        secret_complete = bool(data.get(CLIENT_ID_KEY)) and bool(data.get(CLIENT_SECRET_KEY))
        generation_observed = intent.status.observed_generation == intent.generation
        auth_ready = is_condition_true(intent.status.conditions, CONDITION_AUTH_READY)
        return not (secret_complete and generation_observed and auth_ready)

    def _provision(self, intent: AppIntent, provider: OIDCProvider) -> None:
        if not provider.supports_provisioning():
            raise PreconditionError(
                REASON_PROVISIONING_FAILED,
                f"provider {provider.name} does not support automatic client provisioning",
            )

        if not self._provisioning_needed(intent):
            logger.debug("Client already provisioned", extra={"intent": intent.key})
            return

        try:
            credentials = provider.provision_client(intent)
        except ReconcileError as e:
            self._platform.record_event(
                intent, EVENT_TYPE_WARNING, EVENT_CLIENT_PROVISION_FAILED, e.message
            )
            raise

        name = client_secret_name(intent)
        data = encode_secret_data(
            {CLIENT_ID_KEY: credentials.client_id, CLIENT_SECRET_KEY: credentials.client_secret}
        )

        def mutate(obj: dict[str, Any]) -> None:
            obj["type"] = "Opaque"
            obj["data"] = data

        try:
            result = self._sync.sync(intent, SECRET, name, mutate, component=COMPONENT_AUTH)
        except ReconcileError as e:
            raise type(e)(REASON_PROVISIONING_FAILED, e.message) from e

        if result.changed:
            self._platform.record_event(
                intent,
                EVENT_TYPE_NORMAL,
                EVENT_CLIENT_PROVISIONED,
                f"OIDC client {credentials.client_id} provisioned",
            )

    def _validate_secret(self, intent: AppIntent) -> ClientCredentials:
        name = client_secret_name(intent)
        data = self._read_secret(intent)
        if data is None:
            raise PreconditionError(
                REASON_VALIDATION_FAILED,
                f"OIDC client secret {name!r} not found in namespace {intent.namespace!r}",
            )
        for key in (CLIENT_ID_KEY, CLIENT_SECRET_KEY):
            if not data.get(key):
                raise PreconditionError(
                    REASON_VALIDATION_FAILED,
                    f"OIDC client secret {name!r} missing required key {key!r}",
                )
        return ClientCredentials(client_id=data[CLIENT_ID_KEY], client_secret=data[CLIENT_SECRET_KEY])

    def _reconcile_security_policy(
        self, intent: AppIntent, issuer: str, oidc_client_id: str
    ) -> None:
        name = security_policy_name(intent)
        try:
            spec = build_security_policy_spec(
                intent, issuer, oidc_client_id, self.scopes(intent)
            )

            def mutate(obj: dict[str, Any]) -> None:
                obj["spec"] = spec

            result = self._sync.sync(
                intent, SECURITY_POLICY, name, mutate, component=COMPONENT_AUTH
            )
        except ReconcileError as e:
            raise type(e)(REASON_SECURITY_POLICY_FAILED, e.message) from e

        if result.outcome == SyncOutcome.CREATED:
            self._platform.record_event(
                intent,
                EVENT_TYPE_NORMAL,
                EVENT_SECURITY_POLICY_CREATED,
                f"Created SecurityPolicy {name}",
            )
        elif result.outcome == SyncOutcome.UPDATED:
            self._platform.record_event(
                intent,
                EVENT_TYPE_NORMAL,
                EVENT_SECURITY_POLICY_UPDATED,
                f"Updated SecurityPolicy {name}",
            )
