"""OIDC identity provider abstraction.

A provider answers three questions for an intent: which issuer the gateway
trusts, which client ID it presents, and (optionally) how that client is
created and removed in the identity provider.

Providers are looked up by name from a registry built once at startup. The
registry is read-only afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol, runtime_checkable

from .conditions import REASON_INVALID_PROVIDER
from .errors import PreconditionError
from .models import PROVIDER_GENERIC_OIDC, AppIntent
from .naming import client_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientCredentials:
    """OIDC client credentials returned by provisioning."""

    client_id: str
    client_secret: str = field(repr=False)


@runtime_checkable
class OIDCProvider(Protocol):
    """Interface every identity provider implements."""

    name: str

    def supports_provisioning(self) -> bool:
        """Whether the provider can create clients on demand."""
        ...

    def provision_client(self, intent: AppIntent) -> ClientCredentials:
        """Create or converge the intent's client and return its credentials."""
        ...

    def delete_client(self, intent: AppIntent) -> None:
        """Remove the intent's client. A missing client is not an error."""
        ...

    def get_issuer_url(self, intent: AppIntent) -> str:
        ...

    def get_client_id(self, intent: AppIntent) -> str:
        ...


class GenericOIDCProvider:
    """Any standards-compliant OIDC issuer with a pre-registered client.

    The client is managed outside the operator, so provisioning is not
    supported and deletion does nothing. The issuer URL comes from the intent.
    """

    name = PROVIDER_GENERIC_OIDC

    def supports_provisioning(self) -> bool:
        return False

    def provision_client(self, intent: AppIntent) -> ClientCredentials:
        raise PreconditionError(
            REASON_INVALID_PROVIDER,
            f"provider {self.name} does not support client provisioning",
        )

    def delete_client(self, intent: AppIntent) -> None:
        logger.debug(
            "Client is managed externally, nothing to delete",
            extra={"intent": intent.key, "provider": self.name},
        )

    def get_issuer_url(self, intent: AppIntent) -> str:
        auth = intent.spec.auth
        if auth is None or not auth.issuer_url:
            raise PreconditionError(
                REASON_INVALID_PROVIDER,
                f"provider {self.name} requires auth.issuerURL",
            )
        return auth.issuer_url

    def get_client_id(self, intent: AppIntent) -> str:
        return client_id(intent)


class ProviderRegistry:
    """Immutable name-to-provider binding."""

    def __init__(self, providers: Iterable[OIDCProvider]) -> None:
        self._providers: Mapping[str, OIDCProvider] = MappingProxyType(
            {provider.name: provider for provider in providers}
        )

    @property
    def names(self) -> list[str]:
        return sorted(self._providers)

    def resolve(self, name: str) -> OIDCProvider:
        """Look up a provider by name.

        Raises:
            PreconditionError: The provider is not registered.
        """
        provider = self._providers.get(name)
        if provider is None:
            available = ", ".join(self.names) or "none"
            raise PreconditionError(
                REASON_INVALID_PROVIDER,
                f"unknown auth provider {name!r} (available: {available})",
            )
        return provider
