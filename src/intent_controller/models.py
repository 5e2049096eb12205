"""Pydantic models for the AppIntent custom resource.

These models provide:
1. Type-safe parsing of the custom resource body
2. Validation at the boundary (fail fast, fail loudly)
3. Defaults applied in one place so stages never re-derive them
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .conditions import Condition

# =============================================================================
# Resource coordinates
# =============================================================================

API_GROUP = "reconcilers.nebari.dev"
API_VERSION = "v1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"
KIND = "AppIntent"
PLURAL = "appintents"

HOSTNAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"

PROVIDER_KEYCLOAK = "keycloak"
PROVIDER_GENERIC_OIDC = "generic-oidc"

DEFAULT_REDIRECT_PATH = "/oauth2/callback"
DEFAULT_LOGOUT_PATH = "/logout"


class PathType(str, Enum):
    """Gateway API path match types."""

    PATH_PREFIX = "PathPrefix"
    EXACT = "Exact"


class TLSMode(str, Enum):
    """How the TLS certificate for the hostname is provided."""

    WILDCARD = "wildcard"
    PER_HOST = "perHost"


class GatewaySelector(str, Enum):
    """Which shared gateway the route attaches to."""

    PUBLIC = "public"
    INTERNAL = "internal"


# =============================================================================
# Spec
# =============================================================================


class ServiceReference(BaseModel):
    """Backend Service that receives traffic."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    port: Annotated[int, Field(ge=1, le=65535)]


class RouteMatch(BaseModel):
    """A path-based routing rule."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    path_prefix: str = Field(alias="pathPrefix")
    path_type: PathType = Field(PathType.PATH_PREFIX, alias="pathType")

    @field_validator("path_prefix")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("pathPrefix must start with '/'")
        return v


class IssuerReference(BaseModel):
    """cert-manager Issuer or ClusterIssuer used for per-host certificates."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    kind: str = "ClusterIssuer"

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        valid_kinds = {"Issuer", "ClusterIssuer"}
        if v not in valid_kinds:
            raise ValueError(f"kind must be one of {valid_kinds}")
        return v


class TLSConfig(BaseModel):
    """TLS exposure settings.

    ``mode`` is kept as a plain string so that an unrecognized value reaches
    the routing stage and is reported through a condition instead of being
    rejected while parsing.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = True
    mode: str = TLSMode.WILDCARD.value
    issuer_ref: IssuerReference | None = Field(None, alias="issuerRef")


class RoutingConfig(BaseModel):
    """Routing configuration for the intent's hostname."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    routes: list[RouteMatch] = Field(default_factory=list)
    tls: TLSConfig | None = None
    gateway: GatewaySelector = GatewaySelector.PUBLIC

    @property
    def tls_enabled(self) -> bool:
        return self.tls is None or self.tls.enabled


class AuthConfig(BaseModel):
    """OIDC authentication settings."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = False
    provider: str = PROVIDER_KEYCLOAK
    scopes: list[str] = Field(default_factory=list)
    provision_client: bool = Field(True, alias="provisionClient")
    client_secret_ref: str | None = Field(None, alias="clientSecretRef")
    redirect_uri: str = Field(DEFAULT_REDIRECT_PATH, alias="redirectURI")
    issuer_url: str | None = Field(None, alias="issuerURL")

    @field_validator("redirect_uri")
    @classmethod
    def validate_redirect(cls, v: str) -> str:
        if not v:
            return DEFAULT_REDIRECT_PATH
        if not v.startswith("/"):
            raise ValueError("redirectURI must be a path starting with '/'")
        return v

    @field_validator("provider")
    @classmethod
    def default_provider(cls, v: str) -> str:
        return v or PROVIDER_KEYCLOAK


class AppIntentSpec(BaseModel):
    """Desired state supplied by the user. Never written by the operator."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    hostname: Annotated[str, Field(min_length=1, max_length=253)]
    service: ServiceReference
    routing: RoutingConfig | None = None
    auth: AuthConfig | None = None

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        if not re.match(HOSTNAME_PATTERN, v):
            raise ValueError(f"hostname must be a lowercase DNS name: {v}")
        return v

    @property
    def auth_enabled(self) -> bool:
        return self.auth is not None and self.auth.enabled


# =============================================================================
# Status
# =============================================================================


class ResourceReference(BaseModel):
    """Reference to a resource produced by the operator."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str
    namespace: str = ""


class AppIntentStatus(BaseModel):
    """Observed state. Written only by the operator."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    observed_generation: int = Field(0, alias="observedGeneration")
    hostname: str = ""
    conditions: list[Condition] = Field(default_factory=list)
    route_ref: ResourceReference | None = Field(None, alias="routeRef")
    gateway_ref: ResourceReference | None = Field(None, alias="gatewayRef")
    client_secret_ref: ResourceReference | None = Field(None, alias="clientSecretRef")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase status block stored on the resource."""
        data: dict[str, Any] = {
            "observedGeneration": self.observed_generation,
            "hostname": self.hostname,
            "conditions": [c.to_dict() for c in self.conditions],
        }
        for key, ref in (
            ("routeRef", self.route_ref),
            ("gatewayRef", self.gateway_ref),
            ("clientSecretRef", self.client_secret_ref),
        ):
            if ref is not None:
                data[key] = ref.model_dump(exclude_none=True)
        return data


# =============================================================================
# Resource
# =============================================================================


class ObjectMeta(BaseModel):
    """The subset of Kubernetes object metadata the operator uses."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str
    namespace: str
    uid: str = ""
    generation: int = 1
    resource_version: str = Field("", alias="resourceVersion")
    labels: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")


class AppIntent(BaseModel):
    """An application exposure intent: routing, TLS and authentication."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_GROUP_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: AppIntentSpec
    status: AppIntentStatus = Field(default_factory=AppIntentStatus)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> AppIntent:
        """Parse a raw custom resource body.

        A null status (as returned for freshly created objects) is treated
        as empty.
        """
        data = dict(obj)
        if data.get("status") is None:
            data["status"] = {}
        return cls.model_validate(data)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def generation(self) -> int:
        return self.metadata.generation

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None
