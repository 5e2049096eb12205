"""Configuration management with validation.

Configuration is loaded once at process start into frozen dataclasses and
passed explicitly into the reconciler and the identity providers. Nothing in
the engine reads the environment after startup.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .platform import KubernetesPlatform

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RESYNC_INTERVAL_SECONDS = 300
MIN_RESYNC_INTERVAL_SECONDS = 60
MAX_RESYNC_INTERVAL_SECONDS = 3600

# Preconditions need an external fix, so they are retried slowly
DEFAULT_VALIDATION_REQUEUE_SECONDS = 300
# Conflicts, timeouts and missing gateways usually clear up on their own
DEFAULT_TRANSIENT_REQUEUE_SECONDS = 60

DEFAULT_MAX_CONFLICT_RETRIES = 5
MAX_CONFLICT_RETRIES_LIMIT = 20

DEFAULT_KEYCLOAK_TIMEOUT_SECONDS = 10.0
MAX_KEYCLOAK_TIMEOUT_SECONDS = 120.0

DEFAULT_KEYCLOAK_SERVICE_NAME = "keycloak"
DEFAULT_KEYCLOAK_NAMESPACE = "keycloak"
DEFAULT_KEYCLOAK_SERVICE_PORT = 8080
DEFAULT_KEYCLOAK_CONTEXT_PATH = "/auth"
DEFAULT_KEYCLOAK_REALM = "nebari"
DEFAULT_KEYCLOAK_ADMIN_SECRET_NAME = "nebari-realm-admin-credentials"

DEFAULT_OIDC_SCOPES: tuple[str, ...] = ("openid", "profile", "email")

# Input validation patterns
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"
VALID_URL_PATTERN = r"^https?://[^\s/]+"


def _default_keycloak_url() -> str:
    return (
        f"http://{DEFAULT_KEYCLOAK_SERVICE_NAME}.{DEFAULT_KEYCLOAK_NAMESPACE}"
        f".svc.cluster.local:{DEFAULT_KEYCLOAK_SERVICE_PORT}{DEFAULT_KEYCLOAK_CONTEXT_PATH}"
    )


@dataclass(frozen=True)
class KeycloakConfig:
    """Keycloak admin API and issuer configuration.

    The issuer fields describe how Envoy reaches Keycloak from inside the
    cluster. They may differ from ``url``, which is what the operator uses
    for admin calls.
    """

    enabled: bool = True
    url: str = field(default_factory=_default_keycloak_url)
    realm: str = DEFAULT_KEYCLOAK_REALM

    admin_secret_name: str = DEFAULT_KEYCLOAK_ADMIN_SECRET_NAME
    admin_secret_namespace: str = DEFAULT_KEYCLOAK_NAMESPACE
    admin_username: str = ""
    admin_password: str = field(default="", repr=False)

    issuer_service_name: str = DEFAULT_KEYCLOAK_SERVICE_NAME
    issuer_service_namespace: str = DEFAULT_KEYCLOAK_NAMESPACE
    issuer_service_port: int = DEFAULT_KEYCLOAK_SERVICE_PORT
    issuer_context_path: str = DEFAULT_KEYCLOAK_CONTEXT_PATH

    timeout_seconds: float = DEFAULT_KEYCLOAK_TIMEOUT_SECONDS

    @property
    def has_credentials(self) -> bool:
        """Check whether admin credentials are available."""
        return bool(self.admin_username and self.admin_password)

    def issuer_url(self) -> str:
        """Build the in-cluster issuer URL for the configured realm."""
        return (
            f"http://{self.issuer_service_name}.{self.issuer_service_namespace}"
            f".svc.cluster.local:{self.issuer_service_port}"
            f"{self.issuer_context_path}/realms/{self.realm}"
        )

    def validate(self) -> list[str]:
        """Return a list of validation problems (empty when valid)."""
        errors: list[str] = []
        if not self.enabled:
            return errors

        if not re.match(VALID_URL_PATTERN, self.url):
            errors.append(f"KEYCLOAK_URL must be an http(s) URL: {self.url}")
        if not self.realm:
            errors.append("KEYCLOAK_REALM is required when Keycloak is enabled")
        if not (1 <= self.issuer_service_port <= 65535):
            errors.append(
                f"KEYCLOAK_ISSUER_SERVICE_PORT must be between 1 and 65535: "
                f"{self.issuer_service_port}"
            )
        if self.issuer_context_path and not self.issuer_context_path.startswith("/"):
            errors.append("KEYCLOAK_ISSUER_CONTEXT_PATH must start with '/'")
        if not (0 < self.timeout_seconds <= MAX_KEYCLOAK_TIMEOUT_SECONDS):
            errors.append(
                f"KEYCLOAK_TIMEOUT must be between 0 and {MAX_KEYCLOAK_TIMEOUT_SECONDS} seconds"
            )
        return errors


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Namespace to watch; None watches the whole cluster
    watch_namespace: str | None = None

    # Timing
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    validation_requeue_seconds: int = DEFAULT_VALIDATION_REQUEUE_SECONDS
    transient_requeue_seconds: int = DEFAULT_TRANSIENT_REQUEUE_SECONDS

    # Optimistic concurrency
    max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES

    # Scopes requested when an intent does not list any
    default_scopes: tuple[str, ...] = DEFAULT_OIDC_SCOPES

    # Logging
    enable_json_logging: bool = True

    keycloak: KeycloakConfig = field(default_factory=KeycloakConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.watch_namespace is not None and not re.match(
            VALID_NAMESPACE_PATTERN, self.watch_namespace
        ):
            errors.append(f"WATCH_NAMESPACE is not a valid namespace name: {self.watch_namespace}")

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if self.validation_requeue_seconds < 1:
            errors.append("VALIDATION_REQUEUE must be at least 1 second")
        if self.transient_requeue_seconds < 1:
            errors.append("TRANSIENT_REQUEUE must be at least 1 second")
        if self.transient_requeue_seconds > self.validation_requeue_seconds:
            errors.append("TRANSIENT_REQUEUE must not exceed VALIDATION_REQUEUE")

        if not (1 <= self.max_conflict_retries <= MAX_CONFLICT_RETRIES_LIMIT):
            errors.append(
                f"MAX_CONFLICT_RETRIES must be between 1 and {MAX_CONFLICT_RETRIES_LIMIT}"
            )

        if not self.default_scopes:
            errors.append("DEFAULT_OIDC_SCOPES must contain at least one scope")
        elif "openid" not in self.default_scopes:
            errors.append("DEFAULT_OIDC_SCOPES must include 'openid'")

        errors.extend(self.keycloak.validate())

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACE: Restrict the operator to one namespace (default: all)
            RESYNC_INTERVAL: Seconds between drift checks of converged intents (default: 300)
            VALIDATION_REQUEUE: Retry delay after a precondition failure (default: 300)
            TRANSIENT_REQUEUE: Retry delay after a transient failure (default: 60)
            MAX_CONFLICT_RETRIES: Write attempts on optimistic-concurrency conflicts (default: 5)
            DEFAULT_OIDC_SCOPES: Comma-separated scopes (default: openid,profile,email)
            ENABLE_JSON_LOGGING: Emit JSON logs (default: true)

        Keycloak Variables:
            KEYCLOAK_ENABLED: Register the keycloak provider (default: true)
            KEYCLOAK_URL: Admin API base URL
            KEYCLOAK_REALM: Realm for OIDC clients (default: nebari)
            KEYCLOAK_ADMIN_SECRET_NAME / KEYCLOAK_ADMIN_SECRET_NAMESPACE: Admin credential secret
            KEYCLOAK_ADMIN_USERNAME / KEYCLOAK_ADMIN_PASSWORD: Fallback admin credentials
            KEYCLOAK_ISSUER_SERVICE_NAME / _NAMESPACE / _PORT / _CONTEXT_PATH: Issuer URL parts
            KEYCLOAK_TIMEOUT: Admin API timeout in seconds (default: 10)
        """

        def get_str(key: str, default: str) -> str:
            value = os.environ.get(key)
            return value if value else default

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
            value = os.environ.get(key, "")
            if not value:
                return default
            return tuple(item.strip() for item in value.split(",") if item.strip())

        keycloak = KeycloakConfig(
            enabled=get_bool("KEYCLOAK_ENABLED", True),
            url=get_str("KEYCLOAK_URL", _default_keycloak_url()),
            realm=get_str("KEYCLOAK_REALM", DEFAULT_KEYCLOAK_REALM),
            admin_secret_name=get_str(
                "KEYCLOAK_ADMIN_SECRET_NAME", DEFAULT_KEYCLOAK_ADMIN_SECRET_NAME
            ),
            admin_secret_namespace=get_str(
                "KEYCLOAK_ADMIN_SECRET_NAMESPACE", DEFAULT_KEYCLOAK_NAMESPACE
            ),
            admin_username=get_str("KEYCLOAK_ADMIN_USERNAME", ""),
            admin_password=get_str("KEYCLOAK_ADMIN_PASSWORD", ""),
            issuer_service_name=get_str(
                "KEYCLOAK_ISSUER_SERVICE_NAME", DEFAULT_KEYCLOAK_SERVICE_NAME
            ),
            issuer_service_namespace=get_str(
                "KEYCLOAK_ISSUER_SERVICE_NAMESPACE", DEFAULT_KEYCLOAK_NAMESPACE
            ),
            issuer_service_port=get_int(
                "KEYCLOAK_ISSUER_SERVICE_PORT", DEFAULT_KEYCLOAK_SERVICE_PORT
            ),
            issuer_context_path=get_str(
                "KEYCLOAK_ISSUER_CONTEXT_PATH", DEFAULT_KEYCLOAK_CONTEXT_PATH
            ),
            timeout_seconds=get_float("KEYCLOAK_TIMEOUT", DEFAULT_KEYCLOAK_TIMEOUT_SECONDS),
        )

        return cls(
            watch_namespace=os.environ.get("WATCH_NAMESPACE") or None,
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            validation_requeue_seconds=get_int(
                "VALIDATION_REQUEUE", DEFAULT_VALIDATION_REQUEUE_SECONDS
            ),
            transient_requeue_seconds=get_int(
                "TRANSIENT_REQUEUE", DEFAULT_TRANSIENT_REQUEUE_SECONDS
            ),
            max_conflict_retries=get_int("MAX_CONFLICT_RETRIES", DEFAULT_MAX_CONFLICT_RETRIES),
            default_scopes=get_list("DEFAULT_OIDC_SCOPES", DEFAULT_OIDC_SCOPES),
            enable_json_logging=get_bool("ENABLE_JSON_LOGGING", True),
            keycloak=keycloak,
        )


_USERNAME_KEYS = ("username", "admin-username")
_PASSWORD_KEYS = ("password", "admin-password")


def load_keycloak_credentials(config: Config, platform: KubernetesPlatform) -> Config:
    """Resolve Keycloak admin credentials from the admin secret.

    The secret wins over environment credentials. When the secret cannot be
    read, environment credentials are used if both are present.

    Returns:
        A new Config carrying the credentials. The input is not modified.

    Raises:
        ConfigurationError: If no usable credentials can be found.
    """
    kc = config.keycloak
    if not kc.enabled:
        return config

    if kc.admin_secret_name and kc.admin_secret_namespace:
        data = platform.read_secret_data(kc.admin_secret_namespace, kc.admin_secret_name)
        if data is None:
            if kc.has_credentials:
                logger.info(
                    "Keycloak admin secret not found, using environment credentials",
                    extra={
                        "secret": kc.admin_secret_name,
                        "namespace": kc.admin_secret_namespace,
                    },
                )
                return config
            raise ConfigurationError(
                f"Keycloak admin secret {kc.admin_secret_namespace}/{kc.admin_secret_name} "
                "not found and KEYCLOAK_ADMIN_USERNAME/PASSWORD are not set"
            )

        username = next((data[k] for k in _USERNAME_KEYS if data.get(k)), "")
        password = next((data[k] for k in _PASSWORD_KEYS if data.get(k)), "")
        if not username:
            raise ConfigurationError(
                f"Keycloak admin secret {kc.admin_secret_namespace}/{kc.admin_secret_name} "
                "missing 'username' or 'admin-username' key"
            )
        if not password:
            raise ConfigurationError(
                f"Keycloak admin secret {kc.admin_secret_namespace}/{kc.admin_secret_name} "
                "missing 'password' or 'admin-password' key"
            )

        logger.info(
            "Loaded Keycloak admin credentials from secret",
            extra={"secret": kc.admin_secret_name, "namespace": kc.admin_secret_namespace},
        )
        return replace(
            config,
            keycloak=replace(kc, admin_username=username, admin_password=password),
        )

    if not kc.has_credentials:
        raise ConfigurationError(
            "Keycloak admin credentials not configured. "
            "Set KEYCLOAK_ADMIN_SECRET_NAME or KEYCLOAK_ADMIN_USERNAME/PASSWORD"
        )
    return config
