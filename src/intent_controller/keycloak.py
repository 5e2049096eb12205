"""Keycloak OIDC provider backed by the Keycloak admin REST API.

Every operation opens a short-lived httpx client, obtains an admin token
from the master realm and then works inside the configured realm. Timeouts
are bounded by KEYCLOAK_TIMEOUT.

Error mapping:
- timeouts, connection failures and 5xx responses are transient
- any other rejected request is a ProviderError with reason ProviderRejected
"""

from __future__ import annotations

import logging
import secrets
from typing import Any

import httpx

from .conditions import REASON_PROVIDER_REJECTED, REASON_PROVISIONING_FAILED
from .config import KeycloakConfig
from .errors import ProviderError, TransientError
from .models import DEFAULT_REDIRECT_PATH, PROVIDER_KEYCLOAK, AppIntent
from .naming import client_id
from .providers import ClientCredentials

logger = logging.getLogger(__name__)

ADMIN_REALM = "master"
ADMIN_CLIENT_ID = "admin-cli"
CLIENT_SECRET_LENGTH = 32


def redirect_uris(intent: AppIntent) -> list[str]:
    """Redirect URIs registered for the intent's client."""
    auth = intent.spec.auth
    path = auth.redirect_uri if auth is not None else DEFAULT_REDIRECT_PATH
    host = intent.spec.hostname
    return [f"https://{host}{path}", f"http://{host}{path}"]


def generate_client_secret() -> str:
    return secrets.token_urlsafe(CLIENT_SECRET_LENGTH)[:CLIENT_SECRET_LENGTH]


class KeycloakAdminClient:
    """Minimal Keycloak admin API client for OIDC client management."""

    def __init__(self, config: KeycloakConfig, transport: httpx.BaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport

    def session(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._config.url,
            timeout=httpx.Timeout(self._config.timeout_seconds),
            transport=self._transport,
        )

    def _request(
        self,
        http: httpx.Client,
        method: str,
        url: str,
        allowed: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and map failures onto the reconcile error taxonomy.

        Statuses listed in ``allowed`` are returned to the caller instead of
        raising.
        """
        try:
            response = http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(
                REASON_PROVISIONING_FAILED,
                f"Keycloak request timed out after {self._config.timeout_seconds}s: {method} {url}",
            ) from e
        except httpx.TransportError as e:
            raise TransientError(
                REASON_PROVISIONING_FAILED, f"Keycloak unreachable: {method} {url}: {e}"
            ) from e

        status = response.status_code
        if status < 400 or status in allowed:
            return response
        if status >= 500:
            raise TransientError(
                REASON_PROVISIONING_FAILED, f"Keycloak server error {status}: {method} {url}"
            )
        raise ProviderError(
            REASON_PROVIDER_REJECTED,
            f"Keycloak rejected {method} {url}: {status} {response.text[:200]}",
        )

    def _realm_path(self, suffix: str = "") -> str:
        return f"/admin/realms/{self._config.realm}/clients{suffix}"

    def login(self, http: httpx.Client) -> str:
        """Obtain an admin access token from the master realm."""
        if not self._config.has_credentials:
            raise ProviderError(
                REASON_PROVIDER_REJECTED, "Keycloak admin credentials are not configured"
            )
        response = self._request(
            http,
            "POST",
            f"/realms/{ADMIN_REALM}/protocol/openid-connect/token",
            data={
                "grant_type": "password",
                "client_id": ADMIN_CLIENT_ID,
                "username": self._config.admin_username,
                "password": self._config.admin_password,
            },
        )
        token = response.json().get("access_token")
        if not token:
            raise ProviderError(
                REASON_PROVIDER_REJECTED, "Keycloak token response has no access_token"
            )
        return token

    def find_client(self, http: httpx.Client, token: str, client_id: str) -> dict[str, Any] | None:
        response = self._request(
            http,
            "GET",
            self._realm_path(),
            params={"clientId": client_id},
            headers=_auth(token),
        )
        clients = response.json()
        return clients[0] if clients else None

    def create_client(self, http: httpx.Client, token: str, representation: dict[str, Any]) -> bool:
        """Create a client. Returns False if it already existed."""
        response = self._request(
            http,
            "POST",
            self._realm_path(),
            allowed=(409,),
            json=representation,
            headers=_auth(token),
        )
        return response.status_code != 409

    def get_client_secret(self, http: httpx.Client, token: str, uuid: str) -> str:
        response = self._request(
            http, "GET", self._realm_path(f"/{uuid}/client-secret"), headers=_auth(token)
        )
        value = response.json().get("value")
        if not value:
            raise ProviderError(
                REASON_PROVIDER_REJECTED, f"Keycloak client {uuid} has no secret"
            )
        return value

    def update_client(
        self, http: httpx.Client, token: str, uuid: str, representation: dict[str, Any]
    ) -> None:
        self._request(
            http, "PUT", self._realm_path(f"/{uuid}"), json=representation, headers=_auth(token)
        )

    def delete_client(self, http: httpx.Client, token: str, uuid: str) -> bool:
        """Delete a client. Returns False if it was already gone."""
        response = self._request(
            http, "DELETE", self._realm_path(f"/{uuid}"), allowed=(404,), headers=_auth(token)
        )
        return response.status_code != 404


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class KeycloakProvider:
    """OIDC provider that provisions confidential clients in a Keycloak realm."""

    name = PROVIDER_KEYCLOAK

    def __init__(self, config: KeycloakConfig, admin: KeycloakAdminClient | None = None) -> None:
        self._config = config
        self._admin = admin or KeycloakAdminClient(config)

    def supports_provisioning(self) -> bool:
        return True

    def get_issuer_url(self, intent: AppIntent) -> str:
        return self._config.issuer_url()

    def get_client_id(self, intent: AppIntent) -> str:
        return client_id(intent)

    def provision_client(self, intent: AppIntent) -> ClientCredentials:
        """Ensure the client exists with the expected redirect URIs.

        An existing client keeps its secret. Only redirect URI drift causes
        an update.
        """
        cid = self.get_client_id(intent)
        uris = redirect_uris(intent)

        with self._admin.session() as http:
            token = self._admin.login(http)
            existing = self._admin.find_client(http, token, cid)

            if existing is None:
                created = self._admin.create_client(
                    http, token, self._client_representation(intent, cid, uris)
                )
                if created:
                    logger.info(
                        "Created Keycloak client",
                        extra={"intent": intent.key, "client_id": cid, "realm": self._config.realm},
                    )
                existing = self._admin.find_client(http, token, cid)
                if existing is None:
                    raise TransientError(
                        REASON_PROVISIONING_FAILED,
                        f"Keycloak client {cid} not visible after create",
                    )

            uuid = existing["id"]
            if sorted(existing.get("redirectUris") or []) != sorted(uris):
                updated = dict(existing)
                updated["redirectUris"] = uris
                self._admin.update_client(http, token, uuid, updated)
                logger.info(
                    "Updated Keycloak client redirect URIs",
                    extra={"intent": intent.key, "client_id": cid},
                )

            secret = self._admin.get_client_secret(http, token, uuid)

        return ClientCredentials(client_id=cid, client_secret=secret)

    def delete_client(self, intent: AppIntent) -> None:
        cid = self.get_client_id(intent)
        with self._admin.session() as http:
            token = self._admin.login(http)
            existing = self._admin.find_client(http, token, cid)
            if existing is None:
                logger.info(
                    "Keycloak client already absent",
                    extra={"intent": intent.key, "client_id": cid},
                )
                return
            self._admin.delete_client(http, token, existing["id"])
        logger.info("Deleted Keycloak client", extra={"intent": intent.key, "client_id": cid})

    def _client_representation(
        self, intent: AppIntent, cid: str, uris: list[str]
    ) -> dict[str, Any]:
        return {
            "clientId": cid,
            "name": f"{intent.name} OIDC Client",
            "description": f"Provisioned by nebari-operator for {intent.key}",
            "secret": generate_client_secret(),
            "redirectUris": uris,
            "webOrigins": [f"https://{intent.spec.hostname}"],
            "publicClient": False,
            "standardFlowEnabled": True,
            "directAccessGrantsEnabled": False,
            "serviceAccountsEnabled": False,
            "protocol": "openid-connect",
            "enabled": True,
        }
