"""In-memory Keycloak admin API served through httpx.MockTransport.

Covers the endpoints the operator calls:
- POST /realms/master/protocol/openid-connect/token
- GET/POST /admin/realms/{realm}/clients
- PUT/DELETE /admin/realms/{realm}/clients/{id}
- GET /admin/realms/{realm}/clients/{id}/client-secret

Every request is recorded so tests can count calls per endpoint.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx

KEYCLOAK_URL = "http://keycloak.test/auth"
ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin-password"
ACCESS_TOKEN = "test-access-token"

_CLIENTS_PATH = re.compile(r"^/admin/realms/(?P<realm>[^/]+)/clients$")
_CLIENT_PATH = re.compile(r"^/admin/realms/(?P<realm>[^/]+)/clients/(?P<id>[^/]+)$")
_SECRET_PATH = re.compile(r"^/admin/realms/(?P<realm>[^/]+)/clients/(?P<id>[^/]+)/client-secret$")
_TOKEN_PATH = "/realms/master/protocol/openid-connect/token"


@dataclass
class MockKeycloakServer:
    """Keycloak admin API state for one realm.

    Failure injection:
        fail_status: Respond to every non-token request with this status.
        timeout: Raise a read timeout for every request.
    """

    realm: str = "nebari"
    context_path: str = "/auth"
    clients: dict[str, dict[str, Any]] = field(default_factory=dict)
    requests: list[tuple[str, str]] = field(default_factory=list)
    fail_status: int | None = None
    timeout: bool = False

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def add_client(
        self, client_id: str, secret: str = "existing-secret", redirect_uris: list[str] | None = None
    ) -> dict[str, Any]:
        representation = {
            "id": str(uuid.uuid4()),
            "clientId": client_id,
            "secret": secret,
            "redirectUris": list(redirect_uris or []),
        }
        self.clients[representation["id"]] = representation
        return representation

    def find(self, client_id: str) -> dict[str, Any] | None:
        for representation in self.clients.values():
            if representation["clientId"] == client_id:
                return representation
        return None

    def count(self, method: str | None = None, suffix: str | None = None) -> int:
        return sum(
            1
            for m, path in self.requests
            if (method is None or m == method) and (suffix is None or path.endswith(suffix))
        )

    @property
    def admin_calls(self) -> int:
        """Requests other than token requests."""
        return sum(1 for _, path in self.requests if path != _TOKEN_PATH)

    # -------------------------------------------------------------------------
    # Request handling
    # -------------------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith(self.context_path):
            path = path[len(self.context_path):]
        self.requests.append((request.method, path))

        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)

        if path == _TOKEN_PATH and request.method == "POST":
            return self._token(request)

        if request.headers.get("Authorization") != f"Bearer {ACCESS_TOKEN}":
            return httpx.Response(401, json={"error": "unauthorized"})

        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": "injected"})

        match = _SECRET_PATH.match(path)
        if match and request.method == "GET":
            return self._client_secret(match["id"])

        match = _CLIENT_PATH.match(path)
        if match:
            if request.method == "PUT":
                return self._update(match["id"], request)
            if request.method == "DELETE":
                return self._delete(match["id"])

        match = _CLIENTS_PATH.match(path)
        if match:
            if request.method == "GET":
                return self._list(request)
            if request.method == "POST":
                return self._create(request)

        return httpx.Response(404, json={"error": "not found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(httpx.QueryParams(request.content.decode("utf-8")))
        if form.get("username") != ADMIN_USERNAME or form.get("password") != ADMIN_PASSWORD:
            return httpx.Response(401, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": ACCESS_TOKEN, "expires_in": 60})

    def _list(self, request: httpx.Request) -> httpx.Response:
        client_id = request.url.params.get("clientId")
        found = [
            {k: v for k, v in c.items() if k != "secret"}
            for c in self.clients.values()
            if client_id is None or c["clientId"] == client_id
        ]
        return httpx.Response(200, json=found)

    def _create(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if self.find(body["clientId"]) is not None:
            return httpx.Response(409, json={"errorMessage": "Client already exists"})
        representation = dict(body)
        representation["id"] = str(uuid.uuid4())
        self.clients[representation["id"]] = representation
        return httpx.Response(201)

    def _update(self, client_uuid: str, request: httpx.Request) -> httpx.Response:
        if client_uuid not in self.clients:
            return httpx.Response(404, json={"error": "Could not find client"})
        body = json.loads(request.content)
        body.pop("secret", None)
        self.clients[client_uuid].update(body)
        return httpx.Response(204)

    def _delete(self, client_uuid: str) -> httpx.Response:
        if self.clients.pop(client_uuid, None) is None:
            return httpx.Response(404, json={"error": "Could not find client"})
        return httpx.Response(204)

    def _client_secret(self, client_uuid: str) -> httpx.Response:
        representation = self.clients.get(client_uuid)
        if representation is None:
            return httpx.Response(404, json={"error": "Could not find client"})
        return httpx.Response(200, json={"type": "secret", "value": representation.get("secret")})
