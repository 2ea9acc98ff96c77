"""Authorization oracle abstraction.

AuthorizationOracle is an ABC so tests can inject a fake without a real
auth service. HttpAuthorizationOracle talks to the auth service over JSON:
  check    -> POST /api/v1/permission/check
  register -> POST /api/v1/resources/create
  grant    -> POST /api/v1/permission/grant

Answers are never cached: every call goes to the service.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from quotaledger.auth.actor import Actor
from quotaledger.config import AppSettings
from quotaledger.errors import UpstreamError

log = logging.getLogger(__name__)


class AuthorizationOracle(ABC):
    @abstractmethod
    async def check_capability(
        self, actor: Actor, resource_id: str, capabilities: list[str]
    ) -> bool:
        """Return True only if the actor holds every requested capability.

        Raises UpstreamError if the oracle cannot be asked.
        """

    @abstractmethod
    async def register_resource(
        self,
        actor: Actor,
        resource_id: str,
        resource_type: str,
        display_name: str,
        description: str,
    ) -> None: ...

    @abstractmethod
    async def grant_capability(
        self,
        acting_admin: Actor,
        target_user_id: str,
        resource_id: str,
        capabilities: list[str],
    ) -> None: ...


class HttpAuthorizationOracle(AuthorizationOracle):
    def __init__(self, http_client: httpx.AsyncClient, settings: AppSettings) -> None:
        self._client = http_client
        self._base_url = settings.AUTH_SERVICE_URL.rstrip("/")
        self._service_id = settings.SERVICE_ID
        self._timeout = settings.AUTH_TIMEOUT_SECONDS

    # ── internal helpers ───────────────────────────────────────────────────

    def _envelope(self, actor: Actor) -> dict[str, Any]:
        return {"service_id": self._service_id, "encrypted_data": actor.credential or ""}

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{endpoint}"
        try:
            resp = await self._client.post(url, json=payload, timeout=self._timeout)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                f"Auth service returned {exc.response.status_code} for {endpoint}"
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Auth service request to {endpoint} failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError(f"Auth service sent a malformed body for {endpoint}") from exc

        if not isinstance(body, dict):
            raise UpstreamError(f"Auth service sent a malformed body for {endpoint}")
        return body

    @staticmethod
    def _require_success(body: dict[str, Any], what: str) -> None:
        if body.get("success") is not True:
            raise UpstreamError(f"{what} failed: {body.get('error') or 'unknown error'}")

    # ── public interface ───────────────────────────────────────────────────

    async def check_capability(
        self, actor: Actor, resource_id: str, capabilities: list[str]
    ) -> bool:
        body = await self._post(
            "/api/v1/permission/check",
            {
                **self._envelope(actor),
                "resource_id": resource_id,
                "requested_permissions": list(capabilities),
            },
        )
        if body.get("success") is not True:
            log.debug(
                "Capability check refused for user %s on %s: %s",
                actor.user_id,
                resource_id,
                body.get("error"),
            )
            return False

        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise UpstreamError("Auth service sent a malformed body for /api/v1/permission/check")
        granted = data.get("granted_permissions") or []
        if not isinstance(granted, list):
            raise UpstreamError("Auth service sent a malformed body for /api/v1/permission/check")
        return all(cap in granted for cap in capabilities)

    async def register_resource(
        self,
        actor: Actor,
        resource_id: str,
        resource_type: str,
        display_name: str,
        description: str,
    ) -> None:
        body = await self._post(
            "/api/v1/resources/create",
            {
                **self._envelope(actor),
                "resource_id": resource_id,
                "resource_type": resource_type,
                "display_name": display_name,
                "description": description,
                "metadata": "{}",
            },
        )
        self._require_success(body, f"Registering resource '{resource_id}'")

    async def grant_capability(
        self,
        acting_admin: Actor,
        target_user_id: str,
        resource_id: str,
        capabilities: list[str],
    ) -> None:
        body = await self._post(
            "/api/v1/permission/grant",
            {
                **self._envelope(acting_admin),
                "target_user_id": target_user_id,
                "resource_id": resource_id,
                "permissions": list(capabilities),
            },
        )
        self._require_success(body, f"Granting {capabilities} on '{resource_id}'")
