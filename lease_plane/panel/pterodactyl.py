"""
Lease Plane Pterodactyl Adapter
===============================

Pterodactyl integration using direct Application API calls via httpx.

Every request carries a bounded timeout. Suspend and delete treat a 404
as "already in that state" so sweeper retries stay idempotent.

API Docs: https://dashflo.net/docs/api/pterodactyl/v1/
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .base import (
    Allocation,
    CreateInstanceRequest,
    Host,
    PanelError,
    PanelInterface,
    PanelNotFoundError,
    PanelTimeoutError,
    PanelUnavailableError,
)

logger = logging.getLogger(__name__)


class PterodactylPanel(PanelInterface):
    """
    Pterodactyl Application API adapter.

    Uses the application (admin) key; client-API features such as
    backups are outside this adapter.
    """

    PANEL_ID = "pterodactyl"

    NODES_PAGE_SIZE = 50
    ALLOCATIONS_PAGE_SIZE = 100

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        docker_image: str = "",
        startup: str = "",
        default_egg: int = 1,
        default_environment: Optional[Dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the adapter.

        Args:
            base_url: Panel root URL (the /api/application suffix is added here)
            api_key: Application API key
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        if not base_url or not api_key:
            raise PanelError("PTERODACTYL_URL and PTERODACTYL_API_KEY are required")

        self.docker_image = docker_image
        self.startup = startup
        self.default_egg = default_egg
        self.default_environment = default_environment or {}
        self.client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/api/application",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated API request."""
        try:
            response = await self.client.request(
                method=method,
                url=endpoint,
                json=data,
                params=params,
            )
        except httpx.TimeoutException as e:
            raise PanelTimeoutError(f"{method} {endpoint} timed out: {e}")
        except httpx.RequestError as e:
            raise PanelUnavailableError(f"{method} {endpoint} failed: {e}")

        if response.status_code == 404:
            raise PanelNotFoundError(f"Resource not found: {endpoint}", status_code=404)

        if response.is_error:
            error_msg = f"HTTP {response.status_code}"
            try:
                errors = response.json().get("errors") or []
                if errors:
                    error_msg = errors[0].get("detail", error_msg)
            except (ValueError, AttributeError):
                pass
            raise PanelError(
                f"{method} {endpoint}: {error_msg}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise PanelError(
                f"{method} {endpoint}: response is not JSON: {e}",
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise PanelError(
                f"{method} {endpoint}: expected a JSON object",
                status_code=response.status_code,
            )
        return body

    async def _paginate(self, endpoint: str, per_page: int) -> List[Dict[str, Any]]:
        """Collect the `attributes` of every item across all pages."""
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            body = await self._make_request("GET", endpoint, params={"per_page": per_page, "page": page})
            for item in body.get("data") or []:
                items.append(item.get("attributes", {}))

            pagination = (body.get("meta") or {}).get("pagination")
            if not pagination or page >= pagination.get("total_pages", 1):
                break
            page += 1
        return items

    # =========================================
    # FLEET INVENTORY
    # =========================================

    async def list_hosts(self) -> List[Host]:
        nodes = await self._paginate("/nodes", self.NODES_PAGE_SIZE)
        hosts = []
        for node in nodes:
            allocated = node.get("allocated_resources") or {}
            hosts.append(Host(
                id=node["id"],
                name=node.get("name", str(node["id"])),
                memory_limit=node.get("memory", 0),
                disk_limit=node.get("disk", 0),
                memory_overalloc=node.get("memory_overallocate") or 0,
                disk_overalloc=node.get("disk_overallocate") or 0,
                memory_used=allocated.get("memory") or 0,
                disk_used=allocated.get("disk") or 0,
            ))
        logger.debug(f"Loaded {len(hosts)} host(s) from panel")
        return hosts

    async def list_free_allocations(self, host_id: int) -> List[Allocation]:
        allocations = await self._paginate(f"/nodes/{host_id}/allocations", self.ALLOCATIONS_PAGE_SIZE)
        return [
            Allocation(id=a["id"], ip=a.get("ip", ""), port=a.get("port", 0))
            for a in allocations
            if not a.get("assigned")
        ]

    # =========================================
    # INSTANCE LIFECYCLE
    # =========================================

    async def create_instance(self, request: CreateInstanceRequest) -> str:
        environment = dict(self.default_environment)
        environment.update(request.environment)

        payload = {
            "name": request.name,
            "user": request.panel_user_id,
            "egg": request.egg_id or self.default_egg,
            "node": request.host_id,
            "allocation": {"default": request.allocation_id},
            "docker_image": self.docker_image,
            "startup": self.startup,
            "environment": environment,
            "limits": {
                "memory": request.limits.memory_mb,
                "swap": 0,
                "disk": request.limits.disk_mb,
                "io": 500,
                "cpu": request.limits.cpu_percent,
            },
            "feature_limits": {
                "databases": 0,
                "allocations": 0,
                "backups": 0,
            },
            "start_on_completion": True,
        }

        body = await self._make_request("POST", "/servers", data=payload)
        try:
            external_id = str(body["attributes"]["id"])
        except (KeyError, TypeError) as e:
            raise PanelError(f"POST /servers: response has no server id ({e!r})", details=body)
        logger.info(
            f"Created panel server {external_id} on node {request.host_id}",
            extra={"host_id": request.host_id, "external_id": external_id},
        )
        return external_id

    async def suspend_instance(self, external_id: str) -> None:
        try:
            await self._make_request("POST", f"/servers/{external_id}/suspend")
        except PanelNotFoundError:
            logger.info(f"Panel server {external_id} already gone, suspend is a no-op")

    async def unsuspend_instance(self, external_id: str) -> None:
        await self._make_request("POST", f"/servers/{external_id}/unsuspend")

    async def delete_instance(self, external_id: str) -> None:
        try:
            await self._make_request("DELETE", f"/servers/{external_id}")
        except PanelNotFoundError:
            logger.info(f"Panel server {external_id} already gone (404)")

    async def close(self) -> None:
        await self.client.aclose()
