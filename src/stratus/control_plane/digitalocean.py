"""DigitalOcean droplet API wrapper used as the runner compute provider."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

import httpx
import structlog

from ..common.errors import ProviderError
from ..common.schemas import RunnerInstance

LOGGER = structlog.get_logger("stratus.control_plane.digitalocean")

DIGITALOCEAN_API_BASE = "https://api.digitalocean.com"
RUNNER_TAG = "github-runner"
RUNNER_TAGS = (RUNNER_TAG, "ephemeral")
LIST_PAGE_SIZE = 200


class ComputeProvider(Protocol):
    async def create_instance(
        self,
        *,
        name: str,
        region: str,
        size: str,
        image: str,
        user_data: str,
        ssh_keys: Sequence[str],
        tags: Sequence[str],
    ) -> RunnerInstance:
        ...

    async def delete_instance(self, instance_id: int) -> None:
        ...

    async def list_instances(self, tag: str) -> list[RunnerInstance]:
        ...


def _parse_created(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def droplet_to_instance(droplet: dict[str, Any]) -> RunnerInstance:
    return RunnerInstance(
        id=int(droplet["id"]),
        name=str(droplet.get("name", "")),
        created_at=_parse_created(droplet.get("created_at")),
        tags=list(droplet.get("tags") or []),
        status=droplet.get("status"),
    )


class DigitalOceanClient:
    """Wraps the droplet endpoints of the DigitalOcean v2 API."""

    def __init__(
        self,
        *,
        token: str,
        http_client: httpx.AsyncClient,
        api_base: str = DIGITALOCEAN_API_BASE,
    ) -> None:
        self._token = token
        self._http = http_client
        self._api_base = api_base.rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    async def create_instance(
        self,
        *,
        name: str,
        region: str,
        size: str,
        image: str,
        user_data: str,
        ssh_keys: Sequence[str] = (),
        tags: Sequence[str] = RUNNER_TAGS,
    ) -> RunnerInstance:
        body = {
            "name": name,
            "region": region,
            "size": size,
            "image": image,
            "user_data": user_data,
            "ssh_keys": list(ssh_keys),
            "tags": list(tags),
        }
        response = await self._request("POST", "/v2/droplets", json=body, action="create droplet")
        try:
            instance = droplet_to_instance(response.json()["droplet"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderError(f"create droplet: malformed response: {exc}") from exc
        LOGGER.info("Created runner droplet", runner_name=name, droplet_id=instance.id)
        return instance

    async def delete_instance(self, instance_id: int) -> None:
        await self._request("DELETE", f"/v2/droplets/{instance_id}", action="delete droplet")

    async def list_instances(self, tag: str = RUNNER_TAG) -> list[RunnerInstance]:
        instances: list[RunnerInstance] = []
        url: Optional[str] = f"{self._api_base}/v2/droplets"
        params: Optional[dict[str, Any]] = {"tag_name": tag, "per_page": LIST_PAGE_SIZE}
        while url:
            response = await self._request("GET", url, params=params, action="list runner droplets")
            try:
                payload = response.json()
                instances.extend(droplet_to_instance(item) for item in payload.get("droplets", []))
            except (ValueError, KeyError, TypeError) as exc:
                raise ProviderError(f"list runner droplets: malformed response: {exc}") from exc
            # The "next" link already carries the query string.
            url = ((payload.get("links") or {}).get("pages") or {}).get("next")
            params = None
        return instances

    async def _request(
        self,
        method: str,
        path_or_url: str,
        *,
        action: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        url = path_or_url if path_or_url.startswith("http") else f"{self._api_base}{path_or_url}"
        try:
            response = await self._http.request(method, url, headers=self._headers(), json=json, params=params)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{action}: {exc}") from exc
        if not response.is_success:
            raise ProviderError(
                f"{action}: unexpected status {response.status_code}",
                status_code=response.status_code,
            )
        return response
