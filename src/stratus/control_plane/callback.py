"""Self-destruct callback: runner droplets ask to be deleted once their job ends."""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from ..common.errors import ProviderError
from ..common.metrics import CALLBACK_DELETES
from ..common.schemas import DestroyCallback
from ..common.security import SecretLike, secrets_match
from .digitalocean import ComputeProvider

LOGGER = structlog.get_logger("stratus.control_plane.callback")

CALLBACK_SECRET_HEADER = "x-callback-secret"
MAX_CALLBACK_BODY_BYTES = 1024


class CallbackHandler:
    def __init__(
        self,
        *,
        secret: SecretLike,
        provider: ComputeProvider,
        timeout: float = 30.0,
        max_body_bytes: int = MAX_CALLBACK_BODY_BYTES,
    ) -> None:
        self._secret = secret
        self._provider = provider
        self.timeout = timeout
        self.max_body_bytes = max_body_bytes

    def authenticate(self, provided: Optional[str], client_ip: str) -> bool:
        if secrets_match(provided, self._secret):
            return True
        LOGGER.warning("Invalid callback secret", client_ip=client_ip)
        return False

    @staticmethod
    def parse(body: bytes) -> DestroyCallback:
        """Parse ``{"droplet_id": <positive int>}``; raises ``pydantic.ValidationError`` otherwise."""

        return DestroyCallback.model_validate_json(body)

    async def destroy(self, droplet_id: int) -> bool:
        """Delete the droplet under the callback deadline. Returns ``False`` on failure."""

        try:
            await asyncio.wait_for(self._provider.delete_instance(droplet_id), timeout=self.timeout)
        except asyncio.TimeoutError:
            CALLBACK_DELETES.inc("timeout")
            LOGGER.error("Droplet deletion timed out", droplet_id=droplet_id, timeout_seconds=self.timeout)
            return False
        except ProviderError as exc:
            CALLBACK_DELETES.inc("failed")
            LOGGER.error(
                "Failed to delete droplet",
                droplet_id=droplet_id,
                status_code=exc.status_code,
                error=str(exc),
            )
            return False
        CALLBACK_DELETES.inc("deleted")
        LOGGER.info("Deleted droplet on runner callback", droplet_id=droplet_id)
        return True
