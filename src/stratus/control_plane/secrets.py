"""Secret persistence for runner registration tokens (AWS SSM Parameter Store)."""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..common.errors import SecretStoreError

LOGGER = structlog.get_logger("stratus.control_plane.secrets")


class SecretStore(Protocol):
    async def put_secret(self, name: str, value: str) -> None:
        ...

    async def delete_secret(self, name: str) -> None:
        ...


class SSMParameterStore:
    """Stores secrets as SecureString parameters, overwriting any previous value.

    boto3 is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, *, region_name: Optional[str] = None, client: Any = None) -> None:
        if client is None:
            session = boto3.session.Session()
            client_args = {"region_name": region_name} if region_name else {}
            client = session.client("ssm", **client_args)
        self._client = client

    async def put_secret(self, name: str, value: str) -> None:
        try:
            await asyncio.to_thread(
                self._client.put_parameter,
                Name=name,
                Value=value,
                Type="SecureString",
                Overwrite=True,
            )
        except (BotoCoreError, ClientError) as exc:
            raise SecretStoreError(f"put parameter {name}: {exc}") from exc

    async def delete_secret(self, name: str) -> None:
        try:
            await asyncio.to_thread(self._client.delete_parameter, Name=name)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ParameterNotFound":
                LOGGER.debug("Parameter already absent", name=name)
                return
            raise SecretStoreError(f"delete parameter {name}: {exc}") from exc
        except BotoCoreError as exc:
            raise SecretStoreError(f"delete parameter {name}: {exc}") from exc
