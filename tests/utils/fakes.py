"""In-memory collaborators and payload builders shared by the test suite."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from stratus.common.errors import CredentialError, ProviderError, SecretStoreError
from stratus.common.schemas import (
    CredentialChain,
    InstallationToken,
    RunnerInstance,
    RunnerRegistrationToken,
)
from stratus.common.security import compute_signature

WEBHOOK_SECRET = "webhook-secret"
CALLBACK_SECRET = "callback-secret"


def make_chain(registration_token: str = "reg-token-123") -> CredentialChain:
    now = datetime.now(timezone.utc)
    return CredentialChain(
        app_jwt="app-jwt",
        app_jwt_expires_at=now + timedelta(minutes=10),
        installation_token=InstallationToken(token="inst-token", expires_at=now + timedelta(hours=1)),
        registration_token=RunnerRegistrationToken(token=registration_token, expires_at=now + timedelta(hours=1)),
    )


def workflow_job_payload(
    *,
    action: str = "queued",
    job_id: int = 42,
    labels: Sequence[str] = ("self-hosted", "linux"),
    owner: str = "acme",
    repo: str = "widgets",
    org: Optional[str] = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "action": action,
        "workflow_job": {"id": job_id, "name": "build", "labels": list(labels)},
        "repository": {
            "full_name": f"{owner}/{repo}",
            "name": repo,
            "owner": {"login": owner},
        },
    }
    if org is not None:
        payload["organization"] = {"login": org}
    return payload


def signed_webhook(payload: dict[str, Any], secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "X-Hub-Signature-256": compute_signature(secret, body),
        "X-GitHub-Event": "workflow_job",
        "Content-Type": "application/json",
    }
    return body, headers


class FakeCredentialIssuer:
    def __init__(self, *, error: Optional[CredentialError] = None, hold: Optional[asyncio.Event] = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.error = error
        self.hold = hold

    async def issue(self, owner: str, repo: str) -> CredentialChain:
        self.calls.append((owner, repo))
        if self.hold is not None:
            await self.hold.wait()
        if self.error is not None:
            raise self.error
        return make_chain()


class FakeSecretStore:
    def __init__(
        self,
        *,
        put_error: Optional[SecretStoreError] = None,
        delete_error: Optional[SecretStoreError] = None,
    ) -> None:
        self.values: dict[str, str] = {}
        self.put_calls: list[str] = []
        self.deleted: list[str] = []
        self.put_error = put_error
        self.delete_error = delete_error

    async def put_secret(self, name: str, value: str) -> None:
        self.put_calls.append(name)
        if self.put_error is not None:
            raise self.put_error
        self.values[name] = value

    async def delete_secret(self, name: str) -> None:
        self.deleted.append(name)
        if self.delete_error is not None:
            raise self.delete_error
        self.values.pop(name, None)


class FakeProvider:
    def __init__(
        self,
        *,
        instances: Optional[list[RunnerInstance]] = None,
        create_error: Optional[ProviderError] = None,
        delete_errors: Optional[dict[int, ProviderError]] = None,
        list_error: Optional[ProviderError] = None,
        delete_delay: float = 0.0,
    ) -> None:
        self.instances = list(instances or [])
        self.created: list[dict[str, Any]] = []
        self.deleted: list[int] = []
        self.list_calls: list[str] = []
        self.create_error = create_error
        self.delete_errors = dict(delete_errors or {})
        self.list_error = list_error
        self.delete_delay = delete_delay
        self._next_id = 1000

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
        if self.create_error is not None:
            raise self.create_error
        self._next_id += 1
        self.created.append(
            {
                "name": name,
                "region": region,
                "size": size,
                "image": image,
                "user_data": user_data,
                "ssh_keys": list(ssh_keys),
                "tags": list(tags),
            }
        )
        return RunnerInstance(
            id=self._next_id,
            name=name,
            created_at=datetime.now(timezone.utc),
            tags=list(tags),
            status="new",
        )

    async def delete_instance(self, instance_id: int) -> None:
        if self.delete_delay:
            await asyncio.sleep(self.delete_delay)
        if instance_id in self.delete_errors:
            raise self.delete_errors[instance_id]
        self.deleted.append(instance_id)

    async def list_instances(self, tag: str) -> list[RunnerInstance]:
        self.list_calls.append(tag)
        if self.list_error is not None:
            raise self.list_error
        return list(self.instances)
