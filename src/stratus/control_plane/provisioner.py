"""Turns an admitted workflow_job into a registered, ephemeral runner droplet."""

from __future__ import annotations

import re
import time
from typing import Callable, Iterable, Optional, Sequence

import structlog
from opentelemetry import trace

from ..common.errors import CredentialError, InvalidRunnerInput, ProviderError, SecretStoreError
from ..common.metrics import PROVISION_FAILED, PROVISION_SUCCEEDED
from ..common.schemas import RunnerInstance, RunnerProvisioningRequest, WorkflowJobEvent
from .bootstrap import BootstrapRenderer
from .digitalocean import RUNNER_TAGS, ComputeProvider
from .github import CredentialIssuer
from .secrets import SecretStore

LOGGER = structlog.get_logger("stratus.control_plane.provisioner")
TRACER = trace.get_tracer("stratus.control_plane")

SAFE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
RUNNER_NAME_PREFIX = "eph"
MAX_RUNNER_NAME_LENGTH = 63


def is_safe_name(value: str) -> bool:
    return bool(SAFE_NAME_PATTERN.fullmatch(value))


def build_runner_name(repo: str, job_id: int, now: float) -> str:
    """Return ``eph-{repo}-{job_id}-{unix_seconds}`` as a hostname of at most 63 characters.

    Only the repository segment is shortened, so the job id and timestamp always
    survive. Underscores become hyphens and the segment never ends in a hyphen.
    """

    suffix = f"{job_id}-{int(now)}"
    budget = max(MAX_RUNNER_NAME_LENGTH - len(RUNNER_NAME_PREFIX) - len(suffix) - 2, 0)
    slug = repo.replace("_", "-")[:budget].strip("-")
    if not slug:
        return f"{RUNNER_NAME_PREFIX}-{suffix}"
    return f"{RUNNER_NAME_PREFIX}-{slug}-{suffix}"


def sanitize_labels(labels: Iterable[str]) -> list[str]:
    """Trim labels and drop any that could break out of the bootstrap script."""

    cleaned: list[str] = []
    for label in labels:
        label = label.strip()
        if label and is_safe_name(label):
            cleaned.append(label)
    return cleaned


class ProvisioningOrchestrator:
    """Runs the credential, secret and compute steps for one admitted job.

    Failures are logged with the job, repository and failing step and end the
    attempt; nothing is retried. ``provision`` returns the created instance, or
    ``None`` when the attempt was abandoned.
    """

    def __init__(
        self,
        *,
        credentials: CredentialIssuer,
        secrets: SecretStore,
        provider: ComputeProvider,
        renderer: BootstrapRenderer,
        token_parameter_prefix: str,
        callback_url: str,
        callback_secret_parameter: str,
        runner_version: str,
        region: str,
        size: str,
        image: str,
        ssh_keys: Sequence[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._secrets = secrets
        self._provider = provider
        self._renderer = renderer
        self._token_parameter_prefix = token_parameter_prefix.rstrip("/")
        self._callback_url = callback_url
        self._callback_secret_parameter = callback_secret_parameter
        self._runner_version = runner_version
        self._region = region
        self._size = size
        self._image = image
        self._ssh_keys = list(ssh_keys)
        self._clock = clock

    def token_parameter_for(self, runner_name: str) -> str:
        return f"{self._token_parameter_prefix}/{runner_name}"

    def build_request(self, event: WorkflowJobEvent) -> RunnerProvisioningRequest:
        owner = event.repository.owner.login
        repo = event.repository.name
        if not is_safe_name(owner) or not is_safe_name(repo):
            raise InvalidRunnerInput(f"invalid repository identifiers: {owner!r}/{repo!r}")
        runner_name = build_runner_name(repo, event.workflow_job.id, self._clock())
        return RunnerProvisioningRequest(
            runner_name=runner_name,
            owner=owner,
            repository=f"{owner}/{repo}",
            labels=sanitize_labels(event.workflow_job.labels),
            token_parameter=self.token_parameter_for(runner_name),
            callback_url=self._callback_url,
            callback_secret_parameter=self._callback_secret_parameter,
            runner_version=self._runner_version,
            region=self._region,
            size=self._size,
            image=self._image,
        )

    async def provision(self, event: WorkflowJobEvent) -> Optional[RunnerInstance]:
        job_id = event.workflow_job.id
        full_name = event.repository.full_name
        with TRACER.start_as_current_span("control_plane.provision_runner") as span:
            span.set_attribute("stratus.job_id", job_id)
            span.set_attribute("stratus.repo", full_name)

            try:
                request = self.build_request(event)
            except InvalidRunnerInput as exc:
                return self._abandon("validate", job_id, full_name, exc)

            # Issue credentials only after the identifiers are known to be safe.
            try:
                chain = await self._credentials.issue(request.owner, event.repository.name)
            except CredentialError as exc:
                return self._abandon("credentials", job_id, full_name, exc)

            try:
                await self._secrets.put_secret(request.token_parameter, chain.registration_token.token)
            except SecretStoreError as exc:
                return self._abandon("store-token", job_id, full_name, exc)

            user_data = self._renderer.render(request)
            try:
                instance = await self._provider.create_instance(
                    name=request.runner_name,
                    region=request.region,
                    size=request.size,
                    image=request.image,
                    user_data=user_data,
                    ssh_keys=self._ssh_keys,
                    tags=RUNNER_TAGS,
                )
            except ProviderError as exc:
                await self._discard_token(request.token_parameter)
                return self._abandon("create-instance", job_id, full_name, exc)

            span.set_attribute("stratus.droplet_id", instance.id)
            PROVISION_SUCCEEDED.inc()
            LOGGER.info(
                "Provisioned runner",
                runner_name=request.runner_name,
                droplet_id=instance.id,
                job_id=job_id,
                repo=full_name,
            )
            return instance

    async def _discard_token(self, parameter: str) -> None:
        try:
            await self._secrets.delete_secret(parameter)
        except SecretStoreError as exc:
            LOGGER.warning("Failed to remove orphaned runner token", parameter=parameter, error=str(exc))

    def _abandon(self, step: str, job_id: int, repo: str, exc: Exception) -> None:
        PROVISION_FAILED.inc(step)
        LOGGER.error("Provisioning failed", step=step, job_id=job_id, repo=repo, error=str(exc))
        return None
