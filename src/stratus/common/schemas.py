"""Shared data models for the Stratus runner provisioner."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GitHubOwner(BaseModel):
    model_config = ConfigDict(frozen=True)

    login: str


class GitHubRepository(BaseModel):
    """Repository metadata extracted from GitHub webhook payloads."""

    model_config = ConfigDict(frozen=True)

    full_name: str
    name: str
    owner: GitHubOwner


class GitHubOrganization(BaseModel):
    model_config = ConfigDict(frozen=True)

    login: str


class GitHubWorkflowJob(BaseModel):
    """Subset of the workflow_job payload needed to provision a runner."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""
    labels: list[str] = Field(default_factory=list)


class WorkflowJobEvent(BaseModel):
    """Parsed GitHub webhook for workflow_job events."""

    model_config = ConfigDict(frozen=True)

    action: str
    workflow_job: GitHubWorkflowJob
    repository: GitHubRepository
    organization: Optional[GitHubOrganization] = None


class DestroyCallback(BaseModel):
    """Self-destruct request posted by a runner droplet once its job finished."""

    droplet_id: int = Field(gt=0, strict=True)


class InstallationToken(BaseModel):
    """Installation access token issued for the GitHub App."""

    token: str
    expires_at: Optional[datetime] = None


class RunnerRegistrationToken(BaseModel):
    """Registration token issued by GitHub for a single use runner."""

    token: str
    expires_at: Optional[datetime] = None


class CredentialChain(BaseModel):
    """Every credential minted while preparing one runner registration."""

    app_jwt: str
    app_jwt_expires_at: datetime
    installation_token: InstallationToken
    registration_token: RunnerRegistrationToken


class RunnerProvisioningRequest(BaseModel):
    """Inputs handed to the bootstrap renderer and compute provider for one runner."""

    runner_name: str
    owner: str
    repository: str
    labels: list[str] = Field(default_factory=list)
    token_parameter: str
    callback_url: str
    callback_secret_parameter: str
    runner_version: str
    region: str
    size: str
    image: str

    @property
    def labels_csv(self) -> str:
        return ",".join(self.labels)


class RunnerInstance(BaseModel):
    """Compute instance as reported by the provider."""

    id: int
    name: str
    created_at: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)
    status: Optional[str] = None
