"""GitHub App credential chain used to register ephemeral runners."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

import httpx
import jwt
import structlog

from ..common.errors import CredentialError
from ..common.schemas import CredentialChain, InstallationToken, RunnerRegistrationToken

LOGGER = structlog.get_logger("stratus.control_plane.github")

GITHUB_API_BASE = "https://api.github.com"
APP_JWT_BACKDATE_SECONDS = 60
APP_JWT_TTL_SECONDS = 600


class CredentialIssuer(Protocol):
    async def issue(self, owner: str, repo: str) -> CredentialChain:
        ...


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def build_app_jwt(
    app_id: int,
    private_key: str,
    *,
    now: Optional[float] = None,
) -> tuple[str, datetime]:
    """Return a short-lived RS256 JWT for GitHub App authentication and its expiry.

    Issuance is backdated by a minute so a clock running slightly ahead of
    GitHub's does not produce a token that is "not yet valid".
    """

    issued = int(now if now is not None else time.time())
    expires = issued + APP_JWT_TTL_SECONDS
    payload = {
        "iat": issued - APP_JWT_BACKDATE_SECONDS,
        "exp": expires,
        "iss": str(app_id),
    }
    try:
        token = jwt.encode(payload, private_key, algorithm="RS256")
    except (ValueError, TypeError, jwt.PyJWTError) as exc:
        raise CredentialError(f"sign app JWT: {exc}") from exc
    return token, datetime.fromtimestamp(expires, tz=timezone.utc)


class GitHubAppCredentialIssuer:
    """Builds a fresh app JWT, installation token and registration token per call.

    Nothing is cached between calls.
    """

    def __init__(
        self,
        *,
        app_id: int,
        installation_id: int,
        private_key: str,
        http_client: httpx.AsyncClient,
        api_base: str = GITHUB_API_BASE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._app_id = app_id
        self._installation_id = installation_id
        self._private_key = private_key
        self._http = http_client
        self._api_base = api_base.rstrip("/")
        self._clock = clock

    async def issue(self, owner: str, repo: str) -> CredentialChain:
        app_jwt, app_jwt_expires_at = build_app_jwt(self._app_id, self._private_key, now=self._clock())
        installation = await self.exchange_installation_token(app_jwt)
        registration = await self.create_repo_registration_token(owner, repo, installation)
        LOGGER.debug("Issued runner registration token", owner=owner, repo=repo)
        return CredentialChain(
            app_jwt=app_jwt,
            app_jwt_expires_at=app_jwt_expires_at,
            installation_token=installation,
            registration_token=registration,
        )

    async def exchange_installation_token(self, app_jwt: str) -> InstallationToken:
        url = f"{self._api_base}/app/installations/{self._installation_id}/access_tokens"
        data = await self._post(url, authorization=f"Bearer {app_jwt}", purpose="installation token")
        return InstallationToken(token=data["token"], expires_at=_parse_timestamp(data.get("expires_at")))

    async def create_repo_registration_token(
        self, owner: str, repo: str, installation: InstallationToken
    ) -> RunnerRegistrationToken:
        url = f"{self._api_base}/repos/{owner}/{repo}/actions/runners/registration-token"
        data = await self._post(url, authorization=f"token {installation.token}", purpose="repo runner token")
        return RunnerRegistrationToken(token=data["token"], expires_at=_parse_timestamp(data.get("expires_at")))

    async def create_org_registration_token(
        self, org: str, installation: InstallationToken
    ) -> RunnerRegistrationToken:
        """Registration token for organization-level runners; per-job runners use repository tokens."""

        url = f"{self._api_base}/orgs/{org}/actions/runners/registration-token"
        data = await self._post(url, authorization=f"token {installation.token}", purpose="org runner token")
        return RunnerRegistrationToken(token=data["token"], expires_at=_parse_timestamp(data.get("expires_at")))

    async def _post(self, url: str, *, authorization: str, purpose: str) -> dict[str, Any]:
        headers = {
            "Authorization": authorization,
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        try:
            response = await self._http.post(url, headers=headers)
        except httpx.HTTPError as exc:
            raise CredentialError(f"request {purpose}: {exc}") from exc
        if not response.is_success:
            raise CredentialError(f"unexpected status {response.status_code} requesting {purpose}")
        try:
            data = response.json()
        except ValueError as exc:
            raise CredentialError(f"decode {purpose} response: {exc}") from exc
        if not isinstance(data, dict) or not data.get("token"):
            raise CredentialError(f"{purpose} response carried no token")
        return data
