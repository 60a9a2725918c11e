"""Publishing generated projects to GitHub.

The access token comes from ``DeployConfig`` and is checked once per deploy,
before the repository is created: it is sanitized, its shape is checked
without touching the network, and only then are its scopes confirmed against
the API.
"""

import base64
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .config import DeployConfig
from .schemas import DeployResult, GeneratedProject

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"
CLASSIC_PREFIX = "ghp_"
FINE_GRAINED_PREFIX = "github_pat_"
CLASSIC_LENGTH = 40
FINE_GRAINED_MIN_LENGTH = 51

NOT_CONFIGURED = "GITHUB_TOKEN not configured"
INVALID_FORMAT = "Token format is invalid. Expected format: ghp_... or github_pat_..."

_STRIP_RE = re.compile(r"[\r\n\t\"']")


class DeployError(Exception):
    def __init__(self, message: str, *, retryable: bool = False, repo_url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.repo_url = repo_url


class CredentialError(DeployError):
    """Missing, malformed or under-scoped token. Never retryable."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


def sanitize_token(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return _STRIP_RE.sub("", raw.strip()).strip()


def is_valid_token_format(token: str) -> bool:
    if token.startswith(CLASSIC_PREFIX):
        return len(token) == CLASSIC_LENGTH
    if token.startswith(FINE_GRAINED_PREFIX):
        return len(token) >= FINE_GRAINED_MIN_LENGTH
    return False


def mask_token(token: Optional[str]) -> str:
    if not token:
        return "<empty>"
    if len(token) <= 4:
        return "*" * len(token)
    return token[:4] + "*" * (len(token) - 4)


@dataclass
class TokenValidation:
    valid: bool
    token: str = ""
    error: Optional[str] = None
    username: Optional[str] = None
    scopes: List[str] = field(default_factory=list)


def _parse_scopes(headers: httpx.Headers) -> List[str]:
    raw = headers.get("x-oauth-scopes") or ""
    return [scope.strip() for scope in raw.split(",") if scope.strip()]


class GitHubPublisher:
    def __init__(self, config: DeployConfig, *, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client or httpx.AsyncClient(base_url=config.api_base_url, timeout=30.0)

    async def __aenter__(self) -> "GitHubPublisher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    async def validate_token(self) -> TokenValidation:
        token = sanitize_token(self.config.github_token)
        if not token:
            return TokenValidation(valid=False, error=NOT_CONFIGURED)
        if not is_valid_token_format(token):
            return TokenValidation(valid=False, token=token, error=INVALID_FORMAT)

        try:
            resp = await self.client.get("/user", headers=self._headers(token))
        except httpx.RequestError as exc:
            raise DeployError(f"Could not reach GitHub: {exc}", retryable=True) from exc
        if resp.status_code == 401:
            return TokenValidation(valid=False, token=token, error="Token is invalid or expired")
        if resp.status_code == 403:
            return TokenValidation(valid=False, token=token, error="Token has insufficient permissions")
        if resp.status_code >= 400:
            return TokenValidation(valid=False, token=token, error=f"GitHub API returned {resp.status_code}")

        username = (resp.json() or {}).get("login")
        scopes = _parse_scopes(resp.headers)
        required = self.config.required_scope
        if required in scopes:
            return TokenValidation(valid=True, token=token, username=username, scopes=scopes)

        # Fine-grained tokens report no scopes; probe repository access instead.
        try:
            probe = await self.client.get("/user/repos", params={"per_page": 1}, headers=self._headers(token))
        except httpx.RequestError as exc:
            raise DeployError(f"Could not reach GitHub: {exc}", retryable=True) from exc
        if probe.is_success:
            return TokenValidation(valid=True, token=token, username=username, scopes=scopes)
        return TokenValidation(
            valid=False,
            token=token,
            username=username,
            scopes=scopes,
            error=f'Token is missing required "{required}" scope',
        )

    async def ensure_valid(self) -> TokenValidation:
        result = await self.validate_token()
        if not result.valid:
            logger.warning("GitHub token rejected (%s): %s", mask_token(result.token), result.error)
            raise CredentialError(result.error or "Token validation failed")
        return result

    async def publish(self, project: GeneratedProject, repo_name: str, description: str = "") -> DeployResult:
        """Create the repository and upload every file of the project."""
        identity = await self.ensure_valid()
        headers = self._headers(identity.token)

        try:
            created = await self.client.post(
                "/user/repos",
                json={
                    "name": repo_name,
                    "description": description[:350],
                    "private": self.config.private_repos,
                    "auto_init": False,
                },
                headers=headers,
            )
            created.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DeployError(
                f"Repository creation failed with {exc.response.status_code}: {_detail(exc.response)}"
            ) from exc
        except httpx.RequestError as exc:
            raise DeployError(f"Repository creation failed: {exc}", retryable=True) from exc

        repo = created.json()
        html_url = repo.get("html_url") or ""
        clone_url = repo.get("clone_url") or ""
        owner = (repo.get("owner") or {}).get("login") or identity.username
        full_name = repo.get("full_name") or f"{owner}/{repo_name}"
        logger.info("Created repository %s", html_url)

        uploaded = 0
        for item in project.files:
            payload = {
                "message": f"Add {item.path}",
                "content": base64.b64encode(item.content.encode("utf-8")).decode("ascii"),
            }
            try:
                resp = await self.client.put(f"/repos/{full_name}/contents/{item.path}", json=payload, headers=headers)
                resp.raise_for_status()
            except (httpx.HTTPStatusError, httpx.RequestError) as exc:
                # The repository is left in place; it has to be cleaned up by hand.
                logger.error(
                    "Repository %s was created but uploading %s failed after %s of %s files: %s",
                    html_url,
                    item.path,
                    uploaded,
                    len(project.files),
                    exc,
                )
                raise DeployError(
                    f"Upload of {item.path} failed after repository {html_url} was created: {exc}",
                    repo_url=html_url,
                ) from exc
            uploaded += 1

        return DeployResult(repo_name=repo_name, html_url=html_url, clone_url=clone_url, files_uploaded=uploaded)

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()


def _detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text
    return body.get("message") if isinstance(body, dict) else body
