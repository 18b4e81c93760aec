"""
Release version resolution against the GitHub releases API.

Handles the three ways a tool version can be requested:
- "latest": newest release (requires an auth token)
- explicit version: verified when a token is available, trusted otherwise
- unset: a hard-coded safe default, no network access
"""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = '2022-11-28'
DEFAULT_API_URL = 'https://api.github.com'


class AuthRequired(Exception):
    """Operation needs an auth token that was not configured."""
    pass


class UpstreamError(Exception):
    """Release registry call failed."""
    pass


class ReleaseNotFound(UpstreamError):
    """Requested release does not exist."""
    pass


class VersionResolver:
    """
    Resolves requested tool versions.

    Args:
        token: GitHub token ('' when not configured)
        api_url: API base URL
        client: Optional pre-built httpx client (used by tests)
    """

    def __init__(
        self,
        token: str = '',
        api_url: str = DEFAULT_API_URL,
        client: Optional[httpx.Client] = None
    ):
        self.token = token
        self.api_url = (api_url or DEFAULT_API_URL).rstrip('/')
        self._client = client

    def _get_client(self) -> httpx.Client:
        if not self.token:
            raise AuthRequired(
                "Cannot authenticate to GitHub APIs, \"github-token\" not provided"
            )
        if self._client is None:
            self._client = httpx.Client(timeout=30.0)
        return self._client

    def _request(self, path: str) -> dict:
        client = self._get_client()
        response = client.get(
            f"{self.api_url}{path}",
            headers={
                'Accept': 'application/vnd.github+json',
                'Authorization': f"Bearer {self.token}",
                'X-GitHub-Api-Version': GITHUB_API_VERSION,
            }
        )
        response.raise_for_status()
        return response.json()

    def resolve(self, owner: str, repo: str, requested: str, safe_default: str) -> str:
        """
        Resolve a requested version.

        Args:
            owner: Repository owner
            repo: Repository name
            requested: "latest", an explicit version, or ''
            safe_default: Version used when nothing was requested

        Returns:
            Version string without a leading 'v'

        Raises:
            AuthRequired: "latest" requested without a token
            UpstreamError: Registry call failed
            ReleaseNotFound: Explicit version does not exist
        """
        if requested == 'latest':
            if not self.token:
                raise AuthRequired(
                    f"Cannot get latest {owner}/{repo} release without an auth token, "
                    f"\"github-token\" must be set"
                )

            try:
                release = self._request(f"/repos/{owner}/{repo}/releases/latest")
                version = str(release['tag_name']).lstrip('v')
            except (httpx.HTTPError, KeyError, ValueError) as e:
                raise UpstreamError(
                    f"Failed to get latest release of {owner}/{repo}, error message: {e}"
                )

            logger.debug(f"Using latest {owner}/{repo} release, version: {version}")
            return version

        if requested:
            if not self.token:
                logger.debug(
                    f"Auth token not provided, cannot verify {owner}/{repo} release, "
                    f"relying on provided \"{requested}\""
                )
                return requested

            try:
                self._request(f"/repos/{owner}/{repo}/releases/tags/v{requested}")
            except (httpx.HTTPError, ValueError):
                raise ReleaseNotFound(
                    f"Release version {requested} does not exist in {owner}/{repo}"
                )

            logger.debug(f"Verified {owner}/{repo} release version {requested}, will use it")
            return requested

        logger.debug(
            f"Using a hard-coded {owner}/{repo} default release version {safe_default} "
            f"because config did not specify a value"
        )
        return safe_default

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
