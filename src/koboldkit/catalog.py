"""
Release Catalog Client

Queries the GitHub releases API for KoboldCpp builds. Only two read-only
endpoints are used: the latest release and the full release list. Failures
are surfaced as CatalogUnavailable and never retried here; the caller can
retry or fall back to already-installed versions.
"""

import logging
from typing import Any, List, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field

from .constants import CATALOG_TIMEOUT_S, GITHUB_API_URL, KOBOLDCPP_REPOSITORY
from .exceptions import CatalogUnavailable
from .versioning import is_newer

logger = logging.getLogger(__name__)


class ReleaseAsset(BaseModel):
    """A downloadable build attached to a release. Identity is the name."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., description="Asset file name")
    download_url: str = Field(..., alias="browser_download_url", description="Direct download URL")
    size_bytes: int = Field(0, alias="size", description="Size in bytes as reported by the host")
    created_at: Optional[str] = Field(None, description="ISO-8601 upload timestamp")


class Release(BaseModel):
    """A tagged release with its assets in host order."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tag: str = Field(..., alias="tag_name", description="Release tag, e.g. v1.97")
    name: Optional[str] = Field(None, description="Release title")
    published_at: Optional[str] = Field(None, description="ISO-8601 publish timestamp")
    body: Optional[str] = Field(None, description="Release notes (markdown)")
    assets: List[ReleaseAsset] = Field(default_factory=list, description="Downloadable builds")

    @property
    def version(self) -> str:
        return self.tag[1:] if self.tag.startswith("v") else self.tag


class UpdateInfo(BaseModel):
    """Result of comparing an installed version against the latest release."""
    model_config = ConfigDict(frozen=True)

    current_version: str = Field(..., description="Installed version")
    latest_version: str = Field(..., description="Version of the latest release")
    release: Release = Field(..., description="The latest release")
    has_update: bool = Field(False, description="True when the latest release is newer")


class ReleaseCatalog:
    """
    Client for a GitHub-hosted release list.

    Args:
        session: requests.Session to use (one is created when omitted)
        base_url: API root
        repository: "owner/name" of the repository
        timeout: Per-request timeout in seconds

    Example:
        >>> catalog = ReleaseCatalog()
        >>> release = catalog.latest()
        >>> [asset.name for asset in release.assets]
        ['koboldcpp.exe', 'koboldcpp-linux-x64', ...]
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        base_url: str = GITHUB_API_URL,
        repository: str = KOBOLDCPP_REPOSITORY,
        timeout: float = CATALOG_TIMEOUT_S,
    ):
        self.session = session if session is not None else requests.Session()
        self.releases_url = f"{base_url.rstrip('/')}/repos/{repository}/releases"
        self.timeout = timeout

    def _get_json(self, url: str) -> Any:
        try:
            response = self.session.get(
                url,
                headers={"Accept": "application/vnd.github+json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise CatalogUnavailable(f"Network error fetching {url}: {e}")

        if not 200 <= response.status_code < 300:
            raise CatalogUnavailable(f"Unexpected response from {url}", status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise CatalogUnavailable(f"Invalid JSON from {url}: {e}", status_code=response.status_code)

    def latest(self) -> Release:
        """Fetch the most recent release."""
        data = self._get_json(f"{self.releases_url}/latest")
        try:
            release = Release.model_validate(data)
        except ValueError as e:
            raise CatalogUnavailable(f"Malformed release record: {e}")
        logger.info(f"Latest release is {release.tag} with {len(release.assets)} assets")
        return release

    def all(self) -> List[Release]:
        """Fetch the release history, newest first as the host returns it."""
        data = self._get_json(self.releases_url)
        if not isinstance(data, list):
            raise CatalogUnavailable("Release list is not a JSON array")
        try:
            releases = [Release.model_validate(item) for item in data]
        except ValueError as e:
            raise CatalogUnavailable(f"Malformed release record: {e}")
        logger.debug(f"Fetched {len(releases)} releases")
        return releases

    def check_for_update(self, current_version: str) -> UpdateInfo:
        """
        Compare an installed version with the latest release.

        Raises:
            CatalogUnavailable: If the latest release cannot be fetched
        """
        release = self.latest()
        has_update = is_newer(release.version, current_version)
        if has_update:
            logger.info(f"Update available: {current_version} -> {release.version}")
        return UpdateInfo(
            current_version=current_version,
            latest_version=release.version,
            release=release,
            has_update=has_update,
        )
